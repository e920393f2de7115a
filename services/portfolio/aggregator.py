"""
Cross-account position aggregation.

In "all" and "person" views, positions of the same symbol held in several
accounts are merged into a single row with account_id "AGGREGATED".
"""
from __future__ import annotations

import logging
import math
from collections import Counter, defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from models.account import Account
from models.person import Person
from models.position import Position
from models.symbol import Symbol
from services.sync import dividend_calculator as dc
from utils.common_helpers import as_utc, isoformat, pct_of, to_float

logger = logging.getLogger(__name__)

VIEW_MODES = ("all", "person", "account")
AGGREGATED_ACCOUNT_ID = "AGGREGATED"
_REGULAR_FREQUENCIES = ("monthly", "quarterly")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def validate_view_mode(view_mode: str) -> str:
    if view_mode not in VIEW_MODES:
        raise ValueError(f"Invalid view mode: {view_mode}")
    return view_mode


def position_query(db: Session, view_mode: str, person_name: Optional[str] = None, account_id: Optional[str] = None):
    query = db.query(Position)
    if view_mode == "person" and person_name:
        query = query.filter(Position.person_name == person_name)
    elif view_mode == "account" and account_id:
        query = query.filter(Position.account_id == account_id)
    return query


def position_to_dict(p: Position) -> Dict[str, Any]:
    return {
        "id": p.id,
        "symbol": p.symbol,
        "symbol_id": p.symbol_id,
        "person_name": p.person_name,
        "account_id": p.account_id,
        "open_quantity": p.open_quantity or 0.0,
        "closed_quantity": p.closed_quantity or 0.0,
        "current_market_value": p.current_market_value or 0.0,
        "current_price": p.current_price or 0.0,
        "average_entry_price": p.average_entry_price or 0.0,
        "total_cost": p.total_cost or 0.0,
        "open_pnl": p.open_pnl or 0.0,
        "day_pnl": p.day_pnl or 0.0,
        "closed_pnl": p.closed_pnl or 0.0,
        "total_return_percent": p.total_return_percent or 0.0,
        "total_return_value": p.total_return_value or 0.0,
        "capital_gain_percent": p.capital_gain_percent or 0.0,
        "capital_gain_value": p.capital_gain_value or 0.0,
        "dividend_data": dict(p.dividends),
        "dividend_per_share": p.dividend_per_share or 0.0,
        "current_yield": p.current_yield or 0.0,
        "market_data": p.market_data,
        "currency": p.currency,
        "security_type": p.security_type,
        "industry_sector": p.industry_sector,
        "industry_group": p.industry_group,
        "is_dividend_stock": bool(p.is_dividend_stock),
        "is_aggregated": False,
        "synced_at": isoformat(p.synced_at),
    }


def _symbol_dividend_per_share(symbol_row: Optional[Symbol]) -> float:
    if symbol_row is None:
        return 0.0
    if (symbol_row.dividend_frequency or "").lower() in _REGULAR_FREQUENCIES:
        return to_float(symbol_row.dividend)
    return 0.0


def enrich_positions(db: Session, positions: List[Position]) -> List[Dict[str, Any]]:
    symbol_ids = {p.symbol_id for p in positions}
    symbol_map = {
        s.symbol_id: s for s in db.query(Symbol).filter(Symbol.symbol_id.in_(symbol_ids)).all()
    } if symbol_ids else {}

    enriched = []
    for p in positions:
        row = position_to_dict(p)
        symbol_row = symbol_map.get(p.symbol_id)
        div = row["dividend_data"]

        dps = row["dividend_per_share"] or _symbol_dividend_per_share(symbol_row)
        regular = div.get("dividend_frequency") in (dc.MONTHLY, dc.QUARTERLY) and (
            to_float(div.get("annual_dividend")) > 0 or to_float(div.get("monthly_dividend")) > 0
        )
        is_dividend = (
            regular
            or dps > 0
            or to_float(div.get("total_received")) > 0
            or to_float(div.get("annual_dividend")) > 0
        )

        row["dividend_per_share"] = dps if is_dividend else 0.0
        row["is_dividend_stock"] = is_dividend
        if symbol_row is not None:
            row["industry_sector"] = row["industry_sector"] or symbol_row.industry_sector
            row["industry_group"] = row["industry_group"] or symbol_row.industry_group
            row["industry_sub_group"] = symbol_row.industry_sub_group
            row["currency"] = row["currency"] or symbol_row.currency
            row["security_type"] = symbol_row.security_type or row["security_type"]
        enriched.append(row)
    return enriched


def most_common_value(values: Iterable[float]) -> float:
    """Most frequent value; ties go to the highest."""
    counts = Counter(v for v in values if v and v > 0)
    if not counts:
        return 0.0
    return max(counts.items(), key=lambda kv: (kv[1], kv[0]))[0]


def _latest_dividend(positions: List[Position]) -> tuple:
    latest_date = None
    latest_amount = 0.0
    for p in positions:
        date = p.dividends.get("last_dividend_date")
        if date and (latest_date is None or date > latest_date):
            latest_date = date
            latest_amount = to_float(p.dividends.get("last_dividend_amount"))
    return latest_date, latest_amount


def aggregate_symbol_positions(
    db: Session,
    symbol: str,
    positions: List[Position],
    account_map: Optional[Dict[str, Account]] = None,
) -> Dict[str, Any]:
    account_map = account_map or {}
    symbol_row = db.query(Symbol).filter(Symbol.symbol == symbol).first()

    shares = math.fsum(p.open_quantity or 0.0 for p in positions)
    cost = math.fsum(p.total_cost or 0.0 for p in positions)
    value = math.fsum(p.current_market_value or 0.0 for p in positions)
    open_pnl = math.fsum(p.open_pnl or 0.0 for p in positions)
    day_pnl = math.fsum(p.day_pnl or 0.0 for p in positions)
    received = math.fsum(to_float(p.dividends.get("total_received")) for p in positions)
    annual = math.fsum(to_float(p.dividends.get("annual_dividend")) for p in positions)

    latest = max(positions, key=lambda p: as_utc(p.synced_at) or _EPOCH)
    persons = {p.person_name for p in positions}

    avg_cost = cost / shares if shares > 0 else 0.0
    total_return = open_pnl + received
    yield_on_cost = pct_of(annual, cost) if annual > 0 else 0.0
    dividend_return = pct_of(received, cost) if received > 0 else 0.0

    dps = most_common_value(p.dividend_per_share for p in positions) or _symbol_dividend_per_share(symbol_row)

    if received > 0 and shares > 0:
        adjusted_per_share = max(0.0, avg_cost - received / shares)
        adjusted_cost = adjusted_per_share * shares
    else:
        adjusted_per_share = avg_cost if shares > 0 else None
        adjusted_cost = cost if cost > 0 else None

    last_date, last_amount = _latest_dividend(positions)
    individual = []
    for p in positions:
        account = account_map.get(p.account_id)
        individual.append({
            "account_id": p.account_id,
            "account_name": account.label() if account else f"Account {p.account_id}",
            "account_type": (account.type or account.client_account_type) if account else None,
            "person_name": p.person_name,
            "shares": p.open_quantity,
            "avg_cost": p.average_entry_price,
            "market_value": p.current_market_value,
            "total_cost": p.total_cost,
            "open_pnl": p.open_pnl,
        })

    if annual > 0:
        logger.debug(
            "Aggregated %s: annual=%.2f yoc=%.2f%% positions=%d", symbol, annual, yield_on_cost, len(positions)
        )

    return {
        "symbol": symbol,
        "symbol_id": positions[0].symbol_id,
        "person_name": next(iter(persons)) if len(persons) == 1 else "Multiple",
        "account_id": AGGREGATED_ACCOUNT_ID,
        "open_quantity": shares,
        "closed_quantity": 0.0,
        "current_market_value": value,
        "current_price": latest.current_price or 0.0,
        "average_entry_price": avg_cost,
        "total_cost": cost,
        "open_pnl": open_pnl,
        "day_pnl": day_pnl,
        "closed_pnl": 0.0,
        "total_return_percent": pct_of(total_return, cost),
        "total_return_value": total_return,
        "capital_gain_percent": pct_of(open_pnl, cost),
        "capital_gain_value": open_pnl,
        "dividend_data": {
            "total_received": received,
            "dividend_return_percent": dividend_return,
            "yield_on_cost": yield_on_cost,
            "dividend_adjusted_cost": adjusted_cost,
            "dividend_adjusted_cost_per_share": adjusted_per_share,
            "monthly_dividend": annual / 12,
            "monthly_dividend_per_share": annual / 12 / shares if shares > 0 else 0.0,
            "annual_dividend": annual,
            "annual_dividend_per_share": annual / shares if shares > 0 else 0.0,
            "last_dividend_date": last_date,
            "last_dividend_amount": last_amount,
        },
        "dividend_per_share": dps,
        "current_yield": latest.current_yield or 0.0,
        "market_data": latest.market_data,
        "currency": (symbol_row.currency if symbol_row else None) or positions[0].currency,
        "security_type": (symbol_row.security_type if symbol_row else None) or positions[0].security_type,
        "industry_sector": (symbol_row.industry_sector if symbol_row else None) or positions[0].industry_sector,
        "industry_group": (symbol_row.industry_group if symbol_row else None) or positions[0].industry_group,
        "is_dividend_stock": annual > 0 or dps > 0 or received > 0,
        "is_aggregated": True,
        "source_accounts": [p.account_id for p in positions],
        "number_of_accounts": len(positions),
        "individual_positions": individual,
        "synced_at": isoformat(latest.synced_at),
    }


def aggregate_positions(
    db: Session,
    view_mode: str,
    person_name: Optional[str] = None,
    account_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    validate_view_mode(view_mode)
    positions = position_query(db, view_mode, person_name, account_id).order_by(Position.symbol).all()
    if not positions:
        return []
    if view_mode == "account":
        return enrich_positions(db, positions)

    account_ids = {p.account_id for p in positions}
    account_map = {a.account_id: a for a in db.query(Account).filter(Account.account_id.in_(account_ids)).all()}

    groups: Dict[str, List[Position]] = defaultdict(list)
    for p in positions:
        groups[p.symbol].append(p)

    aggregated = []
    for symbol, group in groups.items():
        if len(group) == 1:
            aggregated.extend(enrich_positions(db, group))
        else:
            aggregated.append(aggregate_symbol_positions(db, symbol, group, account_map))
    return aggregated


def get_account_dropdown_options(db: Session) -> List[Dict[str, Any]]:
    persons = db.query(Person).filter(Person.is_active.is_(True)).order_by(Person.person_name).all()
    accounts = db.query(Account).order_by(Account.account_id).all()

    options: List[Dict[str, Any]] = [{
        "value": "all",
        "label": "All Accounts",
        "type": "all",
        "person_name": None,
        "account_id": None,
    }]
    for person in persons:
        owned = [a for a in accounts if a.person_name == person.person_name]
        if not owned:
            continue
        options.append({
            "value": f"person-{person.person_name}",
            "label": f"All Accounts - {person.display_name or person.person_name}",
            "type": "person",
            "person_name": person.person_name,
            "account_id": None,
        })
        for account in owned:
            options.append({
                "value": f"account-{account.account_id}",
                "label": f"{person.person_name} {account.type or 'Account'} - {account.account_id}",
                "type": "account",
                "person_name": person.person_name,
                "account_id": account.account_id,
            })
    return options
