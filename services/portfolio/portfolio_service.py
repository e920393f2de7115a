# services/portfolio/portfolio_service.py
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from math import fsum
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from models.account import Account
from models.activity import Activity
from models.person import Person
from models.position import Position
from services.portfolio.aggregator import aggregate_positions, validate_view_mode
from services.sync import dividend_calculator as dc
from utils.common_helpers import as_utc, isoformat, pct_of, to_float

logger = logging.getLogger(__name__)


def _normalize_alloc(d: Dict[str, float], total: float, key: str) -> List[Dict[str, Any]]:
    items = sorted(d.items(), key=lambda kv: -kv[1])
    return [{key: k, "value": round(v, 8), "percentage": round(pct_of(v, total), 8)} for k, v in items]


def _require_scope(view_mode: str, person_name: Optional[str], account_id: Optional[str]) -> None:
    validate_view_mode(view_mode)
    if view_mode == "person" and not person_name:
        raise ValueError("person_name is required for person view mode")
    if view_mode == "account" and not account_id:
        raise ValueError("account_id is required for account view mode")


def _use_dividend_stocks_only(db: Session, person_name: Optional[str], explicit: Optional[bool]) -> bool:
    if explicit is not None:
        return explicit
    if person_name:
        person = db.query(Person).filter(Person.person_name == person_name).first()
        if person is not None:
            return bool(person.portfolio_preference("yield_on_cost_dividend_only", True))
    return True


def _accounts_for(db: Session, view_mode: str, person_name: Optional[str], account_id: Optional[str]) -> List[Account]:
    query = db.query(Account)
    if view_mode == "person" and person_name:
        query = query.filter(Account.person_name == person_name)
    elif view_mode == "account" and account_id:
        query = query.filter(Account.account_id == account_id)
    return query.order_by(Account.account_id).all()


def _primary_cash(account: Account) -> tuple:
    combined = (account.balances or {}).get("combined_balances") or []
    if combined:
        first = combined[0]
        return to_float(first.get("cash")), first.get("currency") or "CAD"
    return 0.0, "CAD"


def get_aggregated_summary(
    db: Session,
    view_mode: str,
    person_name: Optional[str] = None,
    account_id: Optional[str] = None,
    dividend_stocks_only: Optional[bool] = None,
) -> Optional[Dict[str, Any]]:
    """
    Portfolio totals for the selected view.

    ``yield_on_cost_percent`` follows the person's preference (dividend payers only
    by default); ``portfolio_yield_on_cost`` always covers every position.
    """
    positions = aggregate_positions(db, view_mode, person_name, account_id)
    if not positions:
        return None

    dividend_only = _use_dividend_stocks_only(db, person_name, dividend_stocks_only)
    accounts = _accounts_for(db, view_mode, person_name, account_id)

    total_investment = fsum(p["total_cost"] for p in positions)
    current_value = fsum(p["current_market_value"] for p in positions)
    unrealized = fsum(p["open_pnl"] for p in positions)
    total_dividends = fsum(to_float(p["dividend_data"].get("total_received")) for p in positions)
    monthly_income = fsum(to_float(p["dividend_data"].get("monthly_dividend")) for p in positions)
    annual_projected = fsum(to_float(p["dividend_data"].get("annual_dividend")) for p in positions)

    yield_positions = [
        p for p in positions
        if not dividend_only or (p["is_dividend_stock"] and to_float(p["dividend_data"].get("annual_dividend")) > 0)
    ]
    yield_cost = fsum(p["total_cost"] for p in yield_positions)
    yield_annual = fsum(to_float(p["dividend_data"].get("annual_dividend")) for p in yield_positions)
    portfolio_yoc = dc.portfolio_yield_on_cost(
        {"annual_dividend": p["dividend_data"].get("annual_dividend"), "total_cost": p["total_cost"]}
        for p in positions
    )

    sector_map: Dict[str, float] = defaultdict(float)
    currency_map: Dict[str, float] = defaultdict(float)
    person_map: Dict[str, float] = defaultdict(float)
    for p in positions:
        value = p["current_market_value"]
        sector_map[p.get("industry_sector") or p.get("security_type") or "Other"] += value
        currency_map[p.get("currency") or "CAD"] += value
        if view_mode == "all" and p["person_name"] != "Multiple":
            person_map[p["person_name"]] += value

    person_breakdown = []
    if view_mode == "all":
        for row in _normalize_alloc(person_map, current_value, "person_name"):
            row["number_of_positions"] = sum(1 for p in positions if p["person_name"] == row["person_name"])
            person_breakdown.append(row)

    accounts_summary = []
    for account in accounts:
        held = [
            p for p in positions
            if (account.account_id in p.get("source_accounts", [])) or p["account_id"] == account.account_id
        ]
        value = fsum(p["current_market_value"] for p in held)
        invested = fsum(p["total_cost"] for p in held)
        pnl = fsum(p["open_pnl"] for p in held)
        cash, currency = _primary_cash(account)
        accounts_summary.append({
            "account_id": account.account_id,
            "account_name": account.display_name or f"{account.type} - {account.account_id}",
            "account_type": account.type,
            "person_name": account.person_name,
            "currency": currency,
            "total_investment": invested,
            "current_value": value,
            "unrealized_pnl": pnl,
            "cash_balance": cash,
            "number_of_positions": len(held),
            "return_percent": pct_of(pnl, invested),
            "last_updated": isoformat(account.synced_at),
        })

    account_ids = set()
    for p in positions:
        account_ids.update(p.get("source_accounts") or [p["account_id"]])

    primary_currency = max(currency_map.items(), key=lambda kv: kv[1])[0] if currency_map else "CAD"
    total_return = unrealized + total_dividends
    dividend_count = sum(1 for p in positions if to_float(p["dividend_data"].get("annual_dividend")) > 0)

    if portfolio_yoc > 0:
        logger.debug(
            "Portfolio yield on cost view=%s cost=%.2f annual=%.2f yoc=%.2f dividend_only=%s",
            view_mode, total_investment, annual_projected, portfolio_yoc, dividend_only,
        )

    return {
        "view_mode": view_mode,
        "person_name": person_name,
        "account_id": account_id,
        "currency": primary_currency,
        "total_investment": total_investment,
        "current_value": current_value,
        "total_return_value": total_return,
        "total_return_percent": pct_of(total_return, total_investment),
        "unrealized_pnl": unrealized,
        "total_dividends": total_dividends,
        "monthly_dividend_income": monthly_income,
        "annual_projected_dividend": annual_projected,
        "average_yield_percent": pct_of(annual_projected, current_value),
        "yield_on_cost_percent": pct_of(yield_annual, yield_cost),
        "portfolio_yield_on_cost": portfolio_yoc,
        "number_of_positions": len(positions),
        "number_of_accounts": len(account_ids),
        "number_of_dividend_stocks": dividend_count,
        "sector_allocation": _normalize_alloc(sector_map, current_value, "sector"),
        "currency_breakdown": _normalize_alloc(currency_map, current_value, "currency"),
        "person_breakdown": person_breakdown,
        "accounts": accounts_summary,
        "aggregation_info": {
            "has_aggregated_positions": any(p["is_aggregated"] for p in positions),
            "total_aggregated_symbols": sum(1 for p in positions if p["is_aggregated"]),
        },
        "yield_calculation_info": {
            "use_dividend_stocks_only": dividend_only,
            "yield_calculation_total_cost": yield_cost,
            "yield_calculation_annual_dividend": yield_annual,
            "portfolio_total_cost": total_investment,
            "portfolio_total_annual_dividend": annual_projected,
            "dividend_stock_count": dividend_count,
            "total_position_count": len(positions),
        },
    }


def get_positions(
    db: Session,
    view_mode: str,
    person_name: Optional[str] = None,
    account_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    positions = aggregate_positions(db, view_mode, person_name, account_id)
    positions.sort(key=lambda p: p["current_market_value"], reverse=True)
    return positions


def get_symbol_positions(db: Session, symbol: str, person_name: Optional[str] = None) -> List[Dict[str, Any]]:
    symbol = symbol.strip().upper()
    view_mode = "person" if person_name else "all"
    return [p for p in aggregate_positions(db, view_mode, person_name) if p["symbol"] == symbol]


def _activity_query(db: Session, view_mode: str, person_name: Optional[str], account_id: Optional[str]):
    query = db.query(Activity)
    if view_mode == "person":
        query = query.filter(Activity.person_name == person_name)
    elif view_mode == "account":
        query = query.filter(Activity.account_id == account_id)
    return query


def get_dividend_calendar(
    db: Session,
    view_mode: str = "all",
    person_name: Optional[str] = None,
    account_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    _require_scope(view_mode, person_name, account_id)
    query = _activity_query(db, view_mode, person_name, account_id).filter(Activity.type == "Dividend")
    if start_date is not None:
        query = query.filter(Activity.transaction_date >= start_date)
    if end_date is not None:
        query = query.filter(Activity.transaction_date <= end_date)

    calendar: Dict[str, Dict[str, Any]] = {}
    for activity in query.order_by(Activity.transaction_date.desc()).all():
        when = as_utc(activity.transaction_date)
        month = when.strftime("%Y-%m")
        bucket = calendar.setdefault(month, {"month": month, "total_amount": 0.0, "dividends": []})
        bucket["total_amount"] += activity.net_amount or 0.0
        bucket["dividends"].append({
            "symbol": activity.symbol,
            "account_id": activity.account_id,
            "date": isoformat(when),
            "amount": activity.net_amount,
            "quantity": activity.quantity,
            "description": activity.description,
        })
    return list(calendar.values())


def get_performance_metrics(
    db: Session,
    view_mode: str = "all",
    person_name: Optional[str] = None,
    account_id: Optional[str] = None,
    timeframe: str = "1Y",
) -> Dict[str, Any]:
    _require_scope(view_mode, person_name, account_id)
    pos_query = db.query(Position)
    if view_mode == "person":
        pos_query = pos_query.filter(Position.person_name == person_name)
    elif view_mode == "account":
        pos_query = pos_query.filter(Position.account_id == account_id)
    positions = pos_query.all()
    activities = _activity_query(db, view_mode, person_name, account_id).all()

    unrealized = fsum(p.open_pnl or 0.0 for p in positions)
    invested = 0.0
    dividends = 0.0
    commissions = 0.0
    wins: List[float] = []
    losses: List[float] = []
    for a in activities:
        if a.type == "Trade":
            commissions += abs(a.commission or 0.0)
            action = (a.action or "").lower()
            if action == "buy":
                invested += abs(a.net_amount or 0.0)
            elif action == "sell":
                profit = (a.net_amount or 0.0) - (a.gross_amount or 0.0)
                if profit > 0:
                    wins.append(profit)
                elif profit < 0:
                    losses.append(abs(profit))
        elif a.type == "Dividend":
            dividends += a.net_amount or 0.0

    trades = len(wins) + len(losses)
    return {
        "timeframe": timeframe,
        "total_return": unrealized,
        "total_return_percent": pct_of(unrealized, invested),
        "unrealized_gains": unrealized,
        "realized_gains": fsum(wins) - fsum(losses),
        "total_dividends": dividends,
        "total_commissions": commissions,
        "win_rate": pct_of(len(wins), trades),
        "avg_win": fsum(wins) / len(wins) if wins else 0.0,
        "avg_loss": fsum(losses) / len(losses) if losses else 0.0,
    }


def get_account_allocation(db: Session, person_name: str) -> List[Dict[str, Any]]:
    allocation = []
    for account in db.query(Account).filter(Account.person_name == person_name).order_by(Account.account_id).all():
        positions = db.query(Position).filter(Position.account_id == account.account_id).all()
        total = fsum(p.current_market_value or 0.0 for p in positions)
        allocation.append({
            "account_id": account.account_id,
            "account_type": account.type,
            "account_number": account.number,
            "total_value": total,
            "position_count": len(positions),
            "positions": [
                {
                    "symbol": p.symbol,
                    "value": p.current_market_value,
                    "percentage": pct_of(p.current_market_value or 0.0, total),
                }
                for p in sorted(positions, key=lambda p: p.current_market_value or 0.0, reverse=True)
            ],
        })
    return allocation


def get_person_comparison(db: Session, person_names: List[str]) -> List[Dict[str, Any]]:
    comparison = []
    for name in person_names:
        summary = get_aggregated_summary(db, "person", person_name=name)
        if summary is None:
            comparison.append({"person_name": name, "has_data": False})
            continue
        comparison.append({
            "person_name": name,
            "has_data": True,
            "total_investment": summary["total_investment"],
            "current_value": summary["current_value"],
            "total_return_value": summary["total_return_value"],
            "total_return_percent": summary["total_return_percent"],
            "total_dividends": summary["total_dividends"],
            "annual_projected_dividend": summary["annual_projected_dividend"],
            "yield_on_cost_percent": summary["yield_on_cost_percent"],
            "number_of_positions": summary["number_of_positions"],
            "number_of_accounts": summary["number_of_accounts"],
        })
    return comparison
