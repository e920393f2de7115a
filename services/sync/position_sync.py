# services/sync/position_sync.py
"""
Per-account position sync with dividend enrichment.

Positions are upserted on (account_id, symbol_id, person_name). A full sync
drops the account's rows first so sold-out positions disappear.
"""
from __future__ import annotations

import logging
import math
from collections import defaultdict
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from models.account import Account
from models.position import Position
from models.symbol import Symbol
from services.market_service import ensure_symbols
from services.questrade.questrade_client import QuestradeClient
from services.sync import dividend_calculator as dc
from services.sync.sync_config import STALE_DATA_DAYS
from services.sync.sync_utils import SyncResult, update_account_statistics, validate_person_for_sync
from utils.common_helpers import as_utc, isoformat, parse_datetime, pct_of, to_float, utcnow

logger = logging.getLogger(__name__)

TOP_DIVIDEND_PAYERS = 10


def resolve_currency(symbol: str, symbol_row: Optional[Symbol]) -> str:
    if symbol_row is not None and symbol_row.currency:
        return symbol_row.currency
    return "CAD" if ".TO" in (symbol or "").upper() else "USD"


def annual_dividend_per_share(dividend_data: Dict[str, Any], symbol_row: Optional[Symbol]) -> float:
    annual = to_float(dividend_data.get("annual_dividend_per_share"))
    if annual > 0 or symbol_row is None:
        return annual
    frequency = dc.parse_frequency(symbol_row.dividend_frequency)
    return to_float(symbol_row.dividend) * frequency if frequency else 0.0


def is_dividend_stock(dividend_data: Dict[str, Any], symbol_row: Optional[Symbol]) -> bool:
    return (
        to_float(dividend_data.get("annual_dividend")) > 0
        or to_float(dividend_data.get("total_received")) > 0
        or (symbol_row is not None and to_float(symbol_row.dividend) > 0)
    )


def build_dividend_data(
    db: Session,
    *,
    account_id: str,
    person_name: str,
    symbol: str,
    shares: float,
    avg_cost: float,
    symbol_row: Optional[Symbol],
    current_price: float = 0.0,
) -> Dict[str, Any]:
    payments = dc.load_dividend_payments(db, account_id, person_name, symbol)
    info = dc.SymbolDividendInfo.from_symbol(symbol_row, {"lastTradePrice": current_price})
    data = dc.calculate_dividend_data(shares, avg_cost, info, payments, symbol=symbol)

    validation = dc.validate_dividend_data(data, symbol)
    if not validation["is_valid"]:
        logger.warning("Dividend data validation failed for %s: %s", symbol, validation["warnings"])
    return data


def _apply_dividends(position: Position, data: Dict[str, Any], symbol_row: Optional[Symbol]) -> None:
    position.dividend_data = data
    position.dividend_per_share = annual_dividend_per_share(data, symbol_row)
    position.is_dividend_stock = is_dividend_stock(data, symbol_row)
    position.current_yield = to_float(data.get("current_yield"))


def sync_single_position(
    db: Session,
    data: Dict[str, Any],
    account: Account,
    person_name: str,
    symbol_row: Optional[Symbol],
) -> Position:
    symbol = data.get("symbol") or ""
    symbol_id = int(data.get("symbolId"))
    shares = to_float(data.get("openQuantity"))
    avg_cost = to_float(data.get("averageEntryPrice"))
    total_cost = to_float(data.get("totalCost"))
    open_pnl = to_float(data.get("openPnl"))
    current_price = to_float(data.get("currentPrice"))

    position = (
        db.query(Position)
        .filter(
            Position.account_id == account.account_id,
            Position.symbol_id == symbol_id,
            Position.person_name == person_name,
        )
        .first()
    )
    if position is None:
        position = Position(account_id=account.account_id, symbol_id=symbol_id, person_name=person_name)
        db.add(position)

    position.symbol = symbol
    position.open_quantity = shares
    position.closed_quantity = to_float(data.get("closedQuantity"))
    position.current_market_value = to_float(data.get("currentMarketValue"))
    position.current_price = current_price
    position.average_entry_price = avg_cost
    position.day_pnl = to_float(data.get("dayPnl"))
    position.closed_pnl = to_float(data.get("closedPnl"))
    position.open_pnl = open_pnl
    position.total_cost = total_cost
    position.is_real_time = bool(data.get("isRealTime"))
    position.is_under_reorg = bool(data.get("isUnderReorg"))

    position.total_return_value = open_pnl
    position.total_return_percent = pct_of(open_pnl, total_cost)
    position.capital_gain_value = open_pnl
    position.capital_gain_percent = pct_of(open_pnl, total_cost)

    dividend_data = build_dividend_data(
        db,
        account_id=account.account_id,
        person_name=person_name,
        symbol=symbol,
        shares=shares,
        avg_cost=avg_cost,
        symbol_row=symbol_row,
        current_price=current_price,
    )
    _apply_dividends(position, dividend_data, symbol_row)

    position.currency = resolve_currency(symbol, symbol_row)
    position.security_type = (symbol_row.security_type if symbol_row else None) or "Stock"
    position.industry_sector = symbol_row.industry_sector if symbol_row else None
    position.industry_group = symbol_row.industry_group if symbol_row else None
    position.market_data = {
        "last_price": current_price,
        "last_updated": isoformat(utcnow()),
        "is_real_time": bool(data.get("isRealTime")),
    }
    position.synced_at = utcnow()

    if dividend_data.get("yield_on_cost", 0) > 0:
        logger.debug(
            "Position %s synced: shares=%s avg_cost=%.2f annual=%.2f yoc=%.2f%%",
            symbol, shares, avg_cost, dividend_data["annual_dividend"], dividend_data["yield_on_cost"],
        )
    return position


def sync_positions_for_account(
    db: Session,
    client: QuestradeClient,
    account: Account,
    person_name: str,
    full_sync: bool = False,
) -> SyncResult:
    result = SyncResult()
    data = client.get_account_positions(account.account_id, person_name)
    positions: List[Dict[str, Any]] = (data or {}).get("positions") or []

    if full_sync:
        db.query(Position).filter(
            Position.account_id == account.account_id, Position.person_name == person_name
        ).delete(synchronize_session="fetch")
        logger.debug("Cleared existing positions for account %s (full sync)", account.account_id)

    logger.info("Processing %d positions for account %s", len(positions), account.account_id)
    symbol_map = ensure_symbols(db, client, person_name, [p.get("symbolId") for p in positions])

    for item in positions:
        try:
            sync_single_position(db, item, account, person_name, symbol_map.get(item.get("symbolId")))
            db.commit()
            result.synced += 1
        except Exception as exc:
            db.rollback()
            logger.exception("Failed to save position %s", item.get("symbol"))
            result.add_error(str(exc), account_id=account.account_id, symbol=item.get("symbol"))

    update_account_statistics(db, account.account_id, person_name)
    return result.finalize()


def sync_positions_for_person(
    db: Session,
    client: QuestradeClient,
    person_name: str,
    full_sync: bool = False,
) -> SyncResult:
    result = SyncResult()
    validate_person_for_sync(db, person_name)

    accounts = db.query(Account).filter(Account.person_name == person_name).all()
    if not accounts:
        logger.warning("No accounts found for %s, skipping position sync", person_name)
        return result.finalize()

    logger.info("Position sync started for %s accounts=%d full_sync=%s", person_name, len(accounts), full_sync)
    for account in accounts:
        try:
            account_result = sync_positions_for_account(db, client, account, person_name, full_sync)
            result.synced += account_result.synced
            result.errors.extend(account_result.errors)
        except Exception as exc:
            db.rollback()
            logger.exception("Position sync failed for %s account=%s", person_name, account.account_id)
            result.add_error(str(exc), account_id=account.account_id)

    logger.info(
        "Position sync completed for %s: synced=%d errors=%d", person_name, result.synced, len(result.errors)
    )
    return result.finalize()


def recalculate_dividends(db: Session, person_name: str, symbol: Optional[str] = None) -> Dict[str, Any]:
    """Recompute dividend data from stored activities and symbols without calling Questrade."""
    query = db.query(Position).filter(Position.person_name == person_name)
    if symbol:
        query = query.filter(Position.symbol == symbol.strip().upper())
    positions = query.all()

    symbol_ids = {p.symbol_id for p in positions}
    symbol_map = {
        s.symbol_id: s for s in db.query(Symbol).filter(Symbol.symbol_id.in_(symbol_ids)).all()
    } if symbol_ids else {}

    logger.info("Starting dividend recalculation for %d positions for %s", len(positions), person_name)
    updated: List[Dict[str, Any]] = []
    errors: List[Dict[str, Any]] = []
    for position in positions:
        old = position.dividends
        symbol_row = symbol_map.get(position.symbol_id)
        try:
            data = build_dividend_data(
                db,
                account_id=position.account_id,
                person_name=position.person_name,
                symbol=position.symbol,
                shares=position.open_quantity,
                avg_cost=position.average_entry_price,
                symbol_row=symbol_row,
                current_price=position.current_price,
            )
        except (TypeError, ValueError) as exc:
            logger.exception("Error recalculating dividends for %s", position.symbol)
            errors.append({"symbol": position.symbol, "error": str(exc)})
            continue
        _apply_dividends(position, data, symbol_row)
        updated.append({
            "symbol": position.symbol,
            "account_id": position.account_id,
            "old_yield_on_cost": to_float(old.get("yield_on_cost")),
            "new_yield_on_cost": data["yield_on_cost"],
            "old_annual_dividend": to_float(old.get("annual_dividend")),
            "new_annual_dividend": data["annual_dividend"],
        })
    db.commit()

    logger.info(
        "Dividend recalculation completed for %s: updated=%d errors=%d", person_name, len(updated), len(errors)
    )
    return {
        "updated": len(updated),
        "errors": len(errors),
        "updated_positions": updated,
        "error_details": errors,
    }


def get_position_sync_stats(db: Session, person_name: str) -> Dict[str, Any]:
    positions = db.query(Position).filter(Position.person_name == person_name).all()
    one_day_ago = utcnow() - timedelta(days=1)

    total_cost = math.fsum(p.total_cost or 0.0 for p in positions)
    total_pnl = math.fsum(p.open_pnl or 0.0 for p in positions)
    annual = math.fsum(to_float(p.dividends.get("annual_dividend")) for p in positions)
    by_currency: Dict[str, Dict[str, float]] = defaultdict(lambda: {"count": 0, "value": 0.0})
    last_sync = None
    for p in positions:
        bucket = by_currency[p.currency or "CAD"]
        bucket["count"] += 1
        bucket["value"] += p.current_market_value or 0.0
        synced_at = as_utc(p.synced_at)
        if synced_at and (last_sync is None or synced_at > last_sync):
            last_sync = synced_at

    return {
        "total": len(positions),
        "recently_synced": sum(1 for p in positions if p.synced_at and as_utc(p.synced_at) > one_day_ago),
        "total_value": math.fsum(p.current_market_value or 0.0 for p in positions),
        "total_cost": total_cost,
        "total_pnl": total_pnl,
        "total_dividends_received": math.fsum(to_float(p.dividends.get("total_received")) for p in positions),
        "total_annual_dividend": annual,
        "dividend_stocks": sum(
            1 for p in positions
            if to_float(p.dividends.get("annual_dividend")) > 0 or to_float(p.dividends.get("total_received")) > 0
        ),
        "by_currency": dict(by_currency),
        "portfolio_yield_on_cost": pct_of(annual, total_cost),
        "return_percent": pct_of(total_pnl, total_cost),
        "last_sync_time": isoformat(last_sync),
    }


def get_dividend_summary(db: Session, person_name: Optional[str] = None) -> Dict[str, Any]:
    query = db.query(Position)
    if person_name:
        query = query.filter(Position.person_name == person_name)
    positions = query.all()

    total_cost = math.fsum(p.total_cost or 0.0 for p in positions)
    total_value = math.fsum(p.current_market_value or 0.0 for p in positions)
    payers: List[Dict[str, Any]] = []
    for p in positions:
        div = p.dividends
        annual = to_float(div.get("annual_dividend"))
        received = to_float(div.get("total_received"))
        if annual > 0 or received > 0:
            payers.append({
                "symbol": p.symbol,
                "account_id": p.account_id,
                "total_received": received,
                "annual_dividend": annual,
                "yield_on_cost": to_float(div.get("yield_on_cost")),
                "current_value": p.current_market_value or 0.0,
                "total_cost": p.total_cost or 0.0,
            })

    annual_total = math.fsum(to_float(p.dividends.get("annual_dividend")) for p in positions)
    payers.sort(key=lambda x: x["annual_dividend"], reverse=True)
    return {
        "total_dividends_received": math.fsum(to_float(p.dividends.get("total_received")) for p in positions),
        "annual_projected_dividends": annual_total,
        "monthly_projected_dividends": math.fsum(to_float(p.dividends.get("monthly_dividend")) for p in positions),
        "portfolio_yield_on_cost": pct_of(annual_total, total_cost),
        "total_cost": total_cost,
        "dividend_stocks": len(payers),
        "total_positions": len(positions),
        "average_yield": pct_of(annual_total, total_value),
        "top_dividend_payers": payers[:TOP_DIVIDEND_PAYERS],
    }


def get_stale_positions(db: Session, person_name: str, days_old: int = STALE_DATA_DAYS) -> List[Dict[str, Any]]:
    cutoff = utcnow() - timedelta(days=days_old)
    stale = []
    for p in db.query(Position).filter(Position.person_name == person_name).all():
        synced_at = as_utc(p.synced_at)
        calculated = parse_datetime(p.dividends.get("last_calculated"))
        if synced_at is None or synced_at < cutoff or calculated is None or calculated < cutoff:
            stale.append({
                "symbol": p.symbol,
                "account_id": p.account_id,
                "last_sync": isoformat(synced_at),
                "last_dividend_update": isoformat(calculated),
            })
    return stale


def validate_position_data(db: Session, person_name: str) -> Dict[str, Any]:
    positions = db.query(Position).filter(Position.person_name == person_name).all()
    week_ago = utcnow() - timedelta(days=STALE_DATA_DAYS)
    issues: List[Dict[str, Any]] = []
    for p in positions:
        if not p.symbol:
            issues.append({"position_id": p.id, "issue": "Missing symbol"})
        if (p.current_price or 0) < 0:
            issues.append({"symbol": p.symbol, "issue": "Negative current price"})
        if (p.open_quantity or 0) < 0:
            issues.append({"symbol": p.symbol, "issue": "Negative quantity"})
        synced_at = as_utc(p.synced_at)
        if synced_at is None or synced_at < week_ago:
            issues.append({"symbol": p.symbol, "issue": "Stale sync data", "last_sync": isoformat(synced_at)})
        div = p.dividends
        if to_float(div.get("annual_dividend")) < 0:
            issues.append({"symbol": p.symbol, "issue": "Negative annual dividend"})
        if to_float(div.get("yield_on_cost")) > 50:
            issues.append({"symbol": p.symbol, "issue": "Unrealistic yield on cost (>50%)"})
        if to_float(div.get("annual_dividend")) > 0 and to_float(div.get("yield_on_cost")) == 0:
            issues.append({"symbol": p.symbol, "issue": "Missing yield on cost for dividend stock"})
    return {"position_count": len(positions), "issues": issues, "is_valid": not issues}
