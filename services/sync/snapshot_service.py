"""Point-in-time portfolio snapshots used for history charts."""
from __future__ import annotations

import logging
import math
from collections import defaultdict
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from models.account import Account
from models.portfolio_snapshot import PortfolioSnapshot
from models.position import Position
from services.sync.sync_config import SECTOR_ALLOCATION_MIN_PERCENT, SNAPSHOT_RETENTION_DAYS
from utils.common_helpers import isoformat, pct_of, to_float, utcnow

logger = logging.getLogger(__name__)

# Fallback when Questrade has no industry sector for the symbol
SECTOR_MAP: Dict[str, str] = {
    "AAPL": "Technology", "MSFT": "Technology", "GOOGL": "Technology", "GOOG": "Technology",
    "AMZN": "Technology", "TSLA": "Technology", "META": "Technology", "NVDA": "Technology",
    "JNJ": "Healthcare", "PFE": "Healthcare", "UNH": "Healthcare", "ABBV": "Healthcare",
    "JPM": "Financial", "BAC": "Financial", "WFC": "Financial", "GS": "Financial",
    "MS": "Financial", "C": "Financial", "RY": "Financial", "TD": "Financial",
    "WMT": "Consumer Discretionary", "HD": "Consumer Discretionary", "MCD": "Consumer Discretionary",
    "COST": "Consumer Staples", "PG": "Consumer Staples", "KO": "Consumer Staples",
    "XOM": "Energy", "CVX": "Energy", "COP": "Energy", "ENB": "Energy",
    "NEE": "Utilities", "DUK": "Utilities", "SO": "Utilities",
    "REI": "Real Estate", "VNQ": "Real Estate",
}


def sector_for(position: Position) -> str:
    symbol = position.symbol or ""
    if position.industry_sector:
        return position.industry_sector
    if symbol in SECTOR_MAP:
        return SECTOR_MAP[symbol]
    return "Canadian Equity" if ".TO" in symbol else "Other"


def currency_for(position: Position) -> str:
    if position.currency:
        return position.currency
    return "CAD" if ".TO" in (position.symbol or "") else "USD"


def asset_class_for(position: Position) -> str:
    symbol = position.symbol or ""
    if "ETF" in symbol or (".TO" in symbol and len(symbol) <= 6):
        return "ETFs"
    if "BOND" in symbol or "TDB" in symbol:
        return "Bonds"
    if position.security_type == "Stock":
        return "Stocks"
    return "Other"


def _allocation(totals: Dict[str, float], key: str, total_value: float) -> List[Dict[str, Any]]:
    rows = [
        {key: name, "value": value, "percentage": pct_of(value, total_value)}
        for name, value in totals.items()
    ]
    rows.sort(key=lambda r: r["value"], reverse=True)
    return rows


def calculate_sector_allocation(positions: Iterable[Position], total_value: float) -> List[Dict[str, Any]]:
    totals: Dict[str, float] = defaultdict(float)
    for p in positions:
        totals[sector_for(p)] += p.current_market_value or 0.0
    return [
        r for r in _allocation(totals, "sector", total_value)
        if r["percentage"] > SECTOR_ALLOCATION_MIN_PERCENT
    ]


def calculate_currency_breakdown(positions: Iterable[Position], total_value: float) -> List[Dict[str, Any]]:
    totals: Dict[str, float] = defaultdict(float)
    for p in positions:
        totals[currency_for(p)] += p.current_market_value or 0.0
    return _allocation(totals, "currency", total_value)


def calculate_asset_allocation(positions: Iterable[Position], total_value: float) -> List[Dict[str, Any]]:
    totals: Dict[str, float] = defaultdict(float)
    for p in positions:
        totals[asset_class_for(p)] += p.current_market_value or 0.0
    return [r for r in _allocation(totals, "category", total_value) if r["value"] > 0]


def calculate_snapshot_metrics(positions: List[Position]) -> Dict[str, Any]:
    total_investment = math.fsum(p.total_cost or 0.0 for p in positions)
    current_value = math.fsum(p.current_market_value or 0.0 for p in positions)
    unrealized = math.fsum(p.open_pnl or 0.0 for p in positions)
    dividends = math.fsum(to_float(p.dividends.get("total_received")) for p in positions)
    annual = math.fsum(to_float(p.dividends.get("annual_dividend")) for p in positions)
    dividend_cost = math.fsum(
        p.total_cost or 0.0 for p in positions if to_float(p.dividends.get("annual_dividend")) > 0
    )
    total_return = unrealized + dividends

    return {
        "total_investment": total_investment,
        "current_value": current_value,
        "unrealized_pnl": unrealized,
        "total_dividends_received": dividends,
        "total_return_value": total_return,
        "total_return_percent": pct_of(total_return, total_investment),
        "annual_projected_dividend": annual,
        "monthly_projected_dividend": annual / 12,
        "average_yield_percent": pct_of(annual, current_value),
        "yield_on_cost_percent": pct_of(annual, dividend_cost),
        "number_of_positions": len(positions),
        "number_of_dividend_stocks": sum(
            1 for p in positions if to_float(p.dividends.get("annual_dividend")) > 0
        ),
        "sector_allocation": calculate_sector_allocation(positions, current_value),
        "currency_breakdown": calculate_currency_breakdown(positions, current_value),
        "asset_allocation": calculate_asset_allocation(positions, current_value),
    }


def create_portfolio_snapshot(db: Session, person_name: str) -> PortfolioSnapshot:
    logger.info("Creating portfolio snapshot for %s", person_name)
    positions = db.query(Position).filter(Position.person_name == person_name).all()
    metrics = calculate_snapshot_metrics(positions)

    snapshot = PortfolioSnapshot(person_name=person_name, view_mode="person", date=utcnow(), **metrics)
    db.add(snapshot)
    db.commit()
    db.refresh(snapshot)
    logger.info(
        "Portfolio snapshot %s created for %s value=%.2f", snapshot.id, person_name, snapshot.current_value
    )
    return snapshot


def create_light_snapshot(db: Session, person_name: str) -> Dict[str, Any]:
    positions = db.query(Position).filter(Position.person_name == person_name).all()
    return {
        "person_name": person_name,
        "total_value": math.fsum(p.current_market_value or 0.0 for p in positions),
        "total_cost": math.fsum(p.total_cost or 0.0 for p in positions),
        "accounts_count": db.query(Account).filter(Account.person_name == person_name).count(),
        "positions_count": len(positions),
        "timestamp": isoformat(utcnow()),
    }


def get_latest_snapshot(db: Session, person_name: str) -> Optional[PortfolioSnapshot]:
    return (
        db.query(PortfolioSnapshot)
        .filter(PortfolioSnapshot.person_name == person_name, PortfolioSnapshot.view_mode == "person")
        .order_by(PortfolioSnapshot.date.desc(), PortfolioSnapshot.id.desc())
        .first()
    )


def get_snapshot_history(db: Session, person_name: str, days: int = 30) -> List[PortfolioSnapshot]:
    start = utcnow() - timedelta(days=days)
    return (
        db.query(PortfolioSnapshot)
        .filter(
            PortfolioSnapshot.person_name == person_name,
            PortfolioSnapshot.view_mode == "person",
            PortfolioSnapshot.date >= start,
        )
        .order_by(PortfolioSnapshot.date.desc())
        .all()
    )


def clean_old_snapshots(db: Session, person_name: str, days: int = SNAPSHOT_RETENTION_DAYS) -> int:
    cutoff = utcnow() - timedelta(days=days)
    deleted = (
        db.query(PortfolioSnapshot)
        .filter(PortfolioSnapshot.person_name == person_name, PortfolioSnapshot.date < cutoff)
        .delete(synchronize_session="fetch")
    )
    db.commit()
    if deleted:
        logger.info("Cleaned up %d old snapshots for %s", deleted, person_name)
    return deleted
