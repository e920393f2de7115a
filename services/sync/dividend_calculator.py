"""
Dividend projection and yield-on-cost calculations for a single position.

Everything here except ``load_dividend_payments`` is a pure function of its
inputs so it can be exercised without a database. Payment lists are expected
newest first.

Projection order:
  1. Questrade's per-payment dividend for the symbol x frequency
     (symbol frequency, else inferred from payment history).
  2. Average per-share payment over the last year (or last four payments)
     x inferred frequency. Needs at least two payments.
  3. Symbol yield x previous close, assuming quarterly payments.
"""
from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import or_
from sqlalchemy.orm import Session

from models.activity import Activity
from models.symbol import Symbol
from utils.common_helpers import add_months, as_utc, isoformat, to_float, utcnow

logger = logging.getLogger(__name__)

MONTHLY = 12
QUARTERLY = 4
SEMI_ANNUAL = 2
ANNUAL = 1

SCHEDULE_LABELS = {
    MONTHLY: "monthly",
    QUARTERLY: "quarterly",
    SEMI_ANNUAL: "semi-annual",
    ANNUAL: "annual",
}

MAX_INTERVALS = 5
MAX_INTERVAL_DAYS = 400
GROWTH_MIN_PAYMENTS = 8


@dataclass
class DividendPayment:
    transaction_date: datetime
    net_amount: float = 0.0
    gross_amount: float = 0.0
    quantity: float = 0.0

    @property
    def amount(self) -> float:
        return abs(self.net_amount or self.gross_amount or 0.0)

    @property
    def per_share(self) -> float:
        return self.amount / self.quantity if self.quantity > 0 else 0.0

    @classmethod
    def from_activity(cls, activity: Activity) -> "DividendPayment":
        return cls(
            transaction_date=as_utc(activity.transaction_date),
            net_amount=to_float(activity.net_amount),
            gross_amount=to_float(activity.gross_amount),
            quantity=to_float(activity.quantity),
        )


@dataclass
class SymbolDividendInfo:
    dividend_per_payment: float = 0.0
    frequency: Optional[int] = None
    yield_percent: float = 0.0
    prev_day_close_price: float = 0.0
    last_trade_price: float = 0.0
    bid_price: float = 0.0
    ex_date: Optional[datetime] = None
    dividend_date: Optional[datetime] = None

    @classmethod
    def from_symbol(cls, symbol: Optional[Symbol], quote: Optional[Dict[str, Any]] = None) -> "SymbolDividendInfo":
        quote = quote or {}
        if symbol is None:
            return cls(
                last_trade_price=to_float(quote.get("lastTradePrice")),
                bid_price=to_float(quote.get("bidPrice")),
            )
        return cls(
            dividend_per_payment=max(to_float(symbol.dividend), 0.0),
            frequency=parse_frequency(symbol.dividend_frequency),
            yield_percent=to_float(symbol.yield_percent),
            prev_day_close_price=to_float(symbol.prev_day_close_price),
            last_trade_price=to_float(quote.get("lastTradePrice")),
            bid_price=to_float(quote.get("bidPrice")),
            ex_date=as_utc(symbol.ex_date),
            dividend_date=as_utc(symbol.dividend_date),
        )


def parse_frequency(value: Any) -> Optional[int]:
    if value is None:
        return None
    freq = str(value).strip().lower()
    if not freq:
        return None
    if "month" in freq:
        return MONTHLY
    if "quarter" in freq:
        return QUARTERLY
    if "semi" in freq or "biannual" in freq:
        return SEMI_ANNUAL
    if "annual" in freq or "year" in freq:
        return ANNUAL
    return {"12": MONTHLY, "4": QUARTERLY, "2": SEMI_ANNUAL, "1": ANNUAL}.get(freq)


def estimate_frequency_from_history(payments: Sequence[DividendPayment]) -> int:
    """Infer payments per year from the average gap between recent payments."""
    if len(payments) < 2:
        return QUARTERLY

    gaps: List[float] = []
    for newer, older in zip(payments[:MAX_INTERVALS], payments[1:MAX_INTERVALS + 1]):
        days = (as_utc(newer.transaction_date) - as_utc(older.transaction_date)).total_seconds() / 86400.0
        if 0 < days < MAX_INTERVAL_DAYS:
            gaps.append(days)

    if not gaps:
        return QUARTERLY

    avg_days = math.fsum(gaps) / len(gaps)
    if avg_days <= 35:
        return MONTHLY
    if avg_days <= 100:
        return QUARTERLY
    if avg_days <= 200:
        return SEMI_ANNUAL
    return ANNUAL


def calculate_historical_metrics(payments: Sequence[DividendPayment]) -> Dict[str, Any]:
    last = payments[0] if payments else None
    return {
        "total_received": math.fsum(p.amount for p in payments),
        "last_dividend_amount": last.amount if last else 0.0,
        "last_dividend_date": isoformat(last.transaction_date) if last else None,
        "last_dividend_per_share": last.per_share if last else 0.0,
    }


def estimate_from_historical_data(
    payments: Sequence[DividendPayment],
    shares: float,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    empty = {"dividend_per_share": 0.0, "annual_dividend_per_share": 0.0, "annual_dividend": 0.0, "frequency": 0}
    if len(payments) < 2:
        return empty

    now = now or utcnow()
    one_year_ago = add_months(now, -12)
    recent = [p for p in payments if as_utc(p.transaction_date) >= one_year_ago]
    if not recent:
        recent = list(payments[:4])

    per_share = [p.per_share for p in recent if p.per_share > 0]
    if not per_share:
        return empty

    avg_per_share = math.fsum(per_share) / len(per_share)
    frequency = estimate_frequency_from_history(payments)
    annual_per_share = avg_per_share * frequency
    return {
        "dividend_per_share": avg_per_share,
        "annual_dividend_per_share": annual_per_share,
        "annual_dividend": annual_per_share * shares,
        "frequency": frequency,
    }


def calculate_projected_dividends(
    shares: float,
    symbol_info: SymbolDividendInfo,
    payments: Sequence[DividendPayment],
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    frequency = 0
    per_payment = 0.0
    annual_per_share = 0.0

    if symbol_info.dividend_per_payment > 0:
        per_payment = symbol_info.dividend_per_payment
        frequency = symbol_info.frequency or estimate_frequency_from_history(payments)
        annual_per_share = per_payment * frequency

    if annual_per_share == 0 and len(payments) >= 2:
        estimation = estimate_from_historical_data(payments, shares, now)
        if estimation["annual_dividend_per_share"] > 0:
            per_payment = estimation["dividend_per_share"]
            annual_per_share = estimation["annual_dividend_per_share"]
            frequency = estimation["frequency"]

    if annual_per_share == 0 and symbol_info.yield_percent > 0 and symbol_info.prev_day_close_price > 0:
        annual_per_share = (symbol_info.yield_percent / 100.0) * symbol_info.prev_day_close_price
        frequency = QUARTERLY
        per_payment = annual_per_share / frequency

    annual_dividend = annual_per_share * shares

    next_date = None
    if payments and frequency > 0:
        next_date = add_months(as_utc(payments[0].transaction_date), 12 // frequency)

    return {
        "dividend_frequency": frequency,
        "dividend_schedule": SCHEDULE_LABELS.get(frequency, "unknown"),
        "dividend_per_share": per_payment,
        "annual_dividend_per_share": annual_per_share,
        "annual_dividend": annual_dividend,
        "monthly_dividend_per_share": annual_per_share / 12,
        "monthly_dividend": annual_dividend / 12,
        "quarterly_dividend_per_share": annual_per_share / 4,
        "quarterly_dividend": annual_dividend / 4,
        "next_dividend_date": isoformat(next_date),
        "next_dividend_amount": per_payment * shares if per_payment > 0 and shares > 0 else 0.0,
        "ex_dividend_date": isoformat(symbol_info.ex_date),
    }


def calculate_yield_metrics(
    shares: float,
    avg_cost: float,
    total_received: float,
    annual_dividend_per_share: float,
) -> Dict[str, Any]:
    total_cost = avg_cost * shares
    dividend_return = (total_received / total_cost) * 100 if total_cost > 0 and total_received > 0 else 0.0
    yield_on_cost = (
        (annual_dividend_per_share / avg_cost) * 100 if avg_cost > 0 and annual_dividend_per_share > 0 else 0.0
    )

    adjusted_per_share = avg_cost
    adjusted_cost = total_cost
    if total_received > 0 and shares > 0:
        adjusted_per_share = max(0.0, avg_cost - total_received / shares)
        adjusted_cost = adjusted_per_share * shares

    adjusted_yield = (
        (annual_dividend_per_share / adjusted_per_share) * 100
        if adjusted_per_share > 0 and annual_dividend_per_share > 0
        else 0.0
    )
    return {
        "dividend_return_percent": dividend_return,
        "yield_on_cost": yield_on_cost,
        "dividend_adjusted_cost": adjusted_cost,
        "dividend_adjusted_cost_per_share": adjusted_per_share,
        "dividend_adjusted_yield": adjusted_yield,
    }


def calculate_current_yield(annual_dividend_per_share: float, symbol_info: SymbolDividendInfo) -> float:
    if annual_dividend_per_share <= 0:
        return 0.0
    for price in (symbol_info.last_trade_price, symbol_info.prev_day_close_price, symbol_info.bid_price):
        if price and price > 0:
            return (annual_dividend_per_share / price) * 100
    return symbol_info.yield_percent or 0.0


def default_dividend_data(shares: float, avg_cost: float) -> Dict[str, Any]:
    return {
        "total_received": 0.0,
        "last_dividend_amount": 0.0,
        "last_dividend_date": None,
        "last_dividend_per_share": 0.0,
        "dividend_return_percent": 0.0,
        "yield_on_cost": 0.0,
        "dividend_adjusted_cost": avg_cost * shares,
        "dividend_adjusted_cost_per_share": avg_cost,
        "dividend_adjusted_yield": 0.0,
        "monthly_dividend": 0.0,
        "monthly_dividend_per_share": 0.0,
        "quarterly_dividend": 0.0,
        "quarterly_dividend_per_share": 0.0,
        "annual_dividend": 0.0,
        "annual_dividend_per_share": 0.0,
        "dividend_frequency": 0,
        "dividend_per_share": 0.0,
        "dividend_schedule": "unknown",
        "current_yield": 0.0,
        "next_dividend_date": None,
        "next_dividend_amount": 0.0,
        "ex_dividend_date": None,
        "last_calculated": isoformat(utcnow()),
        "calculation_method": "default",
        "data_source": "calculated",
    }


def calculate_dividend_data(
    shares: float,
    avg_cost: float,
    symbol_info: SymbolDividendInfo,
    payments: Sequence[DividendPayment],
    *,
    symbol: str = "",
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Full dividend picture for one position; falls back to defaults on bad input."""
    try:
        historical = calculate_historical_metrics(payments)
        projected = calculate_projected_dividends(shares, symbol_info, payments, now)
        yields = calculate_yield_metrics(
            shares, avg_cost, historical["total_received"], projected["annual_dividend_per_share"]
        )
        current_yield = calculate_current_yield(projected["annual_dividend_per_share"], symbol_info)
    except (TypeError, ValueError, ZeroDivisionError, OverflowError):
        logger.exception("Error calculating dividend data for %s", symbol or "position")
        return default_dividend_data(shares, avg_cost)

    if projected["annual_dividend"] > 0 or historical["total_received"] > 0:
        logger.debug(
            "Dividend calculation for %s: payments=%d received=%.2f annual=%.2f yoc=%.2f",
            symbol, len(payments), historical["total_received"], projected["annual_dividend"], yields["yield_on_cost"],
        )

    return {
        **historical,
        **projected,
        **yields,
        "current_yield": current_yield,
        "last_calculated": isoformat(now or utcnow()),
        "calculation_method": "activity_based" if payments else "symbol_based",
        "data_source": "questrade" if payments else "symbol_table",
    }


def validate_dividend_data(data: Optional[Dict[str, Any]], symbol: str = "") -> Dict[str, Any]:
    if not data:
        return {"is_valid": False, "warnings": ["No dividend data provided"]}

    warnings: List[str] = []
    if to_float(data.get("yield_on_cost")) > 100:
        warnings.append(f"Extremely high yield on cost: {data.get('yield_on_cost')}%")
    if to_float(data.get("current_yield")) > 50:
        warnings.append(f"Extremely high current yield: {data.get('current_yield')}%")
    if to_float(data.get("annual_dividend")) < 0:
        warnings.append("Negative annual dividend")
    if to_float(data.get("total_received")) < 0:
        warnings.append("Negative total received")
    if to_float(data.get("annual_dividend")) > 0 and to_float(data.get("annual_dividend_per_share")) == 0:
        warnings.append("Annual dividend exists but per-share value is zero")
    frequency = to_float(data.get("dividend_frequency"))
    if frequency and (frequency < 0 or frequency > 12):
        warnings.append(f"Unusual dividend frequency: {data.get('dividend_frequency')}")

    if warnings and symbol:
        logger.debug("Dividend validation warnings for %s: %s", symbol, warnings)
    return {"is_valid": not warnings, "warnings": warnings}


def calculate_dividend_growth_rate(payments: Sequence[DividendPayment]) -> float:
    """Average year-over-year growth of total dividends received, in percent."""
    if len(payments) < GROWTH_MIN_PAYMENTS:
        return 0.0

    totals: Dict[int, float] = defaultdict(float)
    for p in payments:
        totals[as_utc(p.transaction_date).year] += p.amount

    years = sorted(totals)
    if len(years) < 2:
        return 0.0

    rates = [
        (totals[cur] - totals[prev]) / totals[prev] * 100
        for prev, cur in zip(years, years[1:])
        if totals[prev] > 0
    ]
    if not rates:
        return 0.0
    return round(math.fsum(rates) / len(rates), 2)


def portfolio_yield_on_cost(positions: Iterable[Dict[str, float]]) -> float:
    """Sum of annual dividends over sum of cost, in percent."""
    annual = 0.0
    cost = 0.0
    for pos in positions:
        annual += to_float(pos.get("annual_dividend"))
        cost += to_float(pos.get("total_cost"))
    return (annual / cost) * 100 if cost > 0 else 0.0


def load_dividend_payments(db: Session, account_id: str, person_name: str, symbol: str) -> List[DividendPayment]:
    rows = (
        db.query(Activity)
        .filter(
            Activity.account_id == account_id,
            Activity.person_name == person_name,
            Activity.symbol == symbol,
            or_(
                Activity.type == "Dividend",
                Activity.is_dividend.is_(True),
                Activity.raw_type.ilike("%dividend%"),
                Activity.action.ilike("%dividend%"),
                Activity.description.ilike("%dividend%"),
            ),
        )
        .order_by(Activity.transaction_date.desc())
        .all()
    )
    return [DividendPayment.from_activity(r) for r in rows]
