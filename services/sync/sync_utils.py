"""Helpers shared by the account, position and activity sync steps."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy import func
from sqlalchemy.orm import Session

from models.account import Account
from models.activity import Activity
from models.person import Person
from models.position import Position
from models.token import TOKEN_TYPE_REFRESH, Token
from services.questrade.errors import PersonInactiveError, PersonNotFoundError, TokenMissingError
from services.sync.sync_config import (
    ACTIVITY_CHUNK_DAYS,
    QUESTRADE_DATE_SUFFIX,
    SYNC_FULL_MONTHS,
    SYNC_INCREMENTAL_MONTHS,
)
from utils.common_helpers import add_months, isoformat, utcnow

logger = logging.getLogger(__name__)

DateLike = Union[date, datetime]

_ACTIVITY_TYPE_RULES: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("trade",), "Trade"),
    (("dividend",), "Dividend"),
    (("deposit",), "Deposit"),
    (("withdrawal",), "Withdrawal"),
    (("interest",), "Interest"),
    (("transfer",), "Transfer"),
    (("fee",), "Fee"),
    (("tax",), "Tax"),
    (("fx", "exchange"), "FX"),
)


@dataclass
class DateChunk:
    start: date
    end: date

    @property
    def start_formatted(self) -> str:
        return format_date_for_questrade(self.start)

    @property
    def end_formatted(self) -> str:
        return format_date_for_questrade(self.end)


@dataclass
class SyncResult:
    synced: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    start_time: datetime = field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def add_error(self, message: str, **context: Any) -> None:
        self.errors.append({"error": message, **context})

    def finalize(self) -> "SyncResult":
        self.end_time = utcnow()
        return self

    @property
    def duration_ms(self) -> Optional[int]:
        if self.end_time is None:
            return None
        return int((self.end_time - self.start_time).total_seconds() * 1000)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "synced": self.synced,
            "errors": list(self.errors),
            "start_time": isoformat(self.start_time),
            "end_time": isoformat(self.end_time),
            "duration_ms": self.duration_ms,
            **self.extra,
        }


def _as_date(value: DateLike) -> date:
    return value.date() if isinstance(value, datetime) else value


def format_date_for_questrade(value: DateLike) -> str:
    return f"{_as_date(value).isoformat()}{QUESTRADE_DATE_SUFFIX}"


def split_date_range(start: DateLike, end: DateLike, max_days: int = ACTIVITY_CHUNK_DAYS) -> List[DateChunk]:
    """Inclusive, consecutive chunks of at most ``max_days`` days covering [start, end]."""
    if max_days < 1:
        raise ValueError("max_days must be at least 1")
    current = _as_date(start)
    final = _as_date(end)
    chunks: List[DateChunk] = []
    while current <= final:
        chunk_end = min(current + timedelta(days=max_days - 1), final)
        chunks.append(DateChunk(start=current, end=chunk_end))
        current = chunk_end + timedelta(days=1)
    return chunks


def calculate_sync_date_range(full_sync: bool = False, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    end = now or utcnow()
    months = SYNC_FULL_MONTHS if full_sync else SYNC_INCREMENTAL_MONTHS
    return add_months(end, -months), end


def determine_activity_type(raw_type: Optional[str]) -> str:
    value = (raw_type or "").lower()
    for needles, label in _ACTIVITY_TYPE_RULES:
        if any(n in value for n in needles):
            return label
    return "Other"


def validate_person_for_sync(db: Session, person_name: str) -> Tuple[Person, Token]:
    person = db.query(Person).filter(Person.person_name == person_name).first()
    if person is None:
        raise PersonNotFoundError(f"Person {person_name} not found", person_name=person_name)
    if not person.is_active:
        raise PersonInactiveError(f"Person {person_name} is inactive", person_name=person_name)
    token = (
        db.query(Token)
        .filter(Token.person_name == person_name, Token.type == TOKEN_TYPE_REFRESH, Token.is_active.is_(True))
        .first()
    )
    if token is None:
        raise TokenMissingError(
            f"No active refresh token found for person {person_name}", person_name=person_name
        )
    return person, token


def _activity_total(db: Session, account_id: str, person_name: str, activity_type: str) -> float:
    total = (
        db.query(func.coalesce(func.sum(Activity.net_amount), 0.0))
        .filter(
            Activity.account_id == account_id,
            Activity.person_name == person_name,
            Activity.type == activity_type,
        )
        .scalar()
    )
    return float(total or 0.0)


def update_account_statistics(db: Session, account_id: str, person_name: str) -> Dict[str, Any]:
    positions = (
        db.query(Position)
        .filter(Position.account_id == account_id, Position.person_name == person_name)
        .all()
    )
    open_pnl = math.fsum(p.open_pnl or 0.0 for p in positions)
    closed_pnl = math.fsum(p.closed_pnl or 0.0 for p in positions)
    stats = {
        "number_of_positions": len(positions),
        "total_investment": math.fsum(p.total_cost or 0.0 for p in positions),
        "current_value": math.fsum(p.current_market_value or 0.0 for p in positions),
        "day_pnl": math.fsum(p.day_pnl or 0.0 for p in positions),
        "open_pnl": open_pnl,
        "closed_pnl": closed_pnl,
        "total_pnl": open_pnl + closed_pnl,
        "net_deposits": _activity_total(db, account_id, person_name, "Deposit")
        - _activity_total(db, account_id, person_name, "Withdrawal"),
    }

    account = (
        db.query(Account)
        .filter(Account.account_id == account_id, Account.person_name == person_name)
        .first()
    )
    if account is not None:
        for key, value in stats.items():
            setattr(account, key, value)
    db.commit()
    return stats


def get_sync_status(db: Session, person_name: str, in_progress: bool = False) -> Optional[Dict[str, Any]]:
    person = db.query(Person).filter(Person.person_name == person_name).first()
    if person is None:
        return None
    return {
        "person_name": person_name,
        "last_sync_time": isoformat(person.last_sync_time),
        "last_successful_sync": isoformat(person.last_successful_sync),
        "last_sync_status": person.last_sync_status,
        "last_sync_error": person.last_sync_error,
        "last_sync_results": person.last_sync_results,
        "is_in_progress": in_progress,
        "counts": {
            "accounts": db.query(Account).filter(Account.person_name == person_name).count(),
            "positions": db.query(Position).filter(Position.person_name == person_name).count(),
            "activities": db.query(Activity).filter(Activity.person_name == person_name).count(),
        },
    }
