# models/person.py
from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


def default_preferences() -> dict[str, Any]:
    return {
        "default_view": "person",
        "currency": "CAD",
        "notifications": {"email": False, "sync_errors": True},
        "portfolio": {
            "yield_on_cost_dividend_only": True,
            "include_closed_positions": False,
            "currency_conversion": True,
        },
    }


class Person(Base):
    """A tracked individual whose Questrade accounts are synced."""

    __tablename__ = "persons"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    person_name: Mapped[str] = mapped_column(String(120), unique=True, index=True)
    display_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone_number: Mapped[str | None] = mapped_column(String(40), nullable=True)
    preferences: Mapped[dict] = mapped_column(JSON, nullable=False, default=default_preferences)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    has_valid_token: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    last_token_refresh: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    last_sync_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_successful_sync: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sync_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    last_sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_sync_results: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def portfolio_preference(self, key: str, default: Any = None) -> Any:
        prefs = self.preferences or {}
        return (prefs.get("portfolio") or {}).get(key, default)
