from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


class Symbol(Base):
    """Questrade symbol metadata. Dividend fields feed the dividend calculator."""

    __tablename__ = "symbols"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    symbol_id: Mapped[int] = mapped_column(Integer, unique=True, index=True)
    symbol: Mapped[str] = mapped_column(String(32), index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    security_type: Mapped[str | None] = mapped_column(String(40), nullable=True)
    listing_exchange: Mapped[str | None] = mapped_column(String(40), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    is_tradable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_quotable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    prev_day_close_price: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    high_price_52: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    low_price_52: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    average_vol_3_months: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    average_vol_20_days: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    outstanding_shares: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    eps: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    pe: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    market_cap: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    # Per-payment dividend amount and yield percent as reported by Questrade
    dividend: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    yield_percent: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    ex_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    dividend_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    dividend_frequency: Mapped[str | None] = mapped_column(String(40), nullable=True)

    industry_sector: Mapped[str | None] = mapped_column(String(120), nullable=True)
    industry_group: Mapped[str | None] = mapped_column(String(120), nullable=True)
    industry_sub_group: Mapped[str | None] = mapped_column(String(120), nullable=True)
    raw: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
