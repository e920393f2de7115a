from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Float, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from database import Base

ACTIVITY_TYPES = (
    "Trade",
    "Dividend",
    "Interest",
    "Deposit",
    "Withdrawal",
    "Transfer",
    "Fee",
    "Tax",
    "FX",
    "Other",
)


class Activity(Base):
    __tablename__ = "activities"
    __table_args__ = (
        Index("ix_activities_person_account_date", "person_name", "account_id", "transaction_date"),
        Index("ix_activities_symbol_type", "symbol", "type"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    account_id: Mapped[str] = mapped_column(String(40), index=True)
    person_name: Mapped[str] = mapped_column(String(120), index=True)

    trade_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    transaction_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    settlement_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    action: Mapped[str | None] = mapped_column(String(40), nullable=True)
    symbol: Mapped[str | None] = mapped_column(String(32), nullable=True)
    symbol_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    quantity: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    price: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    gross_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    commission: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    net_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    type: Mapped[str] = mapped_column(String(20), nullable=False, default="Other")
    raw_type: Mapped[str | None] = mapped_column(String(60), nullable=True)
    is_dividend: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    dividend_per_share: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    raw: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
