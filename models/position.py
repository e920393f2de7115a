from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


class Position(Base):
    __tablename__ = "positions"
    __table_args__ = (
        UniqueConstraint("account_id", "symbol_id", "person_name", name="uq_positions_account_symbol_person"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    account_id: Mapped[str] = mapped_column(String(40), index=True)
    person_name: Mapped[str] = mapped_column(String(120), index=True)
    symbol: Mapped[str] = mapped_column(String(32), index=True)
    symbol_id: Mapped[int] = mapped_column(Integer)

    open_quantity: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    closed_quantity: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    current_market_value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    current_price: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    average_entry_price: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    day_pnl: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    closed_pnl: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    open_pnl: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total_cost: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    is_real_time: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_under_reorg: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    total_return_percent: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total_return_value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    capital_gain_percent: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    capital_gain_value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    # Output of services.sync.dividend_calculator.calculate_dividend_data
    dividend_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    dividend_per_share: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    is_dividend_stock: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    current_yield: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    market_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="CAD")
    security_type: Mapped[str | None] = mapped_column(String(40), nullable=True)
    industry_sector: Mapped[str | None] = mapped_column(String(120), nullable=True)
    industry_group: Mapped[str | None] = mapped_column(String(120), nullable=True)

    synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    @property
    def dividends(self) -> dict:
        return self.dividend_data or {}
