from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Float, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


class PortfolioSnapshot(Base):
    __tablename__ = "portfolio_snapshots"
    __table_args__ = (
        Index("ix_portfolio_snapshots_person_date", "person_name", "date"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    person_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    view_mode: Mapped[str] = mapped_column(String(16), nullable=False, default="person")
    account_id: Mapped[str | None] = mapped_column(String(40), nullable=True)
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)

    total_investment: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    current_value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    unrealized_pnl: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total_return_value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total_return_percent: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total_dividends_received: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    annual_projected_dividend: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    monthly_projected_dividend: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    average_yield_percent: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    yield_on_cost_percent: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    number_of_positions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    number_of_dividend_stocks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    sector_allocation: Mapped[list | None] = mapped_column(JSON, nullable=True)
    currency_breakdown: Mapped[list | None] = mapped_column(JSON, nullable=True)
    asset_allocation: Mapped[list | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
