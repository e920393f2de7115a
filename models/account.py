# models/account.py
from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    account_id: Mapped[str] = mapped_column(String(40), unique=True, index=True)
    person_name: Mapped[str] = mapped_column(String(120), index=True)
    type: Mapped[str | None] = mapped_column(String(40), nullable=True)
    number: Mapped[str | None] = mapped_column(String(40), nullable=True)
    status: Mapped[str | None] = mapped_column(String(40), nullable=True)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    is_billing: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    client_account_type: Mapped[str | None] = mapped_column(String(60), nullable=True)
    display_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    nickname: Mapped[str | None] = mapped_column(String(200), nullable=True)

    # {"per_currency_balances": [...], "combined_balances": [...]} as returned by Questrade
    balances: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    number_of_positions: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    total_investment: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0")
    current_value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0")
    day_pnl: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0")
    open_pnl: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0")
    closed_pnl: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0")
    total_pnl: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0")
    net_deposits: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0")

    synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def cash_balance(self, currency: str = "CAD") -> float:
        for row in (self.balances or {}).get("combined_balances") or []:
            if row.get("currency") == currency:
                return float(row.get("cash") or 0.0)
        return 0.0

    def label(self) -> str:
        return self.display_name or self.nickname or f"{self.type or 'Account'} {self.number or self.account_id}"
