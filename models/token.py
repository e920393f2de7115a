# models/token.py
from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from database import Base

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_REFRESH = "refresh"


class Token(Base):
    """Encrypted Questrade OAuth2 credential. Plain tokens are never stored."""

    __tablename__ = "questrade_tokens"
    __table_args__ = (
        Index("ix_questrade_tokens_person_type_active", "person_name", "type", "is_active"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    person_name: Mapped[str] = mapped_column(String(120), index=True)
    type: Mapped[str] = mapped_column(String(16))
    encrypted_token: Mapped[str] = mapped_column(Text)
    api_server: Mapped[str | None] = mapped_column(String(255), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_used: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_successful_use: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
