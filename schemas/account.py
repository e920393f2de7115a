from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, field_validator


class AccountUpdate(BaseModel):
    display_name: Optional[str] = None
    nickname: Optional[str] = None

    @field_validator("display_name", "nickname")
    @classmethod
    def validate_label(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        label = value.strip()
        if len(label) > 200:
            raise ValueError("must be at most 200 characters")
        return label or None


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    account_id: str
    person_name: str
    type: Optional[str] = None
    number: Optional[str] = None
    status: Optional[str] = None
    is_primary: bool = False
    is_billing: bool = False
    client_account_type: Optional[str] = None
    display_name: Optional[str] = None
    nickname: Optional[str] = None
    balances: Optional[Dict[str, Any]] = None
    number_of_positions: int = 0
    total_investment: float = 0.0
    current_value: float = 0.0
    day_pnl: float = 0.0
    open_pnl: float = 0.0
    closed_pnl: float = 0.0
    total_pnl: float = 0.0
    net_deposits: float = 0.0
    synced_at: Optional[datetime] = None
