from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, field_validator


class SnapshotOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    person_name: Optional[str] = None
    view_mode: str
    date: datetime
    total_investment: float
    current_value: float
    unrealized_pnl: float
    total_return_value: float
    total_return_percent: float
    total_dividends_received: float
    annual_projected_dividend: float
    monthly_projected_dividend: float
    average_yield_percent: float
    yield_on_cost_percent: float
    number_of_positions: int
    number_of_dividend_stocks: int
    sector_allocation: Optional[List[Dict[str, Any]]] = None
    currency_breakdown: Optional[List[Dict[str, Any]]] = None
    asset_allocation: Optional[List[Dict[str, Any]]] = None


class ComparisonRequest(BaseModel):
    person_names: List[str]

    @field_validator("person_names")
    @classmethod
    def validate_person_names(cls, value: List[str]) -> List[str]:
        names = [v.strip() for v in value if v and v.strip()]
        if not names:
            raise ValueError("person_names must contain at least one name")
        return list(dict.fromkeys(names))
