from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class SymbolOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    symbol_id: int
    symbol: str
    description: Optional[str] = None
    security_type: Optional[str] = None
    listing_exchange: Optional[str] = None
    currency: Optional[str] = None
    prev_day_close_price: Optional[float] = None
    dividend: Optional[float] = None
    yield_percent: Optional[float] = None
    dividend_frequency: Optional[str] = None
    industry_sector: Optional[str] = None
    last_updated: Optional[datetime] = None
