from typing import Optional

from pydantic import BaseModel


class SyncRequest(BaseModel):
    full_sync: bool = False
    force_refresh: bool = False


class SyncAllRequest(BaseModel):
    full_sync: bool = False
    continue_on_error: bool = True


class RecalculateRequest(BaseModel):
    symbol: Optional[str] = None
