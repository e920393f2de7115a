# routers/market_routes.py
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from database import get_db
from middleware.rate_limit import MARKET_QUOTE_RATE_LIMIT, limiter
from routers.dependencies import get_questrade_client
from schemas.market import SymbolOut
from services import market_service
from services.questrade.questrade_client import QuestradeClient
from utils.common_helpers import as_utc, isoformat, utcnow

router = APIRouter()

CANDLE_INTERVALS = {
    "OneMinute", "TwoMinutes", "ThreeMinutes", "FourMinutes", "FiveMinutes", "TenMinutes",
    "FifteenMinutes", "TwentyMinutes", "HalfHour", "OneHour", "TwoHours", "FourHours",
    "OneDay", "OneWeek", "OneMonth", "OneYear",
}


def _split_symbols(raw: str) -> list[str]:
    return [s.strip().upper() for s in raw.split(",") if s.strip()]


@router.get("/quote/{symbols}")
@limiter.limit(MARKET_QUOTE_RATE_LIMIT)
def snap_quote(
    request: Request,
    symbols: str,
    person_name: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    client: QuestradeClient = Depends(get_questrade_client),
):
    """Real-time snap quotes. Questrade bills these per call, hence the tighter limit."""
    names = _split_symbols(symbols)
    if not names:
        raise HTTPException(status_code=400, detail="At least one symbol is required")
    try:
        data = market_service.get_snap_quotes(db, client, names, person_name)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return {"success": True, "data": data.get("quotes") or []}


@router.get("/symbols/search")
def search_symbols(
    q: str = Query(..., min_length=1),
    person_name: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    client: QuestradeClient = Depends(get_questrade_client),
):
    person = market_service.resolve_person_name(db, person_name)
    try:
        rows = market_service.find_or_fetch_symbols(db, client, person, _split_symbols(q))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {
        "success": True,
        "data": [SymbolOut.model_validate(r).model_dump(mode="json") for r in rows],
    }


@router.get("/candles/{symbol_id}")
def candles(
    symbol_id: int,
    start_time: Optional[datetime] = Query(None),
    end_time: Optional[datetime] = Query(None),
    interval: str = Query("OneDay"),
    person_name: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    client: QuestradeClient = Depends(get_questrade_client),
):
    if interval not in CANDLE_INTERVALS:
        raise HTTPException(status_code=400, detail=f"Invalid interval: {interval}")
    end = as_utc(end_time) or utcnow()
    start = as_utc(start_time) or end - timedelta(days=30)
    if start >= end:
        raise HTTPException(status_code=400, detail="start_time must be before end_time")

    data = market_service.get_candles(
        db,
        client,
        symbol_id,
        start_time=isoformat(start),
        end_time=isoformat(end),
        interval=interval,
        person_name=person_name,
    )
    return {"success": True, "data": data.get("candles") or []}
