# routers/portfolio_routes.py
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from database import get_db
from schemas.portfolio import ComparisonRequest, SnapshotOut
from services.portfolio import portfolio_service
from services.sync import snapshot_service
from services.sync.position_sync import get_dividend_summary
from utils.common_helpers import as_utc

router = APIRouter()


def _empty_summary(view_mode: str, person_name: Optional[str], account_id: Optional[str]) -> dict:
    return {
        "view_mode": view_mode,
        "person_name": person_name,
        "account_id": account_id,
        "total_investment": 0.0,
        "current_value": 0.0,
        "total_return_value": 0.0,
        "total_return_percent": 0.0,
        "unrealized_pnl": 0.0,
        "total_dividends": 0.0,
        "monthly_dividend_income": 0.0,
        "annual_projected_dividend": 0.0,
        "average_yield_percent": 0.0,
        "yield_on_cost_percent": 0.0,
        "portfolio_yield_on_cost": 0.0,
        "number_of_positions": 0,
        "number_of_accounts": 0,
        "number_of_dividend_stocks": 0,
        "sector_allocation": [],
        "currency_breakdown": [],
        "person_breakdown": [],
        "accounts": [],
    }


@router.get("/summary")
def portfolio_summary(
    view_mode: str = Query("all"),
    person_name: Optional[str] = Query(None),
    account_id: Optional[str] = Query(None),
    dividend_stocks_only: Optional[bool] = Query(None),
    db: Session = Depends(get_db),
):
    try:
        summary = portfolio_service.get_aggregated_summary(
            db, view_mode, person_name, account_id, dividend_stocks_only
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"success": True, "data": summary or _empty_summary(view_mode, person_name, account_id)}


@router.get("/positions")
def portfolio_positions(
    view_mode: str = Query("all"),
    person_name: Optional[str] = Query(None),
    account_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    try:
        positions = portfolio_service.get_positions(db, view_mode, person_name, account_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"success": True, "data": positions, "count": len(positions)}


@router.get("/positions/{symbol}")
def portfolio_symbol_positions(
    symbol: str,
    person_name: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    positions = portfolio_service.get_symbol_positions(db, symbol, person_name)
    if not positions:
        raise HTTPException(status_code=404, detail=f"No positions found for {symbol.upper()}")
    return {"success": True, "data": positions[0]}


@router.get("/dividends/calendar")
def dividend_calendar(
    view_mode: str = Query("all"),
    person_name: Optional[str] = Query(None),
    account_id: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    db: Session = Depends(get_db),
):
    try:
        calendar = portfolio_service.get_dividend_calendar(
            db, view_mode, person_name, account_id, as_utc(start_date), as_utc(end_date)
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"success": True, "data": calendar}


@router.get("/dividends/summary")
def dividend_summary(person_name: Optional[str] = Query(None), db: Session = Depends(get_db)):
    return {"success": True, "data": get_dividend_summary(db, person_name)}


@router.get("/snapshots")
def snapshots(
    person_name: str = Query(...),
    days: int = Query(30, ge=1, le=3650),
    db: Session = Depends(get_db),
):
    history = snapshot_service.get_snapshot_history(db, person_name, days)
    return {
        "success": True,
        "data": [SnapshotOut.model_validate(s).model_dump(mode="json") for s in history],
    }


@router.get("/performance")
def performance(
    view_mode: str = Query("all"),
    person_name: Optional[str] = Query(None),
    account_id: Optional[str] = Query(None),
    timeframe: str = Query("1Y"),
    db: Session = Depends(get_db),
):
    try:
        metrics = portfolio_service.get_performance_metrics(db, view_mode, person_name, account_id, timeframe)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"success": True, "data": metrics}


@router.get("/allocation/{person_name}")
def account_allocation(person_name: str, db: Session = Depends(get_db)):
    return {"success": True, "data": portfolio_service.get_account_allocation(db, person_name)}


@router.post("/comparison")
def person_comparison(payload: ComparisonRequest, db: Session = Depends(get_db)):
    return {"success": True, "data": portfolio_service.get_person_comparison(db, payload.person_names)}
