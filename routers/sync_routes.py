# routers/sync_routes.py
from __future__ import annotations

import httpx
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from database import get_db
from routers.dependencies import get_http_client
from schemas.sync import RecalculateRequest, SyncAllRequest, SyncRequest
from services.sync import position_sync
from services.sync.data_sync import DataSyncService, data_sync_service

router = APIRouter()


def get_sync_service() -> DataSyncService:
    return data_sync_service


@router.post("/person/{person_name}")
def sync_person(
    person_name: str,
    payload: SyncRequest | None = None,
    db: Session = Depends(get_db),
    http: httpx.Client = Depends(get_http_client),
    service: DataSyncService = Depends(get_sync_service),
):
    payload = payload or SyncRequest()
    result = service.sync_person_data(
        db, person_name, full_sync=payload.full_sync, force_refresh=payload.force_refresh, http_client=http
    )
    return {"success": True, "data": result, "message": f"Sync completed for {person_name}"}


@router.post("/all")
def sync_all(
    payload: SyncAllRequest | None = None,
    db: Session = Depends(get_db),
    http: httpx.Client = Depends(get_http_client),
    service: DataSyncService = Depends(get_sync_service),
):
    payload = payload or SyncAllRequest()
    results = service.sync_all_persons(
        db, full_sync=payload.full_sync, continue_on_error=payload.continue_on_error, http_client=http
    )
    return {
        "success": True,
        "data": results,
        "summary": {
            "total": len(results),
            "successful": sum(1 for r in results if r.get("success")),
            "failed": sum(1 for r in results if not r.get("success")),
        },
    }


@router.get("/status")
def all_sync_statuses(db: Session = Depends(get_db), service: DataSyncService = Depends(get_sync_service)):
    return {"success": True, "data": service.get_all_sync_statuses(db)}


@router.get("/status/{person_name}")
def sync_status(
    person_name: str,
    db: Session = Depends(get_db),
    service: DataSyncService = Depends(get_sync_service),
):
    return {"success": True, "data": service.get_sync_status(db, person_name)}


@router.post("/stop/{person_name}")
def stop_sync(
    person_name: str,
    db: Session = Depends(get_db),
    service: DataSyncService = Depends(get_sync_service),
):
    service.stop_sync(db, person_name)
    return {"success": True, "message": f"Sync stopped for {person_name}"}


@router.post("/recalculate-dividends/{person_name}")
def recalculate_dividends(
    person_name: str,
    payload: RecalculateRequest | None = None,
    db: Session = Depends(get_db),
):
    symbol = payload.symbol if payload else None
    return {"success": True, "data": position_sync.recalculate_dividends(db, person_name, symbol)}
