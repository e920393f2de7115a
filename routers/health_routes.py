import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import get_db
from models import Account, Activity, Person, PortfolioSnapshot, Position, Symbol
from services.questrade import token_manager
from utils.common_helpers import isoformat, utcnow

logger = logging.getLogger(__name__)
router = APIRouter(tags=["ops"])


@router.get("/health")
def health():
    return {"success": True, "status": "OK", "timestamp": isoformat(utcnow())}


@router.get("/api/health/tokens")
def token_health(db: Session = Depends(get_db)):
    statuses = token_manager.get_all_token_status(db)
    healthy = sum(1 for s in statuses if s["is_healthy"])
    return {
        "success": True,
        "data": {
            "total_persons": len(statuses),
            "healthy_tokens": healthy,
            "unhealthy_tokens": len(statuses) - healthy,
            "persons": statuses,
        },
    }


@router.get("/api/health/database")
def database_health(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("Database health check failed: %s", exc)
        return JSONResponse(
            status_code=503,
            content={"success": False, "status": "disconnected", "error": exc.__class__.__name__},
        )

    counts = {
        "persons": db.query(Person).count(),
        "accounts": db.query(Account).count(),
        "positions": db.query(Position).count(),
        "activities": db.query(Activity).count(),
        "symbols": db.query(Symbol).count(),
        "snapshots": db.query(PortfolioSnapshot).count(),
    }
    return {"success": True, "status": "connected", "data": {"collections": counts}}
