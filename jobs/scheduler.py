"""
Background jobs: market-hours sync, end-of-day snapshots, token rotation and
housekeeping. Runs in-process on a BackgroundScheduler thread; each job opens
its own session.
"""
import logging
import os

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from database import SessionLocal
from models.person import Person
from services import market_service
from services.questrade import token_manager
from services.sync import activity_sync, snapshot_service
from services.sync.data_sync import data_sync_service
from services.sync.sync_config import ACTIVITY_RETENTION_MONTHS, SNAPSHOT_RETENTION_DAYS

logger = logging.getLogger(__name__)

SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "0").lower() in ("1", "true", "yes")
SCHEDULER_TIMEZONE = os.getenv("SCHEDULER_TIMEZONE", "America/Toronto")

_scheduler = None


def sync_all_job() -> None:
    db = SessionLocal()
    try:
        results = data_sync_service.sync_all_persons(db, full_sync=False)
        failed = [r["person_name"] for r in results if not r.get("success")]
        logger.info(
            "Scheduled sync finished: %d persons, %d failed", len(results), len(failed), extra={"job": "sync_all"}
        )
        if failed:
            logger.warning("Scheduled sync failures: %s", ", ".join(failed))
    finally:
        db.close()


def daily_snapshot_job() -> None:
    db = SessionLocal()
    try:
        persons = db.query(Person).filter(Person.is_active.is_(True)).all()
        created = 0
        for person in persons:
            try:
                snapshot_service.create_portfolio_snapshot(db, person.person_name)
                created += 1
            except Exception:
                db.rollback()
                logger.exception(
                    "Daily snapshot failed for %s", person.person_name,
                    extra={"job": "daily_snapshot", "person_name": person.person_name},
                )
        logger.info("Daily snapshots created: %d of %d", created, len(persons), extra={"job": "daily_snapshot"})
    finally:
        db.close()


def token_refresh_job() -> None:
    db = SessionLocal()
    try:
        result = token_manager.refresh_all_tokens(db)
        logger.info(
            "Token refresh finished: %d refreshed, %d failed",
            len(result["refreshed"]), len(result["failed"]),
        )
    finally:
        db.close()


def cleanup_job() -> None:
    db = SessionLocal()
    try:
        market_service.purge_old_quotes(db)
        activity_sync.cleanup_old_activities(db, retention_months=ACTIVITY_RETENTION_MONTHS)
        for person in db.query(Person).all():
            snapshot_service.clean_old_snapshots(db, person.person_name, SNAPSHOT_RETENTION_DAYS)
    finally:
        db.close()


def build_scheduler() -> BackgroundScheduler:
    scheduler = BackgroundScheduler(timezone=SCHEDULER_TIMEZONE)
    # every 30 minutes from 09:30 to 16:00, Mon-Fri
    scheduler.add_job(
        sync_all_job,
        CronTrigger(day_of_week="mon-fri", hour="9", minute="30", timezone=SCHEDULER_TIMEZONE),
        id="sync_all_open",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        sync_all_job,
        CronTrigger(day_of_week="mon-fri", hour="10-15", minute="0,30", timezone=SCHEDULER_TIMEZONE),
        id="sync_all_session",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        sync_all_job,
        CronTrigger(day_of_week="mon-fri", hour="16", minute="0", timezone=SCHEDULER_TIMEZONE),
        id="sync_all_close",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        daily_snapshot_job,
        CronTrigger(day_of_week="mon-fri", hour=16, minute=30, timezone=SCHEDULER_TIMEZONE),
        id="daily_snapshot",
        replace_existing=True,
    )
    # refresh tokens live 7 days; rotate a day early
    scheduler.add_job(
        token_refresh_job,
        IntervalTrigger(days=6, timezone=SCHEDULER_TIMEZONE),
        id="token_refresh",
        replace_existing=True,
    )
    scheduler.add_job(
        cleanup_job,
        CronTrigger(hour=2, minute=0, timezone=SCHEDULER_TIMEZONE),
        id="daily_cleanup",
        replace_existing=True,
    )
    return scheduler


def start_scheduler():
    global _scheduler
    if not SCHEDULER_ENABLED:
        logger.info("Scheduler disabled (SCHEDULER_ENABLED=0)")
        return None
    if _scheduler is None:
        _scheduler = build_scheduler()
        _scheduler.start()
        logger.info("Scheduler started with %d jobs (%s)", len(_scheduler.get_jobs()), SCHEDULER_TIMEZONE)
    return _scheduler


def shutdown_scheduler() -> None:
    global _scheduler
    if _scheduler is not None:
        _scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
        _scheduler = None
