# services/sync/activity_sync.py
"""
Activity (transaction history) sync.

Questrade caps each activities request at 31 days, so the sync window is split
into chunks fetched one after another. Network and server failures are retried;
a chunk that still fails is logged and skipped. Token failures end the sync.
"""
import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from tenacity import before_sleep_log, retry, retry_if_exception, stop_after_attempt, wait_exponential

from models.account import Account
from models.activity import Activity
from models.person import Person
from services.questrade.errors import QuestradeError, is_auth_error, is_transient_error
from services.questrade.questrade_client import QuestradeClient
from services.sync.sync_config import (
    ACTIVITY_CHUNK_DAYS,
    ACTIVITY_MAX_RETRIES,
    ACTIVITY_REQUEST_DELAY_MS,
    ACTIVITY_RETENTION_MONTHS,
    ACTIVITY_RETRY_INITIAL_DELAY_S,
)
from services.sync.sync_utils import (
    DateChunk,
    SyncResult,
    calculate_sync_date_range,
    determine_activity_type,
    split_date_range,
    validate_person_for_sync,
)
from utils.common_helpers import add_months, isoformat, parse_datetime, to_float, utcnow

logger = logging.getLogger(__name__)


@retry(
    stop=stop_after_attempt(ACTIVITY_MAX_RETRIES),
    wait=wait_exponential(multiplier=2 * ACTIVITY_RETRY_INITIAL_DELAY_S, max=30),
    retry=retry_if_exception(is_transient_error),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
def _fetch_chunk(client: QuestradeClient, account_id: str, person_name: str, chunk: DateChunk) -> List[Dict[str, Any]]:
    data = client.get_account_activities(
        account_id, person_name, chunk.start_formatted, chunk.end_formatted
    )
    return (data or {}).get("activities") or []


def fetch_activities(
    client: QuestradeClient,
    account_id: str,
    person_name: str,
    start: datetime,
    end: datetime,
) -> List[Dict[str, Any]]:
    chunks = split_date_range(start, end, ACTIVITY_CHUNK_DAYS)
    logger.info(
        "Fetching activities for account %s in %d chunks (%s to %s)",
        account_id, len(chunks), chunks[0].start_formatted if chunks else "-", chunks[-1].end_formatted if chunks else "-",
    )

    activities: List[Dict[str, Any]] = []
    failed_chunks = 0
    for index, chunk in enumerate(chunks, start=1):
        try:
            batch = _fetch_chunk(client, account_id, person_name, chunk)
        except QuestradeError as exc:
            if is_auth_error(exc):
                raise
            failed_chunks += 1
            logger.error(
                "Failed to fetch chunk %d/%d for account %s: %s",
                index, len(chunks), account_id, exc.message,
            )
            continue
        activities.extend(batch)
        logger.debug("Retrieved %d activities from chunk %d/%d", len(batch), index, len(chunks))
        if index < len(chunks) and ACTIVITY_REQUEST_DELAY_MS > 0:
            time.sleep(ACTIVITY_REQUEST_DELAY_MS / 1000.0)

    logger.info(
        "Completed activities fetch for account %s: %d activities, %d failed chunks",
        account_id, len(activities), failed_chunks,
    )
    return activities


def _nullable_eq(column, value):
    return column.is_(None) if value is None else column == value


def find_existing_activity(
    db: Session,
    person_name: str,
    account_id: str,
    *,
    transaction_date: datetime,
    symbol: Optional[str],
    net_amount: float,
    activity_type: str,
    description: Optional[str],
) -> Optional[Activity]:
    return (
        db.query(Activity)
        .filter(
            Activity.person_name == person_name,
            Activity.account_id == account_id,
            Activity.transaction_date == transaction_date,
            _nullable_eq(Activity.symbol, symbol),
            Activity.net_amount == net_amount,
            Activity.type == activity_type,
            _nullable_eq(Activity.description, description),
        )
        .first()
    )


def process_activity(db: Session, data: Dict[str, Any], account_id: str, person_name: str) -> bool:
    """Insert the activity unless an identical one exists. Returns True when inserted."""
    transaction_date = parse_datetime(data.get("transactionDate"))
    if transaction_date is None:
        raise ValueError("Activity is missing transactionDate")

    activity_type = determine_activity_type(data.get("type"))
    symbol = data.get("symbol") or None
    description = data.get("description")
    net_amount = to_float(data.get("netAmount"))
    quantity = to_float(data.get("quantity"))

    if find_existing_activity(
        db,
        person_name,
        account_id,
        transaction_date=transaction_date,
        symbol=symbol,
        net_amount=net_amount,
        activity_type=activity_type,
        description=description,
    ):
        return False

    is_dividend = activity_type == "Dividend"
    db.add(Activity(
        person_name=person_name,
        account_id=account_id,
        trade_date=parse_datetime(data.get("tradeDate")),
        transaction_date=transaction_date,
        settlement_date=parse_datetime(data.get("settlementDate")),
        action=data.get("action") or None,
        symbol=symbol,
        symbol_id=data.get("symbolId") or None,
        description=description,
        currency=data.get("currency"),
        quantity=quantity,
        price=to_float(data.get("price")),
        gross_amount=to_float(data.get("grossAmount")),
        commission=to_float(data.get("commission")),
        net_amount=net_amount,
        type=activity_type,
        raw_type=data.get("type"),
        is_dividend=is_dividend,
        dividend_per_share=abs(net_amount) / quantity if is_dividend and quantity > 0 else 0.0,
        raw=data,
    ))
    db.flush()
    return True


def sync_activities_for_account(
    db: Session,
    client: QuestradeClient,
    account: Account,
    person_name: str,
    full_sync: bool = False,
) -> SyncResult:
    result = SyncResult()
    start, end = calculate_sync_date_range(full_sync)
    activities = fetch_activities(client, account.account_id, person_name, start, end)
    if not activities:
        logger.info("No activities found for account %s in the requested range", account.account_id)
        return result.finalize()

    duplicates = 0
    for item in activities:
        # one savepoint per row so a rejected insert keeps the rest of the batch
        try:
            with db.begin_nested():
                inserted = process_activity(db, item, account.account_id, person_name)
        except (ValueError, TypeError, SQLAlchemyError) as exc:
            logger.error("Failed to save activity for account %s: %s", account.account_id, exc)
            result.add_error(str(exc), account_id=account.account_id, activity_type=item.get("type"))
            continue
        if inserted:
            result.synced += 1
        else:
            duplicates += 1
    db.commit()

    logger.info(
        "Activities for account %s: new=%d duplicates=%d total=%d",
        account.account_id, result.synced, duplicates, len(activities),
    )
    result.extra["duplicates"] = duplicates
    return result.finalize()


def sync_activities_for_person(
    db: Session,
    client: QuestradeClient,
    person_name: str,
    full_sync: bool = False,
) -> SyncResult:
    result = SyncResult()
    validate_person_for_sync(db, person_name)

    accounts = db.query(Account).filter(Account.person_name == person_name).all()
    if not accounts:
        logger.warning("No accounts found for %s, skipping activity sync", person_name)
        return result.finalize()

    logger.info("Activity sync started for %s accounts=%d full_sync=%s", person_name, len(accounts), full_sync)
    for account in accounts:
        try:
            account_result = sync_activities_for_account(db, client, account, person_name, full_sync)
            result.synced += account_result.synced
            result.errors.extend(account_result.errors)
        except QuestradeError as exc:
            db.rollback()
            if is_auth_error(exc):
                raise
            logger.error("Activity sync failed for %s account=%s: %s", person_name, account.account_id, exc.message)
            result.add_error(exc.message, account_id=account.account_id)
        except Exception as exc:
            db.rollback()
            logger.exception("Activity sync failed for %s account=%s", person_name, account.account_id)
            result.add_error(str(exc), account_id=account.account_id)

    logger.info(
        "Activity sync completed for %s: synced=%d errors=%d", person_name, result.synced, len(result.errors)
    )
    return result.finalize()


def bulk_sync_activities(
    db: Session,
    client: QuestradeClient,
    person_names: Optional[List[str]] = None,
    full_sync: bool = True,
) -> List[Dict[str, Any]]:
    query = db.query(Person).filter(Person.is_active.is_(True))
    if person_names:
        query = query.filter(Person.person_name.in_(person_names))

    results = []
    for person in query.all():
        try:
            res = sync_activities_for_person(db, client, person.person_name, full_sync)
            results.append({"person_name": person.person_name, "success": True, **res.to_dict()})
        except QuestradeError as exc:
            results.append({"person_name": person.person_name, "success": False, "error": exc.message})
    return results


def get_activity_statistics(db: Session, person_name: str) -> Dict[str, Any]:
    rows = (
        db.query(
            Activity.type,
            func.count(Activity.id),
            func.coalesce(func.sum(Activity.net_amount), 0.0),
            func.coalesce(func.avg(Activity.net_amount), 0.0),
            func.min(Activity.transaction_date),
            func.max(Activity.transaction_date),
        )
        .filter(Activity.person_name == person_name)
        .group_by(Activity.type)
        .all()
    )
    by_type = sorted(
        (
            {
                "type": activity_type,
                "count": count,
                "total_amount": float(total),
                "avg_amount": float(avg),
                "earliest_date": isoformat(earliest),
                "latest_date": isoformat(latest),
            }
            for activity_type, count, total, avg, earliest, latest in rows
        ),
        key=lambda r: r["count"],
        reverse=True,
    )
    earliest_dates = [r["earliest_date"] for r in by_type if r["earliest_date"]]
    latest_dates = [r["latest_date"] for r in by_type if r["latest_date"]]
    return {
        "person_name": person_name,
        "total_activities": sum(r["count"] for r in by_type),
        "dividend_activities": next((r["count"] for r in by_type if r["type"] == "Dividend"), 0),
        "date_range": {
            "earliest_date": min(earliest_dates) if earliest_dates else None,
            "latest_date": max(latest_dates) if latest_dates else None,
        } if by_type else None,
        "by_type": by_type,
        "last_updated": isoformat(utcnow()),
    }


def cleanup_old_activities(
    db: Session,
    person_name: Optional[str] = None,
    retention_months: int = ACTIVITY_RETENTION_MONTHS,
) -> Dict[str, Any]:
    cutoff = add_months(utcnow(), -retention_months)
    query = db.query(Activity).filter(Activity.transaction_date < cutoff)
    if person_name:
        query = query.filter(Activity.person_name == person_name)
    deleted = query.delete(synchronize_session="fetch")
    db.commit()
    logger.info("Deleted %d activities older than %s", deleted, cutoff.date().isoformat())
    return {"deleted": deleted, "cutoff_date": isoformat(cutoff)}
