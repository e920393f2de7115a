"""Sync Questrade accounts and their balances into the accounts table."""
from __future__ import annotations

import logging
import math
from collections import Counter
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from models.account import Account
from services.questrade.errors import QuestradeError
from services.questrade.questrade_client import QuestradeClient
from services.sync.sync_config import STALE_DATA_DAYS
from services.sync.sync_utils import SyncResult, validate_person_for_sync
from utils.common_helpers import as_utc, isoformat, to_float, utcnow

logger = logging.getLogger(__name__)


def _balances_payload(data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "per_currency_balances": data.get("perCurrencyBalances") or [],
        "combined_balances": data.get("combinedBalances") or [],
        "last_updated": isoformat(utcnow()),
    }


def _fetch_balances(client: QuestradeClient, account_id: str, person_name: str) -> Optional[Dict[str, Any]]:
    try:
        data = client.get_account_balances(account_id, person_name)
    except QuestradeError as exc:
        logger.error("Failed to fetch balances for account %s: %s", account_id, exc.message)
        return None
    combined = data.get("combinedBalances") or []
    if combined:
        logger.debug(
            "Account %s balance: %s %s", account_id, combined[0].get("currency"), combined[0].get("totalEquity")
        )
    return _balances_payload(data)


def _upsert_account(db: Session, person_name: str, data: Dict[str, Any], balances: Optional[Dict[str, Any]]) -> Account:
    account_id = str(data.get("number"))
    account = (
        db.query(Account)
        .filter(Account.account_id == account_id, Account.person_name == person_name)
        .first()
    )
    if account is None:
        account = Account(account_id=account_id, person_name=person_name)
        db.add(account)

    account.type = data.get("type")
    account.number = account_id
    account.status = data.get("status")
    account.is_primary = bool(data.get("isPrimary"))
    account.is_billing = bool(data.get("isBilling"))
    account.client_account_type = data.get("clientAccountType")
    if balances is not None:
        account.balances = balances
    account.synced_at = utcnow()
    return account


def sync_accounts_for_person(
    db: Session,
    client: QuestradeClient,
    person_name: str,
    full_sync: bool = False,
) -> SyncResult:
    result = SyncResult()
    validate_person_for_sync(db, person_name)
    logger.info("Account sync started for %s (full_sync=%s)", person_name, full_sync)

    data = client.get_accounts(person_name)
    if not data or "accounts" not in data:
        raise QuestradeError("No accounts data received from API", person_name=person_name)

    accounts: List[Dict[str, Any]] = data["accounts"] or []
    logger.info("Fetched %d accounts for %s", len(accounts), person_name)

    for account_data in accounts:
        account_id = str(account_data.get("number"))
        try:
            balances = _fetch_balances(client, account_id, person_name)
            _upsert_account(db, person_name, account_data, balances)
            db.commit()
            result.synced += 1
        except Exception as exc:
            db.rollback()
            logger.exception("Single account sync failed for %s account=%s", person_name, account_id)
            result.add_error(str(exc), account_id=account_id)

    logger.info(
        "Account sync completed for %s: synced=%d errors=%d", person_name, result.synced, len(result.errors)
    )
    return result.finalize()


def refresh_account_balances(
    db: Session,
    client: QuestradeClient,
    person_name: str,
    account_id: Optional[str] = None,
) -> Dict[str, Any]:
    query = db.query(Account).filter(Account.person_name == person_name)
    if account_id:
        query = query.filter(Account.account_id == account_id)

    updated = 0
    errors: List[Dict[str, str]] = []
    for account in query.all():
        try:
            data = client.get_account_balances(account.account_id, person_name)
        except QuestradeError as exc:
            errors.append({"account_id": account.account_id, "error": exc.message})
            continue
        account.balances = _balances_payload(data)
        account.synced_at = utcnow()
        updated += 1
    db.commit()

    logger.info("Balance refresh completed for %s: updated=%d errors=%d", person_name, updated, len(errors))
    return {"updated": updated, "errors": errors}


def get_account_sync_stats(db: Session, person_name: str) -> Dict[str, Any]:
    accounts = db.query(Account).filter(Account.person_name == person_name).all()
    one_day_ago = utcnow() - timedelta(days=1)

    equity = []
    last_sync = None
    for account in accounts:
        combined = (account.balances or {}).get("combined_balances") or []
        if combined:
            equity.append(to_float(combined[0].get("totalEquity")))
        synced_at = as_utc(account.synced_at)
        if synced_at and (last_sync is None or synced_at > last_sync):
            last_sync = synced_at

    return {
        "total": len(accounts),
        "recently_synced": sum(1 for a in accounts if a.synced_at and as_utc(a.synced_at) > one_day_ago),
        "by_type": dict(Counter(a.type or "Unknown" for a in accounts)),
        "by_status": dict(Counter(a.status or "Unknown" for a in accounts)),
        "total_equity": math.fsum(equity),
        "last_sync_time": isoformat(last_sync),
    }


def validate_account_data(db: Session, person_name: str) -> Dict[str, Any]:
    accounts = db.query(Account).filter(Account.person_name == person_name).all()
    week_ago = utcnow() - timedelta(days=STALE_DATA_DAYS)
    issues: List[Dict[str, Any]] = []
    for account in accounts:
        if not account.type:
            issues.append({"account_id": account.account_id, "issue": "Missing account type"})
        if not account.status:
            issues.append({"account_id": account.account_id, "issue": "Missing account status"})
        synced_at = as_utc(account.synced_at)
        if synced_at is None or synced_at < week_ago:
            issues.append({
                "account_id": account.account_id,
                "issue": "Stale sync data",
                "last_sync": isoformat(synced_at),
            })
        if not (account.balances or {}).get("combined_balances"):
            issues.append({"account_id": account.account_id, "issue": "Missing balance data"})
    return {"account_count": len(accounts), "issues": issues, "is_valid": not issues}
