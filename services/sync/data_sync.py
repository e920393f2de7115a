# services/sync/data_sync.py
"""
Sync orchestrator: accounts, then positions and activities, then an optional snapshot.

Only one sync per person may run at a time. The in-progress claims are process-local
and guarded by a lock because the scheduler runs syncs on a background thread.
"""
import logging
import threading
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy.orm import Session

from models.person import Person
from services.questrade.errors import PersonNotFoundError, QuestradeError, SyncInProgressError
from services.questrade.questrade_client import QuestradeClient
from services.sync import account_sync, activity_sync, position_sync, snapshot_service, sync_utils
from utils.common_helpers import isoformat, utcnow

logger = logging.getLogger(__name__)


class DataSyncService:
    def __init__(self, http_client: Optional[httpx.Client] = None):
        self.http_client = http_client
        # person -> claim token; a sync only releases the claim it took
        self._in_progress: Dict[str, object] = {}
        self._lock = threading.Lock()

    def is_in_progress(self, person_name: str) -> bool:
        with self._lock:
            return person_name in self._in_progress

    def _claim(self, person_name: str) -> object:
        with self._lock:
            if person_name in self._in_progress:
                raise SyncInProgressError(
                    f"Sync already in progress for {person_name}", person_name=person_name
                )
            token = object()
            self._in_progress[person_name] = token
            return token

    def _release(self, person_name: str, token: Optional[object] = None) -> None:
        """Drop the claim. Without a token the claim is dropped whoever holds it."""
        with self._lock:
            if token is None or self._in_progress.get(person_name) is token:
                self._in_progress.pop(person_name, None)

    def sync_person_data(
        self,
        db: Session,
        person_name: str,
        *,
        full_sync: bool = False,
        force_refresh: bool = False,
        http_client: Optional[httpx.Client] = None,
    ) -> Dict[str, Any]:
        claim = self._claim(person_name)
        started = utcnow()
        try:
            logger.info("Starting sync for %s full_sync=%s force_refresh=%s", person_name, full_sync, force_refresh)
            sync_utils.validate_person_for_sync(db, person_name)

            results: Dict[str, Any] = {
                "person_name": person_name,
                "start_time": isoformat(started),
                "accounts": {"synced": 0, "errors": []},
                "positions": {"synced": 0, "errors": []},
                "activities": {"synced": 0, "errors": []},
                "snapshots": {"created": False, "error": None},
            }

            with QuestradeClient(db, http_client=http_client or self.http_client) as client:
                accounts = account_sync.sync_accounts_for_person(db, client, person_name, full_sync)
                results["accounts"] = accounts.to_dict()

                if accounts.synced > 0 or not accounts.errors:
                    positions = position_sync.sync_positions_for_person(db, client, person_name, full_sync)
                    results["positions"] = positions.to_dict()

                    activities = activity_sync.sync_activities_for_person(db, client, person_name, full_sync)
                    results["activities"] = activities.to_dict()

                    if full_sync or force_refresh:
                        try:
                            snapshot = snapshot_service.create_portfolio_snapshot(db, person_name)
                            results["snapshots"]["created"] = True
                            results["snapshots"]["id"] = snapshot.id
                        except Exception as exc:
                            db.rollback()
                            logger.exception("Snapshot creation failed for %s", person_name)
                            results["snapshots"]["error"] = str(exc)
                else:
                    logger.warning("Skipping positions and activities for %s: account sync failed", person_name)

            finished = utcnow()
            results["end_time"] = isoformat(finished)
            results["duration_ms"] = int((finished - started).total_seconds() * 1000)

            person = db.query(Person).filter(Person.person_name == person_name).first()
            person.last_sync_time = finished
            person.last_successful_sync = finished
            person.last_sync_status = "success"
            person.last_sync_error = None
            person.last_sync_results = results
            db.commit()

            logger.info(
                "Sync completed for %s accounts=%d positions=%d activities=%d duration_ms=%d",
                person_name,
                results["accounts"]["synced"],
                results["positions"]["synced"],
                results["activities"]["synced"],
                results["duration_ms"],
            )
            return results
        except Exception as exc:
            db.rollback()
            logger.error("Sync failed for %s: %s", person_name, exc)
            self._record_failure(db, person_name, exc)
            raise
        finally:
            self._release(person_name, claim)

    @staticmethod
    def _record_failure(db: Session, person_name: str, exc: Exception) -> None:
        person = db.query(Person).filter(Person.person_name == person_name).first()
        if person is None:
            return
        person.last_sync_time = utcnow()
        person.last_sync_status = "failed"
        person.last_sync_error = exc.message if isinstance(exc, QuestradeError) else str(exc)
        db.commit()

    def sync_all_persons(
        self,
        db: Session,
        *,
        full_sync: bool = False,
        continue_on_error: bool = True,
        http_client: Optional[httpx.Client] = None,
    ) -> List[Dict[str, Any]]:
        persons = db.query(Person).filter(Person.is_active.is_(True)).order_by(Person.person_name).all()
        logger.info("Syncing %d active persons full_sync=%s", len(persons), full_sync)

        results: List[Dict[str, Any]] = []
        for person in persons:
            name = person.person_name
            try:
                result = self.sync_person_data(db, name, full_sync=full_sync, http_client=http_client)
                results.append({**result, "success": True})
            except Exception as exc:
                message = exc.message if isinstance(exc, QuestradeError) else str(exc)
                results.append({"person_name": name, "success": False, "error": message})
                if not continue_on_error:
                    raise
        return results

    def get_sync_status(self, db: Session, person_name: str) -> Dict[str, Any]:
        status = sync_utils.get_sync_status(db, person_name, self.is_in_progress(person_name))
        if status is None:
            raise PersonNotFoundError(f"Person {person_name} not found", person_name=person_name)
        return status

    def get_all_sync_statuses(self, db: Session) -> List[Dict[str, Any]]:
        persons = db.query(Person).filter(Person.is_active.is_(True)).order_by(Person.person_name).all()
        return [
            sync_utils.get_sync_status(db, p.person_name, self.is_in_progress(p.person_name))
            for p in persons
        ]

    def stop_sync(self, db: Session, person_name: str) -> None:
        """Clear the in-progress flag. Does not interrupt a running sync thread."""
        self._release(person_name)
        logger.warning("Force stopped sync for %s", person_name)
        person = db.query(Person).filter(Person.person_name == person_name).first()
        if person is None:
            raise PersonNotFoundError(f"Person {person_name} not found", person_name=person_name)
        person.last_sync_status = "stopped"
        person.last_sync_error = "Manually stopped"
        db.commit()


data_sync_service = DataSyncService()
