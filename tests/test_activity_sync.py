import os
import unittest
from datetime import datetime, timezone
from unittest.mock import patch

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from support import add_person, make_session_factory
from models.account import Account
from models.activity import Activity
from services.questrade.errors import QuestradeAPIError, TokenInvalidError
from services.sync import activity_sync
from services.sync.sync_config import ACTIVITY_MAX_RETRIES
from utils.common_helpers import add_months, utcnow


def _activity(date="2024-01-15T00:00:00.000000-05:00", raw_type="Dividends", symbol="ENB.TO",
              net=25.0, quantity=100, description="ENBRIDGE INC CASH DIV ON 100 SHS"):
    return {
        "tradeDate": date,
        "transactionDate": date,
        "settlementDate": date,
        "action": "DIV" if raw_type == "Dividends" else "Buy",
        "symbol": symbol,
        "symbolId": 1,
        "description": description,
        "currency": "CAD",
        "quantity": quantity,
        "price": 0,
        "grossAmount": net,
        "commission": 0,
        "netAmount": net,
        "type": raw_type,
    }


class StubClient:
    """Stands in for QuestradeClient; fails every call for the listed chunk starts (500 unless given an error)."""

    def __init__(self, activities=None, fail_starts=(), error=None, fail_all=False):
        self.activities = activities or []
        self.fail_starts = set(fail_starts)
        self.fail_all = fail_all
        self.error = error
        self.calls = []

    def get_account_activities(self, account_id, person_name, start_time=None, end_time=None):
        self.calls.append((start_time, end_time))
        if self.fail_all or start_time in self.fail_starts:
            raise self.error or QuestradeAPIError(500, "Internal error", person_name=person_name)
        return {"activities": list(self.activities)}


class TestProcessActivity(unittest.TestCase):
    def setUp(self):
        self.db = make_session_factory()()

    def tearDown(self):
        self.db.close()

    def test_inserts_once(self):
        self.assertTrue(activity_sync.process_activity(self.db, _activity(), "123", "alice"))
        self.assertFalse(activity_sync.process_activity(self.db, _activity(), "123", "alice"))
        self.db.commit()

        rows = self.db.query(Activity).all()
        self.assertEqual(len(rows), 1)
        row = rows[0]
        self.assertEqual(row.type, "Dividend")
        self.assertEqual(row.raw_type, "Dividends")
        self.assertTrue(row.is_dividend)
        self.assertAlmostEqual(row.dividend_per_share, 0.25)

    def test_same_day_different_amount_is_new(self):
        activity_sync.process_activity(self.db, _activity(net=25.0), "123", "alice")
        self.assertTrue(activity_sync.process_activity(self.db, _activity(net=30.0), "123", "alice"))

    def test_missing_symbol_still_deduplicates(self):
        deposit = _activity(raw_type="Deposits", symbol="", description="CONTRIBUTION", net=1000.0, quantity=0)
        self.assertTrue(activity_sync.process_activity(self.db, deposit, "123", "alice"))
        self.assertFalse(activity_sync.process_activity(self.db, deposit, "123", "alice"))
        row = self.db.query(Activity).one()
        self.assertIsNone(row.symbol)
        self.assertEqual(row.dividend_per_share, 0.0)

    def test_missing_transaction_date(self):
        with self.assertRaises(ValueError):
            activity_sync.process_activity(self.db, _activity(date=None), "123", "alice")


@patch("time.sleep")
class TestFetchActivities(unittest.TestCase):
    def test_walks_every_chunk(self, sleep_mock):
        client = StubClient([_activity()])
        items = activity_sync.fetch_activities(
            client, "123", "alice", datetime(2024, 1, 1, tzinfo=timezone.utc), datetime(2024, 3, 15, tzinfo=timezone.utc)
        )

        self.assertEqual(len(items), 3)
        self.assertEqual(
            [c[0] for c in client.calls],
            ["2024-01-01T00:00:00-05:00", "2024-02-01T00:00:00-05:00", "2024-03-03T00:00:00-05:00"],
        )
        # pause between chunks, none after the last
        self.assertEqual(sleep_mock.call_count, 2)

    def test_failing_chunk_is_retried_then_skipped(self, sleep_mock):
        client = StubClient([_activity()], fail_starts={"2024-02-01T00:00:00-05:00"})
        items = activity_sync.fetch_activities(
            client, "123", "alice", datetime(2024, 1, 1, tzinfo=timezone.utc), datetime(2024, 3, 15, tzinfo=timezone.utc)
        )

        self.assertEqual(len(items), 2)
        failed_attempts = [c for c in client.calls if c[0] == "2024-02-01T00:00:00-05:00"]
        self.assertEqual(len(failed_attempts), ACTIVITY_MAX_RETRIES)
        self.assertEqual(len(client.calls), 2 + ACTIVITY_MAX_RETRIES)

    def test_client_error_is_skipped_without_retry(self, sleep_mock):
        start = "2024-02-01T00:00:00-05:00"
        client = StubClient([_activity()], fail_starts={start}, error=QuestradeAPIError(400, "Bad window"))
        items = activity_sync.fetch_activities(
            client, "123", "alice", datetime(2024, 1, 1, tzinfo=timezone.utc), datetime(2024, 3, 15, tzinfo=timezone.utc)
        )

        self.assertEqual(len(items), 2)
        self.assertEqual(len([c for c in client.calls if c[0] == start]), 1)

    def test_token_error_is_raised_on_first_attempt(self, sleep_mock):
        start = "2024-01-01T00:00:00-05:00"
        client = StubClient([_activity()], fail_starts={start}, error=TokenInvalidError("Refresh token rejected"))
        with self.assertRaises(TokenInvalidError):
            activity_sync.fetch_activities(
                client, "123", "alice", datetime(2024, 1, 1, tzinfo=timezone.utc), datetime(2024, 3, 15, tzinfo=timezone.utc)
            )

        self.assertEqual(len(client.calls), 1)
        sleep_mock.assert_not_called()


@patch("time.sleep")
class TestActivitySync(unittest.TestCase):
    def setUp(self):
        self.db = make_session_factory()()
        add_person(self.db)
        self.account = Account(account_id="123", person_name="alice", type="TFSA")
        self.db.add(self.account)
        self.db.commit()

    def tearDown(self):
        self.db.close()

    def test_sync_counts_new_and_duplicates(self, _sleep):
        client = StubClient([
            _activity(),
            _activity(raw_type="Trades", net=-4000.0, description="ENBRIDGE INC"),
            _activity(date=None),
        ])
        result = activity_sync.sync_activities_for_account(self.db, client, self.account, "alice", full_sync=False)

        chunks = len(client.calls)
        self.assertEqual(result.synced, 2)
        self.assertEqual(result.extra["duplicates"], 2 * (chunks - 1))
        self.assertEqual(len(result.errors), chunks)
        self.assertEqual(self.db.query(Activity).count(), 2)

    def test_rejected_row_keeps_rest_of_batch(self, _sleep):
        real = activity_sync.process_activity

        def process(db, data, account_id, person_name):
            if data["description"] == "BROKEN":
                # transaction_date is NOT NULL, so this flush fails in the database
                db.add(Activity(account_id=account_id, person_name=person_name, transaction_date=None))
                db.flush()
            return real(db, data, account_id, person_name)

        client = StubClient([
            _activity(),
            _activity(raw_type="Trades", net=-1.0, description="BROKEN"),
            _activity(raw_type="Trades", net=-4000.0, description="ENBRIDGE INC"),
        ])
        with patch.object(activity_sync, "process_activity", side_effect=process):
            result = activity_sync.sync_activities_for_account(self.db, client, self.account, "alice")

        self.assertEqual(result.synced, 2)
        self.assertEqual(len(result.errors), len(client.calls))
        self.assertEqual(
            sorted(a.description for a in self.db.query(Activity).all()),
            ["ENBRIDGE INC", "ENBRIDGE INC CASH DIV ON 100 SHS"],
        )

    def test_person_sync_stops_on_token_error(self, _sleep):
        self.db.add(Account(account_id="456", person_name="alice", type="RRSP"))
        self.db.commit()
        client = StubClient(error=TokenInvalidError("Refresh token rejected"), fail_all=True)

        with self.assertRaises(TokenInvalidError):
            activity_sync.sync_activities_for_person(self.db, client, "alice")
        self.assertEqual(len(client.calls), 1)

    def test_person_sync_and_statistics(self, _sleep):
        client = StubClient([
            _activity(),
            _activity(date="2024-04-15T00:00:00.000000-04:00"),
            _activity(raw_type="Trades", net=-4000.0, description="ENBRIDGE INC"),
        ])
        result = activity_sync.sync_activities_for_person(self.db, client, "alice")
        self.assertEqual(result.synced, 3)

        stats = activity_sync.get_activity_statistics(self.db, "alice")
        self.assertEqual(stats["total_activities"], 3)
        self.assertEqual(stats["dividend_activities"], 2)
        self.assertEqual(stats["by_type"][0]["type"], "Dividend")
        self.assertAlmostEqual(stats["by_type"][0]["total_amount"], 50.0)
        self.assertTrue(stats["date_range"]["earliest_date"].startswith("2024-01-15"))

    def test_bulk_sync_reports_per_person(self, _sleep):
        add_person(self.db, "bob", with_tokens=False)
        results = activity_sync.bulk_sync_activities(self.db, StubClient([_activity()]), full_sync=False)

        by_name = {r["person_name"]: r for r in results}
        self.assertTrue(by_name["alice"]["success"])
        self.assertFalse(by_name["bob"]["success"])

    def test_cleanup_respects_retention(self, _sleep):
        old = add_months(utcnow(), -30)
        self.db.add(Activity(account_id="123", person_name="alice", transaction_date=old, type="Trade"))
        self.db.add(Activity(account_id="123", person_name="alice", transaction_date=utcnow(), type="Trade"))
        self.db.commit()

        result = activity_sync.cleanup_old_activities(self.db, "alice", retention_months=24)
        self.assertEqual(result["deleted"], 1)
        self.assertEqual(self.db.query(Activity).count(), 1)


if __name__ == "__main__":
    unittest.main()
