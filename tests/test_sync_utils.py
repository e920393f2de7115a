import os
import unittest
from datetime import date, datetime, timezone

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from services.sync.sync_utils import (
    SyncResult,
    calculate_sync_date_range,
    determine_activity_type,
    format_date_for_questrade,
    split_date_range,
)


class TestSplitDateRange(unittest.TestCase):
    def test_chunks_are_contiguous_and_bounded(self):
        chunks = split_date_range(date(2024, 1, 1), date(2024, 3, 15), max_days=31)

        self.assertEqual(len(chunks), 3)
        self.assertEqual((chunks[0].start, chunks[0].end), (date(2024, 1, 1), date(2024, 1, 31)))
        self.assertEqual((chunks[1].start, chunks[1].end), (date(2024, 2, 1), date(2024, 3, 2)))
        self.assertEqual((chunks[2].start, chunks[2].end), (date(2024, 3, 3), date(2024, 3, 15)))
        for prev, cur in zip(chunks, chunks[1:]):
            self.assertEqual((cur.start - prev.end).days, 1)
        for chunk in chunks:
            self.assertLessEqual((chunk.end - chunk.start).days + 1, 31)

    def test_single_day_range(self):
        chunks = split_date_range(date(2024, 5, 5), date(2024, 5, 5))
        self.assertEqual(len(chunks), 1)
        self.assertEqual(chunks[0].start, chunks[0].end)

    def test_inverted_range_is_empty(self):
        self.assertEqual(split_date_range(date(2024, 5, 6), date(2024, 5, 5)), [])

    def test_accepts_datetimes(self):
        chunks = split_date_range(
            datetime(2024, 1, 1, 15, tzinfo=timezone.utc), datetime(2024, 1, 10, 3, tzinfo=timezone.utc)
        )
        self.assertEqual((chunks[0].start, chunks[0].end), (date(2024, 1, 1), date(2024, 1, 10)))

    def test_rejects_non_positive_chunk_size(self):
        with self.assertRaises(ValueError):
            split_date_range(date(2024, 1, 1), date(2024, 1, 2), max_days=0)

    def test_questrade_date_format(self):
        self.assertEqual(format_date_for_questrade(date(2024, 1, 5)), "2024-01-05T00:00:00-05:00")
        chunk = split_date_range(date(2024, 1, 5), date(2024, 1, 6))[0]
        self.assertEqual(chunk.end_formatted, "2024-01-06T00:00:00-05:00")


class TestSyncDateRange(unittest.TestCase):
    def test_full_sync_looks_back_six_months(self):
        now = datetime(2024, 8, 31, tzinfo=timezone.utc)
        start, end = calculate_sync_date_range(full_sync=True, now=now)
        self.assertEqual(end, now)
        self.assertEqual(start, datetime(2024, 2, 29, tzinfo=timezone.utc))

    def test_incremental_sync_looks_back_one_month(self):
        now = datetime(2024, 3, 31, tzinfo=timezone.utc)
        start, _ = calculate_sync_date_range(full_sync=False, now=now)
        self.assertEqual(start, datetime(2024, 2, 29, tzinfo=timezone.utc))


class TestActivityType(unittest.TestCase):
    def test_classification(self):
        cases = {
            "Trades": "Trade",
            "Dividends": "Dividend",
            "Deposits": "Deposit",
            "Withdrawals": "Withdrawal",
            "Interest": "Interest",
            "Transfers": "Transfer",
            "Fees and rebates": "Fee",
            "Non-resident tax": "Tax",
            "FX conversion": "FX",
            "Foreign exchange": "FX",
            "Corporate actions": "Other",
            "": "Other",
            None: "Other",
        }
        for raw, expected in cases.items():
            with self.subTest(raw=raw):
                self.assertEqual(determine_activity_type(raw), expected)


class TestSyncResult(unittest.TestCase):
    def test_to_dict_merges_extra(self):
        result = SyncResult(synced=3)
        result.add_error("boom", account_id="123")
        result.extra["duplicates"] = 2
        payload = result.finalize().to_dict()

        self.assertEqual(payload["synced"], 3)
        self.assertEqual(payload["errors"], [{"error": "boom", "account_id": "123"}])
        self.assertEqual(payload["duplicates"], 2)
        self.assertIsNotNone(payload["duration_ms"])


if __name__ == "__main__":
    unittest.main()
