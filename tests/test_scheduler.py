import logging
import os
import unittest
from unittest.mock import patch

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from support import add_person, make_session_factory
from config.logging_config import JsonFormatter, TokenRedactingFilter, redact
from jobs import scheduler
from models.portfolio_snapshot import PortfolioSnapshot
from services.sync import snapshot_service


class TestSchedulerJobs(unittest.TestCase):
    def setUp(self):
        self.Session = make_session_factory()
        self.db = self.Session()
        add_person(self.db, "alice", with_tokens=False)
        add_person(self.db, "bob", with_tokens=False)

    def tearDown(self):
        self.db.close()

    def test_job_table(self):
        jobs = {job.id: job for job in scheduler.build_scheduler().get_jobs()}
        self.assertEqual(
            set(jobs),
            {"sync_all_open", "sync_all_session", "sync_all_close", "daily_snapshot", "token_refresh", "daily_cleanup"},
        )
        self.assertIs(jobs["sync_all_session"].func, scheduler.sync_all_job)

    def test_disabled_scheduler_does_not_start(self):
        with patch.object(scheduler, "SCHEDULER_ENABLED", False):
            self.assertIsNone(scheduler.start_scheduler())

    def test_daily_snapshot_isolates_failures(self):
        real = snapshot_service.create_portfolio_snapshot

        def flaky(db, person_name):
            if person_name == "bob":
                raise RuntimeError("boom")
            return real(db, person_name)

        with patch.object(scheduler, "SessionLocal", self.Session), \
                patch.object(scheduler.snapshot_service, "create_portfolio_snapshot", side_effect=flaky):
            with self.assertLogs("jobs.scheduler", level="ERROR"):
                scheduler.daily_snapshot_job()

        rows = self.db.query(PortfolioSnapshot).all()
        self.assertEqual([r.person_name for r in rows], ["alice"])

    def test_sync_job_reports_failures(self):
        with patch.object(scheduler, "SessionLocal", self.Session), \
                patch.object(scheduler.data_sync_service, "sync_all_persons") as sync_all:
            sync_all.return_value = [
                {"person_name": "alice", "success": True},
                {"person_name": "bob", "success": False},
            ]
            with self.assertLogs("jobs.scheduler", level="WARNING") as logs:
                scheduler.sync_all_job()

        self.assertIn("bob", logs.output[-1])


class TestLogRedaction(unittest.TestCase):
    def test_tokens_are_masked(self):
        self.assertEqual(redact("Authorization: Bearer abc.def-123"), "Authorization: Bearer ***")
        self.assertEqual(
            redact("GET /oauth2/token?grant_type=refresh_token&refresh_token=XYZ123&x=1"),
            "GET /oauth2/token?grant_type=refresh_token&refresh_token=***&x=1",
        )
        self.assertEqual(redact('{"access_token": "abc"}'), '{"access_token": "***"}')
        self.assertEqual(redact("Sync completed for alice"), "Sync completed for alice")

    def test_filter_rewrites_formatted_message(self):
        record = logging.LogRecord("t", logging.INFO, __file__, 1, "token %s", ("Bearer secret",), None)
        self.assertTrue(TokenRedactingFilter().filter(record))
        self.assertEqual(record.getMessage(), "token Bearer ***")

    def test_json_formatter_promotes_context(self):
        record = logging.LogRecord("t", logging.INFO, __file__, 1, "done", None, None)
        record.person_name = "alice"
        formatted = JsonFormatter().format(record)
        self.assertIn('"person_name": "alice"', formatted)
        self.assertIn('"service": "questrade-portfolio"', formatted)


if __name__ == "__main__":
    unittest.main()
