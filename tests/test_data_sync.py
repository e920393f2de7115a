import os
import unittest
from unittest.mock import patch

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from support import FakeQuestrade, add_person, make_session_factory
from models.account import Account
from models.activity import Activity
from models.person import Person
from models.portfolio_snapshot import PortfolioSnapshot
from models.position import Position
from models.symbol import Symbol
from services.questrade.errors import (
    PersonNotFoundError,
    QuestradeConnectionError,
    SyncInProgressError,
    TokenMissingError,
)
from services.sync import account_sync, position_sync
from services.sync.data_sync import DataSyncService

ACCOUNTS = {
    "accounts": [
        {"type": "TFSA", "number": "123", "status": "Active", "isPrimary": True,
         "isBilling": False, "clientAccountType": "Individual"},
    ]
}
BALANCES = {
    "perCurrencyBalances": [{"currency": "CAD", "cash": 500.0, "marketValue": 5000.0, "totalEquity": 5500.0}],
    "combinedBalances": [{"currency": "CAD", "cash": 500.0, "marketValue": 5000.0, "totalEquity": 5500.0}],
}
POSITIONS = {
    "positions": [
        {"symbol": "ENB.TO", "symbolId": 1, "openQuantity": 100, "closedQuantity": 0,
         "currentMarketValue": 5000.0, "currentPrice": 50.0, "averageEntryPrice": 40.0,
         "dayPnl": 10.0, "closedPnl": 0.0, "openPnl": 1000.0, "totalCost": 4000.0,
         "isRealTime": False, "isUnderReorg": False},
    ]
}
SYMBOLS = {
    "symbols": [
        {"symbolId": 1, "symbol": "ENB.TO", "description": "ENBRIDGE INC", "securityType": "Stock",
         "listingExchange": "TSX", "currency": "CAD", "prevDayClosePrice": 49.5, "dividend": 0.9,
         "yield": 7.2, "industrySector": "Energy"},
    ]
}
DIVIDEND = {
    "tradeDate": "2024-03-01T00:00:00.000000-05:00",
    "transactionDate": "2024-03-01T00:00:00.000000-05:00",
    "settlementDate": "2024-03-01T00:00:00.000000-05:00",
    "action": "DIV",
    "symbol": "ENB.TO",
    "symbolId": 1,
    "description": "ENBRIDGE INC CASH DIV",
    "currency": "CAD",
    "quantity": 100,
    "price": 0,
    "grossAmount": 90.0,
    "commission": 0,
    "netAmount": 90.0,
    "type": "Dividends",
}


def questrade_routes():
    return {
        "/v1/accounts": ACCOUNTS,
        "/v1/accounts/123/balances": BALANCES,
        "/v1/accounts/123/positions": POSITIONS,
        "/v1/accounts/123/activities": {"activities": [DIVIDEND]},
        "/v1/symbols": SYMBOLS,
    }


@patch("time.sleep")
class TestSyncPersonData(unittest.TestCase):
    def setUp(self):
        self.db = make_session_factory()()
        add_person(self.db)
        self.fake = FakeQuestrade(questrade_routes())
        self.http = self.fake.client()
        self.service = DataSyncService(http_client=self.http)

    def tearDown(self):
        self.http.close()
        self.db.close()

    def test_full_sync_populates_everything(self, _sleep):
        result = self.service.sync_person_data(self.db, "alice", full_sync=True)

        self.assertEqual(result["accounts"]["synced"], 1)
        self.assertEqual(result["positions"]["synced"], 1)
        self.assertEqual(result["activities"]["synced"], 1)
        self.assertTrue(result["snapshots"]["created"])
        self.assertIn("duration_ms", result)

        account = self.db.query(Account).one()
        self.assertEqual(account.type, "TFSA")
        self.assertEqual(account.cash_balance("CAD"), 500.0)
        self.assertEqual(account.current_value, 5000.0)
        self.assertEqual(account.number_of_positions, 1)

        symbol = self.db.query(Symbol).one()
        self.assertEqual(symbol.industry_sector, "Energy")

        position = self.db.query(Position).one()
        self.assertEqual(position.currency, "CAD")
        self.assertAlmostEqual(position.total_return_percent, 25.0)
        self.assertTrue(position.is_dividend_stock)
        # 0.90 per payment, quarterly when history is too short
        self.assertAlmostEqual(position.dividends["annual_dividend"], 360.0)
        self.assertAlmostEqual(position.dividends["yield_on_cost"], 9.0)

        self.assertEqual(self.db.query(Activity).count(), 1)
        snapshot = self.db.query(PortfolioSnapshot).one()
        self.assertEqual(snapshot.current_value, 5000.0)
        self.assertEqual(snapshot.number_of_dividend_stocks, 1)

        person = self.db.query(Person).filter_by(person_name="alice").one()
        self.assertEqual(person.last_sync_status, "success")
        self.assertIsNone(person.last_sync_error)
        self.assertFalse(self.service.is_in_progress("alice"))

    def test_incremental_sync_skips_snapshot(self, _sleep):
        result = self.service.sync_person_data(self.db, "alice")
        self.assertFalse(result["snapshots"]["created"])
        self.assertEqual(self.db.query(PortfolioSnapshot).count(), 0)

        forced = self.service.sync_person_data(self.db, "alice", force_refresh=True)
        self.assertTrue(forced["snapshots"]["created"])

    def test_recalculate_picks_up_synced_dividends(self, _sleep):
        self.service.sync_person_data(self.db, "alice", full_sync=True)
        summary = position_sync.recalculate_dividends(self.db, "alice")

        self.assertEqual(summary["updated"], 1)
        position = self.db.query(Position).one()
        self.assertAlmostEqual(position.dividends["total_received"], 90.0)
        self.assertEqual(position.dividends["calculation_method"], "activity_based")

    def test_concurrent_sync_is_refused(self, _sleep):
        self.service._claim("alice")
        with self.assertRaises(SyncInProgressError):
            self.service.sync_person_data(self.db, "alice")
        self.assertEqual(self.fake.calls, [])

        self.service.stop_sync(self.db, "alice")
        self.assertFalse(self.service.is_in_progress("alice"))
        person = self.db.query(Person).filter_by(person_name="alice").one()
        self.assertEqual(person.last_sync_status, "stopped")

    def test_stopped_sync_keeps_newer_claim(self, _sleep):
        def restarted_mid_sync(db, client, person_name, full_sync):
            self.service.stop_sync(db, person_name)
            self.service._claim(person_name)
            raise QuestradeConnectionError("connection dropped", person_name=person_name)

        with patch.object(account_sync, "sync_accounts_for_person", side_effect=restarted_mid_sync):
            with self.assertRaises(QuestradeConnectionError):
                self.service.sync_person_data(self.db, "alice")

        self.assertTrue(self.service.is_in_progress("alice"))

    def test_failure_is_recorded_and_flag_released(self, _sleep):
        add_person(self.db, "bob", with_tokens=False)
        with self.assertRaises(TokenMissingError):
            self.service.sync_person_data(self.db, "bob")

        person = self.db.query(Person).filter_by(person_name="bob").one()
        self.assertEqual(person.last_sync_status, "failed")
        self.assertIn("No active refresh token", person.last_sync_error)
        self.assertFalse(self.service.is_in_progress("bob"))

    def test_sync_all_continues_past_failures(self, _sleep):
        add_person(self.db, "bob", with_tokens=False)
        results = self.service.sync_all_persons(self.db)

        by_name = {r["person_name"]: r for r in results}
        self.assertTrue(by_name["alice"]["success"])
        self.assertFalse(by_name["bob"]["success"])

        with self.assertRaises(TokenMissingError):
            self.service.sync_all_persons(self.db, continue_on_error=False)

    def test_status(self, _sleep):
        self.service.sync_person_data(self.db, "alice")
        status = self.service.get_sync_status(self.db, "alice")
        self.assertEqual(status["last_sync_status"], "success")
        self.assertEqual(status["counts"]["positions"], 1)
        self.assertFalse(status["is_in_progress"])

        with self.assertRaises(PersonNotFoundError):
            self.service.get_sync_status(self.db, "nobody")


@patch("time.sleep")
class TestPositionSync(unittest.TestCase):
    def setUp(self):
        self.db = make_session_factory()()
        add_person(self.db)
        self.fake = FakeQuestrade(questrade_routes())
        self.http = self.fake.client()
        self.service = DataSyncService(http_client=self.http)

    def tearDown(self):
        self.http.close()
        self.db.close()

    def test_full_sync_drops_sold_positions(self, _sleep):
        self.service.sync_person_data(self.db, "alice", full_sync=True)
        self.db.add(Position(account_id="123", person_name="alice", symbol="SOLD", symbol_id=99))
        self.db.commit()

        self.service.sync_person_data(self.db, "alice")
        self.assertEqual(self.db.query(Position).count(), 2)

        self.service.sync_person_data(self.db, "alice", full_sync=True)
        self.assertEqual([p.symbol for p in self.db.query(Position).all()], ["ENB.TO"])

    def test_dividend_summary(self, _sleep):
        self.service.sync_person_data(self.db, "alice", full_sync=True)
        position_sync.recalculate_dividends(self.db, "alice")

        summary = position_sync.get_dividend_summary(self.db, "alice")
        self.assertEqual(summary["dividend_stocks"], 1)
        self.assertAlmostEqual(summary["total_dividends_received"], 90.0)
        self.assertAlmostEqual(summary["portfolio_yield_on_cost"], 9.0)
        self.assertEqual(summary["top_dividend_payers"][0]["symbol"], "ENB.TO")

    def test_currency_falls_back_to_symbol_suffix(self, _sleep):
        self.assertEqual(position_sync.resolve_currency("RY.TO", None), "CAD")
        self.assertEqual(position_sync.resolve_currency("AAPL", None), "USD")


if __name__ == "__main__":
    unittest.main()
