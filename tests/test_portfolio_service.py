import os
import unittest
from datetime import datetime, timedelta, timezone

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from support import add_person, make_session_factory
from models.account import Account
from models.activity import Activity
from models.person import Person
from models.position import Position
from services.portfolio import aggregator, portfolio_service
from services.sync import snapshot_service

SYNCED = datetime(2024, 6, 30, 20, 0, tzinfo=timezone.utc)


def _position(account_id, person_name, symbol, symbol_id, shares, cost, value, pnl, dividend_data=None, **extra):
    values = dict(
        account_id=account_id,
        person_name=person_name,
        symbol=symbol,
        symbol_id=symbol_id,
        open_quantity=shares,
        total_cost=cost,
        current_market_value=value,
        current_price=value / shares,
        average_entry_price=cost / shares,
        open_pnl=pnl,
        dividend_data=dividend_data,
        synced_at=SYNCED,
    )
    values.update(extra)
    return Position(**values)


def _seed(db):
    add_person(db, "alice", with_tokens=False)
    add_person(db, "bob", with_tokens=False)
    db.add_all([
        Account(account_id="A1", person_name="alice", type="TFSA", number="A1",
                balances={"combined_balances": [{"currency": "CAD", "cash": 250.0}]}),
        Account(account_id="A2", person_name="alice", type="RRSP", number="A2"),
        Account(account_id="B1", person_name="bob", type="Margin", number="B1"),
    ])
    db.add_all([
        _position("A1", "alice", "ENB.TO", 1, 100, 4000.0, 5000.0, 1000.0,
                  {"annual_dividend": 360.0, "monthly_dividend": 30.0, "total_received": 90.0,
                   "dividend_frequency": "quarterly", "last_dividend_date": "2024-03-01",
                   "last_dividend_amount": 90.0},
                  dividend_per_share=0.9, is_dividend_stock=True, currency="CAD", industry_sector="Energy"),
        _position("A2", "alice", "ENB.TO", 1, 50, 2500.0, 2500.0, 0.0,
                  {"annual_dividend": 180.0, "monthly_dividend": 15.0, "total_received": 0.0,
                   "dividend_frequency": "quarterly"},
                  dividend_per_share=0.9, is_dividend_stock=True, currency="CAD", industry_sector="Energy"),
        _position("B1", "bob", "AAPL", 8049, 10, 1500.0, 2000.0, 500.0,
                  currency="USD", industry_sector="Technology", security_type="Stock"),
    ])
    db.commit()


class PortfolioTestCase(unittest.TestCase):
    def setUp(self):
        self.db = make_session_factory()()
        _seed(self.db)

    def tearDown(self):
        self.db.close()


class TestAggregation(PortfolioTestCase):
    def test_same_symbol_merges_across_accounts(self):
        rows = aggregator.aggregate_positions(self.db, "person", person_name="alice")
        self.assertEqual(len(rows), 1)

        enb = rows[0]
        self.assertTrue(enb["is_aggregated"])
        self.assertEqual(enb["account_id"], "AGGREGATED")
        self.assertEqual(enb["person_name"], "alice")
        self.assertEqual(enb["number_of_accounts"], 2)
        self.assertEqual(sorted(enb["source_accounts"]), ["A1", "A2"])
        self.assertEqual(enb["open_quantity"], 150)
        self.assertAlmostEqual(enb["average_entry_price"], 6500.0 / 150)
        self.assertAlmostEqual(enb["total_return_value"], 1090.0)
        self.assertAlmostEqual(enb["dividend_data"]["annual_dividend"], 540.0)
        self.assertAlmostEqual(enb["dividend_data"]["yield_on_cost"], 540.0 / 6500.0 * 100)
        self.assertAlmostEqual(enb["dividend_data"]["dividend_adjusted_cost_per_share"], (6500.0 - 90.0) / 150)
        self.assertEqual(enb["dividend_data"]["last_dividend_date"], "2024-03-01")
        self.assertEqual(enb["dividend_per_share"], 0.9)
        self.assertEqual(enb["individual_positions"][0]["account_name"], "TFSA A1")

    def test_symbol_shared_between_persons(self):
        self.db.add(_position("B1", "bob", "ENB.TO", 1, 10, 450.0, 500.0, 50.0, currency="CAD"))
        self.db.commit()

        rows = {r["symbol"]: r for r in aggregator.aggregate_positions(self.db, "all")}
        self.assertEqual(rows["ENB.TO"]["person_name"], "Multiple")
        self.assertEqual(rows["ENB.TO"]["number_of_accounts"], 3)
        self.assertFalse(rows["AAPL"]["is_aggregated"])

    def test_account_view_is_never_aggregated(self):
        rows = aggregator.aggregate_positions(self.db, "account", account_id="A1")
        self.assertEqual(len(rows), 1)
        self.assertFalse(rows[0]["is_aggregated"])
        self.assertEqual(rows[0]["account_id"], "A1")
        self.assertTrue(rows[0]["is_dividend_stock"])

    def test_non_payer_is_not_a_dividend_stock(self):
        rows = aggregator.aggregate_positions(self.db, "person", person_name="bob")
        self.assertFalse(rows[0]["is_dividend_stock"])
        self.assertEqual(rows[0]["dividend_per_share"], 0.0)

    def test_invalid_view_mode(self):
        with self.assertRaises(ValueError):
            aggregator.aggregate_positions(self.db, "household")

    def test_most_common_value_prefers_highest_on_tie(self):
        self.assertEqual(aggregator.most_common_value([0.5, 0.9, 0.9, 0.5]), 0.9)
        self.assertEqual(aggregator.most_common_value([0.0, None]), 0.0)

    def test_dropdown_options(self):
        options = aggregator.get_account_dropdown_options(self.db)
        values = [o["value"] for o in options]
        self.assertEqual(values[0], "all")
        self.assertIn("person-alice", values)
        self.assertIn("account-A2", values)
        alice = next(o for o in options if o["value"] == "person-alice")
        self.assertEqual(alice["label"], "All Accounts - Alice")


class TestSummary(PortfolioTestCase):
    def test_all_view_totals(self):
        summary = portfolio_service.get_aggregated_summary(self.db, "all")

        self.assertAlmostEqual(summary["total_investment"], 8000.0)
        self.assertAlmostEqual(summary["current_value"], 9500.0)
        self.assertAlmostEqual(summary["unrealized_pnl"], 1500.0)
        self.assertAlmostEqual(summary["total_dividends"], 90.0)
        self.assertAlmostEqual(summary["total_return_value"], 1590.0)
        self.assertAlmostEqual(summary["annual_projected_dividend"], 540.0)
        self.assertEqual(summary["number_of_positions"], 2)
        self.assertEqual(summary["number_of_accounts"], 3)
        self.assertEqual(summary["number_of_dividend_stocks"], 1)
        self.assertEqual(summary["currency"], "CAD")
        self.assertEqual([s["sector"] for s in summary["sector_allocation"]], ["Energy", "Technology"])
        self.assertEqual([p["person_name"] for p in summary["person_breakdown"]], ["alice", "bob"])
        self.assertTrue(summary["aggregation_info"]["has_aggregated_positions"])

    def test_yield_on_cost_modes(self):
        dividend_only = portfolio_service.get_aggregated_summary(self.db, "all")
        self.assertAlmostEqual(dividend_only["yield_on_cost_percent"], 540.0 / 6500.0 * 100)
        self.assertAlmostEqual(dividend_only["portfolio_yield_on_cost"], 6.75)

        everything = portfolio_service.get_aggregated_summary(self.db, "all", dividend_stocks_only=False)
        self.assertAlmostEqual(everything["yield_on_cost_percent"], 6.75)
        self.assertFalse(everything["yield_calculation_info"]["use_dividend_stocks_only"])

    def test_person_preference_drives_yield_mode(self):
        alice = self.db.query(Person).filter_by(person_name="alice").one()
        alice.preferences = {"portfolio": {"yield_on_cost_dividend_only": False}}
        self.db.commit()

        summary = portfolio_service.get_aggregated_summary(self.db, "person", person_name="alice")
        self.assertFalse(summary["yield_calculation_info"]["use_dividend_stocks_only"])
        self.assertEqual(summary["person_breakdown"], [])
        self.assertEqual([a["account_id"] for a in summary["accounts"]], ["A1", "A2"])
        self.assertEqual(summary["accounts"][0]["cash_balance"], 250.0)

    def test_empty_view_returns_none(self):
        self.assertIsNone(portfolio_service.get_aggregated_summary(self.db, "person", person_name="carol"))

    def test_positions_sorted_by_value(self):
        rows = portfolio_service.get_positions(self.db, "all")
        self.assertEqual([r["symbol"] for r in rows], ["ENB.TO", "AAPL"])

    def test_symbol_positions(self):
        rows = portfolio_service.get_symbol_positions(self.db, " enb.to ")
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["open_quantity"], 150)

    def test_person_comparison(self):
        rows = portfolio_service.get_person_comparison(self.db, ["alice", "carol"])
        self.assertTrue(rows[0]["has_data"])
        self.assertAlmostEqual(rows[0]["current_value"], 7500.0)
        self.assertFalse(rows[1]["has_data"])

    def test_account_allocation(self):
        rows = portfolio_service.get_account_allocation(self.db, "alice")
        self.assertEqual([r["account_id"] for r in rows], ["A1", "A2"])
        self.assertEqual(rows[0]["positions"][0]["percentage"], 100.0)


class TestActivityReports(PortfolioTestCase):
    def setUp(self):
        super().setUp()

        def add(when, type_, net, **extra):
            self.db.add(Activity(account_id="A1", person_name="alice", symbol="ENB.TO",
                                 transaction_date=when, type=type_, net_amount=net, **extra))

        add(datetime(2024, 1, 15, tzinfo=timezone.utc), "Dividend", 25.0)
        add(datetime(2024, 1, 30, tzinfo=timezone.utc), "Dividend", 5.0)
        add(datetime(2024, 4, 15, tzinfo=timezone.utc), "Dividend", 25.0)
        add(datetime(2024, 2, 1, tzinfo=timezone.utc), "Trade", -4000.0, action="Buy", commission=-9.99)
        add(datetime(2024, 5, 1, tzinfo=timezone.utc), "Trade", 1100.0, action="Sell", gross_amount=1000.0)
        add(datetime(2024, 5, 2, tzinfo=timezone.utc), "Trade", 900.0, action="Sell", gross_amount=1000.0)
        self.db.commit()

    def test_dividend_calendar_groups_by_month(self):
        calendar = portfolio_service.get_dividend_calendar(self.db, "person", person_name="alice")

        self.assertEqual([m["month"] for m in calendar], ["2024-04", "2024-01"])
        self.assertAlmostEqual(calendar[1]["total_amount"], 30.0)
        self.assertEqual(len(calendar[1]["dividends"]), 2)

        window = portfolio_service.get_dividend_calendar(
            self.db, start_date=datetime(2024, 3, 1, tzinfo=timezone.utc)
        )
        self.assertEqual([m["month"] for m in window], ["2024-04"])

    def test_scope_is_required(self):
        with self.assertRaises(ValueError):
            portfolio_service.get_dividend_calendar(self.db, "person")
        with self.assertRaises(ValueError):
            portfolio_service.get_performance_metrics(self.db, "account")

    def test_performance_metrics(self):
        metrics = portfolio_service.get_performance_metrics(self.db, "person", person_name="alice")

        self.assertAlmostEqual(metrics["unrealized_gains"], 1000.0)
        self.assertAlmostEqual(metrics["total_return_percent"], 25.0)
        self.assertAlmostEqual(metrics["total_dividends"], 55.0)
        self.assertAlmostEqual(metrics["total_commissions"], 9.99)
        self.assertAlmostEqual(metrics["win_rate"], 50.0)
        self.assertAlmostEqual(metrics["realized_gains"], 0.0)
        self.assertAlmostEqual(metrics["avg_win"], 100.0)
        self.assertAlmostEqual(metrics["avg_loss"], 100.0)


class TestSnapshotMetrics(PortfolioTestCase):
    def test_metrics_for_person(self):
        positions = self.db.query(Position).filter(Position.person_name == "alice").all()
        metrics = snapshot_service.calculate_snapshot_metrics(positions)

        self.assertAlmostEqual(metrics["current_value"], 7500.0)
        self.assertAlmostEqual(metrics["total_return_value"], 1090.0)
        self.assertAlmostEqual(metrics["monthly_projected_dividend"], 45.0)
        self.assertEqual(metrics["number_of_dividend_stocks"], 2)
        self.assertEqual(metrics["sector_allocation"], [{"sector": "Energy", "value": 7500.0, "percentage": 100.0}])

    def test_tiny_sectors_are_dropped(self):
        self.db.add(_position("B1", "bob", "XYZ", 77, 1, 5.0, 5.0, 0.0, industry_sector="Mining"))
        self.db.commit()

        positions = self.db.query(Position).filter(Position.person_name == "bob").all()
        sectors = [r["sector"] for r in snapshot_service.calculate_sector_allocation(positions, 2005.0)]
        self.assertEqual(sectors, ["Technology"])

    def test_sector_fallbacks(self):
        self.assertEqual(snapshot_service.sector_for(Position(symbol="JPM")), "Financial")
        self.assertEqual(snapshot_service.sector_for(Position(symbol="XEQT.TO")), "Canadian Equity")
        self.assertEqual(snapshot_service.sector_for(Position(symbol="ZZZ")), "Other")

    def test_history_and_cleanup(self):
        snapshot_service.create_portfolio_snapshot(self.db, "alice")
        old = snapshot_service.create_portfolio_snapshot(self.db, "alice")
        old.date = datetime.now(timezone.utc) - timedelta(days=400)
        self.db.commit()

        self.assertEqual(len(snapshot_service.get_snapshot_history(self.db, "alice")), 1)
        self.assertEqual(snapshot_service.clean_old_snapshots(self.db, "alice"), 1)
        latest = snapshot_service.get_latest_snapshot(self.db, "alice")
        self.assertAlmostEqual(latest.current_value, 7500.0)


if __name__ == "__main__":
    unittest.main()
