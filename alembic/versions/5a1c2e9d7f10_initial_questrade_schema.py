"""initial questrade schema

Revision ID: 5a1c2e9d7f10
Revises:
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "5a1c2e9d7f10"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps(*, updated: bool = True) -> list:
    cols = [sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())]
    if updated:
        cols.append(sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()))
    return cols


def _money(name: str) -> sa.Column:
    return sa.Column(name, sa.Float(), nullable=False, server_default="0")


def upgrade() -> None:
    op.create_table(
        "persons",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("person_name", sa.String(length=120), nullable=False),
        sa.Column("display_name", sa.String(length=200), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("phone_number", sa.String(length=40), nullable=True),
        sa.Column("preferences", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("has_valid_token", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_token_refresh", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_successful_sync", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_status", sa.String(length=20), nullable=True),
        sa.Column("last_sync_error", sa.Text(), nullable=True),
        sa.Column("last_sync_results", sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_persons_id", "persons", ["id"])
    op.create_index("ix_persons_person_name", "persons", ["person_name"], unique=True)

    op.create_table(
        "questrade_tokens",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("person_name", sa.String(length=120), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("encrypted_token", sa.Text(), nullable=False),
        sa.Column("api_server", sa.String(length=255), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_used", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_successful_use", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_questrade_tokens_id", "questrade_tokens", ["id"])
    op.create_index("ix_questrade_tokens_person_name", "questrade_tokens", ["person_name"])
    op.create_index(
        "ix_questrade_tokens_person_type_active", "questrade_tokens", ["person_name", "type", "is_active"]
    )

    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("account_id", sa.String(length=40), nullable=False),
        sa.Column("person_name", sa.String(length=120), nullable=False),
        sa.Column("type", sa.String(length=40), nullable=True),
        sa.Column("number", sa.String(length=40), nullable=True),
        sa.Column("status", sa.String(length=40), nullable=True),
        sa.Column("is_primary", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_billing", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("client_account_type", sa.String(length=60), nullable=True),
        sa.Column("display_name", sa.String(length=200), nullable=True),
        sa.Column("nickname", sa.String(length=200), nullable=True),
        sa.Column("balances", sa.JSON(), nullable=True),
        sa.Column("number_of_positions", sa.Integer(), nullable=False, server_default="0"),
        _money("total_investment"),
        _money("current_value"),
        _money("day_pnl"),
        _money("open_pnl"),
        _money("closed_pnl"),
        _money("total_pnl"),
        _money("net_deposits"),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_accounts_id", "accounts", ["id"])
    op.create_index("ix_accounts_account_id", "accounts", ["account_id"], unique=True)
    op.create_index("ix_accounts_person_name", "accounts", ["person_name"])

    op.create_table(
        "positions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("account_id", sa.String(length=40), nullable=False),
        sa.Column("person_name", sa.String(length=120), nullable=False),
        sa.Column("symbol", sa.String(length=32), nullable=False),
        sa.Column("symbol_id", sa.Integer(), nullable=False),
        _money("open_quantity"),
        _money("closed_quantity"),
        _money("current_market_value"),
        _money("current_price"),
        _money("average_entry_price"),
        _money("day_pnl"),
        _money("closed_pnl"),
        _money("open_pnl"),
        _money("total_cost"),
        sa.Column("is_real_time", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_under_reorg", sa.Boolean(), nullable=False, server_default=sa.false()),
        _money("total_return_percent"),
        _money("total_return_value"),
        _money("capital_gain_percent"),
        _money("capital_gain_value"),
        sa.Column("dividend_data", sa.JSON(), nullable=True),
        _money("dividend_per_share"),
        sa.Column("is_dividend_stock", sa.Boolean(), nullable=False, server_default=sa.false()),
        _money("current_yield"),
        sa.Column("market_data", sa.JSON(), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="CAD"),
        sa.Column("security_type", sa.String(length=40), nullable=True),
        sa.Column("industry_sector", sa.String(length=120), nullable=True),
        sa.Column("industry_group", sa.String(length=120), nullable=True),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("account_id", "symbol_id", "person_name", name="uq_positions_account_symbol_person"),
    )
    op.create_index("ix_positions_id", "positions", ["id"])
    op.create_index("ix_positions_account_id", "positions", ["account_id"])
    op.create_index("ix_positions_person_name", "positions", ["person_name"])
    op.create_index("ix_positions_symbol", "positions", ["symbol"])

    op.create_table(
        "activities",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("account_id", sa.String(length=40), nullable=False),
        sa.Column("person_name", sa.String(length=120), nullable=False),
        sa.Column("trade_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("transaction_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("settlement_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("action", sa.String(length=40), nullable=True),
        sa.Column("symbol", sa.String(length=32), nullable=True),
        sa.Column("symbol_id", sa.Integer(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=True),
        _money("quantity"),
        _money("price"),
        _money("gross_amount"),
        _money("commission"),
        _money("net_amount"),
        sa.Column("type", sa.String(length=20), nullable=False, server_default="Other"),
        sa.Column("raw_type", sa.String(length=60), nullable=True),
        sa.Column("is_dividend", sa.Boolean(), nullable=False, server_default=sa.false()),
        _money("dividend_per_share"),
        sa.Column("raw", sa.JSON(), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index("ix_activities_id", "activities", ["id"])
    op.create_index("ix_activities_account_id", "activities", ["account_id"])
    op.create_index("ix_activities_person_name", "activities", ["person_name"])
    op.create_index(
        "ix_activities_person_account_date", "activities", ["person_name", "account_id", "transaction_date"]
    )
    op.create_index("ix_activities_symbol_type", "activities", ["symbol", "type"])

    op.create_table(
        "symbols",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("symbol_id", sa.Integer(), nullable=False),
        sa.Column("symbol", sa.String(length=32), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("security_type", sa.String(length=40), nullable=True),
        sa.Column("listing_exchange", sa.String(length=40), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=True),
        sa.Column("is_tradable", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_quotable", sa.Boolean(), nullable=False, server_default=sa.true()),
        _money("prev_day_close_price"),
        _money("high_price_52"),
        _money("low_price_52"),
        _money("average_vol_3_months"),
        _money("average_vol_20_days"),
        _money("outstanding_shares"),
        _money("eps"),
        _money("pe"),
        _money("market_cap"),
        _money("dividend"),
        _money("yield_percent"),
        sa.Column("ex_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dividend_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dividend_frequency", sa.String(length=40), nullable=True),
        sa.Column("industry_sector", sa.String(length=120), nullable=True),
        sa.Column("industry_group", sa.String(length=120), nullable=True),
        sa.Column("industry_sub_group", sa.String(length=120), nullable=True),
        sa.Column("raw", sa.JSON(), nullable=True),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_symbols_id", "symbols", ["id"])
    op.create_index("ix_symbols_symbol_id", "symbols", ["symbol_id"], unique=True)
    op.create_index("ix_symbols_symbol", "symbols", ["symbol"])

    op.create_table(
        "market_quotes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("symbol", sa.String(length=32), nullable=False),
        sa.Column("symbol_id", sa.Integer(), nullable=False),
        sa.Column("bid_price", sa.Float(), nullable=True),
        sa.Column("ask_price", sa.Float(), nullable=True),
        sa.Column("last_trade_price", sa.Float(), nullable=True),
        sa.Column("open_price", sa.Float(), nullable=True),
        sa.Column("high_price", sa.Float(), nullable=True),
        sa.Column("low_price", sa.Float(), nullable=True),
        sa.Column("volume", sa.Float(), nullable=True),
        sa.Column("is_snap_quote", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_halted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("quote_time", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_market_quotes_id", "market_quotes", ["id"])
    op.create_index("ix_market_quotes_symbol", "market_quotes", ["symbol"])
    op.create_index("ix_market_quotes_symbol_id", "market_quotes", ["symbol_id"])

    op.create_table(
        "portfolio_snapshots",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("person_name", sa.String(length=120), nullable=True),
        sa.Column("view_mode", sa.String(length=16), nullable=False, server_default="person"),
        sa.Column("account_id", sa.String(length=40), nullable=True),
        sa.Column("date", sa.DateTime(timezone=True), nullable=False),
        _money("total_investment"),
        _money("current_value"),
        _money("unrealized_pnl"),
        _money("total_return_value"),
        _money("total_return_percent"),
        _money("total_dividends_received"),
        _money("annual_projected_dividend"),
        _money("monthly_projected_dividend"),
        _money("average_yield_percent"),
        _money("yield_on_cost_percent"),
        sa.Column("number_of_positions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("number_of_dividend_stocks", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sector_allocation", sa.JSON(), nullable=True),
        sa.Column("currency_breakdown", sa.JSON(), nullable=True),
        sa.Column("asset_allocation", sa.JSON(), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index("ix_portfolio_snapshots_id", "portfolio_snapshots", ["id"])
    op.create_index("ix_portfolio_snapshots_date", "portfolio_snapshots", ["date"])
    op.create_index("ix_portfolio_snapshots_person_date", "portfolio_snapshots", ["person_name", "date"])


def downgrade() -> None:
    for table in (
        "portfolio_snapshots",
        "market_quotes",
        "symbols",
        "activities",
        "positions",
        "accounts",
        "questrade_tokens",
        "persons",
    ):
        op.drop_table(table)
