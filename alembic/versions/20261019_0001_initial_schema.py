"""Initial schema for tokens, ledger events, price snapshots and indexer bookkeeping.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Tokens
    op.create_table(
        "tokens",
        sa.Column("token_address", sa.String(42), nullable=False),
        sa.Column("amm_address", sa.String(42), nullable=False),
        sa.Column("creator_address", sa.String(42), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("symbol", sa.String(50), nullable=False),
        sa.Column("liquidity_percent", sa.Numeric(10, 4), nullable=False),
        sa.Column("initial_liquidity_eth", sa.Numeric(40, 18), nullable=False),
        sa.Column("launch_price_eth", sa.Numeric(40, 24), nullable=False),
        sa.Column("launch_display_rate", sa.Numeric(20, 8), nullable=False),
        sa.Column("block_number", sa.Integer(), nullable=False),
        sa.Column("block_hash", sa.String(66), nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_swap_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("swap_count_24h", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("activity_tier", sa.String(10), nullable=False, server_default="dormant"),
        sa.Column("last_tier_update", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_checked_block", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("indexed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("token_address"),
    )
    op.create_index(
        "idx_tokens_tier_priority", "tokens", ["activity_tier", "swap_count_24h", "last_checked_block"]
    )
    op.create_index("idx_tokens_block_number", "tokens", ["block_number"])
    op.create_index("idx_tokens_amm", "tokens", ["amm_address"])

    # Swaps
    op.create_table(
        "swaps",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("token_address", sa.String(42), nullable=False),
        sa.Column("amm_address", sa.String(42), nullable=False),
        sa.Column("trader_address", sa.String(42), nullable=False),
        sa.Column("eth_in", sa.Numeric(78, 0), nullable=False),
        sa.Column("token_in", sa.Numeric(78, 0), nullable=False),
        sa.Column("eth_out", sa.Numeric(78, 0), nullable=False),
        sa.Column("token_out", sa.Numeric(78, 0), nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("block_number", sa.Integer(), nullable=False),
        sa.Column("block_hash", sa.String(66), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tx_hash", name="uq_swaps_tx_hash"),
    )
    op.create_index("idx_swaps_token_ts", "swaps", ["token_address", "timestamp"])
    op.create_index("idx_swaps_block_number", "swaps", ["block_number"])

    # Locks
    op.create_table(
        "token_locks",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("lock_id", sa.Integer(), nullable=False),
        sa.Column("owner_address", sa.String(42), nullable=False),
        sa.Column("token_address", sa.String(42), nullable=False),
        sa.Column("amount", sa.Numeric(78, 0), nullable=False),
        sa.Column("lock_duration_seconds", sa.Integer(), nullable=False),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("unlock_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("withdrawn", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("withdrawn_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("withdraw_tx_hash", sa.String(66), nullable=True),
        sa.Column("withdraw_block_number", sa.Integer(), nullable=True),
        sa.Column("lock_tx_hash", sa.String(66), nullable=False),
        sa.Column("block_number", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("lock_tx_hash", name="uq_token_locks_tx_hash"),
        sa.UniqueConstraint("lock_id", name="uq_token_locks_lock_id"),
    )
    op.create_index("idx_token_locks_token", "token_locks", ["token_address"])
    op.create_index("idx_token_locks_owner", "token_locks", ["owner_address"])

    # Burns
    op.create_table(
        "token_burns",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("token_address", sa.String(42), nullable=False),
        sa.Column("from_address", sa.String(42), nullable=False),
        sa.Column("amount", sa.Numeric(78, 0), nullable=False),
        sa.Column("display_rate", sa.Numeric(20, 8), nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("block_number", sa.Integer(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("token_address", "tx_hash", name="uq_token_burns_token_tx"),
    )
    op.create_index("idx_token_burns_token_ts", "token_burns", ["token_address", "timestamp"])

    # Price snapshots
    op.create_table(
        "price_snapshots",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("token_address", sa.String(42), nullable=False),
        sa.Column("price_eth", sa.Numeric(40, 24), nullable=False),
        sa.Column("reserve_eth", sa.Numeric(78, 0), nullable=False),
        sa.Column("reserve_token", sa.Numeric(78, 0), nullable=False),
        sa.Column("display_rate", sa.Numeric(20, 8), nullable=False),
        sa.Column("interpolated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("block_number", sa.Integer(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("token_address", "block_number", name="uq_price_snapshots_token_block"),
    )
    op.create_index("idx_price_snapshots_token_ts", "price_snapshots", ["token_address", "timestamp"])

    # Reorg bookkeeping
    op.create_table(
        "indexer_state",
        sa.Column("partition", sa.String(20), nullable=False),
        sa.Column("last_block", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_block_hash", sa.String(66), nullable=True),
        sa.Column("confirmation_depth", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("partition"),
    )
    op.create_table(
        "block_checkpoints",
        sa.Column("block_number", sa.Integer(), autoincrement=False, nullable=False),
        sa.Column("block_hash", sa.String(66), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("block_number"),
    )

    # Lock coordinator
    op.create_table(
        "coordinator_locks",
        sa.Column("resource_key", sa.String(100), nullable=False),
        sa.Column("holder_request_id", sa.String(36), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("resource_key"),
    )
    op.create_table(
        "coordinator_queue",
        sa.Column("queue_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("resource_key", sa.String(100), nullable=False),
        sa.Column("request_id", sa.String(36), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("queue_id"),
        sa.UniqueConstraint("request_id", name="uq_coordinator_queue_request"),
    )
    op.create_index(
        "idx_coordinator_queue_key_status", "coordinator_queue", ["resource_key", "status", "queue_id"]
    )

    # Operational tables
    op.create_table(
        "skip_blocks",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("block_number", sa.Integer(), nullable=False),
        sa.Column("stream", sa.String(10), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("created_by", sa.String(50), nullable=False, server_default="manual"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("block_number", "stream", name="uq_skip_blocks_block_stream"),
    )
    op.create_table(
        "ingestion_errors",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("stream", sa.String(10), nullable=False),
        sa.Column("block_number", sa.Integer(), nullable=True),
        sa.Column("tx_hash", sa.String(66), nullable=True),
        sa.Column("error_type", sa.String(80), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_ingestion_errors_stream_block", "ingestion_errors", ["stream", "block_number"])
    op.create_table(
        "display_rates",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("observed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("rate", sa.Numeric(20, 8), nullable=False),
        sa.Column("source", sa.String(40), nullable=False, server_default="manual"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("observed_at", name="uq_display_rates_observed_at"),
    )
    op.create_table(
        "indexer_runs",
        sa.Column("run_id", sa.String(36), nullable=False),
        sa.Column("tier", sa.String(10), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tokens_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("blocks_scanned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("events_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("swaps_found", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("errors_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reorg_rollbacks", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("run_id"),
    )
    op.create_index("idx_indexer_runs_tier_started", "indexer_runs", ["tier", "started_at"])


def downgrade() -> None:
    op.drop_index("idx_indexer_runs_tier_started", table_name="indexer_runs")
    op.drop_table("indexer_runs")
    op.drop_table("display_rates")
    op.drop_index("idx_ingestion_errors_stream_block", table_name="ingestion_errors")
    op.drop_table("ingestion_errors")
    op.drop_table("skip_blocks")
    op.drop_index("idx_coordinator_queue_key_status", table_name="coordinator_queue")
    op.drop_table("coordinator_queue")
    op.drop_table("coordinator_locks")
    op.drop_table("block_checkpoints")
    op.drop_table("indexer_state")
    op.drop_index("idx_price_snapshots_token_ts", table_name="price_snapshots")
    op.drop_table("price_snapshots")
    op.drop_index("idx_token_burns_token_ts", table_name="token_burns")
    op.drop_table("token_burns")
    op.drop_index("idx_token_locks_owner", table_name="token_locks")
    op.drop_index("idx_token_locks_token", table_name="token_locks")
    op.drop_table("token_locks")
    op.drop_index("idx_swaps_block_number", table_name="swaps")
    op.drop_index("idx_swaps_token_ts", table_name="swaps")
    op.drop_table("swaps")
    op.drop_index("idx_tokens_amm", table_name="tokens")
    op.drop_index("idx_tokens_block_number", table_name="tokens")
    op.drop_index("idx_tokens_tier_priority", table_name="tokens")
    op.drop_table("tokens")
