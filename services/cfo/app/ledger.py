"""
Position and Transaction Ledger

Durable store of positions, transactions and daily snapshots. It is the
single source of truth for realized and unrealized P&L.

Rules enforced here:
- unrealized_pnl_usd = current_value_usd - cost_basis_usd while a position is open
- close_position() is the only path to CLOSED; it stamps closed_at once and
  a second close is ignored (returns False, stored values unchanged)
- external_id is unique per strategy among positions that are not closed
- transaction inserts are idempotent on id
- every write failure is logged and raised as LedgerError

@module ledger
"""

import json
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import asyncpg

from .errors import LedgerError
from .models import (
    DailySnapshot,
    Position,
    PositionStatus,
    Transaction,
    compute_unrealized,
    round_usd,
)


logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS cfo_positions (
    id TEXT PRIMARY KEY,
    strategy TEXT NOT NULL,
    asset TEXT NOT NULL,
    description TEXT,
    chain TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'OPEN',
    entry_price DOUBLE PRECISION,
    current_price DOUBLE PRECISION,
    exit_price DOUBLE PRECISION,
    size_units DOUBLE PRECISION,
    cost_basis_usd DOUBLE PRECISION NOT NULL DEFAULT 0,
    current_value_usd DOUBLE PRECISION NOT NULL DEFAULT 0,
    realized_pnl_usd DOUBLE PRECISION NOT NULL DEFAULT 0,
    unrealized_pnl_usd DOUBLE PRECISION NOT NULL DEFAULT 0,
    entry_tx_hash TEXT,
    exit_tx_hash TEXT,
    external_id TEXT,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    opened_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    closed_at TIMESTAMPTZ,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_cfo_positions_strategy ON cfo_positions (strategy);
CREATE INDEX IF NOT EXISTS idx_cfo_positions_status ON cfo_positions (status);
CREATE UNIQUE INDEX IF NOT EXISTS idx_cfo_positions_external
    ON cfo_positions (strategy, external_id) WHERE external_id IS NOT NULL AND status <> 'CLOSED';

CREATE TABLE IF NOT EXISTS cfo_transactions (
    id TEXT PRIMARY KEY,
    timestamp TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    chain TEXT NOT NULL,
    strategy_tag TEXT NOT NULL,
    tx_type TEXT NOT NULL,
    token_in TEXT,
    amount_in DOUBLE PRECISION,
    token_out TEXT,
    amount_out DOUBLE PRECISION,
    fee_usd DOUBLE PRECISION NOT NULL DEFAULT 0,
    tx_hash TEXT,
    wallet_address TEXT,
    position_id TEXT,
    status TEXT NOT NULL DEFAULT 'confirmed',
    error_message TEXT,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb
);
CREATE INDEX IF NOT EXISTS idx_cfo_transactions_timestamp ON cfo_transactions (timestamp DESC);
CREATE INDEX IF NOT EXISTS idx_cfo_transactions_strategy ON cfo_transactions (strategy_tag);

CREATE TABLE IF NOT EXISTS cfo_daily_snapshots (
    date DATE PRIMARY KEY,
    total_portfolio_usd DOUBLE PRECISION NOT NULL,
    by_strategy JSONB NOT NULL DEFAULT '{}'::jsonb,
    realized_pnl_24h DOUBLE PRECISION NOT NULL DEFAULT 0,
    unrealized_pnl DOUBLE PRECISION NOT NULL DEFAULT 0,
    yield_earned_24h DOUBLE PRECISION NOT NULL DEFAULT 0,
    revenue JSONB NOT NULL DEFAULT '{}'::jsonb,
    open_positions INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

POSITION_COLUMNS = """
    id, strategy, asset, description, chain, status,
    entry_price, current_price, exit_price, size_units,
    cost_basis_usd, current_value_usd, realized_pnl_usd, unrealized_pnl_usd,
    entry_tx_hash, exit_tx_hash, external_id, metadata,
    opened_at, closed_at, updated_at
"""


class Ledger:
    """Postgres-backed ledger. Callers supply USD-denominated values."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def ensure_schema(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)

    # =========================================================================
    # Positions
    # =========================================================================

    async def upsert_position(self, position: Position) -> Position:
        """
        Insert a position or refresh its mutable fields.

        Refuses CLOSED (use close_position) and never touches a row that is
        already closed. Unrealized P&L is derived here, not taken from the caller.
        """
        if position.status == PositionStatus.CLOSED:
            raise ValueError("upsert_position cannot close a position; use close_position")

        position.cost_basis_usd = round_usd(position.cost_basis_usd)
        position.current_value_usd = round_usd(position.current_value_usd)
        position.unrealized_pnl_usd = compute_unrealized(
            position.current_value_usd, position.cost_basis_usd
        )

        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO cfo_positions (
                        id, strategy, asset, description, chain, status,
                        entry_price, current_price, size_units,
                        cost_basis_usd, current_value_usd, realized_pnl_usd, unrealized_pnl_usd,
                        entry_tx_hash, external_id, metadata, opened_at, updated_at
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17, NOW())
                    ON CONFLICT (id) DO UPDATE SET
                        status = EXCLUDED.status,
                        current_price = EXCLUDED.current_price,
                        size_units = EXCLUDED.size_units,
                        cost_basis_usd = EXCLUDED.cost_basis_usd,
                        current_value_usd = EXCLUDED.current_value_usd,
                        realized_pnl_usd = EXCLUDED.realized_pnl_usd,
                        unrealized_pnl_usd = EXCLUDED.unrealized_pnl_usd,
                        metadata = EXCLUDED.metadata,
                        updated_at = NOW()
                    WHERE cfo_positions.status <> 'CLOSED'
                    """,
                    position.id,
                    position.strategy.value,
                    position.asset,
                    position.description,
                    position.chain,
                    position.status.value,
                    position.entry_price,
                    position.current_price,
                    position.size_units,
                    position.cost_basis_usd,
                    position.current_value_usd,
                    position.realized_pnl_usd,
                    position.unrealized_pnl_usd,
                    position.entry_tx_hash,
                    position.external_id,
                    json.dumps(position.metadata),
                    position.opened_at,
                )
        except Exception as e:
            logger.error(f"Failed to upsert position {position.id}: {e}")
            raise LedgerError(f"upsert_position {position.id}: {e}") from e

        return position

    async def get_position(self, position_id: str) -> Optional[Position]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {POSITION_COLUMNS} FROM cfo_positions WHERE id = $1",
                position_id,
            )
        return Position.from_row(row) if row else None

    async def get_position_by_external_id(
        self, external_id: str, strategy: Optional[str] = None
    ) -> Optional[Position]:
        query = f"SELECT {POSITION_COLUMNS} FROM cfo_positions WHERE external_id = $1"
        params: List[Any] = [external_id]
        if strategy:
            query += " AND strategy = $2"
            params.append(strategy)
        query += " ORDER BY opened_at DESC LIMIT 1"

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(query, *params)
        return Position.from_row(row) if row else None

    async def get_open_positions(self, strategy: Optional[str] = None) -> List[Position]:
        """Every position not CLOSED, newest first."""
        query = f"SELECT {POSITION_COLUMNS} FROM cfo_positions WHERE status <> 'CLOSED'"
        params: List[Any] = []
        if strategy:
            query += " AND strategy = $1"
            params.append(strategy)
        query += " ORDER BY opened_at DESC"

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [Position.from_row(r) for r in rows]

    async def close_position(
        self,
        position_id: str,
        exit_ref: Optional[str],
        realized_pnl_usd: float,
        received_usd: Optional[float] = None,
        exit_price: Optional[float] = None,
    ) -> bool:
        """
        Transition a position to CLOSED.

        current_value_usd becomes the realized amount (received_usd, or
        cost basis plus P&L when the caller only knows the P&L).

        Returns:
            True if the position was closed by this call, False if it was
            already closed or does not exist.
        """
        pnl = round_usd(realized_pnl_usd)
        received = round_usd(received_usd) if received_usd is not None else None

        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    UPDATE cfo_positions
                    SET status = 'CLOSED',
                        exit_tx_hash = $2,
                        realized_pnl_usd = $3,
                        current_value_usd = COALESCE($4, cost_basis_usd + $3),
                        unrealized_pnl_usd = 0,
                        exit_price = COALESCE($5, current_price),
                        closed_at = NOW(),
                        updated_at = NOW()
                    WHERE id = $1 AND status <> 'CLOSED'
                    RETURNING id
                    """,
                    position_id,
                    exit_ref,
                    pnl,
                    received,
                    exit_price,
                )
        except Exception as e:
            logger.error(f"Failed to close position {position_id}: {e}")
            raise LedgerError(f"close_position {position_id}: {e}") from e

        if row is None:
            logger.warning(f"close_position ignored for {position_id}: already closed or unknown")
            return False
        return True

    async def reopen_position(self, position_id: str, current_value_usd: Optional[float] = None) -> bool:
        """Put a CLOSED position back under management (ghost recovery)."""
        value = round_usd(current_value_usd) if current_value_usd is not None else None
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    UPDATE cfo_positions
                    SET status = 'OPEN',
                        closed_at = NULL,
                        exit_tx_hash = NULL,
                        exit_price = NULL,
                        realized_pnl_usd = 0,
                        current_value_usd = COALESCE($2, current_value_usd),
                        unrealized_pnl_usd = ROUND((COALESCE($2, current_value_usd) - cost_basis_usd)::numeric, 2)::double precision,
                        updated_at = NOW()
                    WHERE id = $1 AND status = 'CLOSED'
                    RETURNING id
                    """,
                    position_id,
                    value,
                )
        except Exception as e:
            logger.error(f"Failed to reopen position {position_id}: {e}")
            raise LedgerError(f"reopen_position {position_id}: {e}") from e
        return row is not None

    async def update_position_price(self, position_id: str, price: float, value_usd: float) -> bool:
        value = round_usd(value_usd)
        try:
            async with self.pool.acquire() as conn:
                result = await conn.execute(
                    """
                    UPDATE cfo_positions
                    SET current_price = $2,
                        current_value_usd = $3,
                        unrealized_pnl_usd = ROUND(($3 - cost_basis_usd)::numeric, 2)::double precision,
                        updated_at = NOW()
                    WHERE id = $1 AND status <> 'CLOSED'
                    """,
                    position_id,
                    price,
                    value,
                )
        except Exception as e:
            logger.error(f"Failed to update price for {position_id}: {e}")
            raise LedgerError(f"update_position_price {position_id}: {e}") from e
        return result.endswith(" 1")

    async def update_position_metadata(
        self,
        position_id: str,
        patch: Optional[Dict[str, Any]] = None,
        remove_keys: Optional[List[str]] = None,
    ) -> None:
        """Merge `patch` into metadata and drop `remove_keys`."""
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    UPDATE cfo_positions
                    SET metadata = (COALESCE(metadata, '{}'::jsonb) - $3::text[]) || $2::jsonb,
                        updated_at = NOW()
                    WHERE id = $1
                    """,
                    position_id,
                    json.dumps(patch or {}),
                    list(remove_keys or []),
                )
        except Exception as e:
            logger.error(f"Failed to update metadata for {position_id}: {e}")
            raise LedgerError(f"update_position_metadata {position_id}: {e}") from e

    async def get_total_unrealized_pnl(self) -> float:
        async with self.pool.acquire() as conn:
            total = await conn.fetchval(
                "SELECT COALESCE(SUM(unrealized_pnl_usd), 0) FROM cfo_positions WHERE status <> 'CLOSED'"
            )
        return round_usd(total)

    async def get_total_realized_pnl(self, since: Optional[datetime] = None) -> float:
        async with self.pool.acquire() as conn:
            if since:
                total = await conn.fetchval(
                    """
                    SELECT COALESCE(SUM(realized_pnl_usd), 0) FROM cfo_positions
                    WHERE status = 'CLOSED' AND closed_at >= $1
                    """,
                    since,
                )
            else:
                total = await conn.fetchval(
                    "SELECT COALESCE(SUM(realized_pnl_usd), 0) FROM cfo_positions WHERE status = 'CLOSED'"
                )
        return round_usd(total)

    async def get_portfolio_metrics(self) -> Dict[str, Any]:
        """Open exposure grouped by strategy."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT strategy,
                       COUNT(*) AS positions,
                       COALESCE(SUM(current_value_usd), 0) AS value_usd,
                       COALESCE(SUM(cost_basis_usd), 0) AS cost_basis_usd,
                       COALESCE(SUM(unrealized_pnl_usd), 0) AS unrealized_pnl_usd
                FROM cfo_positions
                WHERE status <> 'CLOSED'
                GROUP BY strategy
                """
            )

        by_strategy = {
            row["strategy"]: {
                "positions": row["positions"],
                "value_usd": round_usd(row["value_usd"]),
                "cost_basis_usd": round_usd(row["cost_basis_usd"]),
                "unrealized_pnl_usd": round_usd(row["unrealized_pnl_usd"]),
            }
            for row in rows
        }
        return {
            "total_value_usd": round_usd(sum(s["value_usd"] for s in by_strategy.values())),
            "total_unrealized_pnl_usd": round_usd(
                sum(s["unrealized_pnl_usd"] for s in by_strategy.values())
            ),
            "open_positions": sum(s["positions"] for s in by_strategy.values()),
            "by_strategy": by_strategy,
        }

    # =========================================================================
    # Transactions
    # =========================================================================

    async def insert_transaction(self, tx: Transaction) -> bool:
        """
        Append a transaction. Inserting an id that already exists is a no-op.

        Returns:
            True if a row was written, False for a duplicate id.
        """
        try:
            async with self.pool.acquire() as conn:
                result = await conn.execute(
                    """
                    INSERT INTO cfo_transactions (
                        id, timestamp, chain, strategy_tag, tx_type,
                        token_in, amount_in, token_out, amount_out, fee_usd,
                        tx_hash, wallet_address, position_id, status, error_message, metadata
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16)
                    ON CONFLICT (id) DO NOTHING
                    """,
                    tx.id,
                    tx.timestamp,
                    tx.chain,
                    tx.strategy_tag,
                    tx.tx_type.value,
                    tx.token_in,
                    tx.amount_in,
                    tx.token_out,
                    tx.amount_out,
                    round_usd(tx.fee_usd),
                    tx.tx_hash,
                    tx.wallet_address,
                    tx.position_id,
                    tx.status.value,
                    tx.error_message,
                    json.dumps(tx.metadata),
                )
        except Exception as e:
            logger.error(f"Failed to insert transaction {tx.id}: {e}")
            raise LedgerError(f"insert_transaction {tx.id}: {e}") from e

        return result.endswith(" 1")

    async def get_recent_transactions(
        self, limit: int = 50, strategy: Optional[str] = None
    ) -> List[Transaction]:
        async with self.pool.acquire() as conn:
            if strategy:
                rows = await conn.fetch(
                    """
                    SELECT * FROM cfo_transactions
                    WHERE strategy_tag = $1
                    ORDER BY timestamp DESC LIMIT $2
                    """,
                    strategy,
                    limit,
                )
            else:
                rows = await conn.fetch(
                    "SELECT * FROM cfo_transactions ORDER BY timestamp DESC LIMIT $1",
                    limit,
                )
        return [Transaction.from_row(r) for r in rows]

    async def get_daily_volume(self, day: Optional[date] = None) -> Dict[str, Any]:
        """Transaction count and fees for one UTC day."""
        day = day or datetime.now(timezone.utc).date()
        start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT COUNT(*) AS count,
                       COUNT(*) FILTER (WHERE status = 'failed') AS failed,
                       COALESCE(SUM(fee_usd), 0) AS fees_usd
                FROM cfo_transactions
                WHERE timestamp >= $1 AND timestamp < $2
                """,
                start,
                start + timedelta(days=1),
            )
        return {
            "date": day.isoformat(),
            "count": row["count"],
            "failed": row["failed"],
            "fees_usd": round_usd(row["fees_usd"]),
        }

    # =========================================================================
    # Daily snapshots
    # =========================================================================

    async def upsert_daily_snapshot(self, snapshot: DailySnapshot) -> None:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO cfo_daily_snapshots (
                        date, total_portfolio_usd, by_strategy, realized_pnl_24h,
                        unrealized_pnl, yield_earned_24h, revenue, open_positions
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    ON CONFLICT (date) DO UPDATE SET
                        total_portfolio_usd = EXCLUDED.total_portfolio_usd,
                        by_strategy = EXCLUDED.by_strategy,
                        realized_pnl_24h = EXCLUDED.realized_pnl_24h,
                        unrealized_pnl = EXCLUDED.unrealized_pnl,
                        yield_earned_24h = EXCLUDED.yield_earned_24h,
                        revenue = EXCLUDED.revenue,
                        open_positions = EXCLUDED.open_positions
                    """,
                    snapshot.date,
                    round_usd(snapshot.total_portfolio_usd),
                    json.dumps(snapshot.by_strategy),
                    round_usd(snapshot.realized_pnl_24h),
                    round_usd(snapshot.unrealized_pnl),
                    round_usd(snapshot.yield_earned_24h),
                    json.dumps(snapshot.revenue),
                    snapshot.open_positions,
                )
        except Exception as e:
            logger.error(f"Failed to upsert snapshot {snapshot.date}: {e}")
            raise LedgerError(f"upsert_daily_snapshot {snapshot.date}: {e}") from e

    async def get_snapshots(self, days: int = 30) -> List[DailySnapshot]:
        since = datetime.now(timezone.utc).date() - timedelta(days=days)
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM cfo_daily_snapshots WHERE date >= $1 ORDER BY date DESC",
                since,
            )
        return [DailySnapshot.from_row(r) for r in rows]

    async def build_snapshot(self, day: Optional[date] = None) -> DailySnapshot:
        """Assemble today's snapshot from current ledger state."""
        day = day or datetime.now(timezone.utc).date()
        metrics = await self.get_portfolio_metrics()
        realized = await self.get_total_realized_pnl(
            since=datetime.now(timezone.utc) - timedelta(hours=24)
        )
        return DailySnapshot(
            date=day,
            total_portfolio_usd=metrics["total_value_usd"],
            by_strategy={k: v["value_usd"] for k, v in metrics["by_strategy"].items()},
            realized_pnl_24h=realized,
            unrealized_pnl=metrics["total_unrealized_pnl_usd"],
            open_positions=metrics["open_positions"],
        )

    async def refresh_daily_snapshot(self) -> DailySnapshot:
        snapshot = await self.build_snapshot()
        await self.upsert_daily_snapshot(snapshot)
        return snapshot
