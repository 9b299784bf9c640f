"""
Agent State Store

One JSON blob per agent instance holding everything that must survive a
restart but does not belong in the ledger:

    {
        "pendingApprovals": [...],
        "cooldownState": {"stake": "2026-01-01T00:00:00+00:00", ...},
        "emergencyPausedUntil": "2026-01-01T04:00:00+00:00" | null,
        "manualPaused": false,
        "miscCounters": {"approval_seq": 12, ...}
    }

The blob is rewritten wholesale on every mutation. Writes are serialized
so an older snapshot can never land after a newer one.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import asyncpg

from .errors import LedgerError


logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS cfo_agent_state (
    agent_id TEXT PRIMARY KEY,
    data JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE TABLE IF NOT EXISTS cfo_kv (
    key TEXT PRIMARY KEY,
    data JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


@dataclass
class AgentState:
    pending_approvals: List[Dict[str, Any]] = field(default_factory=list)
    cooldown_state: Dict[str, str] = field(default_factory=dict)
    emergency_paused_until: Optional[str] = None
    manual_paused: bool = False
    misc_counters: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pendingApprovals": self.pending_approvals,
            "cooldownState": self.cooldown_state,
            "emergencyPausedUntil": self.emergency_paused_until,
            "manualPaused": self.manual_paused,
            "miscCounters": self.misc_counters,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentState":
        return cls(
            pending_approvals=list(data.get("pendingApprovals") or []),
            cooldown_state=dict(data.get("cooldownState") or {}),
            emergency_paused_until=data.get("emergencyPausedUntil"),
            manual_paused=bool(data.get("manualPaused", False)),
            misc_counters=dict(data.get("miscCounters") or {}),
        )


class StateStore:
    """Holds the live AgentState and writes it back to Postgres."""

    def __init__(self, pool: asyncpg.Pool, agent_id: str):
        self.pool = pool
        self.agent_id = agent_id
        self.state = AgentState()
        self._write_lock = asyncio.Lock()

    async def ensure_schema(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)

    async def load(self) -> Optional[AgentState]:
        """
        Load the persisted blob into self.state.

        Returns:
            The loaded state, or None on first boot (self.state stays empty).
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT data FROM cfo_agent_state WHERE agent_id = $1",
                self.agent_id,
            )
        if not row:
            logger.info(f"No persisted state for agent {self.agent_id}")
            return None

        data = row["data"]
        if isinstance(data, str):
            data = json.loads(data)
        self.state = AgentState.from_dict(data or {})
        return self.state

    async def save(self) -> None:
        """Rewrite the whole blob. Failures propagate."""
        async with self._write_lock:
            payload = json.dumps(self.state.to_dict())
            try:
                async with self.pool.acquire() as conn:
                    await conn.execute(
                        """
                        INSERT INTO cfo_agent_state (agent_id, data, updated_at)
                        VALUES ($1, $2, NOW())
                        ON CONFLICT (agent_id) DO UPDATE SET
                            data = EXCLUDED.data,
                            updated_at = EXCLUDED.updated_at
                        """,
                        self.agent_id,
                        payload,
                    )
            except Exception as e:
                logger.error(f"Failed to persist agent state: {e}")
                raise LedgerError(f"state save failed: {e}") from e

    def next_counter(self, name: str) -> int:
        value = int(self.state.misc_counters.get(name, 0)) + 1
        self.state.misc_counters[name] = value
        return value

    async def claim_key(self, key: str, data: Dict[str, Any]) -> bool:
        """Write a kv entry once. Returns False if the key already existed."""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                INSERT INTO cfo_kv (key, data) VALUES ($1, $2)
                ON CONFLICT (key) DO NOTHING
                """,
                key,
                json.dumps(data),
            )
        return result.endswith(" 1")
