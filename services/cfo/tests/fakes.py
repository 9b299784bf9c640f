"""
In-memory stand-ins for the Postgres-backed ledger and state store.

They subclass the real classes and keep the same rules (closed rows are
never touched by upserts, a second close is ignored, transaction ids are
idempotent, the state blob is rewritten wholesale) so component tests run
without a database.
"""

import asyncio
import copy
import json
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Set
from unittest.mock import AsyncMock, MagicMock

from app.errors import LedgerError, VenueTransientError
from app.ledger import Ledger
from app.models import (
    DailySnapshot,
    Decision,
    DecisionType,
    Position,
    PositionStatus,
    Tier,
    Transaction,
    Urgency,
    compute_unrealized,
    round_usd,
    utcnow,
)
from app.producer import CooldownTracker, DecisionProducer, PortfolioState
from app.state_store import AgentState, StateStore
from app.venues import OrderRequest, OrderResult, PaperVenue


class MemoryLedger(Ledger):

    def __init__(self):
        super().__init__(pool=None)
        self.positions: Dict[str, Position] = {}
        self.transactions: Dict[str, Transaction] = {}
        self.snapshots: Dict[date, DailySnapshot] = {}
        # Method names that raise LedgerError when called
        self.fail_on: Set[str] = set()

    def _maybe_fail(self, op: str) -> None:
        if op in self.fail_on:
            raise LedgerError(f"{op}: simulated write failure")

    async def ensure_schema(self) -> None:
        return None

    async def upsert_position(self, position: Position) -> Position:
        if position.status == PositionStatus.CLOSED:
            raise ValueError("upsert_position cannot close a position; use close_position")
        self._maybe_fail("upsert_position")

        position.cost_basis_usd = round_usd(position.cost_basis_usd)
        position.current_value_usd = round_usd(position.current_value_usd)
        position.unrealized_pnl_usd = compute_unrealized(position.current_value_usd, position.cost_basis_usd)

        for other in self.positions.values():
            if (
                other.id != position.id
                and position.external_id
                and other.external_id == position.external_id
                and other.strategy == position.strategy
                and other.status != PositionStatus.CLOSED
            ):
                raise LedgerError(f"duplicate external_id {position.external_id}")

        existing = self.positions.get(position.id)
        if existing is not None and existing.status == PositionStatus.CLOSED:
            return position
        self.positions[position.id] = copy.deepcopy(position)
        return position

    async def get_position(self, position_id: str) -> Optional[Position]:
        position = self.positions.get(position_id)
        return copy.deepcopy(position) if position else None

    async def get_position_by_external_id(
        self, external_id: str, strategy: Optional[str] = None
    ) -> Optional[Position]:
        matches = [
            p for p in self.positions.values()
            if p.external_id == external_id and (strategy is None or p.strategy.value == strategy)
        ]
        if not matches:
            return None
        return copy.deepcopy(max(matches, key=lambda p: p.opened_at))

    async def get_open_positions(self, strategy: Optional[str] = None) -> List[Position]:
        positions = [
            p for p in self.positions.values()
            if p.status != PositionStatus.CLOSED and (strategy is None or p.strategy.value == strategy)
        ]
        positions.sort(key=lambda p: p.opened_at, reverse=True)
        return [copy.deepcopy(p) for p in positions]

    async def close_position(
        self,
        position_id: str,
        exit_ref: Optional[str],
        realized_pnl_usd: float,
        received_usd: Optional[float] = None,
        exit_price: Optional[float] = None,
    ) -> bool:
        self._maybe_fail("close_position")
        position = self.positions.get(position_id)
        if position is None or position.status == PositionStatus.CLOSED:
            return False
        pnl = round_usd(realized_pnl_usd)
        position.status = PositionStatus.CLOSED
        position.exit_tx_hash = exit_ref
        position.realized_pnl_usd = pnl
        position.current_value_usd = (
            round_usd(received_usd) if received_usd is not None else round_usd(position.cost_basis_usd + pnl)
        )
        position.unrealized_pnl_usd = 0.0
        position.exit_price = exit_price if exit_price is not None else position.current_price
        position.closed_at = utcnow()
        return True

    async def reopen_position(self, position_id: str, current_value_usd: Optional[float] = None) -> bool:
        self._maybe_fail("reopen_position")
        position = self.positions.get(position_id)
        if position is None or position.status != PositionStatus.CLOSED:
            return False
        position.status = PositionStatus.OPEN
        position.closed_at = None
        position.exit_tx_hash = None
        position.exit_price = None
        position.realized_pnl_usd = 0.0
        if current_value_usd is not None:
            position.current_value_usd = round_usd(current_value_usd)
        position.unrealized_pnl_usd = compute_unrealized(position.current_value_usd, position.cost_basis_usd)
        return True

    async def update_position_price(self, position_id: str, price: float, value_usd: float) -> bool:
        self._maybe_fail("update_position_price")
        position = self.positions.get(position_id)
        if position is None or position.status == PositionStatus.CLOSED:
            return False
        position.current_price = price
        position.current_value_usd = round_usd(value_usd)
        position.unrealized_pnl_usd = compute_unrealized(position.current_value_usd, position.cost_basis_usd)
        return True

    async def update_position_metadata(
        self,
        position_id: str,
        patch: Optional[Dict[str, Any]] = None,
        remove_keys: Optional[List[str]] = None,
    ) -> None:
        self._maybe_fail("update_position_metadata")
        position = self.positions.get(position_id)
        if position is None:
            return
        for key in remove_keys or []:
            position.metadata.pop(key, None)
        position.metadata.update(patch or {})

    async def get_total_unrealized_pnl(self) -> float:
        return round_usd(sum(p.unrealized_pnl_usd for p in self.positions.values() if p.is_open))

    async def get_total_realized_pnl(self, since: Optional[datetime] = None) -> float:
        return round_usd(sum(
            p.realized_pnl_usd for p in self.positions.values()
            if p.status == PositionStatus.CLOSED and (since is None or p.closed_at >= since)
        ))

    async def get_portfolio_metrics(self) -> Dict[str, Any]:
        self._maybe_fail("get_portfolio_metrics")
        by_strategy: Dict[str, Dict[str, Any]] = {}
        for p in self.positions.values():
            if not p.is_open:
                continue
            s = by_strategy.setdefault(
                p.strategy.value,
                {"positions": 0, "value_usd": 0.0, "cost_basis_usd": 0.0, "unrealized_pnl_usd": 0.0},
            )
            s["positions"] += 1
            s["value_usd"] = round_usd(s["value_usd"] + p.current_value_usd)
            s["cost_basis_usd"] = round_usd(s["cost_basis_usd"] + p.cost_basis_usd)
            s["unrealized_pnl_usd"] = round_usd(s["unrealized_pnl_usd"] + p.unrealized_pnl_usd)
        return {
            "total_value_usd": round_usd(sum(s["value_usd"] for s in by_strategy.values())),
            "total_unrealized_pnl_usd": round_usd(sum(s["unrealized_pnl_usd"] for s in by_strategy.values())),
            "open_positions": sum(s["positions"] for s in by_strategy.values()),
            "by_strategy": by_strategy,
        }

    async def insert_transaction(self, tx: Transaction) -> bool:
        self._maybe_fail("insert_transaction")
        if tx.id in self.transactions:
            return False
        self.transactions[tx.id] = copy.deepcopy(tx)
        return True

    async def get_recent_transactions(self, limit: int = 50, strategy: Optional[str] = None) -> List[Transaction]:
        txs = [t for t in self.transactions.values() if strategy is None or t.strategy_tag == strategy]
        txs.sort(key=lambda t: t.timestamp, reverse=True)
        return txs[:limit]

    async def upsert_daily_snapshot(self, snapshot: DailySnapshot) -> None:
        self._maybe_fail("upsert_daily_snapshot")
        self.snapshots[snapshot.date] = snapshot

    async def get_snapshots(self, days: int = 30) -> List[DailySnapshot]:
        return sorted(self.snapshots.values(), key=lambda s: s.date, reverse=True)

    # Test helpers

    def add(self, position: Position) -> Position:
        position.unrealized_pnl_usd = compute_unrealized(position.current_value_usd, position.cost_basis_usd)
        self.positions[position.id] = position
        return position


class MemoryStateStore(StateStore):
    """State store whose "database" is the `persisted` dict."""

    def __init__(self, agent_id: str = "cfo", persisted: Optional[Dict[str, Any]] = None):
        super().__init__(pool=None, agent_id=agent_id)
        self.persisted = persisted
        self.fail_saves = False
        self.save_count = 0
        self.kv: Dict[str, Dict[str, Any]] = {}

    async def ensure_schema(self) -> None:
        return None

    async def load(self) -> Optional[AgentState]:
        if self.persisted is None:
            return None
        self.state = AgentState.from_dict(copy.deepcopy(self.persisted))
        return self.state

    async def save(self) -> None:
        if self.fail_saves:
            raise LedgerError("state save failed: simulated")
        self.persisted = json.loads(json.dumps(self.state.to_dict()))
        self.save_count += 1

    async def claim_key(self, key: str, data: Dict[str, Any]) -> bool:
        if key in self.kv:
            return False
        self.kv[key] = data
        return True


class StaticProducer(DecisionProducer):
    """Returns the same decisions every cycle, optionally after a delay."""

    def __init__(self, decisions: Optional[List[Decision]] = None, delay: float = 0.0):
        self.decisions = list(decisions or [])
        self.delay = delay
        self.calls = 0

    def produce(self, state: PortfolioState, intel: Dict[str, Any], cooldowns: CooldownTracker) -> List[Decision]:
        self.calls += 1
        return [d.with_tier(d.tier) for d in self.decisions]


class FailingProducer(DecisionProducer):

    def produce(self, state, intel, cooldowns):
        raise RuntimeError("intel feed malformed")


class FlakyVenue(PaperVenue):
    """Paper venue whose place_order fails transiently `failures` times first."""

    def __init__(self, *args, failures: int = 0, hang: bool = False, **kwargs):
        super().__init__(*args, **kwargs)
        self.failures = failures
        self.hang = hang
        self.attempts = 0

    async def place_order(self, request: OrderRequest) -> OrderResult:
        self.attempts += 1
        if self.hang:
            await asyncio.sleep(3600)
        if self.attempts <= self.failures:
            raise VenueTransientError(self.name, "429 rate limited")
        return await super().place_order(request)


class SlowPaperVenue(PaperVenue):
    """Paper venue whose health check takes `delay` seconds."""

    def __init__(self, *args, delay: float = 0.1, **kwargs):
        super().__init__(*args, **kwargs)
        self.delay = delay

    async def check_health(self):
        await asyncio.sleep(self.delay)
        return await super().check_health()


def make_decision(
    type: DecisionType = DecisionType.STAKE,
    tier: Tier = Tier.AUTO,
    impact: float = 500.0,
    urgency: Urgency = Urgency.LOW,
    **params: Any,
) -> Decision:
    if type == DecisionType.STAKE and not params:
        params = {"asset": "SOL", "amount_units": 5, "amount_usd": impact, "price": impact / 5}
    return Decision(
        type=type,
        tier=tier,
        urgency=urgency,
        reasoning=f"{type.value} for tests",
        estimated_impact_usd=impact,
        params=params,
    )


def make_position(**overrides: Any) -> Position:
    from app.models import Strategy

    fields = dict(
        strategy=Strategy.PREDICTION_MARKET,
        asset="YES-ELECTION",
        chain="polygon",
        cost_basis_usd=100.0,
        current_value_usd=100.0,
        size_units=200.0,
        current_price=0.5,
        description="Election YES",
        external_id="cond-1",
        metadata={"venue": "paper"},
        opened_at=datetime.now(timezone.utc),
    )
    fields.update(overrides)
    return Position(**fields)


def mock_pool():
    """asyncpg pool whose acquire() yields a single AsyncMock connection."""
    pool = MagicMock()
    conn = AsyncMock()
    pool.acquire.return_value.__aenter__ = AsyncMock(return_value=conn)
    pool.acquire.return_value.__aexit__ = AsyncMock(return_value=False)
    return pool, conn
