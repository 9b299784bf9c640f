"""
Decision Cycle Scheduler

One decision cycle:

    IDLE -> ACQUIRE-LOCK -> LOCK-BUSY      -> trace_id "skipped", back to IDLE
                         -> LOCK-ACQUIRED  -> DECIDING -> ROUTE-RESULTS
                                           -> PERSIST-AUDIT -> RELEASE-LOCK -> IDLE

At most one cycle is in flight: a second invocation while the lock is held
returns immediately with trace_id "skipped". The lock is held across every
venue call the cycle makes and is released on every exit path. A hard
timeout wraps the whole cycle so a hung venue cannot hold it forever.
Each result is routed as soon as the executor returns it, and a timeout
still records whatever executed before it fired. Approved decisions run
under the same lock.

Producer errors mark the cycle degraded and nothing is executed. Audit
write failures are logged and never fail the cycle.

@module scheduler
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import uuid4

import asyncpg

from .approvals import ApprovalWorkflow
from .bus import MessageBus, MessagePriority, MessageType
from .config import CYCLE_TIMEOUT_SECONDS, DECISION_SPACING_SECONDS, VENUE_TIMEOUT_SECONDS
from .executor import DecisionExecutor, ExecutionResult
from .ledger import Ledger
from .metrics import cycle_counter, cycle_duration, decision_counter
from .models import Decision
from .notifier import Notifier
from .pause import EmergencyController
from .producer import CooldownTracker, DecisionProducer, PortfolioState
from .state_store import StateStore
from .venues import VenueRegistry


logger = logging.getLogger(__name__)

SKIPPED = "skipped"

AUDIT_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS cfo_decision_cycles (
    trace_id TEXT PRIMARY KEY,
    started_at TIMESTAMPTZ NOT NULL,
    finished_at TIMESTAMPTZ,
    status TEXT NOT NULL,
    dry_run BOOLEAN NOT NULL,
    decisions JSONB NOT NULL DEFAULT '[]'::jsonb,
    results JSONB NOT NULL DEFAULT '[]'::jsonb,
    approvals JSONB NOT NULL DEFAULT '[]'::jsonb,
    error TEXT,
    report TEXT
);
CREATE INDEX IF NOT EXISTS idx_cfo_decision_cycles_started ON cfo_decision_cycles (started_at DESC);
"""


def new_trace_id() -> str:
    return f"cfo-{int(time.time() * 1000)}-{uuid4().hex[:6]}"


@dataclass
class CycleOutcome:
    trace_id: str
    status: str = "ok"
    dry_run: bool = True
    state: Optional[PortfolioState] = None
    intel: Dict[str, Any] = field(default_factory=dict)
    decisions: List[Decision] = field(default_factory=list)
    results: List[ExecutionResult] = field(default_factory=list)
    approval_ids: List[str] = field(default_factory=list)
    # results[:routed] are already in the ledger or the approval queue
    routed: int = 0
    report: str = ""
    error: Optional[str] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    @property
    def skipped(self) -> bool:
        return self.trace_id == SKIPPED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trace_id": self.trace_id,
            "status": self.status,
            "dry_run": self.dry_run,
            "decisions": [d.to_dict() for d in self.decisions],
            "results": [r.to_dict() for r in self.results],
            "approval_ids": self.approval_ids,
            "report": self.report,
            "error": self.error,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


def format_report(outcome: CycleOutcome) -> str:
    """Human-readable cycle summary."""
    lines = [f"CFO decision cycle {outcome.trace_id} [{outcome.status}]" + (" (dry run)" if outcome.dry_run else "")]
    if outcome.state is not None:
        metrics = outcome.state.metrics
        lines.append(
            f"Portfolio ${metrics.get('total_value_usd', 0.0):.2f}, "
            f"{metrics.get('open_positions', 0)} open, "
            f"unrealized ${metrics.get('total_unrealized_pnl_usd', 0.0):+.2f}"
        )
    if not outcome.decisions:
        lines.append("No actions.")
    for result in outcome.results:
        d = result.decision
        lines.append(f"- {d.type.value} [{d.tier.value}] ${d.estimated_impact_usd:.2f}: {result.label}"
                     + (f" ({result.error})" if result.error else ""))
    if outcome.approval_ids:
        lines.append("Awaiting approval: " + ", ".join(outcome.approval_ids))
    if outcome.error:
        lines.append(f"Error: {outcome.error}")
    return "\n".join(lines)


class DecisionCycle:

    def __init__(
        self,
        ledger: Ledger,
        producer: DecisionProducer,
        executor: DecisionExecutor,
        approvals: ApprovalWorkflow,
        pause: EmergencyController,
        cooldowns: CooldownTracker,
        store: StateStore,
        registry: VenueRegistry,
        notifier: Notifier,
        bus: Optional[MessageBus] = None,
        db: Optional[asyncpg.Pool] = None,
        timeout: float = CYCLE_TIMEOUT_SECONDS,
        spacing: float = DECISION_SPACING_SECONDS,
        health_timeout: float = VENUE_TIMEOUT_SECONDS,
        lock: Optional[asyncio.Lock] = None,
    ):
        self.ledger = ledger
        self.producer = producer
        self.executor = executor
        self.approvals = approvals
        self.pause = pause
        self.cooldowns = cooldowns
        self.store = store
        self.registry = registry
        self.notifier = notifier
        self.bus = bus
        self.db = db
        self.timeout = timeout
        self.spacing = spacing
        self.health_timeout = health_timeout
        self.intel: Dict[str, Any] = {}
        self.last_outcome: Optional[CycleOutcome] = None
        # Also held while an approved decision executes
        self.lock = lock or asyncio.Lock()

    @property
    def running(self) -> bool:
        return self.lock.locked()

    def update_intel(self, intel: Dict[str, Any]) -> None:
        """Merge externally supplied intel for the next cycle."""
        self.intel.update(intel)

    async def run_cycle(self, intel: Optional[Dict[str, Any]] = None) -> CycleOutcome:
        # No await between the check and the acquire
        if self.lock.locked():
            cycle_counter.labels(outcome=SKIPPED).inc()
            logger.info("Decision cycle already running, skipping")
            return CycleOutcome(trace_id=SKIPPED, status=SKIPPED, dry_run=self.executor.dry_run)

        async with self.lock:
            outcome = CycleOutcome(
                trace_id=new_trace_id(),
                dry_run=self.executor.dry_run,
                intel={**self.intel, **(intel or {})},
            )
            started = time.monotonic()
            try:
                await asyncio.wait_for(self._decide_and_route(outcome), timeout=self.timeout)
            except asyncio.TimeoutError:
                logger.error(f"Decision cycle {outcome.trace_id} timed out")
                # Orders that already went through still get their ledger rows
                await self._route(outcome)
                await self._settle(outcome)
                if outcome.status != "degraded":
                    outcome.status = "timeout"
                    outcome.error = f"cycle exceeded {self.timeout:.0f}s"
                await self.notifier.notify(
                    f"Decision cycle {outcome.trace_id} timed out after {self.timeout:.0f}s; "
                    f"{len(outcome.results)} decision(s) attempted", "high"
                )
            except Exception as e:
                outcome.status = "degraded"
                outcome.error = str(e) or type(e).__name__
                logger.exception(f"Decision cycle {outcome.trace_id} failed")
                await self.notifier.notify(f"Decision cycle {outcome.trace_id} failed: {outcome.error}", "high")

            outcome.finished_at = datetime.now(timezone.utc)
            outcome.report = format_report(outcome)
            await self._persist_audit(outcome)
            await self._report(outcome)

            cycle_duration.observe(time.monotonic() - started)
            cycle_counter.labels(outcome=outcome.status).inc()
            self.last_outcome = outcome
            return outcome

    # =========================================================================
    # DECIDING / ROUTE-RESULTS
    # =========================================================================

    async def gather_state(self) -> PortfolioState:
        positions = await self.ledger.get_open_positions()
        metrics = await self.ledger.get_portfolio_metrics()
        health: Dict[str, bool] = {}
        for venue in self.registry.enabled():
            try:
                result = await asyncio.wait_for(venue.check_health(), timeout=self.health_timeout)
                health[venue.name] = result.ok
            except Exception as e:
                logger.warning(f"Health check failed for {venue.name}: {e}")
                health[venue.name] = False
        return PortfolioState(positions=positions, metrics=metrics, venue_health=health)

    async def _decide_and_route(self, outcome: CycleOutcome) -> None:
        if self.pause.is_paused():
            outcome.status = "paused"
            return

        outcome.state = await self.gather_state()

        try:
            decisions = self.producer.produce(outcome.state, outcome.intel, self.cooldowns)
        except Exception as e:
            outcome.status = "degraded"
            outcome.error = f"decision producer failed: {e}"
            logger.exception(f"Decision producer failed in {outcome.trace_id}")
            await self.notifier.notify(f"Decision cycle degraded, nothing executed: {e}", "high")
            return

        outcome.decisions = list(decisions)
        for decision in outcome.decisions:
            decision_counter.labels(type=decision.type.value, tier=decision.tier.value).inc()

        for index, decision in enumerate(outcome.decisions):
            if index > 0 and self.spacing > 0:
                await asyncio.sleep(self.spacing)
            if self.pause.is_paused():
                logger.warning("Paused mid-cycle, remaining decisions dropped")
                break
            try:
                result = await self.executor.execute(decision)
            except Exception as e:
                logger.exception(f"Executor failed on {decision.type.value}")
                outcome.results.append(
                    ExecutionResult(decision, executed=False, success=False, error=str(e))
                )
                outcome.status = "degraded"
                outcome.error = f"executor failed: {e}"
                break
            outcome.results.append(result)
            # Recorded before the next venue call so a timeout cannot lose it
            if not await self._route(outcome):
                break

        await self._settle(outcome)

    async def _route_one(self, outcome: CycleOutcome, result: ExecutionResult) -> None:
        decision = result.decision
        if result.pending_approval:
            approval_id, _ = await self.approvals.create(
                decision.reasoning, decision.estimated_impact_usd, decision
            )
            if approval_id not in outcome.approval_ids:
                outcome.approval_ids.append(approval_id)
        elif result.executed or result.terminal:
            await self.executor.record_outcome(result)
        elif result.outcome_unknown:
            await self.notifier.notify(
                f"{decision.type.value} outcome unknown ({result.error}); "
                f"will reconcile on the next monitor pass", "high"
            )

    async def _route(self, outcome: CycleOutcome) -> bool:
        """
        Record every result not yet routed. Safe to call again after a
        cancellation: ledger writes are idempotent per venue order.

        Returns:
            False if a result could not be recorded
        """
        try:
            while outcome.routed < len(outcome.results):
                await self._route_one(outcome, outcome.results[outcome.routed])
                outcome.routed += 1
        except Exception as e:
            outcome.status = "degraded"
            outcome.error = f"routing failed: {e}"
            logger.exception(f"Routing failed in {outcome.trace_id}")
            await self.notifier.notify(f"Decision cycle {outcome.trace_id} could not record results: {e}", "critical")
            return False
        return True

    async def _settle(self, outcome: CycleOutcome) -> None:
        """Persist cooldowns and refresh the snapshot once anything executed."""
        if not any(r.executed for r in outcome.results[:outcome.routed]):
            return
        try:
            self.store.state.cooldown_state = self.cooldowns.export()
            await self.store.save()
        except Exception as e:
            outcome.status = "degraded"
            outcome.error = f"routing failed: {e}"
            logger.exception(f"Cooldown save failed in {outcome.trace_id}")
            await self.notifier.notify(f"Decision cycle {outcome.trace_id} could not record results: {e}", "critical")
            return

        try:
            await self.ledger.refresh_daily_snapshot()
        except Exception as e:
            logger.error(f"Snapshot refresh failed: {e}")

    # =========================================================================
    # PERSIST-AUDIT
    # =========================================================================

    async def ensure_schema(self) -> None:
        if self.db is None:
            return
        async with self.db.acquire() as conn:
            await conn.execute(AUDIT_SCHEMA_SQL)

    async def _persist_audit(self, outcome: CycleOutcome) -> None:
        if self.db is None:
            return
        data = outcome.to_dict()
        try:
            async with self.db.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO cfo_decision_cycles (
                        trace_id, started_at, finished_at, status, dry_run,
                        decisions, results, approvals, error, report
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                    ON CONFLICT (trace_id) DO NOTHING
                    """,
                    outcome.trace_id,
                    outcome.started_at,
                    outcome.finished_at,
                    outcome.status,
                    outcome.dry_run,
                    json.dumps(data["decisions"]),
                    json.dumps(data["results"]),
                    json.dumps(outcome.approval_ids),
                    outcome.error,
                    outcome.report,
                )
        except Exception as e:
            logger.error(f"Failed to persist cycle audit {outcome.trace_id}: {e}")

    async def get_cycles(self, limit: int = 20) -> List[Dict[str, Any]]:
        if self.db is None:
            return []
        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT trace_id, started_at, finished_at, status, dry_run, approvals, error, report
                FROM cfo_decision_cycles
                ORDER BY started_at DESC
                LIMIT $1
                """,
                limit,
            )
        return [
            {
                "trace_id": row["trace_id"],
                "started_at": row["started_at"].isoformat(),
                "finished_at": row["finished_at"].isoformat() if row["finished_at"] else None,
                "status": row["status"],
                "dry_run": row["dry_run"],
                "approvals": json.loads(row["approvals"]) if isinstance(row["approvals"], str) else row["approvals"],
                "error": row["error"],
                "report": row["report"],
            }
            for row in rows
        ]

    async def _report(self, outcome: CycleOutcome) -> None:
        if self.bus is None or not outcome.decisions:
            return
        try:
            await self.bus.report_to_supervisor(
                MessageType.REPORT,
                {
                    "kind": "decision_cycle",
                    "trace_id": outcome.trace_id,
                    "status": outcome.status,
                    "executed": sum(1 for r in outcome.results if r.executed),
                    "approvals": outcome.approval_ids,
                    "report": outcome.report,
                },
                MessagePriority.HIGH if outcome.approval_ids else MessagePriority.MEDIUM,
            )
        except Exception as e:
            logger.error(f"Failed to report cycle {outcome.trace_id}: {e}")


async def run_periodic(
    name: str,
    interval_seconds: float,
    fn: Callable[[], Awaitable[Any]],
    initial_delay: Optional[float] = None,
    error_backoff: float = 60.0,
) -> None:
    """
    Background loop calling `fn` every interval until cancelled.

    Errors are logged and the loop keeps running after `error_backoff`.
    """
    await asyncio.sleep(interval_seconds if initial_delay is None else initial_delay)
    while True:
        try:
            await fn()
            await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            logger.info(f"{name} task cancelled")
            raise
        except Exception as e:
            logger.exception(f"{name} error: {e}")
            await asyncio.sleep(min(error_backoff, interval_seconds))
