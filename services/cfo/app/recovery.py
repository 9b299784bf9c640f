"""
Startup Recovery & Reconciliation

Runs once, early in startup, before any timer is armed. Each step is
isolated: it logs and reports its own failure and the next step still
runs. Order matters: approvals and pause state come first because losing
them is worse than a late ghost-position fix.

Steps:
1. state         load the persisted agent blob and restore cooldowns
2. approvals     rehydrate pending approvals, dropping expired ones
3. pause         re-enter an emergency pause that is still running
4. orders        rebuild the pending-order tracker from position metadata
5. ghosts        positions the ledger thinks are CLOSED but the venue still holds:
                 redeem and close if resolved, otherwise reopen
6. exposure      re-announce on-chain exposure to the guardian agent

@module recovery
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .approvals import ApprovalWorkflow
from .bus import MessageBus, MessagePriority, MessageType
from .config import DUST_THRESHOLD_USD, GUARDIAN_ID, VENUE_TIMEOUT_SECONDS
from .ledger import Ledger
from .metrics import recovery_counter
from .models import (
    Position,
    PositionStatus,
    Strategy,
    Transaction,
    TxStatus,
    compute_realized,
)
from .notifier import Notifier
from .orders import PendingOrderTracker, sell_tx_type
from .pause import EmergencyController
from .producer import CooldownTracker
from .state_store import StateStore
from .venues import VenueAdapter, VenuePosition, VenueRegistry


logger = logging.getLogger(__name__)

# Strategies whose open positions hold a specific token on-chain
WATCHED_STRATEGIES = {
    Strategy.LIQUID_STAKING,
    Strategy.LENDING_LOOP,
    Strategy.AMM_LIQUIDITY,
}


@dataclass
class StepResult:
    name: str
    ok: bool
    detail: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class RecoveryReport:
    steps: List[StepResult] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def ok(self) -> bool:
        return all(s.ok for s in self.steps)

    def step(self, name: str) -> Optional[StepResult]:
        for s in self.steps:
            if s.name == name:
                return s
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "started_at": self.started_at.isoformat(),
            "steps": [
                {"name": s.name, "ok": s.ok, "detail": s.detail, "error": s.error}
                for s in self.steps
            ],
        }


class Recovery:

    def __init__(
        self,
        ledger: Ledger,
        store: StateStore,
        approvals: ApprovalWorkflow,
        pause: EmergencyController,
        tracker: PendingOrderTracker,
        registry: VenueRegistry,
        cooldowns: CooldownTracker,
        bus: MessageBus,
        notifier: Notifier,
        guardian_id: str = GUARDIAN_ID,
        call_timeout: float = VENUE_TIMEOUT_SECONDS,
        dust_threshold_usd: float = DUST_THRESHOLD_USD,
    ):
        self.ledger = ledger
        self.store = store
        self.approvals = approvals
        self.pause = pause
        self.tracker = tracker
        self.registry = registry
        self.cooldowns = cooldowns
        self.bus = bus
        self.notifier = notifier
        self.guardian_id = guardian_id
        self.call_timeout = call_timeout
        self.dust_threshold_usd = dust_threshold_usd

    async def run(self, now: Optional[datetime] = None) -> RecoveryReport:
        now = now or datetime.now(timezone.utc)
        report = RecoveryReport(started_at=now)

        steps: List[tuple] = [
            ("state", lambda: self.restore_state(now)),
            ("approvals", lambda: self.rehydrate_approvals(now)),
            ("pause", lambda: self.rehydrate_pause(now)),
            ("orders", self.rehydrate_orders),
            ("ghosts", self.reconcile_ghosts),
            ("exposure", self.register_exposure),
        ]
        for name, step in steps:
            report.steps.append(await self._run_step(name, step))

        failed = [s for s in report.steps if not s.ok]
        if failed:
            await self.notifier.notify(
                "Startup recovery finished with errors: "
                + "; ".join(f"{s.name}: {s.error}" for s in failed),
                "high",
            )
        else:
            logger.info("Startup recovery complete")
        return report

    async def _run_step(self, name: str, step: Callable[[], Awaitable[Dict[str, Any]]]) -> StepResult:
        try:
            detail = await step()
        except Exception as e:
            logger.exception(f"Recovery step '{name}' failed: {e}")
            recovery_counter.labels(step=name, result="error").inc()
            return StepResult(name, ok=False, error=str(e) or type(e).__name__)

        errors = detail.pop("errors", None)
        if errors:
            recovery_counter.labels(step=name, result="partial").inc()
            return StepResult(name, ok=False, detail=detail, error="; ".join(errors))

        recovery_counter.labels(step=name, result="ok").inc()
        return StepResult(name, ok=True, detail=detail)

    # =========================================================================
    # Steps
    # =========================================================================

    async def restore_state(self, now: datetime) -> Dict[str, Any]:
        state = await self.store.load()
        if state is None:
            return {"first_boot": True, "cooldowns": 0}
        restored = self.cooldowns.restore(state.cooldown_state, now)
        return {"first_boot": False, "cooldowns": restored}

    async def rehydrate_approvals(self, now: datetime) -> Dict[str, Any]:
        survivors = await self.approvals.rehydrate(now)
        return {"restored": [a.id for a in survivors]}

    async def rehydrate_pause(self, now: datetime) -> Dict[str, Any]:
        remaining = await self.pause.rehydrate(now)
        return {"paused": self.pause.is_paused(now), "remaining_seconds": remaining}

    async def rehydrate_orders(self) -> Dict[str, Any]:
        positions = await self.ledger.get_open_positions()
        restored = self.tracker.rehydrate(positions)
        if restored:
            await self.notifier.notify(
                f"Resumed tracking {len(restored)} pending sell order(s): "
                + ", ".join(f"{o.description} ({o.order_id})" for o in restored)
            )
        return {"restored": [o.order_id for o in restored]}

    async def reconcile_ghosts(self) -> Dict[str, Any]:
        reopened: List[str] = []
        settled: List[str] = []
        untracked: List[str] = []
        errors: List[str] = []

        for venue in self.registry.enabled():
            try:
                held = await asyncio.wait_for(venue.fetch_positions(), timeout=self.call_timeout)
            except Exception as e:
                logger.error(f"Ghost scan failed for {venue.name}: {e}")
                errors.append(f"{venue.name}: {e}")
                continue

            for venue_position in held:
                if venue_position.value_usd < self.dust_threshold_usd or not venue_position.external_id:
                    continue
                try:
                    outcome = await self._reconcile_one(venue, venue_position)
                except Exception as e:
                    logger.error(f"Ghost reconcile failed for {venue_position.external_id}: {e}")
                    errors.append(f"{venue.name}/{venue_position.external_id}: {e}")
                    continue
                if outcome == "reopened":
                    reopened.append(venue_position.external_id)
                elif outcome == "settled":
                    settled.append(venue_position.external_id)
                elif outcome == "untracked":
                    untracked.append(venue_position.external_id)

        if untracked:
            await self.notifier.notify(
                f"Venue positions with no ledger record (not imported): {', '.join(untracked)}", "high"
            )
        result: Dict[str, Any] = {"reopened": reopened, "settled": settled, "untracked": untracked}
        if errors:
            result["errors"] = errors
        return result

    async def _reconcile_one(self, venue: VenueAdapter, held: VenuePosition) -> Optional[str]:
        position = await self.ledger.get_position_by_external_id(held.external_id)
        if position is None:
            return "untracked"
        if position.status != PositionStatus.CLOSED:
            return None

        label = position.description or position.asset
        if held.resolved and held.redeemable:
            redeem = await asyncio.wait_for(venue.redeem_position(held), timeout=self.call_timeout)
            if not redeem.success:
                raise RuntimeError(f"redeem failed: {redeem.error}")
            await self._settle(position, venue, held, redeem.amount_usd, redeem.tx_hash)
            await self.notifier.notify(
                f"Ghost position settled: {label} redeemed for ${redeem.amount_usd:.2f} at {venue.name}"
            )
            return "settled"

        await self.ledger.reopen_position(position.id, current_value_usd=held.value_usd)
        await self.notifier.notify(
            f"Ghost position reopened: {label} still holds ${held.value_usd:.2f} at {venue.name}; "
            f"monitoring resumed",
            "high",
        )
        return "reopened"

    async def _settle(
        self,
        position: Position,
        venue: VenueAdapter,
        held: VenuePosition,
        amount_usd: float,
        tx_hash: Optional[str],
    ) -> None:
        await self.ledger.insert_transaction(
            Transaction(
                id=f"{venue.name}:redeem:{held.external_id}",
                chain=position.chain,
                strategy_tag=position.strategy.value,
                tx_type=sell_tx_type(position.strategy.value),
                token_in=position.asset,
                amount_in=held.size_units,
                token_out="USD",
                amount_out=amount_usd,
                tx_hash=tx_hash,
                position_id=position.id,
                status=TxStatus.CONFIRMED,
                metadata={"settled_by": "ghost_reconciliation"},
            )
        )
        # close_position only acts on non-closed rows
        await self.ledger.reopen_position(position.id, current_value_usd=amount_usd)
        await self.ledger.close_position(
            position.id,
            tx_hash,
            compute_realized(amount_usd, position.cost_basis_usd),
            received_usd=amount_usd,
        )

    async def register_exposure(self) -> Dict[str, Any]:
        positions = [
            p for p in await self.ledger.get_open_positions()
            if p.strategy in WATCHED_STRATEGIES
        ]
        if not positions:
            return {"announced": 0}
        if not self.bus.connected:
            raise RuntimeError("message bus not connected")

        for position in positions:
            await self.bus.send(
                self.guardian_id,
                MessageType.REQUEST,
                {
                    "action": "watch",
                    "position_id": position.id,
                    "strategy": position.strategy.value,
                    "asset": position.asset,
                    "chain": position.chain,
                    "value_usd": position.current_value_usd,
                },
                MessagePriority.MEDIUM,
            )
        return {"announced": len(positions)}
