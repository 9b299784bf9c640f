"""
Approval Workflow

APPROVAL-tier decisions wait here for a human. States per approval:

    PENDING -> REMINDED -> EXPIRED
    PENDING -> EXECUTED | REJECTED | EXPIRED

Every mutation rewrites the persisted agent state before it is reported
as done. A failed write is raised and the in-memory change is undone, so
the caller never believes an approval exists when it would not survive a
restart.

@module approvals
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from .config import APPROVAL_TTL_MINUTES
from .errors import ApprovalNotFound
from .executor import DecisionExecutor, ExecutionResult
from .metrics import approval_counter, pending_approvals_gauge
from .models import ApprovalSource, Decision, PendingApproval, Tier
from .notifier import Notifier
from .state_store import StateStore


logger = logging.getLogger(__name__)

APPROVAL_SEQ = "approval_seq"

AfterExecute = Callable[[ExecutionResult], Awaitable[None]]


class ApprovalWorkflow:

    def __init__(
        self,
        store: StateStore,
        executor: DecisionExecutor,
        notifier: Notifier,
        ttl_minutes: float = APPROVAL_TTL_MINUTES,
        after_execute: Optional[AfterExecute] = None,
        lock: Optional[asyncio.Lock] = None,
    ):
        self.store = store
        self.executor = executor
        self.notifier = notifier
        self.ttl = timedelta(minutes=ttl_minutes)
        self.after_execute = after_execute
        # The decision cycle lock when wired by the agent
        self.lock = lock or asyncio.Lock()
        self._pending: Dict[str, PendingApproval] = {}

    # =========================================================================
    # Queries
    # =========================================================================

    def list_pending(self, now: Optional[datetime] = None) -> List[PendingApproval]:
        """Approvals still open. Closed from expires_at on, even before the sweep runs."""
        now = now or datetime.now(timezone.utc)
        return [a for a in self._pending.values() if a.is_open(now)]

    def get(self, approval_id: str, now: Optional[datetime] = None) -> Optional[PendingApproval]:
        approval = self._pending.get(approval_id)
        if approval is None or not approval.is_open(now or datetime.now(timezone.utc)):
            return None
        return approval

    def find_by_type(self, decision: Decision, now: Optional[datetime] = None) -> Optional[PendingApproval]:
        for approval in self.list_pending(now):
            if approval.decision.type == decision.type:
                return approval
        return None

    # =========================================================================
    # Persistence
    # =========================================================================

    async def _persist(self) -> None:
        self.store.state.pending_approvals = [a.to_dict() for a in self._pending.values()]
        await self.store.save()
        pending_approvals_gauge.set(len(self._pending))

    # =========================================================================
    # Transitions
    # =========================================================================

    async def create(
        self,
        description: str,
        amount_usd: float,
        decision: Decision,
        source: ApprovalSource = ApprovalSource.DECISION_ENGINE,
        now: Optional[datetime] = None,
    ) -> Tuple[str, bool]:
        """
        Queue a decision for human approval.

        Returns:
            (approval_id, created). created is False when an approval for the
            same decision type was already pending; its id is returned.
        """
        now = now or datetime.now(timezone.utc)

        existing = self.find_by_type(decision, now)
        if existing is not None:
            approval_counter.labels(event="deduped").inc()
            logger.info(f"{decision.type.value} already awaiting approval as {existing.id}")
            return existing.id, False

        seq = self.store.next_counter(APPROVAL_SEQ)
        approval = PendingApproval(
            id=f"approval-{seq}",
            description=description,
            amount_usd=round(abs(amount_usd), 2),
            decision=decision,
            source=source,
            created_at=now,
            expires_at=now + self.ttl,
        )
        self._pending[approval.id] = approval
        try:
            await self._persist()
        except Exception:
            # Counter stays bumped; ids never repeat
            del self._pending[approval.id]
            raise

        approval_counter.labels(event="created").inc()
        minutes = int(self.ttl.total_seconds() // 60)
        await self.notifier.notify(
            f"Approval needed [{approval.id}]: {description} (${approval.amount_usd:.2f}). "
            f"Expires in {minutes}m.\nReply: /cfo approve {approval.id}",
            "high",
        )
        return approval.id, True

    async def sweep(self, now: Optional[datetime] = None) -> Dict[str, List[str]]:
        """Expire overdue approvals and send the one-time halfway reminder."""
        now = now or datetime.now(timezone.utc)
        expired: List[PendingApproval] = []
        reminded: List[PendingApproval] = []

        for approval in list(self._pending.values()):
            if approval.is_expired(now):
                del self._pending[approval.id]
                expired.append(approval)
            elif approval.reminder_due(now):
                approval.reminded_at = now
                reminded.append(approval)

        if expired or reminded:
            await self._persist()

        for approval in expired:
            approval_counter.labels(event="expired").inc()
            await self.notifier.notify(f"Approval expired [{approval.id}]: {approval.description}")
        for approval in reminded:
            approval_counter.labels(event="reminded").inc()
            left = int(approval.remaining_seconds(now) // 60)
            await self.notifier.notify(
                f"Reminder [{approval.id}]: {approval.description} (${approval.amount_usd:.2f}) "
                f"expires in {left}m.\nReply: /cfo approve {approval.id}",
                "high",
            )

        return {"expired": [a.id for a in expired], "reminded": [a.id for a in reminded]}

    async def approve(self, approval_id: str, now: Optional[datetime] = None) -> ExecutionResult:
        """
        Execute an approved decision as AUTO and record it in the ledger.

        Raises:
            ApprovalNotFound: unknown or expired id
        """
        approval = self.get(approval_id, now)
        if approval is None:
            raise ApprovalNotFound(f"no pending approval {approval_id}")

        del self._pending[approval_id]
        try:
            await self._persist()
        except Exception:
            self._pending[approval_id] = approval
            raise
        approval_counter.labels(event="approved").inc()

        if not approval.replayable:
            warning = (
                f"Approval {approval_id} was restored after a restart and cannot be replayed safely "
                f"({approval.decision.type.value}); not executed. Re-run a decision cycle instead."
            )
            await self.notifier.notify(warning, "high")
            return ExecutionResult(approval.decision, executed=False, success=False, error=warning)

        # Waits out a running decision cycle; exposure is read after its fills are recorded
        async with self.lock:
            result = await self.executor.execute(approval.decision.with_tier(Tier.AUTO))
            await self.executor.record_outcome(result)
            if self.after_execute is not None and result.executed:
                await self.after_execute(result)

        if result.executed and result.success:
            await self.notifier.notify(f"Approved and executed [{approval_id}]: {approval.description}")
        elif result.dry_run:
            await self.notifier.notify(f"Approved [{approval_id}] (dry run, nothing sent): {approval.description}")
        else:
            await self.notifier.notify(
                f"Approved [{approval_id}] but execution did not complete: {result.error}", "high"
            )
        return result

    async def reject(self, approval_id: str, reason: str = "") -> PendingApproval:
        approval = self._pending.pop(approval_id, None)
        if approval is None:
            raise ApprovalNotFound(f"no pending approval {approval_id}")
        try:
            await self._persist()
        except Exception:
            self._pending[approval_id] = approval
            raise
        approval_counter.labels(event="rejected").inc()
        await self.notifier.notify(
            f"Approval rejected [{approval_id}]: {approval.description}" + (f" ({reason})" if reason else "")
        )
        return approval

    # =========================================================================
    # Restart
    # =========================================================================

    def _replayable(self, approval: PendingApproval) -> bool:
        if not self.executor.can_execute(approval.decision.type):
            return False
        if approval.source == ApprovalSource.MANUAL:
            return False
        return not approval.decision.params.get("price_sensitive", False)

    async def rehydrate(self, now: Optional[datetime] = None) -> List[PendingApproval]:
        """
        Rebuild pending approvals from the persisted state.

        Expired entries are dropped. Survivors are re-armed with their
        decision executable through the dispatch table.
        """
        now = now or datetime.now(timezone.utc)
        raw = list(self.store.state.pending_approvals)
        survivors: List[PendingApproval] = []
        dropped = 0

        for item in raw:
            try:
                approval = PendingApproval.from_dict(item)
            except (KeyError, ValueError) as e:
                logger.error(f"Discarding unreadable persisted approval {item.get('id')}: {e}")
                dropped += 1
                continue
            if not approval.is_open(now):
                dropped += 1
                continue
            approval.replayable = self._replayable(approval)
            self._pending[approval.id] = approval
            survivors.append(approval)

        if dropped:
            await self._persist()
        pending_approvals_gauge.set(len(self._pending))

        if survivors:
            lines = [
                f"- {a.id}: {a.description} ({int(a.remaining_seconds(now) // 60)}m left"
                + ("" if a.replayable else ", NOT replayable")
                + ")"
                for a in survivors
            ]
            await self.notifier.notify(
                f"Restored {len(survivors)} pending approval(s) after restart:\n" + "\n".join(lines)
            )
        if dropped:
            logger.info(f"Dropped {dropped} expired/unreadable approvals on restart")
        return survivors
