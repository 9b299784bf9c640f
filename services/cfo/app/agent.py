"""
CFO Agent

Builds every component from configuration and owns the service lifecycle:

    start:  schemas -> bus connect -> startup recovery -> inbox subscribe -> timers
    stop:   cancel timers -> cancel pause timer -> close bus, venues, notifier

Timers (independent, all against the same ledger):
- decision cycle    every CFO_DECISION_INTERVAL_MINUTES (lock-guarded)
- position monitor  every CFO_MONITOR_INTERVAL_MINUTES
- approval sweep    every CFO_APPROVAL_SWEEP_SECONDS
- heartbeat         every CFO_HEARTBEAT_SECONDS to the supervisor
- daily digest      checked every 5 minutes, sent once per UTC day after CFO_DIGEST_HOUR_UTC

@module agent
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import asyncpg

from .approvals import ApprovalWorkflow
from .bus import AgentMessage, MessageBus, MessagePriority, MessageType
from .config import (
    AGENT_ID,
    APPROVAL_SWEEP_SECONDS,
    COOLDOWN_HOURS,
    DECISION_INTERVAL_MINUTES,
    DIGEST_HOUR_UTC,
    DRY_RUN,
    HEARTBEAT_SECONDS,
    MONITOR_INTERVAL_MINUTES,
    SUPERVISOR_ID,
    VENUE_ENDPOINTS,
    VENUE_TIMEOUT_SECONDS,
    VENUES_ENABLED,
)
from .errors import ApprovalNotFound
from .executor import DecisionExecutor, ExecutionResult
from .ledger import Ledger
from .models import DailySnapshot
from .monitor import PositionMonitor
from .notifier import Notifier
from .orders import PendingOrderTracker
from .pause import EmergencyController
from .producer import CooldownTracker, DecisionProducer, RuleBasedProducer
from .recovery import Recovery, RecoveryReport
from .scheduler import DecisionCycle, run_periodic
from .state_store import StateStore
from .venues import VenueRegistry, build_registry


logger = logging.getLogger(__name__)

DIGEST_CHECK_SECONDS = 300

EMERGENCY_COMMANDS = ("emergency_exit", "market_crash")

CommandHandler = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


def format_digest(snapshot: DailySnapshot, pending_approvals: int, paused: bool) -> str:
    lines = [
        f"CFO daily digest {snapshot.date.isoformat()}",
        f"Portfolio ${snapshot.total_portfolio_usd:.2f} across {snapshot.open_positions} open position(s)",
        f"Realized 24h ${snapshot.realized_pnl_24h:+.2f}, unrealized ${snapshot.unrealized_pnl:+.2f}",
    ]
    for strategy, value in sorted(snapshot.by_strategy.items()):
        lines.append(f"- {strategy}: ${value:.2f}")
    if pending_approvals:
        lines.append(f"{pending_approvals} approval(s) waiting")
    if paused:
        lines.append("Trading is PAUSED")
    return "\n".join(lines)


class CFOAgent:
    """
    Usage:
        agent = CFOAgent(pool)
        await agent.start(nats_url)
        ...
        await agent.stop()

    Ledger, state store, registry, bus, notifier and producer can be passed
    in; anything omitted is built from config.
    """

    def __init__(
        self,
        pool: Optional[asyncpg.Pool] = None,
        *,
        ledger: Optional[Ledger] = None,
        store: Optional[StateStore] = None,
        registry: Optional[VenueRegistry] = None,
        bus: Optional[MessageBus] = None,
        notifier: Optional[Notifier] = None,
        producer: Optional[DecisionProducer] = None,
        agent_id: str = AGENT_ID,
        dry_run: bool = DRY_RUN,
        digest_hour_utc: int = DIGEST_HOUR_UTC,
    ):
        self.agent_id = agent_id
        self.pool = pool
        self.digest_hour_utc = digest_hour_utc

        self.ledger = ledger if ledger is not None else Ledger(pool)
        self.store = store if store is not None else StateStore(pool, agent_id)
        if registry is None:
            registry = build_registry(VENUES_ENABLED, VENUE_ENDPOINTS, VENUE_TIMEOUT_SECONDS)
        self.registry = registry
        self.bus = bus if bus is not None else MessageBus(agent_id, SUPERVISOR_ID)
        self.notifier = notifier if notifier is not None else Notifier()

        self.cooldowns = CooldownTracker(COOLDOWN_HOURS)
        self.tracker = PendingOrderTracker(self.ledger, self.registry, self.notifier)
        self.executor = DecisionExecutor(
            self.ledger, self.registry, self.tracker, self.cooldowns, self.notifier, dry_run=dry_run
        )
        self.approvals = ApprovalWorkflow(
            self.store, self.executor, self.notifier, after_execute=self._after_execute
        )
        self.pause = EmergencyController(self.store, self.registry, self.notifier)
        self.cycle = DecisionCycle(
            self.ledger,
            producer or RuleBasedProducer(),
            self.executor,
            self.approvals,
            self.pause,
            self.cooldowns,
            self.store,
            self.registry,
            self.notifier,
            bus=self.bus,
            db=pool,
            lock=self.approvals.lock,
        )
        self.monitor = PositionMonitor(self.ledger, self.registry, self.tracker, self.notifier)
        self.recovery = Recovery(
            self.ledger,
            self.store,
            self.approvals,
            self.pause,
            self.tracker,
            self.registry,
            self.cooldowns,
            self.bus,
            self.notifier,
        )

        self.tasks: Dict[str, asyncio.Task] = {}
        self.started_at: Optional[datetime] = None
        self.last_recovery: Optional[RecoveryReport] = None

        self._commands: Dict[str, CommandHandler] = {
            "pause": self._cmd_pause,
            "resume": self._cmd_resume,
            "approve": self._cmd_approve,
            "reject": self._cmd_reject,
            "status": self._cmd_status,
            "decide": self._cmd_decide,
            "close_all": self._cmd_close_all,
            "intel": self._cmd_intel,
        }
        for name in EMERGENCY_COMMANDS:
            self._commands[name] = self._cmd_emergency

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self, nats_url: Optional[str] = None, start_timers: bool = True) -> RecoveryReport:
        await self.ledger.ensure_schema()
        await self.store.ensure_schema()
        await self.cycle.ensure_schema()

        if nats_url:
            await self.bus.connect(nats_url)

        # Recovery runs before any command or timer can touch the state
        self.last_recovery = await self.recovery.run()

        if self.bus.connected:
            await self.bus.subscribe(self.handle_message)
        if start_timers:
            self._start_timers()

        self.started_at = datetime.now(timezone.utc)
        mode = "DRY RUN" if self.executor.dry_run else "LIVE"
        await self.notifier.notify(
            f"CFO agent started ({mode}); venues: {', '.join(self.registry.names()) or 'none'}"
        )
        return self.last_recovery

    def _start_timers(self) -> None:
        timers = {
            "decision_cycle": (DECISION_INTERVAL_MINUTES * 60, self.cycle.run_cycle),
            "monitor": (MONITOR_INTERVAL_MINUTES * 60, self.monitor.run),
            "approval_sweep": (APPROVAL_SWEEP_SECONDS, self.approvals.sweep),
            "heartbeat": (HEARTBEAT_SECONDS, self.heartbeat),
            "digest": (DIGEST_CHECK_SECONDS, self.maybe_send_digest),
        }
        for name, (interval, fn) in timers.items():
            self.tasks[name] = asyncio.create_task(run_periodic(name, interval, fn))
            logger.info(f"{name} scheduled every {interval:.0f}s")

    async def stop(self) -> None:
        for name, task in list(self.tasks.items()):
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.tasks.clear()

        await self.pause.close()
        await self.bus.close()
        await self.registry.close()
        await self.notifier.close()
        logger.info("CFO agent stopped")

    # =========================================================================
    # Hooks and timers
    # =========================================================================

    async def _after_execute(self, result: ExecutionResult) -> None:
        """Persist cooldowns and refresh the snapshot after an approved decision ran."""
        self.store.state.cooldown_state = self.cooldowns.export()
        await self.store.save()
        try:
            await self.ledger.refresh_daily_snapshot()
        except Exception as e:
            logger.error(f"Snapshot refresh failed: {e}")

    async def heartbeat(self) -> None:
        if not self.bus.connected:
            return
        await self.bus.report_to_supervisor(
            MessageType.HEARTBEAT,
            {
                "status": "paused" if self.pause.is_paused() else "running",
                "dry_run": self.executor.dry_run,
                "pending_approvals": len(self.approvals.list_pending()),
                "pending_orders": len(self.tracker),
                "cycle_running": self.cycle.running,
            },
            MessagePriority.LOW,
        )

    async def maybe_send_digest(self, now: Optional[datetime] = None) -> bool:
        """Send the daily digest once per UTC day. Returns True if it was sent now."""
        now = now or datetime.now(timezone.utc)
        if now.hour < self.digest_hour_utc:
            return False

        key = f"cfo_digest_{now.date().isoformat()}"
        if not await self.store.claim_key(key, {"sent_at": now.isoformat()}):
            return False

        snapshot = await self.ledger.refresh_daily_snapshot()
        text = format_digest(snapshot, len(self.approvals.list_pending(now)), self.pause.is_paused(now))
        await self.notifier.notify(text)
        if self.bus.connected:
            await self.bus.report_to_supervisor(MessageType.REPORT, {"kind": "daily_digest", "report": text})
        return True

    # =========================================================================
    # Inbound messages
    # =========================================================================

    async def handle_message(self, message: AgentMessage) -> Optional[Dict[str, Any]]:
        """
        Route one inbound bus message.

        INTEL payloads are merged into the next cycle's intel. ALERTs whose
        kind is market_crash/emergency_exit trigger the emergency exit.
        COMMANDs carry {"command": name, ...args}; the response is sent back
        to the sender as a REPORT.
        """
        payload = message.payload or {}

        if message.type == MessageType.INTEL:
            self.cycle.update_intel(payload)
            return None

        if message.type == MessageType.ALERT:
            if payload.get("kind") in EMERGENCY_COMMANDS:
                return await self._cmd_emergency({"reason": payload.get("reason") or payload["kind"]})
            logger.info(f"Alert from {message.from_agent}: {payload}")
            return None

        if message.type != MessageType.COMMAND:
            logger.debug(f"Ignoring {message.type.value} message from {message.from_agent}")
            return None

        command = str(payload.get("command", "")).lower()
        response = await self.run_command(command, payload)
        if self.bus.connected and message.from_agent != self.agent_id:
            await self.bus.send(
                message.from_agent,
                MessageType.REPORT,
                {"command": command, "in_reply_to": message.id, **response},
            )
        return response

    async def run_command(self, command: str, args: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        handler = self._commands.get(command)
        if handler is None:
            return {"ok": False, "error": f"unknown command '{command}'"}
        try:
            result = await handler(args or {})
        except ApprovalNotFound as e:
            return {"ok": False, "error": str(e)}
        except KeyError as e:
            return {"ok": False, "error": f"missing argument {e}"}
        return {"ok": True, **result}

    async def _cmd_pause(self, args: Dict[str, Any]) -> Dict[str, Any]:
        await self.pause.pause(args.get("reason", "operator"))
        return self.pause.status()

    async def _cmd_resume(self, args: Dict[str, Any]) -> Dict[str, Any]:
        await self.pause.resume(args.get("reason", "operator"))
        return self.pause.status()

    async def _cmd_approve(self, args: Dict[str, Any]) -> Dict[str, Any]:
        result = await self.approvals.approve(args["id"])
        return {"result": result.to_dict()}

    async def _cmd_reject(self, args: Dict[str, Any]) -> Dict[str, Any]:
        approval = await self.approvals.reject(args["id"], args.get("reason", ""))
        return {"rejected": approval.id}

    async def _cmd_emergency(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return await self.pause.emergency_exit(args.get("reason", "emergency_exit"))

    async def _cmd_status(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return self.status()

    async def _cmd_decide(self, args: Dict[str, Any]) -> Dict[str, Any]:
        outcome = await self.cycle.run_cycle(args.get("intel"))
        return {"trace_id": outcome.trace_id, "status": outcome.status, "report": outcome.report}

    async def _cmd_close_all(self, args: Dict[str, Any]) -> Dict[str, Any]:
        closed: Dict[str, int] = {}
        failures: Dict[str, str] = {}
        for venue in self.registry.enabled():
            try:
                closed[venue.name] = await asyncio.wait_for(venue.close_all(), timeout=VENUE_TIMEOUT_SECONDS)
            except Exception as e:
                logger.error(f"close_all failed on {venue.name}: {e}")
                failures[venue.name] = str(e) or type(e).__name__
        await self.notifier.notify(
            f"Close-all requested: {closed or 'nothing closed'}"
            + (f"; failures: {failures}" if failures else "")
            + ". Ledger positions stay OPEN until reviewed.",
            "high",
        )
        return {"closed": closed, "failures": failures}

    async def _cmd_intel(self, args: Dict[str, Any]) -> Dict[str, Any]:
        self.cycle.update_intel(args.get("intel") or {})
        return {"intel": self.cycle.intel}

    # =========================================================================
    # Status
    # =========================================================================

    def status(self) -> Dict[str, Any]:
        last = self.cycle.last_outcome
        return {
            "agent_id": self.agent_id,
            "dry_run": self.executor.dry_run,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "pause": self.pause.status(),
            "pending_approvals": [a.to_dict() for a in self.approvals.list_pending()],
            "pending_orders": self.tracker.snapshot(),
            "cycle_running": self.cycle.running,
            "last_cycle": {
                "trace_id": last.trace_id,
                "status": last.status,
                "finished_at": last.finished_at.isoformat() if last.finished_at else None,
            } if last else None,
            "venues": self.registry.names(),
            "bus_connected": self.bus.connected,
            "timers": sorted(name for name, task in self.tasks.items() if not task.done()),
            "recovery": self.last_recovery.to_dict() if self.last_recovery else None,
            "recent_notifications": self.notifier.history[-10:],
        }
