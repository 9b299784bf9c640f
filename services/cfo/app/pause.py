"""
Emergency Pause / Resume

RUNNING -> PAUSED on a market-crash or emergency-exit message:
1. pause immediately (no new decisions from this point)
2. best-effort close/cancel on every enabled venue; per-venue failures are
   collected and reported, never fatal to the other venues
3. paused_until = now + cooldown, persisted
4. a resume timer fires after the cooldown and resumes trading

A manual resume clears the pause and cancels the timer whatever cooldown
is left. A manual pause (operator "stop") has no timer and lasts until
resumed. Both survive a restart through the agent state blob.

@module pause
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from .config import EMERGENCY_COOLDOWN_HOURS, VENUE_TIMEOUT_SECONDS
from .metrics import paused_gauge
from .notifier import Notifier
from .state_store import StateStore
from .venues import VenueRegistry


logger = logging.getLogger(__name__)


class EmergencyController:

    def __init__(
        self,
        store: StateStore,
        registry: VenueRegistry,
        notifier: Notifier,
        cooldown_hours: float = EMERGENCY_COOLDOWN_HOURS,
        call_timeout: float = VENUE_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.registry = registry
        self.notifier = notifier
        self.cooldown = timedelta(hours=cooldown_hours)
        self.call_timeout = call_timeout
        self.paused_until: Optional[datetime] = None
        self.manual_paused = False
        self._resume_task: Optional[asyncio.Task] = None

    def is_paused(self, now: Optional[datetime] = None) -> bool:
        if self.manual_paused:
            return True
        if self.paused_until is None:
            return False
        return (now or datetime.now(timezone.utc)) < self.paused_until

    def status(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        remaining = None
        if self.paused_until is not None:
            remaining = max(0, int((self.paused_until - now).total_seconds()))
        return {
            "paused": self.is_paused(now),
            "manual": self.manual_paused,
            "paused_until": self.paused_until.isoformat() if self.paused_until else None,
            "remaining_seconds": remaining,
        }

    async def _persist(self) -> None:
        self.store.state.emergency_paused_until = (
            self.paused_until.isoformat() if self.paused_until else None
        )
        self.store.state.manual_paused = self.manual_paused
        await self.store.save()

    # =========================================================================
    # Timer
    # =========================================================================

    def _arm(self, delay_seconds: float) -> None:
        self._cancel_timer()
        self._resume_task = asyncio.create_task(self._resume_after(max(0.0, delay_seconds)))

    def _cancel_timer(self) -> None:
        if self._resume_task is not None and not self._resume_task.done():
            if self._resume_task is not asyncio.current_task():
                self._resume_task.cancel()
        self._resume_task = None

    async def _resume_after(self, delay_seconds: float) -> None:
        await asyncio.sleep(delay_seconds)
        self._resume_task = None
        self.paused_until = None
        paused_gauge.set(1 if self.manual_paused else 0)
        try:
            await self._persist()
        except Exception as e:
            # Stored timestamp is already in the past; the next boot treats it as resumed
            logger.error(f"Failed to persist auto-resume: {e}")
        await self.notifier.notify("Emergency cooldown over, trading resumed automatically", "high")

    # =========================================================================
    # Transitions
    # =========================================================================

    async def emergency_exit(self, reason: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        self.paused_until = now + self.cooldown
        paused_gauge.set(1)
        await self.notifier.notify(f"EMERGENCY ({reason}): trading paused, closing positions", "critical")

        closed: Dict[str, int] = {}
        failures: Dict[str, str] = {}
        for venue in self.registry.enabled():
            try:
                closed[venue.name] = await asyncio.wait_for(venue.close_all(), timeout=self.call_timeout)
            except Exception as e:
                logger.error(f"Emergency close failed on {venue.name}: {e}")
                failures[venue.name] = str(e) or type(e).__name__

        self.paused_until = datetime.now(timezone.utc) + self.cooldown
        await self._persist()
        self._arm((self.paused_until - datetime.now(timezone.utc)).total_seconds())

        summary = ", ".join(f"{k}: {v} closed" for k, v in closed.items()) or "no venues closed"
        text = f"Emergency exit done ({summary}). Paused until {self.paused_until:%Y-%m-%d %H:%M} UTC."
        if failures:
            text += " Failures: " + "; ".join(f"{k}: {v}" for k, v in failures.items())
        await self.notifier.notify(text, "critical")

        return {
            "reason": reason,
            "paused_until": self.paused_until.isoformat(),
            "closed": closed,
            "failures": failures,
        }

    async def pause(self, reason: str = "operator") -> None:
        self.manual_paused = True
        paused_gauge.set(1)
        await self._persist()
        await self.notifier.notify(f"Trading paused ({reason}) until resumed", "high")

    async def resume(self, reason: str = "operator") -> None:
        was_paused = self.is_paused()
        self._cancel_timer()
        self.paused_until = None
        self.manual_paused = False
        paused_gauge.set(0)
        await self._persist()
        if was_paused:
            await self.notifier.notify(f"Trading resumed ({reason})", "high")

    # =========================================================================
    # Restart
    # =========================================================================

    async def rehydrate(self, now: Optional[datetime] = None) -> Optional[float]:
        """
        Re-enter PAUSED if the persisted pause is still running.

        Returns:
            Seconds of cooldown left, or None if not paused by emergency.
        """
        now = now or datetime.now(timezone.utc)
        state = self.store.state
        self.manual_paused = state.manual_paused

        remaining = None
        if state.emergency_paused_until:
            until = datetime.fromisoformat(state.emergency_paused_until)
            if until > now:
                self.paused_until = until
                remaining = (until - now).total_seconds()
                self._arm(remaining)
                await self.notifier.notify(
                    f"Emergency pause restored after restart: {remaining / 3600:.1f}h left", "high"
                )
            else:
                self.paused_until = None
                await self._persist()
                await self.notifier.notify("Emergency pause expired while offline; trading resumed")

        paused_gauge.set(1 if self.is_paused(now) else 0)
        if self.manual_paused:
            await self.notifier.notify("Manual pause restored after restart", "high")
        return remaining

    async def close(self) -> None:
        self._cancel_timer()
