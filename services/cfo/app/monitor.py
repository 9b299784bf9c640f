"""
Position monitor: periodic price refresh, pending-order polling and dust cleanup.
"""

import asyncio
import logging
from typing import Any, Dict, List

from .config import DUST_THRESHOLD_USD, VENUE_TIMEOUT_SECONDS
from .ledger import Ledger
from .models import Position, compute_realized
from .notifier import Notifier
from .orders import PendingOrderTracker
from .venues import VenueRegistry


logger = logging.getLogger(__name__)


class PositionMonitor:

    def __init__(
        self,
        ledger: Ledger,
        registry: VenueRegistry,
        tracker: PendingOrderTracker,
        notifier: Notifier,
        dust_threshold_usd: float = DUST_THRESHOLD_USD,
        call_timeout: float = VENUE_TIMEOUT_SECONDS,
    ):
        self.ledger = ledger
        self.registry = registry
        self.tracker = tracker
        self.notifier = notifier
        self.dust_threshold_usd = dust_threshold_usd
        self.call_timeout = call_timeout

    async def run(self) -> Dict[str, Any]:
        summary: Dict[str, Any] = {}
        for name, step in (
            ("prices", self.refresh_prices),
            ("orders", self.tracker.poll),
            ("dust", self.cleanup_dust),
        ):
            try:
                summary[name] = await step()
            except Exception as e:
                logger.exception(f"Monitor step {name} failed: {e}")
                summary[name] = {"error": str(e)}
        return summary

    async def refresh_prices(self) -> Dict[str, int]:
        positions = await self.ledger.get_open_positions()
        by_external = {p.external_id: p for p in positions if p.external_id}
        updated = 0

        for venue in self.registry.enabled():
            try:
                held = await asyncio.wait_for(venue.fetch_positions(), timeout=self.call_timeout)
            except Exception as e:
                logger.warning(f"Price refresh skipped for {venue.name}: {e}")
                continue
            for venue_position in held:
                position = by_external.get(venue_position.external_id)
                if position is None:
                    continue
                price = venue_position.price or position.current_price
                if await self.ledger.update_position_price(position.id, price, venue_position.value_usd):
                    updated += 1

        return {"updated": updated}

    def _is_dust(self, position: Position) -> bool:
        return (
            position.cost_basis_usd > 0
            and position.current_value_usd < self.dust_threshold_usd
            and not position.pending_order_id
        )

    async def cleanup_dust(self) -> Dict[str, List[str]]:
        """Close positions whose remaining value is below the dust threshold."""
        cleaned: List[str] = []
        for position in await self.ledger.get_open_positions():
            if not self._is_dust(position):
                continue
            pnl = compute_realized(position.current_value_usd, position.cost_basis_usd)
            closed = await self.ledger.close_position(
                position.id, "dust-cleanup", pnl, received_usd=position.current_value_usd
            )
            if closed:
                cleaned.append(position.id)
                await self.notifier.notify(
                    f"Dust cleanup: closed {position.description or position.asset} "
                    f"(${position.current_value_usd:.2f} left, P&L ${pnl:+.2f})",
                    "low",
                )
        return {"closed": cleaned}
