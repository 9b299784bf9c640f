"""
Pending Order Tracker

Sell orders that were accepted by a venue but not yet filled. Each one is
mirrored into the owning position's metadata, so after a restart the
tracker is rebuilt from open positions and polling resumes instead of the
order being silently abandoned.

A poll that times out or hits a transient venue error leaves the order
in place: the outcome is unknown, not failed.

@module orders
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from .config import ORDER_CONFIRM_TIMEOUT_SECONDS, VENUE_TIMEOUT_SECONDS
from .errors import VenueError
from .ledger import Ledger
from .metrics import pending_orders_gauge
from .models import (
    PENDING_ORDER_KEY,
    PENDING_ORDER_PLACED_KEY,
    PENDING_ORDER_VENUE_KEY,
    PendingOrder,
    Position,
    Transaction,
    TxStatus,
    TxType,
    compute_realized,
)
from .notifier import Notifier
from .venues import OrderStatus, OrderStatusResult, VenueAdapter, VenueRegistry


logger = logging.getLogger(__name__)

CONFIRM_POLL_INTERVAL_SECONDS = 5.0

SELL_TX_TYPE = {
    "prediction_market": TxType.PREDICTION_SELL,
    "liquid_staking": TxType.UNSTAKE,
    "lending_loop": TxType.REPAY,
    "amm_liquidity": TxType.WITHDRAW,
}


async def wait_for_fill(
    venue: VenueAdapter,
    order_id: str,
    timeout: float = ORDER_CONFIRM_TIMEOUT_SECONDS,
    interval: float = CONFIRM_POLL_INTERVAL_SECONDS,
) -> Optional[OrderStatusResult]:
    """
    Poll an order until it is MATCHED or REJECTED or `timeout` elapses.

    Returns:
        The final status, or the last LIVE status seen, or None if the
        venue never answered inside the window.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    last: Optional[OrderStatusResult] = None

    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            return last
        try:
            last = await asyncio.wait_for(venue.get_order_status(order_id), timeout=remaining)
        except (asyncio.TimeoutError, VenueError) as e:
            logger.warning(f"Order {order_id} status check failed: {e}")
        else:
            if last.status != OrderStatus.LIVE:
                return last
        await asyncio.sleep(min(interval, max(0.0, deadline - loop.time())))


def sell_tx_type(strategy: str) -> TxType:
    return SELL_TX_TYPE.get(strategy, TxType.SWAP)


class PendingOrderTracker:
    """In-memory view of unfilled sell orders, backed by position metadata."""

    def __init__(
        self,
        ledger: Ledger,
        registry: VenueRegistry,
        notifier: Notifier,
        call_timeout: float = VENUE_TIMEOUT_SECONDS,
    ):
        self.ledger = ledger
        self.registry = registry
        self.notifier = notifier
        self.call_timeout = call_timeout
        self.orders: Dict[str, PendingOrder] = {}

    def __contains__(self, order_id: str) -> bool:
        return order_id in self.orders

    def __len__(self) -> int:
        return len(self.orders)

    async def track(self, order: PendingOrder) -> None:
        """Start tracking an order. The metadata write happens first and may raise."""
        await self.ledger.update_position_metadata(
            order.position_id,
            {
                PENDING_ORDER_KEY: order.order_id,
                PENDING_ORDER_PLACED_KEY: order.placed_at.isoformat(),
                PENDING_ORDER_VENUE_KEY: order.venue,
            },
        )
        self.orders[order.order_id] = order
        pending_orders_gauge.set(len(self.orders))

    async def untrack(self, order_id: str) -> None:
        order = self.orders.pop(order_id, None)
        pending_orders_gauge.set(len(self.orders))
        if order is None:
            return
        await self.ledger.update_position_metadata(
            order.position_id,
            remove_keys=[PENDING_ORDER_KEY, PENDING_ORDER_PLACED_KEY, PENDING_ORDER_VENUE_KEY],
        )

    def rehydrate(self, positions: Iterable[Position]) -> List[PendingOrder]:
        """Rebuild the tracker from open positions' metadata."""
        restored = []
        for position in positions:
            order_id = position.pending_order_id
            if not order_id or order_id in self.orders:
                continue
            placed_raw = position.metadata.get(PENDING_ORDER_PLACED_KEY)
            try:
                placed_at = datetime.fromisoformat(placed_raw) if placed_raw else position.updated_at
            except ValueError:
                placed_at = position.updated_at
            order = PendingOrder(
                order_id=order_id,
                position_id=position.id,
                cost_basis_usd=position.cost_basis_usd,
                description=position.description or position.asset,
                placed_at=placed_at,
                venue=position.metadata.get(PENDING_ORDER_VENUE_KEY) or position.metadata.get("venue", "paper"),
            )
            self.orders[order_id] = order
            restored.append(order)
        pending_orders_gauge.set(len(self.orders))
        return restored

    async def poll(self) -> Dict[str, Any]:
        """Check every tracked order once and settle the ones that finished."""
        summary = {"filled": 0, "rejected": 0, "pending": 0, "unknown": 0}

        for order in list(self.orders.values()):
            venue = self.registry.get(order.venue)
            if venue is None:
                logger.warning(f"No enabled venue '{order.venue}' for pending order {order.order_id}")
                summary["unknown"] += 1
                continue

            try:
                status = await asyncio.wait_for(
                    venue.get_order_status(order.order_id), timeout=self.call_timeout
                )
            except (asyncio.TimeoutError, VenueError) as e:
                logger.warning(f"Pending order {order.order_id} poll failed, will retry: {e}")
                summary["unknown"] += 1
                continue

            if status.status == OrderStatus.MATCHED:
                await self.settle_fill(order, status)
                summary["filled"] += 1
            elif status.status == OrderStatus.REJECTED:
                await self.untrack(order.order_id)
                await self.notifier.notify(
                    f"Sell order {order.order_id} for {order.description} was rejected; position stays open",
                    "high",
                )
                summary["rejected"] += 1
            else:
                summary["pending"] += 1

        return summary

    async def settle_fill(self, order: PendingOrder, status: OrderStatusResult) -> None:
        """Close the position for a filled sell and record the transaction."""
        position = await self.ledger.get_position(order.position_id)
        received = status.amount_usd
        pnl = compute_realized(received, order.cost_basis_usd)
        tx_hash = status.tx_hashes[0] if status.tx_hashes else None

        await self.ledger.insert_transaction(
            Transaction(
                id=f"{order.venue}:{order.order_id}",
                chain=position.chain if position else "unknown",
                strategy_tag=position.strategy.value if position else "unknown",
                tx_type=sell_tx_type(position.strategy.value) if position else TxType.SWAP,
                token_in=position.asset if position else None,
                amount_in=status.filled_units or None,
                token_out="USD",
                amount_out=received,
                tx_hash=tx_hash,
                position_id=order.position_id,
                status=TxStatus.CONFIRMED,
                metadata={"order_id": order.order_id, "settled_by": "pending_order_poll"},
            )
        )
        await self.untrack(order.order_id)
        await self.ledger.close_position(order.position_id, tx_hash, pnl, received_usd=received)
        await self.notifier.notify(
            f"Sell filled: {order.description} received ${received:.2f} (P&L ${pnl:+.2f})"
        )

    def snapshot(self) -> List[Dict[str, Any]]:
        now = datetime.now(timezone.utc)
        return [
            {
                "order_id": o.order_id,
                "position_id": o.position_id,
                "venue": o.venue,
                "description": o.description,
                "age_seconds": int((now - o.placed_at).total_seconds()),
            }
            for o in self.orders.values()
        ]
