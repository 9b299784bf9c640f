"""
Tests for pending sell order tracking and fill confirmation.

@module tests.test_orders
"""

from datetime import datetime, timedelta, timezone

import pytest

from app.errors import LedgerError
from app.models import (
    PENDING_ORDER_KEY,
    PENDING_ORDER_PLACED_KEY,
    PENDING_ORDER_VENUE_KEY,
    PendingOrder,
    PositionStatus,
    TxType,
)
from app.orders import wait_for_fill
from app.venues import OrderAction, OrderRequest, OrderStatus

from fakes import make_position


@pytest.fixture
def position(ledger):
    return ledger.add(make_position(cost_basis_usd=100.0, current_value_usd=90.0))


async def _live_sell(paper, position):
    paper.fill_orders = False
    order = await paper.place_order(
        OrderRequest(action=OrderAction.SELL, asset=position.asset, amount_units=position.size_units,
                     amount_usd=130.0, external_id=position.external_id)
    )
    assert order.status == OrderStatus.LIVE
    return order


def _pending(order_id, position, venue="paper"):
    return PendingOrder(
        order_id=order_id,
        position_id=position.id,
        cost_basis_usd=position.cost_basis_usd,
        description=position.description,
        placed_at=datetime.now(timezone.utc) - timedelta(minutes=3),
        venue=venue,
    )


# =============================================================================
# Tracking
# =============================================================================


class TestTrack:

    @pytest.mark.asyncio
    async def test_metadata_mirrors_order(self, tracker, ledger, position):
        await tracker.track(_pending("paper-7", position))

        assert "paper-7" in tracker
        stored = await ledger.get_position(position.id)
        assert stored.metadata[PENDING_ORDER_KEY] == "paper-7"
        assert stored.metadata[PENDING_ORDER_VENUE_KEY] == "paper"

    @pytest.mark.asyncio
    async def test_metadata_failure_not_tracked(self, tracker, ledger, position):
        ledger.fail_on.add("update_position_metadata")
        with pytest.raises(LedgerError):
            await tracker.track(_pending("paper-7", position))
        assert len(tracker) == 0

    @pytest.mark.asyncio
    async def test_untrack_clears_metadata(self, tracker, ledger, position):
        await tracker.track(_pending("paper-7", position))
        await tracker.untrack("paper-7")

        stored = await ledger.get_position(position.id)
        assert PENDING_ORDER_KEY not in stored.metadata
        assert stored.metadata["venue"] == "paper"

    def test_rehydrate_from_metadata(self, tracker, position):
        placed = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)
        position.metadata.update({
            PENDING_ORDER_KEY: "poly-55",
            PENDING_ORDER_PLACED_KEY: placed.isoformat(),
            PENDING_ORDER_VENUE_KEY: "polymarket",
        })
        untouched = make_position(external_id="cond-2")

        restored = tracker.rehydrate([position, untouched])

        assert [o.order_id for o in restored] == ["poly-55"]
        order = tracker.orders["poly-55"]
        assert order.venue == "polymarket"
        assert order.placed_at == placed
        assert order.cost_basis_usd == 100.0
        # Second pass does not duplicate
        assert tracker.rehydrate([position]) == []

    @pytest.mark.asyncio
    async def test_snapshot(self, tracker, position):
        await tracker.track(_pending("paper-7", position))
        [entry] = tracker.snapshot()
        assert entry["order_id"] == "paper-7"
        assert entry["age_seconds"] >= 180


# =============================================================================
# Polling
# =============================================================================


class TestPoll:

    @pytest.mark.asyncio
    async def test_fill_closes_position(self, tracker, ledger, paper, position, notifier):
        order = await _live_sell(paper, position)
        await tracker.track(_pending(order.order_id, position))
        paper.mark_filled(order.order_id)

        summary = await tracker.poll()

        assert summary["filled"] == 1
        assert order.order_id not in tracker
        closed = await ledger.get_position(position.id)
        assert closed.status == PositionStatus.CLOSED
        assert closed.realized_pnl_usd == 30.0
        assert PENDING_ORDER_KEY not in closed.metadata
        tx = ledger.transactions[f"paper:{order.order_id}"]
        assert tx.tx_type == TxType.PREDICTION_SELL
        assert tx.tx_hash == f"0xpaper{order.order_id}"
        assert "Sell filled" in notifier.history[-1]

    @pytest.mark.asyncio
    async def test_still_live(self, tracker, paper, position):
        order = await _live_sell(paper, position)
        await tracker.track(_pending(order.order_id, position))

        summary = await tracker.poll()

        assert summary["pending"] == 1
        assert order.order_id in tracker

    @pytest.mark.asyncio
    async def test_rejected_keeps_position_open(self, tracker, ledger, position, notifier):
        await tracker.track(_pending("paper-404", position))

        summary = await tracker.poll()

        assert summary["rejected"] == 1
        assert len(tracker) == 0
        assert (await ledger.get_position(position.id)).is_open
        assert notifier.history[-1].startswith("[HIGH]")

    @pytest.mark.asyncio
    async def test_unknown_venue_kept(self, tracker, position):
        await tracker.track(_pending("poly-1", position, venue="polymarket"))

        summary = await tracker.poll()

        assert summary["unknown"] == 1
        assert "poly-1" in tracker


class TestWaitForFill:

    @pytest.mark.asyncio
    async def test_returns_final_status(self, paper):
        order = await paper.place_order(OrderRequest(action=OrderAction.SELL, asset="SOL", amount_units=1))
        status = await wait_for_fill(paper, order.order_id, timeout=1.0, interval=0.01)
        assert status.status == OrderStatus.MATCHED

    @pytest.mark.asyncio
    async def test_gives_up_while_live(self, paper):
        paper.fill_orders = False
        order = await paper.place_order(OrderRequest(action=OrderAction.SELL, asset="SOL", amount_units=1))

        status = await wait_for_fill(paper, order.order_id, timeout=0.05, interval=0.01)

        assert status.status == OrderStatus.LIVE
