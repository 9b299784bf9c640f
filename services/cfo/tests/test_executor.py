"""
Tests for the Decision Executor

Tests tier gating, dry run, venue retry/timeout handling and the ledger
rows written for opens and exits. Venues are PaperVenue instances.

@module tests.test_executor
"""

import pytest

from app.executor import DecisionExecutor
from app.models import (
    DecisionType,
    PositionStatus,
    Strategy,
    Tier,
    TxStatus,
    TxType,
    Urgency,
)
from app.orders import PendingOrderTracker
from app.producer import CooldownTracker
from app.venues import OrderStatus, VenuePosition, VenueRegistry

from fakes import FlakyVenue, make_decision, make_position


# =============================================================================
# Test Fixtures
# =============================================================================


def _executor(ledger, venue, notifier, **kwargs):
    registry = VenueRegistry([venue])
    tracker = PendingOrderTracker(ledger, registry, notifier, call_timeout=1.0)
    options = dict(dry_run=False, call_timeout=0.5, confirm_timeout=0.05, max_retries=3, base_delay_ms=1)
    options.update(kwargs)
    return DecisionExecutor(ledger, registry, tracker, CooldownTracker({"stake": 6}), notifier, **options)


@pytest.fixture
def held_market(ledger, paper):
    """A $100 prediction position now worth $120, held at the paper venue."""
    position = ledger.add(
        make_position(cost_basis_usd=100.0, current_value_usd=120.0, current_price=0.6, size_units=200.0)
    )
    paper.add_position(
        VenuePosition(venue="paper", asset=position.asset, size_units=200.0, value_usd=120.0,
                      price=0.6, external_id=position.external_id)
    )
    return position


def _exit(position, fraction=1.0):
    return make_decision(
        DecisionType.MARKET_EXIT,
        impact=position.current_value_usd,
        urgency=Urgency.HIGH,
        position_id=position.id,
        fraction=fraction,
    )


# =============================================================================
# Gating
# =============================================================================


class TestGating:

    @pytest.mark.asyncio
    async def test_approval_tier_is_not_executed(self, executor, paper):
        result = await executor.execute(make_decision(tier=Tier.APPROVAL))

        assert result.pending_approval
        assert not result.executed
        assert paper.order_requests == []

    @pytest.mark.asyncio
    async def test_dry_run_sends_nothing(self, executor, paper, ledger):
        executor.dry_run = True
        result = await executor.execute(make_decision())

        assert result.dry_run and result.success and not result.executed
        assert paper.order_requests == []
        assert await executor.record_outcome(result) == []
        assert ledger.transactions == {}

    @pytest.mark.asyncio
    async def test_exposure_cap(self, executor, ledger, paper):
        ledger.add(make_position(strategy=Strategy.LIQUID_STAKING, asset="SOL", external_id="stake-1",
                                 cost_basis_usd=1900.0, current_value_usd=1900.0))

        result = await executor.execute(make_decision())

        assert not result.executed
        assert "exceeds cap" in result.error
        assert paper.order_requests == []


# =============================================================================
# Opening
# =============================================================================


class TestOpen:

    @pytest.mark.asyncio
    async def test_stake_records_position_and_tx(self, executor, ledger, paper, cooldowns):
        """AUTO stake of 5 SOL at $100: one confirmed stake tx, one open position."""
        result = await executor.execute(make_decision())
        assert result.executed and result.success
        assert result.order.status == OrderStatus.MATCHED

        txs = await executor.record_outcome(result)

        assert len(txs) == 1
        tx = ledger.transactions[txs[0].id]
        assert tx.id == f"paper:{result.order.order_id}"
        assert tx.tx_type == TxType.STAKE
        assert tx.amount_in == 5.0
        assert tx.status == TxStatus.CONFIRMED

        [position] = await ledger.get_open_positions("liquid_staking")
        assert position.cost_basis_usd == 500.0
        assert position.size_units == 5.0
        assert position.external_id == result.external_id
        assert result.external_id in paper.positions
        assert tx.position_id == position.id
        assert not cooldowns.is_ready(DecisionType.STAKE)

    @pytest.mark.asyncio
    async def test_recording_twice_writes_once(self, executor, ledger):
        result = await executor.execute(make_decision())
        await executor.record_outcome(result)
        await executor.record_outcome(result)

        assert len(ledger.transactions) == 1
        [position] = await ledger.get_open_positions()
        assert position.cost_basis_usd == 500.0

    @pytest.mark.asyncio
    async def test_terminal_failure_recorded(self, executor, ledger, paper, notifier, cooldowns):
        paper.balance_usd = 100.0
        result = await executor.execute(make_decision())

        assert result.terminal and not result.executed
        assert "insufficient funds" in result.error
        assert cooldowns.is_ready(DecisionType.STAKE)

        [tx] = await executor.record_outcome(result)
        assert tx.status == TxStatus.FAILED
        assert tx.id.startswith("failed:")
        assert ledger.transactions[tx.id].error_message == result.error
        assert await ledger.get_open_positions() == []
        assert notifier.history[-1].startswith("[HIGH]")


# =============================================================================
# Venue errors
# =============================================================================


class TestVenueErrors:

    @pytest.mark.asyncio
    async def test_transient_retried(self, ledger, notifier):
        venue = FlakyVenue("paper", failures=2)
        executor = _executor(ledger, venue, notifier)

        result = await executor.execute(make_decision())

        assert result.executed
        assert venue.attempts == 3

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, ledger, notifier):
        venue = FlakyVenue("paper", failures=10)
        executor = _executor(ledger, venue, notifier)

        result = await executor.execute(make_decision())

        assert not result.executed and not result.terminal and not result.outcome_unknown
        assert "retries exhausted" in result.error
        assert venue.attempts == 3
        assert await executor.record_outcome(result) == []

    @pytest.mark.asyncio
    async def test_timeout_is_unknown_not_failed(self, ledger, notifier):
        """A hung venue is not retried and nothing is written to the ledger."""
        venue = FlakyVenue("paper", hang=True)
        executor = _executor(ledger, venue, notifier, call_timeout=0.05)

        result = await executor.execute(make_decision())

        assert result.outcome_unknown
        assert result.label == "unknown"
        assert venue.attempts == 1
        assert await executor.record_outcome(result) == []
        assert ledger.transactions == {}


# =============================================================================
# Exits
# =============================================================================


class TestExit:

    @pytest.mark.asyncio
    async def test_full_exit_closes_position(self, executor, ledger, held_market):
        result = await executor.execute(_exit(held_market))
        [tx] = await executor.record_outcome(result)

        closed = await ledger.get_position(held_market.id)
        assert closed.status == PositionStatus.CLOSED
        assert closed.realized_pnl_usd == 20.0
        assert closed.current_value_usd == 120.0
        assert closed.unrealized_pnl_usd == 0.0
        assert tx.tx_type == TxType.PREDICTION_SELL
        assert tx.amount_out == 120.0

    @pytest.mark.asyncio
    async def test_partial_exit(self, executor, ledger, held_market):
        result = await executor.execute(_exit(held_market, fraction=0.5))
        await executor.record_outcome(result)

        position = await ledger.get_position(held_market.id)
        assert position.status == PositionStatus.PARTIAL_EXIT
        assert position.size_units == 100.0
        assert position.cost_basis_usd == 50.0
        assert position.current_value_usd == 60.0
        assert position.realized_pnl_usd == 10.0

    @pytest.mark.asyncio
    async def test_unfilled_sell_is_tracked(self, executor, ledger, paper, tracker, held_market):
        paper.fill_orders = False

        result = await executor.execute(_exit(held_market))
        assert result.executed
        assert result.order.status == OrderStatus.LIVE

        assert await executor.record_outcome(result) == []
        order_id = result.order.order_id
        assert order_id in tracker
        position = await ledger.get_position(held_market.id)
        assert position.is_open
        assert position.pending_order_id == order_id
        assert ledger.transactions == {}

    @pytest.mark.asyncio
    async def test_refuses_second_sell(self, executor, ledger, paper, held_market):
        await ledger.update_position_metadata(held_market.id, {"pending_sell_order_id": "paper-9"})

        result = await executor.execute(_exit(held_market))

        assert not result.executed
        assert "already pending" in result.error
        assert paper.order_requests == []

    @pytest.mark.asyncio
    async def test_closed_position(self, executor, ledger, held_market):
        await ledger.close_position(held_market.id, "0x1", 0.0)
        result = await executor.execute(_exit(held_market))
        assert not result.executed
        assert "is not open" in result.error
