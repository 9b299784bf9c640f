"""
Decision Executor

Executes one decision against the venue that serves it and records the
outcome in the ledger.

Behavior:
- APPROVAL tier is never executed here; the result is flagged pending_approval
- dry run (default) simulates: success, nothing sent, nothing recorded
- every venue call is bounded by VENUE_TIMEOUT_SECONDS; a timeout is an
  unknown outcome and never recorded as a failure
- transient venue errors are retried with exponential backoff
  (500ms, 1000ms, 2000ms by default); terminal errors are not retried and
  are recorded as a failed Transaction

Execution is a dispatch table from DecisionType to a handler, so a
decision read back from persisted JSON executes exactly like a fresh one.

@module executor
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional
from uuid import uuid4

from .config import (
    DRY_RUN,
    ORDER_CONFIRM_TIMEOUT_SECONDS,
    VENUE_BASE_DELAY_MS,
    VENUE_MAX_RETRIES,
    VENUE_TIMEOUT_SECONDS,
)
from .errors import VenueTerminalError, VenueTimeoutError, VenueTransientError
from .ledger import Ledger
from .metrics import execution_counter
from .models import (
    Decision,
    DecisionType,
    PendingOrder,
    Position,
    PositionStatus,
    Strategy,
    Tier,
    Transaction,
    TxStatus,
    TxType,
    compute_realized,
    round_usd,
)
from .notifier import Notifier
from .orders import PendingOrderTracker, sell_tx_type, wait_for_fill
from .producer import OPENING_DECISIONS, CooldownTracker, check_exposure
from .venues import (
    OrderAction,
    OrderRequest,
    OrderResult,
    OrderStatus,
    VenueAdapter,
    VenuePosition,
    VenueRegistry,
)


logger = logging.getLogger(__name__)

OPEN_ACTION = {
    DecisionType.OPEN_HEDGE: OrderAction.SHORT,
    DecisionType.STAKE: OrderAction.STAKE,
    DecisionType.BORROW: OrderAction.BORROW,
    DecisionType.LP_OPEN: OrderAction.ADD_LIQUIDITY,
    DecisionType.MARKET_BUY: OrderAction.BUY,
}

OPEN_TX_TYPE = {
    DecisionType.OPEN_HEDGE: TxType.SWAP,
    DecisionType.STAKE: TxType.STAKE,
    DecisionType.BORROW: TxType.BORROW,
    DecisionType.LP_OPEN: TxType.LIQUIDITY_ADD,
    DecisionType.MARKET_BUY: TxType.PREDICTION_BUY,
}

# Position metadata: venue order ids already added to the position
ENTRY_ORDERS_KEY = "entry_order_ids"

EXIT_STRATEGY = {
    DecisionType.CLOSE_HEDGE: Strategy.PERP_HEDGE,
    DecisionType.UNSTAKE: Strategy.LIQUID_STAKING,
    DecisionType.REPAY: Strategy.LENDING_LOOP,
    DecisionType.LP_CLOSE: Strategy.AMM_LIQUIDITY,
    DecisionType.MARKET_EXIT: None,  # whatever the position's strategy is
}


@dataclass
class ExecutionResult:
    """Result of one execution attempt."""
    decision: Decision
    executed: bool
    success: bool
    pending_approval: bool = False
    dry_run: bool = False
    # Venue did not answer in time; the ledger is left untouched
    outcome_unknown: bool = False
    # Venue refused for good (rejected order, insufficient funds)
    terminal: bool = False
    venue: Optional[str] = None
    order: Optional[OrderResult] = None
    position: Optional[Position] = None
    # Venue-side id the opened position is filed under
    external_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def label(self) -> str:
        if self.pending_approval:
            return "pending_approval"
        if self.dry_run:
            return "dry_run"
        if self.outcome_unknown:
            return "unknown"
        if self.executed and self.success:
            return "success"
        return "failed"

    def to_dict(self) -> Dict:
        return {
            "decision": self.decision.to_dict(),
            "executed": self.executed,
            "success": self.success,
            "pending_approval": self.pending_approval,
            "dry_run": self.dry_run,
            "outcome_unknown": self.outcome_unknown,
            "venue": self.venue,
            "order_id": self.order.order_id if self.order else None,
            "order_status": self.order.status.value if self.order else None,
            "tx_hash": self.order.tx_hash if self.order else None,
            "error": self.error,
        }


Handler = Callable[[Decision], Awaitable[ExecutionResult]]


class DecisionExecutor:
    """
    Dispatch decisions to venue adapters.

    Usage:
        executor = DecisionExecutor(ledger, registry, tracker, cooldowns, notifier, dry_run=False)
        result = await executor.execute(decision)
        if result.executed:
            await executor.record_outcome(result)
    """

    def __init__(
        self,
        ledger: Ledger,
        registry: VenueRegistry,
        tracker: PendingOrderTracker,
        cooldowns: CooldownTracker,
        notifier: Notifier,
        dry_run: bool = DRY_RUN,
        call_timeout: float = VENUE_TIMEOUT_SECONDS,
        confirm_timeout: float = ORDER_CONFIRM_TIMEOUT_SECONDS,
        max_retries: int = VENUE_MAX_RETRIES,
        base_delay_ms: int = VENUE_BASE_DELAY_MS,
    ):
        self.ledger = ledger
        self.registry = registry
        self.tracker = tracker
        self.cooldowns = cooldowns
        self.notifier = notifier
        self.dry_run = dry_run
        self.call_timeout = call_timeout
        self.confirm_timeout = confirm_timeout
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms

        self._dispatch: Dict[DecisionType, Handler] = {
            DecisionType.OPEN_HEDGE: self._open,
            DecisionType.STAKE: self._open,
            DecisionType.BORROW: self._open,
            DecisionType.LP_OPEN: self._open,
            DecisionType.MARKET_BUY: self._open,
            DecisionType.CLOSE_HEDGE: self._exit,
            DecisionType.UNSTAKE: self._exit,
            DecisionType.REPAY: self._exit,
            DecisionType.LP_CLOSE: self._exit,
            DecisionType.MARKET_EXIT: self._exit,
            DecisionType.SKIP: self._skip,
        }

    def can_execute(self, decision_type: DecisionType) -> bool:
        return decision_type in self._dispatch

    async def execute(self, decision: Decision) -> ExecutionResult:
        if decision.tier == Tier.APPROVAL:
            result = ExecutionResult(decision, executed=False, success=True, pending_approval=True)
            execution_counter.labels(type=decision.type.value, result=result.label).inc()
            return result

        handler = self._dispatch.get(decision.type)
        if handler is None:
            return ExecutionResult(decision, executed=False, success=False,
                                   error=f"no handler for {decision.type.value}")

        if self.dry_run and decision.type != DecisionType.SKIP:
            logger.info(f"[dry-run] {decision.type.value}: {decision.reasoning}")
            result = ExecutionResult(decision, executed=False, success=True, dry_run=True)
            execution_counter.labels(type=decision.type.value, result=result.label).inc()
            return result

        try:
            result = await handler(decision)
        except VenueTerminalError as e:
            result = ExecutionResult(decision, executed=False, success=False, terminal=True,
                                     venue=e.venue, error=str(e))
        except VenueTimeoutError as e:
            result = ExecutionResult(decision, executed=False, success=False, outcome_unknown=True,
                                     venue=e.venue, error=str(e))
        except VenueTransientError as e:
            result = ExecutionResult(decision, executed=False, success=False, venue=e.venue,
                                     error=f"retries exhausted: {e}")

        if result.executed and result.success:
            self.cooldowns.mark(decision.type)

        execution_counter.labels(type=decision.type.value, result=result.label).inc()
        return result

    # =========================================================================
    # Venue calls
    # =========================================================================

    async def _call(self, venue: VenueAdapter, factory: Callable[[], Awaitable]):
        """
        Run one venue call with timeout and transient retry.

        A timeout is not retried: a resend could duplicate an order whose
        first copy actually went through.
        """
        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                return await asyncio.wait_for(factory(), timeout=self.call_timeout)
            except asyncio.TimeoutError as e:
                raise VenueTimeoutError(venue.name, f"no answer within {self.call_timeout}s") from e
            except VenueTransientError as e:
                last_error = e

            if attempt < self.max_retries - 1:
                delay_ms = self.base_delay_ms * (2 ** attempt)
                logger.warning(
                    f"{venue.name} call attempt {attempt + 1} failed, retrying in {delay_ms}ms: {last_error}"
                )
                await asyncio.sleep(delay_ms / 1000)

        raise VenueTransientError(venue.name, f"failed after {self.max_retries} attempts: {last_error}")

    def _venue_for(self, decision: Decision, strategy: Strategy, position: Optional[Position] = None):
        name = decision.params.get("venue") or (position.metadata.get("venue") if position else None)
        if name:
            return self.registry.get(name)
        return self.registry.for_strategy(strategy)

    # =========================================================================
    # Handlers
    # =========================================================================

    async def _skip(self, decision: Decision) -> ExecutionResult:
        return ExecutionResult(decision, executed=False, success=True)

    async def _open(self, decision: Decision) -> ExecutionResult:
        strategy = OPENING_DECISIONS[decision.type]
        params = decision.params
        amount_usd = float(params.get("amount_usd", decision.estimated_impact_usd))

        open_positions = await self.ledger.get_open_positions(strategy.value)
        exposure = sum(p.current_value_usd for p in open_positions)
        ok, reason = check_exposure(strategy, amount_usd, exposure)
        if not ok:
            logger.warning(f"Refusing {decision.type.value}: {reason}")
            return ExecutionResult(decision, executed=False, success=False, error=reason)

        venue = self._venue_for(decision, strategy)
        if venue is None:
            return ExecutionResult(decision, executed=False, success=False,
                                   error=f"no enabled venue for {strategy.value}")

        request = OrderRequest(
            action=OPEN_ACTION[decision.type],
            asset=params["asset"],
            amount_units=float(params.get("amount_units", 0.0)),
            amount_usd=amount_usd,
            price=params.get("price"),
            external_id=params.get("external_id") or f"{venue.name}:{uuid4().hex[:12]}",
            params={k: v for k, v in params.items() if k not in ("notify",)},
        )
        order = await self._call(venue, lambda: venue.place_order(request))

        if order.status == OrderStatus.REJECTED:
            return ExecutionResult(decision, executed=False, success=False, terminal=True,
                                   venue=venue.name, order=order, error=order.error or "order rejected")

        return ExecutionResult(decision, executed=True, success=True, venue=venue.name, order=order,
                               external_id=request.external_id)

    async def _exit(self, decision: Decision) -> ExecutionResult:
        params = decision.params
        position = await self.ledger.get_position(params["position_id"])
        if position is None or not position.is_open:
            return ExecutionResult(decision, executed=False, success=False,
                                   error=f"position {params['position_id']} is not open")
        if position.pending_order_id:
            return ExecutionResult(decision, executed=False, success=False, position=position,
                                   error=f"sell order {position.pending_order_id} already pending")

        strategy = EXIT_STRATEGY[decision.type] or position.strategy
        venue = self._venue_for(decision, strategy, position)
        if venue is None:
            return ExecutionResult(decision, executed=False, success=False, position=position,
                                   error=f"no enabled venue for {strategy.value}")

        fraction = float(params.get("fraction", 1.0))
        venue_position = VenuePosition(
            venue=venue.name,
            asset=position.asset,
            size_units=position.size_units,
            value_usd=position.current_value_usd,
            price=position.current_price or None,
            external_id=position.external_id,
        )
        order = await self._call(venue, lambda: venue.exit_position(venue_position, fraction))

        if order.status == OrderStatus.REJECTED:
            return ExecutionResult(decision, executed=False, success=False, terminal=True, venue=venue.name,
                                   order=order, position=position, error=order.error or "exit rejected")

        if order.status == OrderStatus.LIVE and order.order_id:
            final = await wait_for_fill(venue, order.order_id, timeout=self.confirm_timeout)
            if final is not None and final.status == OrderStatus.MATCHED:
                order.status = OrderStatus.MATCHED
                order.amount_usd = final.amount_usd or order.amount_usd
                order.tx_hash = final.tx_hashes[0] if final.tx_hashes else order.tx_hash
            elif final is not None and final.status == OrderStatus.REJECTED:
                order.status = OrderStatus.REJECTED
                return ExecutionResult(decision, executed=False, success=False, terminal=True,
                                       venue=venue.name, order=order, position=position,
                                       error="exit rejected while confirming")

        return ExecutionResult(decision, executed=True, success=True, venue=venue.name,
                               order=order, position=position)

    # =========================================================================
    # Ledger writes
    # =========================================================================

    async def record_outcome(self, result: ExecutionResult) -> List[Transaction]:
        """
        Write the ledger rows for one execution result.

        Ledger errors propagate. Transaction ids derive from the venue order
        id, so recording the same result twice writes nothing new.
        """
        decision = result.decision
        if result.terminal:
            tx = self._failed_tx(result)
            await self.ledger.insert_transaction(tx)
            await self.notifier.notify(
                f"{decision.type.value} failed at {result.venue}: {result.error}", "high"
            )
            return [tx]

        if not (result.executed and result.success and result.order):
            return []

        if decision.type in OPEN_ACTION:
            txs = await self._record_open(result)
        else:
            txs = await self._record_exit(result)

        order = result.order
        await self.notifier.notify(
            f"Executed {decision.type.value} via {result.venue}: {decision.reasoning} "
            f"(order {order.order_id}, {order.status.value})",
            "medium" if decision.params.get("notify") else "low",
        )
        return txs

    def _failed_tx(self, result: ExecutionResult) -> Transaction:
        decision = result.decision
        strategy = OPENING_DECISIONS.get(decision.type) or EXIT_STRATEGY.get(decision.type)
        order_id = result.order.order_id if result.order else None
        tx_type = OPEN_TX_TYPE.get(decision.type) or sell_tx_type(strategy.value if strategy else "")
        return Transaction(
            id=f"{result.venue}:{order_id}" if order_id else f"failed:{datetime.now(timezone.utc).timestamp()}",
            chain=decision.params.get("chain", "unknown"),
            strategy_tag=strategy.value if strategy else "unknown",
            tx_type=tx_type,
            token_in=decision.params.get("asset"),
            amount_in=decision.params.get("amount_units"),
            position_id=decision.params.get("position_id"),
            status=TxStatus.FAILED,
            error_message=result.error,
            metadata={"decision": decision.to_dict(), "venue": result.venue},
        )

    async def _record_open(self, result: ExecutionResult) -> List[Transaction]:
        decision, order = result.decision, result.order
        strategy = OPENING_DECISIONS[decision.type]
        params = decision.params
        asset = params["asset"]
        chain = params.get("chain", "solana")
        units = order.filled_units or float(params.get("amount_units", 0.0))
        cost = round_usd(order.amount_usd or params.get("amount_usd", decision.estimated_impact_usd))
        price = order.avg_price or params.get("price") or 0.0
        pending = order.status == OrderStatus.LIVE

        external_id = result.external_id or params.get("external_id") or f"{result.venue}:{order.order_id}"
        position = await self.ledger.get_position_by_external_id(external_id, strategy.value)
        if position is None or not position.is_open:
            position = Position(
                strategy=strategy,
                asset=asset,
                chain=chain,
                cost_basis_usd=0.0,
                description=params.get("description") or f"{decision.type.value} {asset}",
                entry_price=price,
                entry_tx_hash=order.tx_hash,
                external_id=external_id,
                metadata={"venue": result.venue, "decision": decision.type.value},
            )
        recorded = position.metadata.setdefault(ENTRY_ORDERS_KEY, [])
        if order.order_id in recorded:
            logger.info(f"Order {order.order_id} already applied to position {position.id}")
        else:
            recorded.append(order.order_id)
            position.size_units += units
            position.cost_basis_usd = round_usd(position.cost_basis_usd + cost)
            position.current_value_usd = round_usd(position.current_value_usd + cost)
            position.current_price = price
            if pending:
                position.metadata["entry_order_status"] = OrderStatus.LIVE.value
            await self.ledger.upsert_position(position)

        tx = Transaction(
            id=f"{result.venue}:{order.order_id}",
            chain=chain,
            strategy_tag=strategy.value,
            tx_type=OPEN_TX_TYPE[decision.type],
            token_in=params.get("token_in", "USD"),
            amount_in=float(params.get("amount_units", units)) if decision.type == DecisionType.STAKE else cost,
            token_out=asset,
            amount_out=units,
            fee_usd=order.fee_usd,
            tx_hash=order.tx_hash,
            position_id=position.id,
            status=TxStatus.PENDING if pending else TxStatus.CONFIRMED,
            metadata={"decision": decision.to_dict(), "order_id": order.order_id},
        )
        await self.ledger.insert_transaction(tx)
        result.position = position
        return [tx]

    async def _record_exit(self, result: ExecutionResult) -> List[Transaction]:
        decision, order, position = result.decision, result.order, result.position
        fraction = min(1.0, max(0.0, float(decision.params.get("fraction", 1.0))))

        if order.status == OrderStatus.LIVE:
            await self.tracker.track(
                PendingOrder(
                    order_id=order.order_id,
                    position_id=position.id,
                    cost_basis_usd=position.cost_basis_usd,
                    description=position.description or position.asset,
                    placed_at=order.timestamp,
                    venue=result.venue,
                )
            )
            await self.notifier.notify(
                f"Sell order {order.order_id} for {position.description or position.asset} "
                f"not filled within {self.confirm_timeout:.0f}s; tracking it"
            )
            return []

        received = round_usd(order.amount_usd)
        closed_cost = round_usd(position.cost_basis_usd * fraction)
        pnl = compute_realized(received, closed_cost)

        tx = Transaction(
            id=f"{result.venue}:{order.order_id}",
            chain=position.chain,
            strategy_tag=position.strategy.value,
            tx_type=sell_tx_type(position.strategy.value),
            token_in=position.asset,
            amount_in=order.filled_units or position.size_units * fraction,
            token_out="USD",
            amount_out=received,
            fee_usd=order.fee_usd,
            tx_hash=order.tx_hash,
            position_id=position.id,
            status=TxStatus.CONFIRMED,
            metadata={"decision": decision.to_dict(), "order_id": order.order_id, "fraction": fraction},
        )
        await self.ledger.insert_transaction(tx)

        if fraction >= 1.0:
            await self.ledger.close_position(position.id, order.tx_hash, pnl, received_usd=received)
        else:
            keep = 1.0 - fraction
            position.status = PositionStatus.PARTIAL_EXIT
            position.size_units *= keep
            position.cost_basis_usd = round_usd(position.cost_basis_usd - closed_cost)
            position.current_value_usd = round_usd(position.current_value_usd * keep)
            position.realized_pnl_usd = round_usd(position.realized_pnl_usd + pnl)
            await self.ledger.upsert_position(position)
        return [tx]
