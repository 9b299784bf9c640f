"""
Core data types for the CFO service.

Positions, transactions and snapshots mirror the ledger tables. Decisions
and pending approvals are plain data and must stay JSON-serializable:
approvals waiting on a human are written to the state blob and replayed
after a restart.

Money: venues and callers hand over floats. Every USD amount that lands in
the ledger goes through round_usd(), which quantizes to cents with
banker's rounding. P&L differences are computed in Decimal first.
"""

import json
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_EVEN
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4


CENT = Decimal("0.01")

# Position metadata keys used to mirror a pending sell order
PENDING_ORDER_KEY = "pending_sell_order_id"
PENDING_ORDER_PLACED_KEY = "pending_sell_placed_at"
PENDING_ORDER_VENUE_KEY = "pending_sell_venue"


def to_decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_usd(value: Any) -> float:
    """Quantize a USD amount to cents and return it in storage form."""
    return float(to_decimal(value).quantize(CENT, rounding=ROUND_HALF_EVEN))


def compute_unrealized(current_value_usd: Any, cost_basis_usd: Any) -> float:
    return round_usd(to_decimal(current_value_usd) - to_decimal(cost_basis_usd))


def compute_realized(received_usd: Any, cost_basis_usd: Any) -> float:
    return round_usd(to_decimal(received_usd) - to_decimal(cost_basis_usd))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _load_json(value: Any) -> Any:
    # asyncpg hands JSONB back as text unless a codec is registered
    if isinstance(value, str):
        return json.loads(value)
    return value


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class Strategy(str, Enum):
    PREDICTION_MARKET = "prediction_market"
    PERP_HEDGE = "perp_hedge"
    LENDING_LOOP = "lending_loop"
    LIQUID_STAKING = "liquid_staking"
    AMM_LIQUIDITY = "amm_liquidity"
    SWAP = "swap"


class PositionStatus(str, Enum):
    OPEN = "OPEN"
    PARTIAL_EXIT = "PARTIAL_EXIT"
    CLOSED = "CLOSED"
    STOP_HIT = "STOP_HIT"
    EXPIRED = "EXPIRED"


class TxType(str, Enum):
    SWAP = "swap"
    STAKE = "stake"
    UNSTAKE = "unstake"
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    BRIDGE = "bridge"
    PREDICTION_BUY = "prediction_buy"
    PREDICTION_SELL = "prediction_sell"
    FEE_COLLECT = "fee_collect"
    BORROW = "borrow"
    REPAY = "repay"
    LIQUIDITY_ADD = "liquidity_add"
    LIQUIDITY_REBALANCE = "liquidity_rebalance"


class TxStatus(str, Enum):
    CONFIRMED = "confirmed"
    PENDING = "pending"
    FAILED = "failed"


class DecisionType(str, Enum):
    OPEN_HEDGE = "open_hedge"
    CLOSE_HEDGE = "close_hedge"
    STAKE = "stake"
    UNSTAKE = "unstake"
    BORROW = "borrow"
    REPAY = "repay"
    LP_OPEN = "lp_open"
    LP_CLOSE = "lp_close"
    MARKET_BUY = "market_buy"
    MARKET_EXIT = "market_exit"
    SKIP = "skip"


class Tier(str, Enum):
    AUTO = "AUTO"
    APPROVAL = "APPROVAL"


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ApprovalSource(str, Enum):
    DECISION_ENGINE = "decision_engine"
    MANUAL = "manual"


@dataclass
class Position:
    """One open or closed exposure to a strategy."""

    strategy: Strategy
    asset: str
    chain: str
    cost_basis_usd: float
    id: str = field(default_factory=lambda: str(uuid4()))
    description: str = ""
    status: PositionStatus = PositionStatus.OPEN
    entry_price: float = 0.0
    current_price: float = 0.0
    exit_price: Optional[float] = None
    size_units: float = 0.0
    current_value_usd: float = 0.0
    realized_pnl_usd: float = 0.0
    unrealized_pnl_usd: float = 0.0
    entry_tx_hash: Optional[str] = None
    exit_tx_hash: Optional[str] = None
    external_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    opened_at: datetime = field(default_factory=utcnow)
    closed_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_open(self) -> bool:
        return self.status != PositionStatus.CLOSED

    @property
    def pending_order_id(self) -> Optional[str]:
        return self.metadata.get(PENDING_ORDER_KEY)

    @classmethod
    def from_row(cls, row: Any) -> "Position":
        data = dict(row)
        return cls(
            id=str(data["id"]),
            strategy=Strategy(data["strategy"]),
            asset=data["asset"],
            description=data.get("description") or "",
            chain=data["chain"],
            status=PositionStatus(data["status"]),
            entry_price=data.get("entry_price") or 0.0,
            current_price=data.get("current_price") or 0.0,
            exit_price=data.get("exit_price"),
            size_units=data.get("size_units") or 0.0,
            cost_basis_usd=data.get("cost_basis_usd") or 0.0,
            current_value_usd=data.get("current_value_usd") or 0.0,
            realized_pnl_usd=data.get("realized_pnl_usd") or 0.0,
            unrealized_pnl_usd=data.get("unrealized_pnl_usd") or 0.0,
            entry_tx_hash=data.get("entry_tx_hash"),
            exit_tx_hash=data.get("exit_tx_hash"),
            external_id=data.get("external_id"),
            metadata=_load_json(data.get("metadata")) or {},
            opened_at=data.get("opened_at") or utcnow(),
            closed_at=data.get("closed_at"),
            updated_at=data.get("updated_at") or utcnow(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "strategy": self.strategy.value,
            "asset": self.asset,
            "description": self.description,
            "chain": self.chain,
            "status": self.status.value,
            "entry_price": self.entry_price,
            "current_price": self.current_price,
            "size_units": self.size_units,
            "cost_basis_usd": self.cost_basis_usd,
            "current_value_usd": self.current_value_usd,
            "realized_pnl_usd": self.realized_pnl_usd,
            "unrealized_pnl_usd": self.unrealized_pnl_usd,
            "external_id": self.external_id,
            "metadata": self.metadata,
            "opened_at": self.opened_at.isoformat(),
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
        }


@dataclass
class Transaction:
    """Append-only record of one executed or attempted operation."""

    chain: str
    strategy_tag: str
    tx_type: TxType
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=utcnow)
    token_in: Optional[str] = None
    amount_in: Optional[float] = None
    token_out: Optional[str] = None
    amount_out: Optional[float] = None
    fee_usd: float = 0.0
    tx_hash: Optional[str] = None
    wallet_address: Optional[str] = None
    position_id: Optional[str] = None
    status: TxStatus = TxStatus.CONFIRMED
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Any) -> "Transaction":
        data = dict(row)
        return cls(
            id=data["id"],
            timestamp=data["timestamp"],
            chain=data["chain"],
            strategy_tag=data["strategy_tag"],
            tx_type=TxType(data["tx_type"]),
            token_in=data.get("token_in"),
            amount_in=data.get("amount_in"),
            token_out=data.get("token_out"),
            amount_out=data.get("amount_out"),
            fee_usd=data.get("fee_usd") or 0.0,
            tx_hash=data.get("tx_hash"),
            wallet_address=data.get("wallet_address"),
            position_id=data.get("position_id"),
            status=TxStatus(data.get("status") or "confirmed"),
            error_message=data.get("error_message"),
            metadata=_load_json(data.get("metadata")) or {},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "chain": self.chain,
            "strategy_tag": self.strategy_tag,
            "tx_type": self.tx_type.value,
            "token_in": self.token_in,
            "amount_in": self.amount_in,
            "token_out": self.token_out,
            "amount_out": self.amount_out,
            "fee_usd": self.fee_usd,
            "tx_hash": self.tx_hash,
            "position_id": self.position_id,
            "status": self.status.value,
            "error_message": self.error_message,
        }


@dataclass
class DailySnapshot:
    """Reporting-only summary of one calendar day."""

    date: date
    total_portfolio_usd: float
    by_strategy: Dict[str, float] = field(default_factory=dict)
    realized_pnl_24h: float = 0.0
    unrealized_pnl: float = 0.0
    yield_earned_24h: float = 0.0
    revenue: Dict[str, float] = field(default_factory=dict)
    open_positions: int = 0

    @classmethod
    def from_row(cls, row: Any) -> "DailySnapshot":
        data = dict(row)
        return cls(
            date=data["date"],
            total_portfolio_usd=data["total_portfolio_usd"],
            by_strategy=_load_json(data.get("by_strategy")) or {},
            realized_pnl_24h=data.get("realized_pnl_24h") or 0.0,
            unrealized_pnl=data.get("unrealized_pnl") or 0.0,
            yield_earned_24h=data.get("yield_earned_24h") or 0.0,
            revenue=_load_json(data.get("revenue")) or {},
            open_positions=data.get("open_positions") or 0,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "total_portfolio_usd": self.total_portfolio_usd,
            "by_strategy": self.by_strategy,
            "realized_pnl_24h": self.realized_pnl_24h,
            "unrealized_pnl": self.unrealized_pnl,
            "yield_earned_24h": self.yield_earned_24h,
            "revenue": self.revenue,
            "open_positions": self.open_positions,
        }


@dataclass
class Decision:
    """
    One candidate action from the decision producer.

    Pure data. The executor looks up the handler for `type` in its
    dispatch table, so a decision read back from JSON is as executable
    as a freshly produced one.
    """

    type: DecisionType
    tier: Tier
    urgency: Urgency
    reasoning: str
    estimated_impact_usd: float
    params: Dict[str, Any] = field(default_factory=dict)
    intel_used: List[str] = field(default_factory=list)

    def with_tier(self, tier: Tier) -> "Decision":
        return replace(self, tier=tier, params=dict(self.params), intel_used=list(self.intel_used))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "tier": self.tier.value,
            "urgency": self.urgency.value,
            "reasoning": self.reasoning,
            "estimated_impact_usd": self.estimated_impact_usd,
            "params": self.params,
            "intel_used": self.intel_used,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Decision":
        return cls(
            type=DecisionType(data["type"]),
            tier=Tier(data["tier"]),
            urgency=Urgency(data.get("urgency", "medium")),
            reasoning=data.get("reasoning", ""),
            estimated_impact_usd=float(data.get("estimated_impact_usd", 0.0)),
            params=dict(data.get("params") or {}),
            intel_used=list(data.get("intel_used") or []),
        )


@dataclass
class PendingApproval:
    """An APPROVAL-tier decision waiting for a human."""

    id: str
    description: str
    amount_usd: float
    decision: Decision
    source: ApprovalSource
    created_at: datetime
    expires_at: datetime
    reminded_at: Optional[datetime] = None
    # False when the decision cannot be safely replayed after a restart
    replayable: bool = True

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def is_open(self, now: datetime) -> bool:
        """Approvable at `now`. Closes at expires_at, before the sweep removes it."""
        return now < self.expires_at

    def reminder_due(self, now: datetime) -> bool:
        halfway = self.created_at + (self.expires_at - self.created_at) / 2
        return self.reminded_at is None and now >= halfway

    def remaining_seconds(self, now: datetime) -> float:
        return max(0.0, (self.expires_at - now).total_seconds())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "amount_usd": self.amount_usd,
            "decision": self.decision.to_dict(),
            "source": self.source.value,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "reminded_at": self.reminded_at.isoformat() if self.reminded_at else None,
            "replayable": self.replayable,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingApproval":
        return cls(
            id=data["id"],
            description=data.get("description", ""),
            amount_usd=float(data.get("amount_usd", 0.0)),
            decision=Decision.from_dict(data["decision"]),
            source=ApprovalSource(data.get("source", "decision_engine")),
            created_at=_parse_dt(data["created_at"]),
            expires_at=_parse_dt(data["expires_at"]),
            reminded_at=_parse_dt(data.get("reminded_at")),
            replayable=data.get("replayable", True),
        )


@dataclass
class PendingOrder:
    """A sell order placed but not yet confirmed filled."""

    order_id: str
    position_id: str
    cost_basis_usd: float
    description: str
    placed_at: datetime
    venue: str = "paper"
