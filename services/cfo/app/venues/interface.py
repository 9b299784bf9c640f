"""
Abstract Venue Interface

Every trading venue (prediction market, perp exchange, lending protocol,
staking, AMM, swap router) is reached through the same narrow set of
async verbs. The core never talks to a venue SDK directly.

Key operations:
- Discovery: scan()
- Orders: place_order(), get_order_status(), cancel_all_orders()
- Positions: fetch_positions(), exit_position(), redeem_position(), close_all()
- Health: check_health()

Amounts returned by venues are floats in venue precision. USD amounts are
rounded to cents by the executor when they enter the ledger.

@module venues.interface
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from ..models import Strategy


class OrderAction(str, Enum):
    """What an order does at the venue."""
    BUY = "buy"
    SELL = "sell"
    SHORT = "short"
    STAKE = "stake"
    UNSTAKE = "unstake"
    BORROW = "borrow"
    REPAY = "repay"
    ADD_LIQUIDITY = "add_liquidity"
    REMOVE_LIQUIDITY = "remove_liquidity"


class OrderStatus(str, Enum):
    LIVE = "LIVE"
    MATCHED = "MATCHED"
    REJECTED = "REJECTED"


@dataclass
class Opportunity:
    """Something a venue offers right now (a market, a yield, a pool)."""
    venue: str
    asset: str
    strategy: Strategy
    expected_return_pct: float = 0.0
    price: Optional[float] = None
    external_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class OrderRequest:
    action: OrderAction
    asset: str
    amount_units: float
    amount_usd: float = 0.0
    price: Optional[float] = None
    external_id: Optional[str] = None
    client_order_id: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class OrderResult:
    """Result of an order placement or exit."""
    order_id: Optional[str]
    status: OrderStatus
    filled_units: float = 0.0
    avg_price: Optional[float] = None
    amount_usd: float = 0.0
    fee_usd: float = 0.0
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def filled(self) -> bool:
        return self.status == OrderStatus.MATCHED


@dataclass
class OrderStatusResult:
    status: OrderStatus
    tx_hashes: List[str] = field(default_factory=list)
    filled_units: float = 0.0
    amount_usd: float = 0.0


@dataclass
class VenuePosition:
    """A position as the venue sees it."""
    venue: str
    asset: str
    size_units: float
    value_usd: float
    price: Optional[float] = None
    external_id: Optional[str] = None
    # Market has settled and the position can be redeemed for its final value
    resolved: bool = False
    redeemable: bool = False
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RedeemResult:
    success: bool
    tx_hash: Optional[str] = None
    amount_usd: float = 0.0
    error: Optional[str] = None


@dataclass
class HealthResult:
    ok: bool
    warning: Optional[str] = None


class VenueAdapter(ABC):
    """
    Abstract base class for venue adapters.

    Adapters raise VenueTransientError for retryable failures and
    VenueTerminalError for rejections. A rejected order may also come back
    as OrderResult(status=REJECTED) without raising.

    Usage:
        venue = registry.for_strategy(Strategy.LIQUID_STAKING)
        result = await venue.place_order(
            OrderRequest(action=OrderAction.STAKE, asset="SOL", amount_units=5)
        )
    """

    name: str = "venue"
    strategies: Sequence[Strategy] = ()
    # Token/asset whose on-chain exposure this venue creates (for guardian watch)
    exposure_asset: Optional[str] = None

    def handles(self, strategy: Strategy) -> bool:
        return strategy in self.strategies

    @abstractmethod
    async def scan(self, params: Optional[Dict[str, Any]] = None) -> List[Opportunity]:
        """List current opportunities."""

    @abstractmethod
    async def place_order(self, request: OrderRequest) -> OrderResult:
        """Place an order. LIVE means accepted but not yet filled."""

    @abstractmethod
    async def get_order_status(self, order_id: str) -> OrderStatusResult:
        """Current status of a previously placed order."""

    @abstractmethod
    async def fetch_positions(self) -> List[VenuePosition]:
        """Positions still holding value at the venue."""

    @abstractmethod
    async def exit_position(self, position: VenuePosition, fraction: float = 1.0) -> OrderResult:
        """Sell or unwind `fraction` of a position."""

    @abstractmethod
    async def redeem_position(self, position: VenuePosition) -> RedeemResult:
        """Settle a resolved position on-chain."""

    @abstractmethod
    async def check_health(self) -> HealthResult:
        """Venue connectivity and risk status."""

    async def cancel_all_orders(self) -> int:
        """Cancel every open order. Returns the count cancelled."""
        return 0

    async def close_all(self) -> int:
        """
        Best-effort emergency unwind of everything at this venue.

        Returns:
            Number of positions exited.
        """
        await self.cancel_all_orders()
        closed = 0
        for position in await self.fetch_positions():
            result = await self.exit_position(position, 1.0)
            if result.status != OrderStatus.REJECTED:
                closed += 1
        return closed

    async def close(self) -> None:
        """Release connections."""
        return None
