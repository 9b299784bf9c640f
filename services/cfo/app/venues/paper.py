"""
Paper venue.

In-memory simulated venue used for dry runs and tests. Orders fill
immediately at the configured price unless `fill_orders` is off, in which
case they stay LIVE until mark_filled() is called.
"""

import itertools
from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence

from ..errors import VenueTerminalError
from ..models import Strategy
from .interface import (
    HealthResult,
    Opportunity,
    OrderAction,
    OrderRequest,
    OrderResult,
    OrderStatus,
    OrderStatusResult,
    RedeemResult,
    VenueAdapter,
    VenuePosition,
)


ALL_STRATEGIES = tuple(Strategy)


class PaperVenue(VenueAdapter):

    def __init__(
        self,
        name: str = "paper",
        strategies: Sequence[Strategy] = ALL_STRATEGIES,
        prices: Optional[Dict[str, float]] = None,
        fill_orders: bool = True,
        balance_usd: float = 10_000.0,
        exposure_asset: Optional[str] = None,
    ):
        self.name = name
        self.strategies = tuple(strategies)
        self.prices: Dict[str, float] = dict(prices or {})
        self.fill_orders = fill_orders
        self.balance_usd = balance_usd
        self.exposure_asset = exposure_asset
        self.positions: Dict[str, VenuePosition] = {}
        self.orders: Dict[str, OrderResult] = {}
        self.order_requests: List[OrderRequest] = []
        self.redeemed: List[str] = []
        self.healthy = True
        self._ids = itertools.count(1)

    def price_of(self, asset: str) -> float:
        return self.prices.get(asset, 1.0)

    def add_position(self, position: VenuePosition) -> None:
        key = position.external_id or position.asset
        self.positions[key] = position

    def mark_filled(self, order_id: str) -> None:
        order = self.orders[order_id]
        self.orders[order_id] = replace(order, status=OrderStatus.MATCHED, tx_hash=f"0xpaper{order_id}")

    async def scan(self, params: Optional[Dict[str, Any]] = None) -> List[Opportunity]:
        return [
            Opportunity(venue=self.name, asset=asset, strategy=self.strategies[0], price=price)
            for asset, price in self.prices.items()
        ]

    async def place_order(self, request: OrderRequest) -> OrderResult:
        self.order_requests.append(request)
        price = request.price or self.price_of(request.asset)
        amount_usd = request.amount_usd or request.amount_units * price

        if request.action in (OrderAction.BUY, OrderAction.STAKE, OrderAction.ADD_LIQUIDITY, OrderAction.SHORT):
            if amount_usd > self.balance_usd:
                raise VenueTerminalError(self.name, f"insufficient funds for {amount_usd:.2f}")

        order_id = f"{self.name}-{next(self._ids)}"
        status = OrderStatus.MATCHED if self.fill_orders else OrderStatus.LIVE
        result = OrderResult(
            order_id=order_id,
            status=status,
            filled_units=request.amount_units if status == OrderStatus.MATCHED else 0.0,
            avg_price=price,
            amount_usd=amount_usd,
            tx_hash=f"0xpaper{order_id}" if status == OrderStatus.MATCHED else None,
        )
        self.orders[order_id] = result
        self._apply(request, amount_usd, price)
        return result

    def _apply(self, request: OrderRequest, amount_usd: float, price: float) -> None:
        key = request.external_id or request.asset
        if request.action in (OrderAction.BUY, OrderAction.STAKE, OrderAction.ADD_LIQUIDITY,
                              OrderAction.SHORT, OrderAction.BORROW):
            if request.action == OrderAction.BORROW:
                self.balance_usd += amount_usd
            else:
                self.balance_usd -= amount_usd
            held = self.positions.get(key)
            units = (held.size_units if held else 0.0) + request.amount_units
            self.positions[key] = VenuePosition(
                venue=self.name,
                asset=request.asset,
                size_units=units,
                value_usd=units * price,
                price=price,
                external_id=request.external_id,
            )
        else:
            held = self.positions.get(key)
            if held:
                remaining = max(0.0, held.size_units - request.amount_units)
                if remaining <= 0:
                    del self.positions[key]
                else:
                    self.positions[key] = replace(held, size_units=remaining, value_usd=remaining * price)
            self.balance_usd += amount_usd

    async def get_order_status(self, order_id: str) -> OrderStatusResult:
        order = self.orders.get(order_id)
        if order is None:
            return OrderStatusResult(status=OrderStatus.REJECTED)
        return OrderStatusResult(
            status=order.status,
            tx_hashes=[order.tx_hash] if order.tx_hash else [],
            filled_units=order.filled_units,
            amount_usd=order.amount_usd,
        )

    async def fetch_positions(self) -> List[VenuePosition]:
        return [p for p in self.positions.values() if p.value_usd > 0]

    async def exit_position(self, position: VenuePosition, fraction: float = 1.0) -> OrderResult:
        units = position.size_units * fraction
        return await self.place_order(
            OrderRequest(
                action=OrderAction.SELL,
                asset=position.asset,
                amount_units=units,
                amount_usd=units * (position.price or self.price_of(position.asset)),
                external_id=position.external_id,
            )
        )

    async def redeem_position(self, position: VenuePosition) -> RedeemResult:
        key = position.external_id or position.asset
        self.positions.pop(key, None)
        self.redeemed.append(key)
        self.balance_usd += position.value_usd
        return RedeemResult(success=True, tx_hash=f"0xredeem{key}", amount_usd=position.value_usd)

    async def check_health(self) -> HealthResult:
        if not self.healthy:
            return HealthResult(ok=False, warning=f"{self.name} marked unhealthy")
        return HealthResult(ok=True)

    async def cancel_all_orders(self) -> int:
        live = [oid for oid, o in self.orders.items() if o.status == OrderStatus.LIVE]
        for oid in live:
            self.orders[oid] = replace(self.orders[oid], status=OrderStatus.REJECTED)
        return len(live)
