"""
HTTP venue gateway adapter.

Each live venue integration runs as its own gateway service that speaks a
small JSON API. This adapter maps the VenueAdapter verbs onto it:

    GET  /opportunities          -> scan
    POST /orders                 -> place_order
    GET  /orders/{id}            -> get_order_status
    POST /orders/cancel-all      -> cancel_all_orders
    GET  /positions              -> fetch_positions
    POST /positions/exit         -> exit_position
    POST /positions/redeem       -> redeem_position
    GET  /health                 -> check_health

Errors: timeouts raise VenueTimeoutError, 429/5xx and connection errors
raise VenueTransientError, any other 4xx raises VenueTerminalError.

@module venues.http_venue
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from ..errors import VenueTerminalError, VenueTimeoutError, VenueTransientError
from ..models import Strategy
from .interface import (
    HealthResult,
    Opportunity,
    OrderRequest,
    OrderResult,
    OrderStatus,
    OrderStatusResult,
    RedeemResult,
    VenueAdapter,
    VenuePosition,
)


logger = logging.getLogger(__name__)


def _position_payload(position: VenuePosition) -> Dict[str, Any]:
    return {
        "asset": position.asset,
        "external_id": position.external_id,
        "size_units": position.size_units,
    }


def _order_result(data: Dict[str, Any]) -> OrderResult:
    return OrderResult(
        order_id=data.get("order_id"),
        status=OrderStatus(data.get("status", "REJECTED")),
        filled_units=float(data.get("filled_units", 0.0)),
        avg_price=data.get("avg_price"),
        amount_usd=float(data.get("amount_usd", 0.0)),
        fee_usd=float(data.get("fee_usd", 0.0)),
        tx_hash=data.get("tx_hash"),
        error=data.get("error"),
    )


class HttpVenue(VenueAdapter):
    """
    Venue reached through its gateway service.

    Usage:
        venue = HttpVenue("polymarket", "http://polymarket-gw:8080", [Strategy.PREDICTION_MARKET])
        positions = await venue.fetch_positions()
        await venue.close()
    """

    def __init__(
        self,
        name: str,
        base_url: str,
        strategies: Sequence[Strategy],
        timeout: float = 30.0,
        exposure_asset: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.strategies = tuple(strategies)
        self.exposure_asset = exposure_asset
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Any:
        try:
            resp = await self._client.request(method, path, json=json)
        except httpx.TimeoutException as e:
            raise VenueTimeoutError(self.name, f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            raise VenueTransientError(self.name, f"{method} {path}: {e}") from e

        if resp.status_code == 429 or resp.status_code >= 500:
            raise VenueTransientError(self.name, f"{method} {path} -> {resp.status_code}")
        if resp.status_code >= 400:
            raise VenueTerminalError(self.name, f"{method} {path} -> {resp.status_code}: {resp.text[:200]}")
        return resp.json()

    async def scan(self, params: Optional[Dict[str, Any]] = None) -> List[Opportunity]:
        data = await self._request("GET", "/opportunities")
        default_strategy = self.strategies[0] if self.strategies else Strategy.SWAP
        return [
            Opportunity(
                venue=self.name,
                asset=item["asset"],
                strategy=Strategy(item.get("strategy", default_strategy.value)),
                expected_return_pct=float(item.get("expected_return_pct", 0.0)),
                price=item.get("price"),
                external_id=item.get("external_id"),
                details=item.get("details", {}),
            )
            for item in data.get("opportunities", [])
        ]

    async def place_order(self, request: OrderRequest) -> OrderResult:
        data = await self._request(
            "POST",
            "/orders",
            json={
                "action": request.action.value,
                "asset": request.asset,
                "amount_units": request.amount_units,
                "amount_usd": request.amount_usd,
                "price": request.price,
                "external_id": request.external_id,
                "client_order_id": request.client_order_id,
                "params": request.params,
            },
        )
        return _order_result(data)

    async def get_order_status(self, order_id: str) -> OrderStatusResult:
        data = await self._request("GET", f"/orders/{order_id}")
        return OrderStatusResult(
            status=OrderStatus(data.get("status", "LIVE")),
            tx_hashes=list(data.get("tx_hashes", [])),
            filled_units=float(data.get("filled_units", 0.0)),
            amount_usd=float(data.get("amount_usd", 0.0)),
        )

    async def cancel_all_orders(self) -> int:
        data = await self._request("POST", "/orders/cancel-all", json={})
        return int(data.get("cancelled", 0))

    async def fetch_positions(self) -> List[VenuePosition]:
        data = await self._request("GET", "/positions")
        return [
            VenuePosition(
                venue=self.name,
                asset=item["asset"],
                size_units=float(item.get("size_units", 0.0)),
                value_usd=float(item.get("value_usd", 0.0)),
                price=item.get("price"),
                external_id=item.get("external_id"),
                resolved=bool(item.get("resolved", False)),
                redeemable=bool(item.get("redeemable", False)),
                details=item.get("details", {}),
            )
            for item in data.get("positions", [])
        ]

    async def exit_position(self, position: VenuePosition, fraction: float = 1.0) -> OrderResult:
        payload = _position_payload(position)
        payload["fraction"] = fraction
        data = await self._request("POST", "/positions/exit", json=payload)
        return _order_result(data)

    async def redeem_position(self, position: VenuePosition) -> RedeemResult:
        data = await self._request("POST", "/positions/redeem", json=_position_payload(position))
        return RedeemResult(
            success=bool(data.get("success", False)),
            tx_hash=data.get("tx_hash"),
            amount_usd=float(data.get("amount_usd", 0.0)),
            error=data.get("error"),
        )

    async def check_health(self) -> HealthResult:
        try:
            data = await self._request("GET", "/health")
        except (VenueTransientError, VenueTimeoutError) as e:
            return HealthResult(ok=False, warning=str(e))
        return HealthResult(ok=bool(data.get("ok", False)), warning=data.get("warning"))

    async def close(self) -> None:
        await self._client.aclose()
