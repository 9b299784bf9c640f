"""
Tests for venue adapters and the registry.

@module tests.test_venues
"""

import httpx
import pytest

from app.errors import VenueTerminalError, VenueTimeoutError, VenueTransientError
from app.models import Strategy
from app.venues import (
    HttpVenue,
    OrderAction,
    OrderRequest,
    OrderStatus,
    PaperVenue,
    VenuePosition,
    VenueRegistry,
    build_registry,
)
from app.venues.registry import parse_endpoints


# =============================================================================
# Paper venue
# =============================================================================


class TestPaperVenue:

    @pytest.mark.asyncio
    async def test_insufficient_funds(self):
        venue = PaperVenue(balance_usd=100.0)
        with pytest.raises(VenueTerminalError):
            await venue.place_order(OrderRequest(action=OrderAction.BUY, asset="SOL", amount_units=5,
                                                 amount_usd=500.0))

    @pytest.mark.asyncio
    async def test_buy_then_close_all(self):
        venue = PaperVenue(prices={"SOL": 100.0})
        await venue.place_order(OrderRequest(action=OrderAction.STAKE, asset="SOL", amount_units=2))
        assert venue.balance_usd == 9_800.0

        closed = await venue.close_all()

        assert closed == 1
        assert venue.positions == {}
        assert venue.balance_usd == 10_000.0

    @pytest.mark.asyncio
    async def test_live_orders_cancelled(self):
        venue = PaperVenue(fill_orders=False)
        order = await venue.place_order(OrderRequest(action=OrderAction.SELL, asset="SOL", amount_units=1))

        assert await venue.cancel_all_orders() == 1
        assert (await venue.get_order_status(order.order_id)).status == OrderStatus.REJECTED

    @pytest.mark.asyncio
    async def test_unknown_order_rejected(self):
        status = await PaperVenue().get_order_status("nope")
        assert status.status == OrderStatus.REJECTED

    @pytest.mark.asyncio
    async def test_redeem(self):
        venue = PaperVenue()
        held = VenuePosition(venue="paper", asset="YES", size_units=10.0, value_usd=10.0,
                             external_id="cond-1", resolved=True, redeemable=True)
        venue.add_position(held)

        result = await venue.redeem_position(held)

        assert result.success
        assert result.amount_usd == 10.0
        assert await venue.fetch_positions() == []


# =============================================================================
# HTTP venue
# =============================================================================


def _http_venue(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://gw")
    return HttpVenue("gw", "http://gw", [Strategy.PREDICTION_MARKET], client=client)


class TestHttpVenue:

    @pytest.mark.asyncio
    async def test_place_order(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = request.content
            return httpx.Response(200, json={"order_id": "o-1", "status": "LIVE", "amount_usd": 50})

        venue = _http_venue(handler)
        result = await venue.place_order(OrderRequest(action=OrderAction.BUY, asset="YES", amount_units=100))
        await venue.close()

        assert seen["path"] == "/orders"
        assert b'"action":"buy"' in seen["body"].replace(b" ", b"")
        assert result.order_id == "o-1"
        assert result.status == OrderStatus.LIVE
        assert result.amount_usd == 50.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_transient_statuses(self, status):
        venue = _http_venue(lambda request: httpx.Response(status))
        with pytest.raises(VenueTransientError):
            await venue.fetch_positions()

    @pytest.mark.asyncio
    async def test_client_error_is_terminal(self):
        venue = _http_venue(lambda request: httpx.Response(400, text="bad size"))
        with pytest.raises(VenueTerminalError) as exc:
            await venue.place_order(OrderRequest(action=OrderAction.BUY, asset="YES", amount_units=0))
        assert "bad size" in str(exc.value)

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        venue = _http_venue(handler)
        with pytest.raises(VenueTimeoutError):
            await venue.get_order_status("o-1")

    @pytest.mark.asyncio
    async def test_health(self):
        assert not (await _http_venue(lambda request: httpx.Response(503)).check_health()).ok
        healthy = _http_venue(lambda request: httpx.Response(200, json={"ok": True}))
        assert (await healthy.check_health()).ok

    @pytest.mark.asyncio
    async def test_positions_parsed(self):
        venue = _http_venue(lambda request: httpx.Response(200, json={"positions": [
            {"asset": "YES", "size_units": "10", "value_usd": 7.5, "external_id": "cond-1", "resolved": True},
        ]}))

        [held] = await venue.fetch_positions()

        assert held.venue == "gw"
        assert held.size_units == 10.0
        assert held.resolved and not held.redeemable


# =============================================================================
# Registry
# =============================================================================


class TestRegistry:

    def test_parse_endpoints(self):
        endpoints = parse_endpoints(
            "polymarket:prediction_market:http://poly-gw:8080, jito:liquid_staking+swap:http://jito:9000,broken"
        )
        assert endpoints["polymarket"] == ([Strategy.PREDICTION_MARKET], "http://poly-gw:8080")
        assert endpoints["jito"] == ([Strategy.LIQUID_STAKING, Strategy.SWAP], "http://jito:9000")
        assert "broken" not in endpoints

    def test_build_registry(self):
        registry = build_registry(["paper", "polymarket", "missing"], "polymarket:prediction_market:http://gw:1")

        assert registry.names() == ["paper", "polymarket"]
        assert isinstance(registry.get("polymarket"), HttpVenue)

    def test_routing_and_disabled(self):
        staking = PaperVenue("staking", strategies=[Strategy.LIQUID_STAKING])
        markets = PaperVenue("markets", strategies=[Strategy.PREDICTION_MARKET])
        registry = VenueRegistry([staking, markets], disabled=["markets"])

        assert registry.for_strategy(Strategy.LIQUID_STAKING) is staking
        assert registry.for_strategy(Strategy.PREDICTION_MARKET) is None
        assert registry.get("markets") is None
        assert registry.names() == ["staking"]

    def test_duplicate_names_rejected(self):
        with pytest.raises(ValueError):
            VenueRegistry([PaperVenue("a"), PaperVenue("a")])
