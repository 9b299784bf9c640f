"""
Tests for the operator HTTP endpoints.

The app is driven through httpx's ASGI transport with an in-memory agent
on app.state, so the lifespan (Postgres, NATS) never runs.

@module tests.test_main
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import pytest_asyncio

from app.agent import CFOAgent
from app.main import app
from app.models import Tier

from fakes import StaticProducer, make_decision, make_position


@pytest_asyncio.fixture
async def agent(ledger, store, registry, notifier):
    bus = MagicMock()
    bus.connected = False
    bus.report_to_supervisor = AsyncMock()
    agent = CFOAgent(
        ledger=ledger,
        store=store,
        registry=registry,
        bus=bus,
        notifier=notifier,
        producer=StaticProducer([make_decision(tier=Tier.APPROVAL)]),
        dry_run=False,
    )
    app.state.agent = agent
    yield agent
    await agent.pause.close()
    del app.state.agent


@pytest_asyncio.fixture
async def client(agent):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://cfo") as client:
        yield client


class TestEndpoints:

    @pytest.mark.asyncio
    async def test_healthz(self, client, ledger):
        ledger.add(make_position())

        resp = await client.get("/healthz")

        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "paused": False, "open_positions": 1, "bus_connected": False}

    @pytest.mark.asyncio
    async def test_healthz_degraded(self, client, ledger):
        ledger.fail_on.add("get_portfolio_metrics")

        resp = await client.get("/healthz")

        assert resp.json()["status"] == "degraded"

    @pytest.mark.asyncio
    async def test_metrics(self, client):
        resp = await client.get("/metrics")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/plain")

    @pytest.mark.asyncio
    async def test_cycle_then_approve(self, client, ledger):
        cycle = await client.post("/cycle")
        assert cycle.status_code == 200
        assert cycle.json()["approval_ids"] == ["approval-1"]

        listed = await client.get("/approvals")
        assert [a["id"] for a in listed.json()["approvals"]] == ["approval-1"]

        approved = await client.post("/approvals/approval-1/approve")
        assert approved.status_code == 200
        assert approved.json()["executed"] is True
        assert len(ledger.transactions) == 1

    @pytest.mark.asyncio
    async def test_unknown_approval_is_404(self, client):
        assert (await client.post("/approvals/approval-9/approve")).status_code == 404
        assert (await client.post("/approvals/approval-9/reject", json={"reason": "no"})).status_code == 404

    @pytest.mark.asyncio
    async def test_pause_resume(self, client, agent):
        paused = await client.post("/pause", json={"reason": "maintenance"})
        assert paused.json()["paused"] is True
        assert agent.pause.manual_paused

        resumed = await client.post("/resume")
        assert resumed.json()["paused"] is False

    @pytest.mark.asyncio
    async def test_positions_and_status(self, client, ledger):
        ledger.add(make_position())

        positions = (await client.get("/positions")).json()
        status = (await client.get("/status")).json()

        assert positions["positions"][0]["external_id"] == "cond-1"
        assert positions["metrics"]["open_positions"] == 1
        assert status["agent_id"] == "cfo"
        assert status["venues"] == ["paper"]
