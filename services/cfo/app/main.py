"""
CFO Service

Autonomous financial operator: periodic decision cycles over a
multi-strategy portfolio, risk-tiered execution with human approval for
large actions, and restart-safe recovery of in-flight state.

Key responsibilities:
- Connect Postgres (ledger, agent state, cycle audit) and the NATS agent bus
- Run startup recovery before any timer or command is accepted
- Schedule the decision cycle, position monitor, approval sweep, heartbeat and digest
- Expose operator endpoints (status, approvals, pause/resume, forced cycle)

@module cfo
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import asyncpg
from fastapi import FastAPI, HTTPException
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel
from starlette.responses import Response

from .agent import CFOAgent
from .config import DATABASE_URL, LOG_LEVEL, NATS_URL
from .errors import ApprovalNotFound
from .metrics import registry


logging.basicConfig(
    level=LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("cfo")

SERVICE_NAME = "cfo"


class ReasonBody(BaseModel):
    """Request body for pause/resume/reject."""
    reason: str = "operator"


class CycleBody(BaseModel):
    """Optional intel merged into a forced decision cycle."""
    intel: Optional[dict] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown events."""
    # Startup
    try:
        app.state.db = await asyncpg.create_pool(DATABASE_URL)
        app.state.agent = CFOAgent(app.state.db)
        report = await app.state.agent.start(NATS_URL)
        logger.info(f"Started; recovery ok={report.ok}")
    except Exception as e:
        logger.exception(f"Fatal startup error: {e}")
        raise

    yield  # Application runs here

    # Shutdown
    if hasattr(app.state, "agent"):
        await app.state.agent.stop()
    if hasattr(app.state, "db"):
        await app.state.db.close()


app = FastAPI(title=SERVICE_NAME, version="0.4.0", lifespan=lifespan)


def get_agent() -> CFOAgent:
    return app.state.agent


@app.get("/healthz")
async def health():
    """Health check endpoint."""
    agent = get_agent()
    try:
        metrics = await agent.ledger.get_portfolio_metrics()
        return {
            "status": "ok",
            "paused": agent.pause.is_paused(),
            "open_positions": metrics["open_positions"],
            "bus_connected": agent.bus.connected,
        }
    except Exception:
        return {"status": "degraded", "paused": agent.pause.is_paused(), "bus_connected": agent.bus.connected}


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(registry), media_type=CONTENT_TYPE_LATEST)


@app.get("/status")
async def status():
    """Full agent status dump."""
    return get_agent().status()


# =====================
# Decision cycle
# =====================


@app.post("/cycle")
async def force_cycle(body: Optional[CycleBody] = None):
    """
    Run a decision cycle now.

    Returns trace_id "skipped" if a cycle is already in flight.
    """
    outcome = await get_agent().cycle.run_cycle(body.intel if body else None)
    return outcome.to_dict()


@app.get("/cycles")
async def list_cycles(limit: int = 20):
    return {"cycles": await get_agent().cycle.get_cycles(limit=min(limit, 200))}


# =====================
# Approvals
# =====================


@app.get("/approvals")
async def list_approvals():
    return {"approvals": [a.to_dict() for a in get_agent().approvals.list_pending()]}


@app.post("/approvals/{approval_id}/approve")
async def approve(approval_id: str):
    try:
        result = await get_agent().approvals.approve(approval_id)
    except ApprovalNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return result.to_dict()


@app.post("/approvals/{approval_id}/reject")
async def reject(approval_id: str, body: Optional[ReasonBody] = None):
    try:
        approval = await get_agent().approvals.reject(approval_id, body.reason if body else "")
    except ApprovalNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"rejected": approval.id}


# =====================
# Pause / Resume
# =====================


@app.post("/pause")
async def pause(body: Optional[ReasonBody] = None):
    agent = get_agent()
    await agent.pause.pause(body.reason if body else "operator")
    return agent.pause.status()


@app.post("/resume")
async def resume(body: Optional[ReasonBody] = None):
    agent = get_agent()
    await agent.pause.resume(body.reason if body else "operator")
    return agent.pause.status()


# =====================
# Ledger
# =====================


@app.get("/positions")
async def list_positions(strategy: Optional[str] = None):
    agent = get_agent()
    positions = await agent.ledger.get_open_positions(strategy)
    return {
        "positions": [p.to_dict() for p in positions],
        "metrics": await agent.ledger.get_portfolio_metrics(),
    }


@app.get("/transactions")
async def list_transactions(limit: int = 50, strategy: Optional[str] = None):
    txs = await get_agent().ledger.get_recent_transactions(limit=min(limit, 500), strategy=strategy)
    return {"transactions": [t.to_dict() for t in txs]}


@app.get("/snapshots")
async def list_snapshots(days: int = 30):
    snapshots = await get_agent().ledger.get_snapshots(days=days)
    return {"snapshots": [s.to_dict() for s in snapshots]}
