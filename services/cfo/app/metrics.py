"""Prometheus metrics for the CFO service."""

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram


registry = CollectorRegistry()

cycle_counter = Counter(
    "cfo_decision_cycles_total",
    "Decision cycles by outcome (ok, skipped, degraded, timeout, paused)",
    labelnames=["outcome"],
    registry=registry,
)
cycle_duration = Histogram(
    "cfo_decision_cycle_seconds",
    "Wall time of one decision cycle",
    registry=registry,
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300),
)
decision_counter = Counter(
    "cfo_decisions_total",
    "Decisions produced",
    labelnames=["type", "tier"],
    registry=registry,
)
execution_counter = Counter(
    "cfo_executions_total",
    "Executor outcomes",
    labelnames=["type", "result"],
    registry=registry,
)
approval_counter = Counter(
    "cfo_approvals_total",
    "Approval workflow events",
    labelnames=["event"],
    registry=registry,
)
pending_approvals_gauge = Gauge(
    "cfo_pending_approvals",
    "Approvals currently waiting for a human",
    registry=registry,
)
paused_gauge = Gauge(
    "cfo_paused",
    "1 while trading is paused",
    registry=registry,
)
recovery_counter = Counter(
    "cfo_recovery_steps_total",
    "Startup recovery steps by result",
    labelnames=["step", "result"],
    registry=registry,
)
pending_orders_gauge = Gauge(
    "cfo_pending_orders",
    "Sell orders placed but not yet confirmed",
    registry=registry,
)
