import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
sys.path.insert(0, os.path.abspath(os.path.dirname(__file__)))

from app.approvals import ApprovalWorkflow
from app.executor import DecisionExecutor
from app.notifier import Notifier
from app.orders import PendingOrderTracker
from app.pause import EmergencyController
from app.producer import CooldownTracker
from app.venues import PaperVenue, VenueRegistry

from fakes import MemoryLedger, MemoryStateStore


@pytest.fixture
def ledger():
    return MemoryLedger()


@pytest.fixture
def store():
    return MemoryStateStore()


@pytest.fixture
def notifier():
    # No bot token: messages only land in notifier.history
    return Notifier(bot_token="", chat_id="")


@pytest.fixture
def paper():
    return PaperVenue("paper", prices={"SOL": 100.0, "YES-ELECTION": 0.5})


@pytest.fixture
def registry(paper):
    return VenueRegistry([paper])


@pytest.fixture
def cooldowns():
    return CooldownTracker({"stake": 6, "market_exit": 1, "open_hedge": 4})


@pytest.fixture
def tracker(ledger, registry, notifier):
    return PendingOrderTracker(ledger, registry, notifier, call_timeout=1.0)


@pytest.fixture
def executor(ledger, registry, tracker, cooldowns, notifier):
    return DecisionExecutor(
        ledger,
        registry,
        tracker,
        cooldowns,
        notifier,
        dry_run=False,
        call_timeout=0.5,
        confirm_timeout=0.05,
        max_retries=3,
        base_delay_ms=1,
    )


@pytest.fixture
def approvals(store, executor, notifier):
    return ApprovalWorkflow(store, executor, notifier, ttl_minutes=30)


@pytest.fixture
def pause(store, registry, notifier):
    controller = EmergencyController(store, registry, notifier, cooldown_hours=4, call_timeout=1.0)
    yield controller
    controller._cancel_timer()
