"""Shared test fixtures for ConverseFlows."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any

import pytest

from config.settings import EngineConfig, TimerConfig
from database.store_memory import InMemoryExecutionStore
from engine.actions import LoggingActionDispatcher
from engine.scheduler import ExecutionScheduler
from flows.repository import InMemoryFlowRepository
from models.errors import DeliveryError
from models.schemas import OutboundMessage
from timers.manager import TimerManager

from builders import action, collect_input, condition, delay, flow_document, message, quick_replies


# ──────────────────────────────────────────────────────────────
#  Test doubles
# ──────────────────────────────────────────────────────────────

class FakeClock:
    """Injectable clock; tests move time with advance()."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, milliseconds: float = 0) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, milliseconds=milliseconds)
        return self.now


class RecordingChannel:
    """Stands in for the ChannelRegistry: records sends, fails on request."""

    def __init__(self):
        self.sent: list[OutboundMessage] = []
        self.fail_next = 0
        self.retryable = True
        self.on_send = None             # optional async hook(message)

    async def send(self, message: OutboundMessage):
        if self.on_send is not None:
            await self.on_send(message)
        if self.fail_next > 0:
            self.fail_next -= 1
            raise DeliveryError("channel unavailable", channel="fake", retryable=self.retryable)
        self.sent.append(message)
        return message

    @property
    def texts(self) -> list[str]:
        return [m.payload.get("text", "") for m in self.sent]


# ──────────────────────────────────────────────────────────────
#  Sample flows
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def welcome_flow() -> dict[str, Any]:
    """Greeting, a sales/support choice, then hand-off to a human."""
    return flow_document("welcome", [
        message("m1", "Hi", "q1"),
        quick_replies("q1", "How can we help?", ["Sales", "Support"], "a1"),
        action("a1", "request_human"),
    ], keywords=["hello"])


@pytest.fixture
def nudge_flow() -> dict[str, Any]:
    return flow_document("nudge", [
        delay("d1", 5000, "m1"),
        message("m1", "Still there?"),
    ], keywords=["wait"])


@pytest.fixture
def pricing_flow() -> dict[str, Any]:
    return flow_document("pricing", [
        condition("c1", "message", "contains", "price", "yes", "no"),
        message("yes", "Our plans start at $9."),
        message("no", "Ask me about pricing any time."),
    ], keywords=["price", "cost"])


@pytest.fixture
def signup_flow() -> dict[str, Any]:
    return flow_document("signup", [
        collect_input("ask", "What's your email?", "email", "check"),
        condition("check", "email", "contains", "@", "ok", "bad"),
        message("ok", "Thanks, we'll be in touch."),
        message("bad", "That doesn't look like an email."),
    ], keywords=["signup"])


# ──────────────────────────────────────────────────────────────
#  Engine harness
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryExecutionStore:
    return InMemoryExecutionStore()


@pytest.fixture
def flow_repo() -> InMemoryFlowRepository:
    return InMemoryFlowRepository()


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def actions() -> LoggingActionDispatcher:
    return LoggingActionDispatcher()


@pytest.fixture
def engine_settings() -> EngineConfig:
    return EngineConfig(max_delivery_failures=3, retry_backoff_seconds=5.0,
                        max_steps_per_run=50, stale_running_seconds=60)


@pytest.fixture
def scheduler(store, flow_repo, channel, actions, engine_settings, clock) -> ExecutionScheduler:
    # no timer manager attached: tests drive wake-ups through sweep()/fire_timer()
    return ExecutionScheduler(
        store=store,
        flows=flow_repo,
        channels=channel,
        actions=actions,
        settings=engine_settings,
        clock=clock,
    )


@pytest.fixture
def timers(store, scheduler, clock) -> TimerManager:
    return TimerManager(store, scheduler, TimerConfig(missed_threshold_seconds=30.0), clock=clock)


@pytest.fixture
def harness(scheduler, timers, store, flow_repo, channel, actions, clock) -> SimpleNamespace:
    return SimpleNamespace(scheduler=scheduler, timers=timers, store=store, flows=flow_repo,
                           channel=channel, actions=actions, clock=clock)
