"""Tests for the timer manager: sweeps, recovery, idempotency and in-process arming."""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from structlog.testing import capture_logs

from config.settings import TimerConfig
from engine.scheduler import EngineOutcome, EngineResult
from models.schemas import ExecutionStatus, timer_key
from timers.manager import TimerManager

from builders import inbound


class TestSweep:
    @pytest.mark.asyncio
    async def test_delay_sends_once_across_repeated_sweeps(self, harness, nudge_flow):
        await harness.flows.save_flow(nudge_flow)
        await harness.scheduler.handle_event(inbound("wait"))

        harness.clock.advance(seconds=4.9)
        assert await harness.timers.sweep() == 0
        assert harness.channel.sent == []

        harness.clock.advance(milliseconds=100)
        fired = [await harness.timers.sweep() for _ in range(3)]
        assert fired == [1, 0, 0]
        assert harness.channel.texts == ["Still there?"]
        assert await harness.store.get("conv-1") is None

    @pytest.mark.asyncio
    async def test_sweep_retries_failed_delivery(self, harness, welcome_flow):
        await harness.flows.save_flow(welcome_flow)
        harness.channel.fail_next = 1
        await harness.scheduler.handle_event(inbound("hello"))

        harness.clock.advance(seconds=5)
        assert await harness.timers.sweep() == 1
        state = await harness.store.get("conv-1")
        assert state.status == ExecutionStatus.AWAITING_INPUT
        assert harness.channel.texts == ["Hi", "How can we help?"]

    @pytest.mark.asyncio
    async def test_stale_running_state_is_resumed(self, harness, welcome_flow):
        # a process crashed mid-run: the state was left "running" at m1
        await harness.flows.save_flow(welcome_flow)
        harness.channel.fail_next = 1
        await harness.scheduler.handle_event(inbound("hello"))
        state = await harness.store.get("conv-1")
        await harness.store.compare_and_set(
            state.model_copy(update={"failure_count": 0, "wake_at": harness.clock.now + timedelta(seconds=60)}),
            state.revision,
        )

        harness.clock.advance(seconds=30)
        assert await harness.timers.sweep() == 0
        harness.clock.advance(seconds=30)
        assert await harness.timers.recover() == 1
        assert harness.channel.texts == ["Hi", "How can we help?"]

    @pytest.mark.asyncio
    async def test_late_timer_is_logged(self, harness, nudge_flow):
        await harness.flows.save_flow(nudge_flow)
        await harness.scheduler.handle_event(inbound("wait"))
        harness.clock.advance(seconds=120)

        with capture_logs() as logs:
            await harness.timers.sweep()
        missed = [e for e in logs if e["event"] == "timer_missed"]
        assert len(missed) == 1
        assert missed[0]["conversation_id"] == "conv-1"
        assert harness.channel.texts == ["Still there?"]


class TestLedger:
    @pytest.mark.asyncio
    async def test_same_key_fires_once(self, store, clock):
        scheduler = AsyncMock()
        scheduler.fire_timer.return_value = EngineResult(EngineOutcome.FIRED)
        timers = TimerManager(store, scheduler, TimerConfig(), clock=clock)

        assert await timers._fire("conv-1", "d1", clock.now) is True
        assert await timers._fire("conv-1", "d1", clock.now) is False
        assert timers.has_fired(timer_key("conv-1", "d1", clock.now))
        scheduler.fire_timer.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_fire_releases_key(self, store, clock):
        scheduler = AsyncMock()
        scheduler.fire_timer.side_effect = [RuntimeError("db down"), EngineResult(EngineOutcome.FIRED)]
        timers = TimerManager(store, scheduler, TimerConfig(), clock=clock)

        assert await timers._fire("conv-1", "d1", clock.now) is False
        assert not timers.has_fired(timer_key("conv-1", "d1", clock.now))
        assert await timers._fire("conv-1", "d1", clock.now) is True

    @pytest.mark.asyncio
    async def test_not_due_releases_key(self, store, clock):
        scheduler = AsyncMock()
        scheduler.fire_timer.side_effect = [EngineResult(EngineOutcome.NOT_DUE), EngineResult(EngineOutcome.FIRED)]
        timers = TimerManager(store, scheduler, TimerConfig(), clock=clock)

        assert await timers._fire("conv-1", "d1", clock.now) is False
        assert not timers.has_fired(timer_key("conv-1", "d1", clock.now))
        assert await timers._fire("conv-1", "d1", clock.now) is True

    def test_ledger_is_bounded(self, store, clock):
        timers = TimerManager(store, AsyncMock(), TimerConfig(idempotency_ledger_size=2), clock=clock)
        for key in ("a", "b", "c"):
            assert timers._claim(key)
        assert not timers.has_fired("a")
        assert timers.has_fired("b") and timers.has_fired("c")


class TestInProcessTimers:
    @pytest.mark.asyncio
    async def test_arm_fires_due_timer(self, harness, nudge_flow):
        harness.scheduler.attach_timers(harness.timers)
        await harness.flows.save_flow(nudge_flow)
        started = await harness.scheduler.handle_event(inbound("wait"))
        assert harness.timers.armed_count == 1

        # re-arm as if already due; the sleeping task is replaced
        harness.clock.advance(seconds=5)
        harness.timers.arm(started.state)
        for _ in range(20):
            if harness.channel.sent:
                break
            await asyncio.sleep(0)

        assert harness.channel.texts == ["Still there?"]
        await harness.timers.stop()
        assert harness.timers.armed_count == 0

    @pytest.mark.asyncio
    async def test_early_wake_keeps_timer_alive(self, harness, nudge_flow):
        await harness.flows.save_flow(nudge_flow)
        started = await harness.scheduler.handle_event(inbound("wait"))
        wake_at = started.state.wake_at

        harness.clock.now = wake_at - timedelta(milliseconds=1)
        assert await harness.timers._fire("conv-1", "d1", wake_at) is False
        assert not harness.timers.has_fired(timer_key("conv-1", "d1", wake_at))
        assert harness.timers.armed_count == 1

        harness.clock.advance(seconds=120)
        await harness.timers.sweep()
        for _ in range(20):
            if harness.channel.sent:
                break
            await asyncio.sleep(0.001)
        await harness.timers.stop()

        assert harness.channel.texts == ["Still there?"]
        assert await harness.store.get("conv-1") is None

    def test_arm_without_loop_is_noop(self, harness):
        from models.schemas import ExecutionState
        state = ExecutionState(conversation_id="c", flow_id="f", flow_version=1, current_node_id="d1",
                               wake_at=harness.clock.now)
        harness.timers.arm(state)
        assert harness.timers.armed_count == 0

    @pytest.mark.asyncio
    async def test_background_poller(self, harness, nudge_flow):
        await harness.flows.save_flow(nudge_flow)
        await harness.scheduler.handle_event(inbound("wait"))
        harness.clock.advance(seconds=5)

        harness.timers.settings = TimerConfig(poll_interval_seconds=0.01)
        await harness.timers.start_background()
        for _ in range(50):
            if harness.channel.sent:
                break
            await asyncio.sleep(0.01)
        await harness.timers.stop()

        assert harness.channel.texts == ["Still there?"]
