"""
Timer/Delay Manager — durable wake-ups for suspended executions.

The durable record of a timer is the `wake_at` column on the execution state;
this manager only decides when to look at it:

  recover()            sweep once at process start (timers that came due
                       while the process was down)
  start_background()   poll every poll_interval_seconds
  arm(state)           in-process asyncio timer for sub-poll latency

Every path goes through _fire(), which hands a timer to the scheduler at most
once per process (bounded ledger of timer keys). The scheduler re-validates
the key against the live state under the conversation lock, which makes the
fire idempotent across processes too.

Usage:
    timers = TimerManager(store, scheduler, settings.timers)
    scheduler.attach_timers(timers)
    await timers.recover()
    await timers.start_background()
    ...
    await timers.stop()
"""
from __future__ import annotations

import asyncio
import structlog
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Callable, Optional

from config.settings import TimerConfig
from database.store_base import BaseExecutionStore
from engine.scheduler import EngineOutcome
from models.schemas import ExecutionState, timer_key

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimerManager:

    def __init__(
        self,
        store: BaseExecutionStore,
        scheduler,                      # engine.scheduler.ExecutionScheduler
        settings: TimerConfig = None,
        clock: Callable[[], datetime] = None,
    ):
        self.store = store
        self.scheduler = scheduler
        self.settings = settings or TimerConfig()
        self.clock = clock or _utcnow
        self._ledger: OrderedDict[str, datetime] = OrderedDict()
        self._armed: dict[str, asyncio.Task] = {}
        self._task: Optional[asyncio.Task] = None

    # ── Ledger ────────────────────────────────────────────────

    def _claim(self, key: str) -> bool:
        """Record a key as fired. False if it was already fired."""
        if key in self._ledger:
            return False
        self._ledger[key] = self.clock()
        while len(self._ledger) > self.settings.idempotency_ledger_size:
            self._ledger.popitem(last=False)
        return True

    def has_fired(self, key: str) -> bool:
        return key in self._ledger

    # ── Firing ────────────────────────────────────────────────

    async def _fire(self, conversation_id: str, node_id: str, wake_at: datetime) -> bool:
        key = timer_key(conversation_id, node_id, wake_at)
        if not self._claim(key):
            return False

        lateness = (self.clock() - wake_at).total_seconds()
        if lateness > self.settings.missed_threshold_seconds:
            logger.warning("timer_missed", conversation_id=conversation_id, node_id=node_id,
                           wake_at=wake_at.isoformat(), lateness_seconds=round(lateness, 1))

        try:
            result = await self.scheduler.fire_timer(conversation_id, node_id, wake_at)
        except Exception as e:
            # release the key so the next sweep can try again
            self._ledger.pop(key, None)
            logger.error("timer_fire_failed", conversation_id=conversation_id,
                         node_id=node_id, error=str(e))
            return False
        if result.outcome == EngineOutcome.NOT_DUE:
            # woke early; the key stays claimable and the timer is re-armed
            self._ledger.pop(key, None)
            if result.state is not None:
                self.arm(result.state)
            return False
        logger.debug("timer_dispatched", conversation_id=conversation_id,
                     node_id=node_id, outcome=result.outcome.value)
        return True

    async def sweep(self, limit: int = 100) -> int:
        """Fire every due timer once. Returns the number handed to the scheduler."""
        due = await self.store.list_due(self.clock(), limit=limit)
        fired = 0
        for state in due:
            if await self._fire(state.conversation_id, state.current_node_id, state.wake_at):
                fired += 1
        if fired:
            logger.info("timer_sweep", due=len(due), fired=fired)
        return fired

    async def recover(self) -> int:
        """Startup sweep for timers that came due while no process was running."""
        fired = await self.sweep(limit=10000)
        logger.info("timer_recovery_complete", fired=fired)
        return fired

    # ── In-process timers ─────────────────────────────────────

    def arm(self, state: ExecutionState) -> None:
        """Schedule an in-process wake-up for state.wake_at (best effort)."""
        if state.wake_at is None:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        previous = self._armed.pop(state.conversation_id, None)
        if previous is not None and not previous.done() and previous is not asyncio.current_task():
            previous.cancel()
        self._armed[state.conversation_id] = asyncio.create_task(
            self._sleep_then_fire(state.conversation_id, state.current_node_id, state.wake_at)
        )

    async def _sleep_then_fire(self, conversation_id: str, node_id: str, wake_at: datetime):
        delay = (wake_at - self.clock()).total_seconds()
        try:
            if delay > 0:
                await asyncio.sleep(delay)
            await self._fire(conversation_id, node_id, wake_at)
        except asyncio.CancelledError:
            return
        finally:
            task = self._armed.get(conversation_id)
            if task is asyncio.current_task():
                del self._armed[conversation_id]

    @property
    def armed_count(self) -> int:
        return len(self._armed)

    # ── Background poll ───────────────────────────────────────

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        tasks = list(self._armed.values())
        self._armed.clear()
        if self._task:
            tasks.append(self._task)
            self._task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _run(self):
        logger.info("timer_poller_started", interval=self.settings.poll_interval_seconds)
        while True:
            try:
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("timer_poller_error", error=str(e))
            await asyncio.sleep(self.settings.poll_interval_seconds)
