"""
Execution Scheduler — the only component that mutates ExecutionState.

Drives the step interpreter for one conversation at a time:

  inbound event / timer fire / explicit start
    → per-conversation lock
    → load state (or match a trigger and create one)
    → loop: interpreter step → perform effect → compare-and-set commit
    → stop at a suspension (awaiting input or timer) or a terminal status

Failure semantics:
  A failed effect (send or action) is never committed. The state stays
  `running` at the failing node with failure_count + 1 and a backoff wake_at;
  the node is retried by the next inbound event or the timer sweep. After
  max_delivery_failures the execution is aborted and handed to a human.

Cancellation:
  abort() sets the persisted abort flag first (no lock needed), then takes the
  lock and archives the execution. A running loop re-reads the flag before
  every step, and any commit racing with it loses the compare-and-set.

Usage:
    scheduler = ExecutionScheduler(store, flows, channels, actions)
    result = await scheduler.handle_event(event)
    result.outcome          # EngineOutcome.STARTED
    result.sent             # [OutboundMessage, ...]
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

import structlog

from config.settings import EngineConfig
from database.store_base import BaseExecutionStore
from engine.actions import ActionDispatcher
from engine.interpreter import EffectKind, Effect, StepInput, StepInterpreter, TransitionKind
from engine.locks import ConversationLocks, InMemoryConversationLocks
from flows.graph import FlowGraph
from flows.matcher import TriggerMatcher
from flows.repository import BaseFlowRepository
from models.errors import AbortedByOperator, DeliveryError, ExecutionConflictError, StaleStateError
from models.schemas import (
    ExecutionRecord, ExecutionState, ExecutionStatus, FlowDefinition, InboundEvent,
    Node, OutboundMessage, timer_key,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Results
# ──────────────────────────────────────────────────────────────

class EngineOutcome(str, Enum):
    STARTED = "started"                 # trigger matched / explicit start ran
    RESUMED = "resumed"                 # awaiting node consumed the inbound
    RETRIED = "retried"                 # failed node re-attempted
    FIRED = "fired"                     # timer woke the execution
    RETRY_PENDING = "retry_pending"     # effect failed; will be retried
    WAITING_TIMER = "waiting_timer"     # inbound ignored during a delay
    NO_MATCH = "no_match"
    BUSY = "busy"                       # a live execution exists
    STALE_TIMER = "stale_timer"         # timer no longer matches the state
    NOT_DUE = "not_due"                 # timer woke before its wake_at
    IGNORED = "ignored"                 # inbound carried nothing to consume
    ABORTED = "aborted"
    NOT_FOUND = "not_found"


class _Phase(str, Enum):
    ENTER = "enter"
    RESUME = "resume"
    WAKE = "wake"


@dataclass
class EngineResult:
    outcome: EngineOutcome
    state: Optional[ExecutionState] = None
    sent: list[OutboundMessage] = field(default_factory=list)
    record: Optional[ExecutionRecord] = None

    @property
    def finished(self) -> bool:
        return self.record is not None

    def __repr__(self):
        node = self.state.current_node_id if self.state else "-"
        return f"<EngineResult {self.outcome.value} @{node} sent={len(self.sent)}>"


# ──────────────────────────────────────────────────────────────
#  Scheduler
# ──────────────────────────────────────────────────────────────

class ExecutionScheduler:

    def __init__(
        self,
        store: BaseExecutionStore,
        flows: BaseFlowRepository,
        channels,                       # ChannelRegistry or anything with async send(OutboundMessage)
        actions: ActionDispatcher,
        locks: ConversationLocks = None,
        settings: EngineConfig = None,
        matcher: TriggerMatcher = None,
        interpreter: StepInterpreter = None,
        clock: Callable[[], datetime] = None,
    ):
        self.store = store
        self.flows = flows
        self.channels = channels
        self.actions = actions
        self.locks = locks or InMemoryConversationLocks()
        self.settings = settings or EngineConfig()
        self.matcher = matcher or TriggerMatcher(flows)
        self.interpreter = interpreter or StepInterpreter(self.settings.media_base_url)
        self.clock = clock or _utcnow
        self._timers = None

    def attach_timers(self, timers) -> None:
        """Register the timer manager that arms in-process wake-ups."""
        self._timers = timers

    # ── Entry points ──────────────────────────────────────────

    async def handle_event(self, event: InboundEvent) -> EngineResult:
        """Route an inbound message: trigger, resume, retry or ignore."""
        cid = event.conversation_id
        async with self.locks.hold(cid):
            state = await self.store.get(cid)

            if state is None:
                flow = await self.matcher.match(event)
                if flow is None:
                    logger.debug("trigger_no_match", conversation_id=cid, tenant_id=event.tenant_id)
                    return EngineResult(EngineOutcome.NO_MATCH)
                return await self._start(event, flow)

            if state.abort_requested:
                return await self._abort_now(state, state.abort_reason or "operator")

            updates = {}
            if event.text or event.postback_payload:
                # a postback-only inbound clears the text so it is not re-read as input
                updates["last_message"] = event.text or ""
            if event.sender_id and not state.recipient_id:
                updates["recipient_id"] = event.sender_id
            state = state.model_copy(update=updates)

            if state.status == ExecutionStatus.AWAITING_TIMER:
                logger.info("inbound_ignored_waiting_timer", conversation_id=cid,
                            node_id=state.current_node_id)
                if updates:
                    try:
                        state = await self.store.compare_and_set(state, state.revision)
                    except StaleStateError:
                        return await self._on_stale(cid, [], EngineOutcome.WAITING_TIMER)
                return EngineResult(EngineOutcome.WAITING_TIMER, state)

            graph = await self._graph_for(state)
            if graph is None:
                return await self._abort_now(state, "flow_unavailable")

            if state.status == ExecutionStatus.AWAITING_INPUT:
                if not (event.text or event.postback_payload):
                    logger.info("inbound_ignored_empty", conversation_id=cid,
                                node_id=state.current_node_id)
                    return EngineResult(EngineOutcome.IGNORED, state)
                logger.info("execution_resumed", conversation_id=cid,
                            flow_id=state.flow_id, node_id=state.current_node_id)
                return await self._run(state, graph, _Phase.RESUME, EngineOutcome.RESUMED,
                                       postback=event.postback_payload)

            # running: an earlier effect failed; retry the node, the inbound is not consumed
            logger.info("execution_retry_on_inbound", conversation_id=cid,
                        node_id=state.current_node_id, failures=state.failure_count)
            return await self._run(state, graph, _Phase.ENTER, EngineOutcome.RETRIED)

    async def start_flow(self, event: InboundEvent, flow_id: str, force: bool = False) -> EngineResult:
        """Start a specific active flow regardless of its trigger keywords."""
        flow = await self.flows.get_flow(flow_id)
        if flow is None or not flow.is_active or flow.tenant_id != event.tenant_id:
            return EngineResult(EngineOutcome.NOT_FOUND)

        cid = event.conversation_id
        async with self.locks.hold(cid):
            state = await self.store.get(cid)
            if state is not None:
                if not force:
                    return EngineResult(EngineOutcome.BUSY, state)
                await self._finalize(state, ExecutionStatus.ABORTED, "superseded")
            return await self._start(event, flow)

    async def fire_timer(self, conversation_id: str, node_id: str, wake_at: datetime) -> EngineResult:
        """Wake an execution. Idempotent: acts only if the state still matches the key."""
        key = timer_key(conversation_id, node_id, wake_at)
        async with self.locks.hold(conversation_id):
            state = await self.store.get(conversation_id)
            due = state is not None and state.status in (
                ExecutionStatus.AWAITING_TIMER, ExecutionStatus.RUNNING)
            if not due or state.timer_key != key:
                logger.debug("timer_stale", conversation_id=conversation_id, key=key)
                return EngineResult(EngineOutcome.STALE_TIMER, state)
            if state.wake_at > self.clock():
                logger.debug("timer_not_due", conversation_id=conversation_id, key=key)
                return EngineResult(EngineOutcome.NOT_DUE, state)

            if state.abort_requested:
                return await self._abort_now(state, state.abort_reason or "operator")

            graph = await self._graph_for(state)
            if graph is None:
                return await self._abort_now(state, "flow_unavailable")

            if state.status == ExecutionStatus.AWAITING_TIMER:
                logger.info("timer_fired", conversation_id=conversation_id,
                            flow_id=state.flow_id, node_id=node_id)
                return await self._run(state, graph, _Phase.WAKE, EngineOutcome.FIRED)

            logger.info("execution_retry_on_timer", conversation_id=conversation_id,
                        node_id=node_id, failures=state.failure_count)
            return await self._run(state, graph, _Phase.ENTER, EngineOutcome.RETRIED)

    async def abort(self, conversation_id: str, reason: str = "operator") -> EngineResult:
        """Operator override: cancel the live execution (e.g. resume AI / take over)."""
        if not await self.store.request_abort(conversation_id, reason):
            return EngineResult(EngineOutcome.NOT_FOUND)
        async with self.locks.hold(conversation_id):
            state = await self.store.get(conversation_id)
            if state is None:
                # the running loop already finalized it
                return EngineResult(EngineOutcome.ABORTED)
            return await self._abort_now(state, state.abort_reason or reason)

    # ── Execution loop ────────────────────────────────────────

    async def _start(self, event: InboundEvent, flow: FlowDefinition) -> EngineResult:
        graph = await self.flows.get_graph(flow.id, flow.version)
        if graph is None:
            logger.error("flow_unavailable", flow_id=flow.id, version=flow.version)
            return EngineResult(EngineOutcome.NO_MATCH)

        now = self.clock()
        state = ExecutionState(
            conversation_id=event.conversation_id,
            tenant_id=event.tenant_id,
            flow_id=flow.id,
            flow_version=flow.version,
            current_node_id=graph.entry_id,
            status=ExecutionStatus.RUNNING,
            platform=event.platform,
            recipient_id=event.sender_id,
            last_message=event.text or "",
            wake_at=now + timedelta(seconds=self.settings.stale_running_seconds),
            started_at=now,
            updated_at=now,
        )
        try:
            state = await self.store.create(state)
        except ExecutionConflictError:
            return EngineResult(EngineOutcome.BUSY, await self.store.get(event.conversation_id))

        logger.info("execution_started", conversation_id=state.conversation_id,
                    flow_id=flow.id, version=flow.version, tenant_id=state.tenant_id)
        return await self._run(state, graph, _Phase.ENTER, EngineOutcome.STARTED)

    async def _run(self, state: ExecutionState, graph: FlowGraph, phase: _Phase,
                   outcome: EngineOutcome, postback: Optional[str] = None) -> EngineResult:
        sent: list[OutboundMessage] = []
        try:
            return await self._steps(state, graph, phase, outcome, postback, sent)
        except AbortedByOperator as exc:
            latest = await self.store.get(exc.conversation_id)
            if latest is None:
                return EngineResult(EngineOutcome.ABORTED, state, sent)
            return await self._abort_now(latest, exc.reason, sent)

    async def _steps(self, state: ExecutionState, graph: FlowGraph, phase: _Phase,
                     outcome: EngineOutcome, postback: Optional[str],
                     sent: list[OutboundMessage]) -> EngineResult:
        """Interpreter loop; raises AbortedByOperator at the first node boundary after an abort."""
        cid = state.conversation_id
        visits = 0

        while True:
            fresh = await self.store.get(cid)
            if fresh is None:
                return EngineResult(EngineOutcome.ABORTED, state, sent)
            if fresh.abort_requested:
                raise AbortedByOperator(cid, fresh.abort_reason or "operator")
            if fresh.revision != state.revision:
                return await self._on_stale(cid, sent, outcome)

            if visits >= self.settings.max_steps_per_run:
                logger.error("step_limit_exceeded", conversation_id=cid, flow_id=state.flow_id,
                             node_id=state.current_node_id, limit=self.settings.max_steps_per_run)
                return await self._abort_now(state, "step_limit", sent)

            node = graph.get(state.current_node_id)
            if node is None:
                logger.error("execution_node_missing", conversation_id=cid,
                             flow_id=state.flow_id, node_id=state.current_node_id)
                return await self._abort_now(state, "node_missing", sent)

            step = StepInput(
                text=state.last_message,
                postback_payload=postback,
                platform=state.platform,
                variables=dict(state.variables),
            )
            if phase == _Phase.RESUME:
                result = self.interpreter.resume(node, step)
            elif phase == _Phase.WAKE:
                result = self.interpreter.wake(node, step)
            else:
                result = self.interpreter.enter(node, step)
            postback = None
            visits += 1

            try:
                outbound = await self._apply_effect(state, node, result.effect)
            except DeliveryError as exc:
                return await self._delivery_failed(state, node, exc, sent)
            if outbound is not None:
                sent.append(outbound)

            transition = result.transition
            now = self.clock()
            common = {
                "variables": dict(transition.variables),
                "failure_count": 0,
                "step_count": state.step_count + 1,
                "updated_at": now,
            }

            if transition.kind == TransitionKind.COMPLETE:
                final = state.model_copy(update=common)
                record = await self._finalize(final, ExecutionStatus.COMPLETED, "")
                return EngineResult(outcome, final, sent, record)

            if transition.kind == TransitionKind.ADVANCE:
                update = {
                    **common,
                    "current_node_id": transition.next_node_id,
                    "status": ExecutionStatus.RUNNING,
                    "wake_at": now + timedelta(seconds=self.settings.stale_running_seconds),
                }
            else:
                wake_at = None
                if transition.status == ExecutionStatus.AWAITING_TIMER:
                    wake_at = now + timedelta(milliseconds=result.effect.delay_ms)
                update = {
                    **common,
                    "current_node_id": node.id,
                    "status": transition.status,
                    "wake_at": wake_at,
                }

            try:
                state = await self.store.compare_and_set(state.model_copy(update=update), state.revision)
            except StaleStateError:
                return await self._on_stale(cid, sent, outcome)

            if transition.kind == TransitionKind.SUSPEND:
                logger.info("execution_suspended", conversation_id=cid, flow_id=state.flow_id,
                            node_id=node.id, status=state.status.value,
                            wake_at=state.wake_at.isoformat() if state.wake_at else None)
                self._arm(state)
                return EngineResult(outcome, state, sent)

            phase = _Phase.ENTER

    async def _apply_effect(self, state: ExecutionState, node: Node, effect: Effect) -> Optional[OutboundMessage]:
        if effect.kind == EffectKind.SEND:
            message = OutboundMessage(
                conversation_id=state.conversation_id,
                platform=state.platform,
                kind=effect.outbound_kind,
                payload=effect.payload,
                recipient_id=state.recipient_id,
                idempotency_key=f"{state.conversation_id}:{state.flow_id}:{node.id}:{state.step_count}",
            )
            await self.channels.send(message)
            return message

        if effect.kind == EffectKind.DISPATCH_ACTION:
            await self.actions.dispatch(state.conversation_id, effect.action, effect.action_value)
            logger.info("action_performed", conversation_id=state.conversation_id,
                        node_id=node.id, action=effect.action.value, value=effect.action_value)
        return None

    async def _delivery_failed(self, state: ExecutionState, node: Node, exc: DeliveryError,
                               sent: list[OutboundMessage]) -> EngineResult:
        cid = state.conversation_id
        failures = state.failure_count + 1
        logger.warning("delivery_failed", conversation_id=cid, flow_id=state.flow_id,
                       node_id=node.id, failures=failures, retryable=exc.retryable,
                       channel=exc.channel, error=str(exc))

        if failures >= self.settings.max_delivery_failures or not exc.retryable:
            final = state.model_copy(update={"failure_count": failures})
            record = await self._finalize(final, ExecutionStatus.ABORTED, "delivery_failed")
            try:
                await self.actions.request_human(cid)
            except DeliveryError as e:
                logger.error("fallback_request_human_failed", conversation_id=cid, error=str(e))
            return EngineResult(EngineOutcome.ABORTED, final, sent, record)

        now = self.clock()
        backoff = self.settings.retry_backoff_seconds * (2 ** (failures - 1))
        retry_state = state.model_copy(update={
            "status": ExecutionStatus.RUNNING,
            "current_node_id": node.id,
            "failure_count": failures,
            "wake_at": now + timedelta(seconds=backoff),
            "updated_at": now,
        })
        try:
            state = await self.store.compare_and_set(retry_state, state.revision)
        except StaleStateError:
            return await self._on_stale(cid, sent, EngineOutcome.RETRY_PENDING)
        self._arm(state)
        return EngineResult(EngineOutcome.RETRY_PENDING, state, sent)

    # ── Finalization ──────────────────────────────────────────

    async def _finalize(self, state: ExecutionState, status: ExecutionStatus, reason: str) -> ExecutionRecord:
        final = state.model_copy(update={
            "status": status,
            "abort_reason": reason if status == ExecutionStatus.ABORTED else state.abort_reason,
            "wake_at": None,
            "updated_at": self.clock(),
        })
        record = await self.store.archive(final)
        event = "execution_completed" if status == ExecutionStatus.COMPLETED else "execution_aborted"
        logger.info(event, conversation_id=state.conversation_id, flow_id=state.flow_id,
                    version=state.flow_version, node_id=state.current_node_id,
                    reason=reason or None, steps=state.step_count)
        return record

    async def _abort_now(self, state: ExecutionState, reason: str,
                         sent: list[OutboundMessage] = None) -> EngineResult:
        record = await self._finalize(state, ExecutionStatus.ABORTED, reason)
        final = state.model_copy(update={"status": ExecutionStatus.ABORTED, "abort_reason": reason})
        return EngineResult(EngineOutcome.ABORTED, final, sent or [], record)

    async def _on_stale(self, conversation_id: str, sent: list[OutboundMessage],
                        outcome: EngineOutcome) -> EngineResult:
        fresh = await self.store.get(conversation_id)
        if fresh is not None and fresh.abort_requested:
            return await self._abort_now(fresh, fresh.abort_reason or "operator", sent)
        logger.warning("execution_state_conflict", conversation_id=conversation_id,
                       outcome=outcome.value)
        return EngineResult(EngineOutcome.BUSY, fresh, sent)

    # ── Helpers ───────────────────────────────────────────────

    async def _graph_for(self, state: ExecutionState) -> Optional[FlowGraph]:
        graph = await self.flows.get_graph(state.flow_id, state.flow_version)
        if graph is None:
            logger.error("flow_unavailable", conversation_id=state.conversation_id,
                         flow_id=state.flow_id, version=state.flow_version)
        return graph

    def _arm(self, state: ExecutionState) -> None:
        if self._timers is not None and state.wake_at is not None:
            self._timers.arm(state)
