"""
Step Interpreter — pure node semantics.

Given a node and the step input, compute the effect to perform and the
transition to take. No I/O and no clock: the scheduler performs the effect
and commits the transition.

Three phases, one handler table each:
  enter(node, input)    first visit of a node
  resume(node, input)   an awaiting node receives an inbound message
  wake(node, input)     a delay node's timer fired

Usage:
    interpreter = StepInterpreter(media_base_url="https://cdn.example.com")
    result = interpreter.enter(node, StepInput(text="hi", platform=Platform.WHATSAPP))
    result.effect.kind        # EffectKind.SEND
    result.transition.kind    # TransitionKind.ADVANCE
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from models.schemas import (
    ActionNode, ActionType, ButtonOption, ButtonsNode, CarouselNode, Choice,
    CollectInputNode, ConditionNode, DelayNode, ExecutionStatus, LocationNode,
    MessageNode, Node, NodeType, OutboundKind, Platform, QuickRepliesNode,
    OptionNode,
)
from utils.conditions import evaluate_condition
from utils.maps import maps_url_for


# ──────────────────────────────────────────────────────────────
#  Step values
# ──────────────────────────────────────────────────────────────

class EffectKind(str, Enum):
    NONE = "none"
    SEND = "send"
    SCHEDULE_WAKE = "schedule_wake"
    DISPATCH_ACTION = "dispatch_action"


class TransitionKind(str, Enum):
    ADVANCE = "advance"       # continue synchronously at next_node_id
    SUSPEND = "suspend"       # stop the run; wait for input or a timer
    COMPLETE = "complete"     # graph ended


@dataclass(frozen=True)
class Effect:
    kind: EffectKind = EffectKind.NONE
    outbound_kind: Optional[OutboundKind] = None
    payload: dict[str, Any] = field(default_factory=dict)
    delay_ms: int = 0
    action: Optional[ActionType] = None
    action_value: Optional[str] = None


@dataclass(frozen=True)
class Transition:
    kind: TransitionKind
    next_node_id: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.RUNNING
    variables: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class StepResult:
    effect: Effect
    transition: Transition

    def __repr__(self):
        return f"<Step {self.effect.kind.value} → {self.transition.kind.value} {self.transition.next_node_id or ''}>"


@dataclass(frozen=True)
class StepInput:
    text: str = ""                          # latest inbound text
    postback_payload: Optional[str] = None  # only set on the step that consumes the inbound
    platform: Optional[Platform] = None
    variables: dict[str, str] = field(default_factory=dict)

    def scope(self) -> dict[str, str]:
        """Variables visible to condition nodes, synthetic ones included."""
        return {
            **self.variables,
            "message": self.text or "",
            "platform": self.platform.value if self.platform else "",
        }


NO_EFFECT = Effect()

_ABSOLUTE_PREFIXES = ("http://", "https://", "data:")


def _fold(value: Optional[str]) -> str:
    return (value or "").strip().casefold()


# ──────────────────────────────────────────────────────────────
#  Interpreter
# ──────────────────────────────────────────────────────────────

class StepInterpreter:

    def __init__(self, media_base_url: str = ""):
        self.media_base_url = media_base_url.rstrip("/")
        self.enter_handlers: dict[NodeType, Callable[[Any, StepInput], StepResult]] = {
            NodeType.MESSAGE: self._enter_message,
            NodeType.QUICK_REPLIES: self._enter_quick_replies,
            NodeType.BUTTONS: self._enter_buttons,
            NodeType.CAROUSEL: self._enter_carousel,
            NodeType.CONDITION: self._enter_condition,
            NodeType.DELAY: self._enter_delay,
            NodeType.ACTION: self._enter_action,
            NodeType.COLLECT_INPUT: self._enter_collect_input,
            NodeType.LOCATION: self._enter_location,
        }
        self.resume_handlers: dict[NodeType, Callable[[Any, StepInput], StepResult]] = {
            NodeType.QUICK_REPLIES: self._resume_choice,
            NodeType.BUTTONS: self._resume_choice,
            NodeType.CAROUSEL: self._resume_choice,
            NodeType.COLLECT_INPUT: self._resume_collect_input,
        }
        self.wake_handlers: dict[NodeType, Callable[[Any, StepInput], StepResult]] = {
            NodeType.DELAY: self._wake_delay,
        }

    # ── Phases ────────────────────────────────────────────────

    def enter(self, node: Node, step: StepInput) -> StepResult:
        return self.enter_handlers[node.node_type](node, step)

    def resume(self, node: Node, step: StepInput) -> StepResult:
        handler = self.resume_handlers.get(node.node_type)
        if handler is None:
            # only awaiting nodes take input; anything else is simply re-entered
            return self.enter(node, step)
        return handler(node, step)

    def wake(self, node: Node, step: StepInput) -> StepResult:
        handler = self.wake_handlers.get(node.node_type)
        if handler is None:
            return self.enter(node, step)
        return handler(node, step)

    # ── Transitions ───────────────────────────────────────────

    @staticmethod
    def _follow(next_node_id: Optional[str], variables: dict[str, str]) -> Transition:
        if next_node_id:
            return Transition(TransitionKind.ADVANCE, next_node_id=next_node_id,
                              variables=dict(variables))
        return Transition(TransitionKind.COMPLETE, status=ExecutionStatus.COMPLETED,
                          variables=dict(variables))

    @staticmethod
    def _suspend(node_id: str, status: ExecutionStatus, variables: dict[str, str]) -> Transition:
        return Transition(TransitionKind.SUSPEND, next_node_id=node_id, status=status,
                          variables=dict(variables))

    def resolve_media(self, url: Optional[str]) -> Optional[str]:
        """Resolve a relative media path against the configured base URL."""
        if not url:
            return None
        if url.startswith(_ABSOLUTE_PREFIXES) or not self.media_base_url:
            return url
        return f"{self.media_base_url}/{url.lstrip('/')}"

    @staticmethod
    def _send(kind: OutboundKind, payload: dict[str, Any]) -> Effect:
        return Effect(EffectKind.SEND, outbound_kind=kind, payload=payload)

    @staticmethod
    def _button_payload(button: ButtonOption) -> dict[str, Any]:
        data: dict[str, Any] = {"type": button.type.value, "title": button.title}
        if button.is_routable:
            data["payload"] = button.payload or button.title
        else:
            data["url"] = button.url
        return data

    # ── enter ─────────────────────────────────────────────────

    def _enter_message(self, node: MessageNode, step: StepInput) -> StepResult:
        payload: dict[str, Any] = {"text": node.text}
        image = self.resolve_media(node.image_url)
        if image:
            payload["imageUrl"] = image
        return StepResult(self._send(OutboundKind.TEXT, payload),
                          self._follow(node.next_node_id, step.variables))

    def _enter_quick_replies(self, node: QuickRepliesNode, step: StepInput) -> StepResult:
        payload = {
            "text": node.text,
            "quickReplies": [{"title": c.title, "payload": c.payload} for c in node.choices()],
        }
        return StepResult(self._send(OutboundKind.QUICK_REPLIES, payload),
                          self._suspend(node.id, ExecutionStatus.AWAITING_INPUT, step.variables))

    def _enter_buttons(self, node: ButtonsNode, step: StepInput) -> StepResult:
        payload = {
            "text": node.text,
            "buttons": [self._button_payload(b) for b in node.buttons],
        }
        return StepResult(self._send(OutboundKind.BUTTONS, payload),
                          self._suspend(node.id, ExecutionStatus.AWAITING_INPUT, step.variables))

    def _enter_carousel(self, node: CarouselNode, step: StepInput) -> StepResult:
        cards = []
        for card in node.cards:
            entry: dict[str, Any] = {
                "title": card.title,
                "subtitle": card.subtitle,
                "buttons": [self._button_payload(b) for b in card.buttons],
            }
            image = self.resolve_media(card.image_url)
            if image:
                entry["imageUrl"] = image
            cards.append(entry)
        payload = {"text": node.text, "cards": cards}
        return StepResult(self._send(OutboundKind.CAROUSEL, payload),
                          self._suspend(node.id, ExecutionStatus.AWAITING_INPUT, step.variables))

    def _enter_condition(self, node: ConditionNode, step: StepInput) -> StepResult:
        actual = step.scope().get(node.variable, "")
        outcome = evaluate_condition(actual, node.operator, node.value)
        target = node.condition_true_node_id if outcome else node.condition_false_node_id
        return StepResult(NO_EFFECT, self._follow(target, step.variables))

    def _enter_delay(self, node: DelayNode, step: StepInput) -> StepResult:
        return StepResult(Effect(EffectKind.SCHEDULE_WAKE, delay_ms=node.delay_ms),
                          self._suspend(node.id, ExecutionStatus.AWAITING_TIMER, step.variables))

    def _enter_action(self, node: ActionNode, step: StepInput) -> StepResult:
        effect = Effect(EffectKind.DISPATCH_ACTION, action=node.action,
                        action_value=node.action_value)
        if node.action == ActionType.CLOSE:
            return StepResult(effect, self._follow(None, step.variables))
        return StepResult(effect, self._follow(node.next_node_id, step.variables))

    def _enter_collect_input(self, node: CollectInputNode, step: StepInput) -> StepResult:
        effect = self._send(OutboundKind.TEXT, {"text": node.prompt}) if node.prompt else NO_EFFECT
        return StepResult(effect,
                          self._suspend(node.id, ExecutionStatus.AWAITING_INPUT, step.variables))

    def _enter_location(self, node: LocationNode, step: StepInput) -> StepResult:
        payload = {
            "latitude": node.latitude,
            "longitude": node.longitude,
            "name": node.location_name,
            "address": node.location_address,
            "url": node.maps_url or maps_url_for(node.latitude, node.longitude),
        }
        return StepResult(self._send(OutboundKind.LOCATION, payload),
                          self._follow(node.next_node_id, step.variables))

    # ── resume ────────────────────────────────────────────────

    @staticmethod
    def match_choice(node: OptionNode, step: StepInput) -> Optional[Choice]:
        """Postback payload first, then text; each against payloads, then titles."""
        choices = node.choices()
        for candidate in (_fold(step.postback_payload), _fold(step.text)):
            if not candidate:
                continue
            for choice in choices:
                if candidate == _fold(choice.payload):
                    return choice
            for choice in choices:
                if candidate == _fold(choice.title):
                    return choice
        return None

    def _resume_choice(self, node: OptionNode, step: StepInput) -> StepResult:
        choice = self.match_choice(node, step)
        if choice is None:
            return StepResult(NO_EFFECT,
                              self._suspend(node.id, ExecutionStatus.AWAITING_INPUT, step.variables))
        return StepResult(NO_EFFECT,
                          self._follow(choice.next_node_id or node.next_node_id, step.variables))

    def _resume_collect_input(self, node: CollectInputNode, step: StepInput) -> StepResult:
        value = step.text if step.text else step.postback_payload
        if not value:
            return StepResult(NO_EFFECT,
                              self._suspend(node.id, ExecutionStatus.AWAITING_INPUT, step.variables))
        variables = {**step.variables, node.save_as: value}
        return StepResult(NO_EFFECT, self._follow(node.next_node_id, variables))

    # ── wake ──────────────────────────────────────────────────

    def _wake_delay(self, node: DelayNode, step: StepInput) -> StepResult:
        return StepResult(NO_EFFECT, self._follow(node.next_node_id, step.variables))
