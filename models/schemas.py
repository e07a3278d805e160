"""
Core data models for the flow engine.
These are the universal types shared across all modules.

Flow documents come from the authoring tool in camelCase with node payloads
nested under "data":

    {"id": "n1", "type": "message", "data": {"text": "Hi"}, "nextNodeId": "n2"}

Every model accepts both the camelCase aliases and the snake_case field names,
and dumps camelCase with model_dump(by_alias=True).
"""
from __future__ import annotations

from abc import abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic.alias_generators import to_camel

from utils.maps import is_short_link, parse_maps_link


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class Platform(str, Enum):
    FACEBOOK = "facebook"
    INSTAGRAM = "instagram"
    WHATSAPP = "whatsapp"


class NodeType(str, Enum):
    MESSAGE = "message"
    QUICK_REPLIES = "quick_replies"
    BUTTONS = "buttons"
    CAROUSEL = "carousel"
    CONDITION = "condition"
    DELAY = "delay"
    ACTION = "action"
    COLLECT_INPUT = "collect_input"
    LOCATION = "location"


# Node kinds that end a synchronous run and wait for an input or a timer.
SUSPENDING_NODE_TYPES = frozenset({
    NodeType.QUICK_REPLIES, NodeType.BUTTONS, NodeType.CAROUSEL,
    NodeType.DELAY, NodeType.COLLECT_INPUT,
})


class ConditionOperator(str, Enum):
    CONTAINS = "contains"
    EQUALS = "equals"
    STARTS_WITH = "startsWith"


class ActionType(str, Enum):
    REQUEST_HUMAN = "request_human"
    CLOSE = "close"
    ADD_TAG = "add_tag"


class ButtonType(str, Enum):
    POSTBACK = "postback"
    WEB_URL = "web_url"


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    AWAITING_INPUT = "awaitingInput"
    AWAITING_TIMER = "awaitingTimer"
    COMPLETED = "completed"
    ABORTED = "aborted"


LIVE_STATUSES = frozenset({
    ExecutionStatus.RUNNING, ExecutionStatus.AWAITING_INPUT, ExecutionStatus.AWAITING_TIMER,
})

# Variables the engine supplies to condition nodes; flows may not overwrite them.
SYNTHETIC_VARIABLES = frozenset({"message", "platform"})


class OutboundKind(str, Enum):
    TEXT = "text"
    QUICK_REPLIES = "quick_replies"
    BUTTONS = "buttons"
    CAROUSEL = "carousel"
    LOCATION = "location"


# ──────────────────────────────────────────────────────────────
#  Base models
# ──────────────────────────────────────────────────────────────

class _Document(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _Frozen(_Document):
    model_config = ConfigDict(frozen=True)


# ──────────────────────────────────────────────────────────────
#  Reply options: quick replies, buttons, carousel cards
# ──────────────────────────────────────────────────────────────

class QuickReplyOption(_Frozen):
    title: str
    payload: str = ""
    next_node_id: Optional[str] = None      # per-option routing (optional)


class ButtonOption(_Frozen):
    type: ButtonType = ButtonType.POSTBACK
    title: str
    payload: Optional[str] = None           # postback buttons
    url: Optional[str] = None               # web_url buttons
    next_node_id: Optional[str] = None

    @property
    def is_routable(self) -> bool:
        """Only postback buttons come back to the engine as input."""
        return self.type == ButtonType.POSTBACK


class CarouselCard(_Frozen):
    title: str
    subtitle: str = ""
    image_url: Optional[str] = None
    buttons: list[ButtonOption] = Field(default_factory=list)


class Choice(_Frozen):
    """A routable option as seen by the interpreter."""
    title: str
    payload: str
    next_node_id: Optional[str] = None


# ──────────────────────────────────────────────────────────────
#  Nodes: one variant per node kind
# ──────────────────────────────────────────────────────────────

class _NodeBase(_Frozen):
    id: str = Field(min_length=1)

    @model_validator(mode="before")
    @classmethod
    def _flatten_data(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        values = dict(values)
        data = values.pop("data", None)
        if isinstance(data, dict):
            values = {**data, **values}
        return cls._normalize(values)

    @classmethod
    def _normalize(cls, values: dict[str, Any]) -> dict[str, Any]:
        return values

    @property
    def node_type(self) -> NodeType:
        return NodeType(self.type)

    def successor_ids(self) -> list[str]:
        return []


class _LinearNode(_NodeBase):
    next_node_id: Optional[str] = None

    @classmethod
    def _normalize(cls, values: dict[str, Any]) -> dict[str, Any]:
        for key in ("conditionTrueNodeId", "conditionFalseNodeId",
                    "condition_true_node_id", "condition_false_node_id"):
            if values.get(key):
                raise ValueError(f"{key} is only valid on condition nodes")
        return values

    def successor_ids(self) -> list[str]:
        return [self.next_node_id] if self.next_node_id else []


class OptionNode(_LinearNode):
    """A node that suspends on a set of selectable options."""

    @abstractmethod
    def choices(self) -> list[Choice]:
        ...

    def successor_ids(self) -> list[str]:
        ids = super().successor_ids()
        ids.extend(c.next_node_id for c in self.choices() if c.next_node_id)
        return ids


class MessageNode(_LinearNode):
    type: Literal["message"] = "message"
    text: str = ""
    image_url: Optional[str] = None


class QuickRepliesNode(OptionNode):
    type: Literal["quick_replies"] = "quick_replies"
    text: str = ""
    quick_replies: list[QuickReplyOption] = Field(default_factory=list)

    def choices(self) -> list[Choice]:
        return [
            Choice(title=o.title, payload=o.payload or o.title, next_node_id=o.next_node_id)
            for o in self.quick_replies
        ]


class ButtonsNode(OptionNode):
    type: Literal["buttons"] = "buttons"
    text: str = ""
    buttons: list[ButtonOption] = Field(default_factory=list)

    def choices(self) -> list[Choice]:
        return [
            Choice(title=b.title, payload=b.payload or b.title, next_node_id=b.next_node_id)
            for b in self.buttons if b.is_routable
        ]


class CarouselNode(OptionNode):
    type: Literal["carousel"] = "carousel"
    text: str = ""
    cards: list[CarouselCard] = Field(default_factory=list)

    def choices(self) -> list[Choice]:
        return [
            Choice(title=b.title, payload=b.payload or b.title, next_node_id=b.next_node_id)
            for card in self.cards for b in card.buttons if b.is_routable
        ]


class ConditionNode(_NodeBase):
    type: Literal["condition"] = "condition"
    variable: str = "message"
    operator: ConditionOperator = ConditionOperator.CONTAINS
    value: str = ""
    condition_true_node_id: Optional[str] = None
    condition_false_node_id: Optional[str] = None

    @classmethod
    def _normalize(cls, values: dict[str, Any]) -> dict[str, Any]:
        if values.get("nextNodeId") or values.get("next_node_id"):
            raise ValueError(
                "condition nodes route through conditionTrueNodeId/conditionFalseNodeId, not nextNodeId"
            )
        if values.get("value") is not None:
            values["value"] = str(values["value"])
        return values

    def successor_ids(self) -> list[str]:
        return [i for i in (self.condition_true_node_id, self.condition_false_node_id) if i]


class DelayNode(_LinearNode):
    type: Literal["delay"] = "delay"
    delay_ms: int = Field(default=1000, ge=0)


class ActionNode(_LinearNode):
    type: Literal["action"] = "action"
    action: ActionType = ActionType.REQUEST_HUMAN
    action_value: Optional[str] = None      # tag name for add_tag

    def successor_ids(self) -> list[str]:
        if self.action == ActionType.CLOSE:
            return []                       # close is terminal
        return super().successor_ids()


class CollectInputNode(_LinearNode):
    type: Literal["collect_input"] = "collect_input"
    prompt: str = ""
    save_as: str = "user_input"


class LocationNode(_LinearNode):
    type: Literal["location"] = "location"
    latitude: float = Field(default=0.0, ge=-90.0, le=90.0)
    longitude: float = Field(default=0.0, ge=-180.0, le=180.0)
    location_name: str = ""
    location_address: str = ""
    maps_url: Optional[str] = None

    @classmethod
    def _normalize(cls, values: dict[str, Any]) -> dict[str, Any]:
        values = super()._normalize(values)
        maps_url = values.get("mapsUrl") or values.get("maps_url")
        if maps_url:
            if is_short_link(maps_url):
                raise ValueError("short maps links carry no coordinates; use the full maps URL")
            coords = parse_maps_link(maps_url)
            if coords is None:
                raise ValueError(f"could not extract coordinates from maps URL '{maps_url}'")
            values["latitude"], values["longitude"] = coords
        return values


Node = Annotated[
    Union[
        MessageNode, QuickRepliesNode, ButtonsNode, CarouselNode, ConditionNode,
        DelayNode, ActionNode, CollectInputNode, LocationNode,
    ],
    Field(discriminator="type"),
]

NODE_ADAPTER: TypeAdapter = TypeAdapter(Node)


def parse_node(raw: dict[str, Any]) -> Node:
    return NODE_ADAPTER.validate_python(raw)


# ──────────────────────────────────────────────────────────────
#  Flow Definition: an authored, versioned graph
# ──────────────────────────────────────────────────────────────

class FlowDefinition(_Frozen):
    """
    One version of an authored flow. Immutable: saving an edited flow creates
    a new version, and running executions keep the version they started on.
    """
    id: str = Field(min_length=1)
    tenant_id: str
    version: int = Field(default=1, ge=1)
    is_active: bool = True
    name: str = ""
    description: Optional[str] = None
    trigger_keywords: list[str] = Field(default_factory=list)
    platforms: list[Platform] = Field(default_factory=list)   # empty = every platform
    priority: int = 0                                          # higher wins on ties
    nodes: list[Node] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("trigger_keywords", mode="before")
    @classmethod
    def _clean_keywords(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = value.split(",")
        return [str(k).strip() for k in value if str(k).strip()]

    @field_validator("updated_at", mode="after")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @property
    def entry_node_id(self) -> Optional[str]:
        return self.nodes[0].id if self.nodes else None

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


# ──────────────────────────────────────────────────────────────
#  Inbound / Outbound: the channel boundary
# ──────────────────────────────────────────────────────────────

class InboundEvent(_Document):
    """A normalized message or postback handed over by a channel adapter."""
    conversation_id: str
    tenant_id: str
    platform: Platform
    text: Optional[str] = None
    postback_payload: Optional[str] = None
    sender_id: Optional[str] = None
    received_at: datetime = Field(default_factory=_utcnow)


class OutboundMessage(_Document):
    """A request to send, emitted once per node visit."""
    conversation_id: str
    platform: Platform
    kind: OutboundKind
    payload: dict[str, Any] = Field(default_factory=dict)
    recipient_id: Optional[str] = None
    idempotency_key: str = ""


# ──────────────────────────────────────────────────────────────
#  Execution State: where a conversation stands in a flow
# ──────────────────────────────────────────────────────────────

def timer_key(conversation_id: str, node_id: str, wake_at: datetime) -> str:
    """Idempotency key of a scheduled wake-up."""
    return f"{conversation_id}:{node_id}:{_as_utc(wake_at).isoformat()}"


class ExecutionState(_Document):
    """
    Durable record of one conversation's position in a flow. At most one live
    instance per conversation; mutated only by the scheduler.
    """
    conversation_id: str
    tenant_id: str = ""
    flow_id: str
    flow_version: int
    current_node_id: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    variables: dict[str, str] = Field(default_factory=dict)
    platform: Optional[Platform] = None
    recipient_id: Optional[str] = None
    last_message: str = ""                  # latest inbound text
    wake_at: Optional[datetime] = None
    failure_count: int = 0                  # consecutive failed deliveries
    step_count: int = 0                     # node visits so far
    abort_requested: bool = False           # cancellation token
    abort_reason: str = ""
    revision: int = 0                       # compare-and-set counter
    started_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("wake_at", "started_at", "updated_at", mode="after")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    @property
    def timer_key(self) -> Optional[str]:
        if self.wake_at is None:
            return None
        return timer_key(self.conversation_id, self.current_node_id, self.wake_at)


class ExecutionRecord(_Document):
    """Archived outcome of a finished execution."""
    conversation_id: str
    tenant_id: str = ""
    flow_id: str
    flow_version: int
    status: ExecutionStatus
    reason: str = ""
    last_node_id: str = ""
    variables: dict[str, str] = Field(default_factory=dict)
    step_count: int = 0
    started_at: datetime = Field(default_factory=_utcnow)
    ended_at: datetime = Field(default_factory=_utcnow)

    @field_validator("started_at", "ended_at", mode="after")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @classmethod
    def from_state(cls, state: ExecutionState, ended_at: datetime = None) -> "ExecutionRecord":
        return cls(
            conversation_id=state.conversation_id,
            tenant_id=state.tenant_id,
            flow_id=state.flow_id,
            flow_version=state.flow_version,
            status=state.status,
            reason=state.abort_reason,
            last_node_id=state.current_node_id,
            variables=dict(state.variables),
            step_count=state.step_count,
            started_at=state.started_at,
            ended_at=ended_at or _utcnow(),
        )
