"""
Flow execution engine.

  interpreter   pure node semantics (enter / resume / wake)
  scheduler     drives the interpreter, performs effects, commits state
  locks         per-conversation serialization
  actions       request_human / close / add_tag dispatch
"""
from engine.actions import (
    ActionDispatcher, LoggingActionDispatcher, RestActionDispatcher, create_action_dispatcher,
)
from engine.interpreter import (
    Effect, EffectKind, StepInput, StepInterpreter, StepResult, Transition, TransitionKind,
)
from engine.locks import (
    ConversationLocks, InMemoryConversationLocks, LockTimeout, RedisConversationLocks, create_locks,
)
from engine.scheduler import EngineOutcome, EngineResult, ExecutionScheduler

__all__ = [
    "ActionDispatcher", "LoggingActionDispatcher", "RestActionDispatcher", "create_action_dispatcher",
    "Effect", "EffectKind", "StepInput", "StepInterpreter", "StepResult", "Transition", "TransitionKind",
    "ConversationLocks", "InMemoryConversationLocks", "LockTimeout", "RedisConversationLocks", "create_locks",
    "EngineOutcome", "EngineResult", "ExecutionScheduler",
]
