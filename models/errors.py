"""
Error taxonomy for the flow engine.

  FlowEngineError
    ├── AuthoringError          graph/payload problems, detected at load time
    ├── DeliveryError           an effect (send, action) could not be delivered
    │     └── channels.base.ChannelError
    ├── AbortedByOperator       execution cancelled by an operator override
    ├── StaleStateError         compare-and-set lost against a newer revision
    └── ExecutionConflictError  a live execution already exists
"""
from __future__ import annotations


class FlowEngineError(Exception):
    """Base exception for all engine errors."""


class AuthoringError(FlowEngineError, ValueError):
    """A flow definition is malformed. Never raised while a flow is executing."""

    def __init__(self, flow_id: str, errors: list[str]):
        self.flow_id = flow_id
        self.errors = list(errors)
        super().__init__(f"Invalid flow '{flow_id}': {'; '.join(self.errors)}")


class DeliveryError(FlowEngineError):
    """An effect failed at the I/O boundary; the transition is not committed."""

    def __init__(self, message: str, channel: str = "", retryable: bool = True):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class AbortedByOperator(FlowEngineError):
    def __init__(self, conversation_id: str, reason: str = "operator"):
        self.conversation_id = conversation_id
        self.reason = reason
        super().__init__(f"Execution for {conversation_id} aborted ({reason})")


class StaleStateError(FlowEngineError):
    def __init__(self, conversation_id: str, expected_revision: int):
        self.conversation_id = conversation_id
        self.expected_revision = expected_revision
        super().__init__(
            f"Execution state for {conversation_id} changed since revision {expected_revision}"
        )


class ExecutionConflictError(FlowEngineError):
    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"A live execution already exists for {conversation_id}")
