"""
Abstract Execution Store — Interface for all storage backends.

Implementations:
  - SqlExecutionStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryExecutionStore (dict-based, single-process, no persistence)
  - FileExecutionStore     (JSON files on disk, single-process, durable)

Every backend keeps one live ExecutionState per conversation and gives the
scheduler two atomic primitives:
  create()           insert-if-absent; raises ExecutionConflictError
  compare_and_set()  write only if the stored revision still matches;
                     raises StaleStateError
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from models.schemas import ExecutionRecord, ExecutionState, ExecutionStatus

# Statuses the timer sweep picks up once wake_at has passed.
DUE_STATUSES = (ExecutionStatus.AWAITING_TIMER.value, ExecutionStatus.RUNNING.value)


class BaseExecutionStore(ABC):
    """Interface that all execution store backends must implement."""

    # ── Live state ────────────────────────────────────────────

    @abstractmethod
    async def get(self, conversation_id: str) -> Optional[ExecutionState]:
        ...

    @abstractmethod
    async def create(self, state: ExecutionState) -> ExecutionState:
        """Insert a new live state (revision 1). Fails if one already exists."""
        ...

    @abstractmethod
    async def compare_and_set(self, state: ExecutionState, expected_revision: int) -> ExecutionState:
        """Replace the live state if its revision is still expected_revision."""
        ...

    @abstractmethod
    async def request_abort(self, conversation_id: str, reason: str) -> bool:
        """Set the cancellation flag. Returns False if nothing is live."""
        ...

    @abstractmethod
    async def list_due(self, now: datetime, limit: int = 100) -> list[ExecutionState]:
        """Live states waiting on a timer or a retry whose wake_at <= now."""
        ...

    # ── History ───────────────────────────────────────────────

    @abstractmethod
    async def archive(self, state: ExecutionState) -> ExecutionRecord:
        """Remove the live state and append it to the execution history."""
        ...

    @abstractmethod
    async def get_history(self, conversation_id: str, limit: int = 20) -> list[ExecutionRecord]:
        ...

    # ── Stats ─────────────────────────────────────────────────

    @abstractmethod
    async def stats(self) -> dict[str, Any]:
        ...
