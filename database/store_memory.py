"""
InMemoryExecutionStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlExecutionStore
  - Atomic via asyncio (no awaits inside a mutation, single event loop)
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Optional

from database.store_base import BaseExecutionStore, DUE_STATUSES
from models.errors import ExecutionConflictError, StaleStateError
from models.schemas import ExecutionRecord, ExecutionState

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryExecutionStore(BaseExecutionStore):
    """
    Records are kept as JSON-mode dicts, so callers never share a mutable
    object with the store.
    """

    def __init__(self):
        self._states: dict[str, dict] = {}                      # conversation_id → state dict
        self._history: dict[str, list[dict]] = defaultdict(list)  # conversation_id → [record dicts]
        logger.info("inmemory_store_initialized")

    @staticmethod
    def _to_state(data: dict) -> ExecutionState:
        return ExecutionState.model_validate(data)

    # ── Live state ────────────────────────────────────────

    async def get(self, conversation_id: str) -> Optional[ExecutionState]:
        data = self._states.get(conversation_id)
        return self._to_state(data) if data else None

    async def create(self, state: ExecutionState) -> ExecutionState:
        if state.conversation_id in self._states:
            raise ExecutionConflictError(state.conversation_id)
        created = state.model_copy(update={"revision": 1})
        self._states[state.conversation_id] = created.model_dump(mode="json")
        return created

    async def compare_and_set(self, state: ExecutionState, expected_revision: int) -> ExecutionState:
        current = self._states.get(state.conversation_id)
        if current is None or current["revision"] != expected_revision:
            raise StaleStateError(state.conversation_id, expected_revision)
        updated = state.model_copy(update={
            "revision": expected_revision + 1,
            # the cancellation flag is sticky: a writer that read before the
            # abort request cannot clear it
            "abort_requested": state.abort_requested or current.get("abort_requested", False),
            "abort_reason": state.abort_reason or current.get("abort_reason", ""),
        })
        self._states[state.conversation_id] = updated.model_dump(mode="json")
        return updated

    async def request_abort(self, conversation_id: str, reason: str) -> bool:
        current = self._states.get(conversation_id)
        if current is None:
            return False
        current["abort_requested"] = True
        current["abort_reason"] = current.get("abort_reason") or reason
        current["revision"] += 1
        current["updated_at"] = _utcnow().isoformat()
        return True

    async def list_due(self, now: datetime, limit: int = 100) -> list[ExecutionState]:
        due = []
        for data in self._states.values():
            if data["status"] not in DUE_STATUSES or not data.get("wake_at"):
                continue
            state = self._to_state(data)
            if state.wake_at <= now:
                due.append(state)
        due.sort(key=lambda s: s.wake_at)
        return due[:limit]

    # ── History ───────────────────────────────────────────

    async def archive(self, state: ExecutionState) -> ExecutionRecord:
        record = ExecutionRecord.from_state(state, ended_at=_utcnow())
        self._states.pop(state.conversation_id, None)
        self._history[state.conversation_id].append(record.model_dump(mode="json"))
        return record

    async def get_history(self, conversation_id: str, limit: int = 20) -> list[ExecutionRecord]:
        records = self._history.get(conversation_id, [])
        newest_first = sorted(records, key=lambda r: r["ended_at"], reverse=True)
        return [ExecutionRecord.model_validate(r) for r in newest_first[:limit]]

    # ── Stats ─────────────────────────────────────────────

    async def stats(self) -> dict[str, Any]:
        by_status: dict[str, int] = defaultdict(int)
        for data in self._states.values():
            by_status[data["status"]] += 1
        return {
            "backend": "memory",
            "live": len(self._states),
            "by_status": dict(by_status),
            "archived": sum(len(v) for v in self._history.values()),
        }
