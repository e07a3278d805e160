"""
SqlExecutionStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Atomicity comes from the database rather than from process-local locks:
  - create():          primary key on conversation_id (IntegrityError → conflict)
  - compare_and_set(): UPDATE ... WHERE revision = :expected, checked by rowcount
so several engine processes can share one database safely.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError

from database.models import ExecutionArchiveRow, ExecutionStateRow
from database.session import get_session
from database.store_base import BaseExecutionStore, DUE_STATUSES
from models.errors import ExecutionConflictError, StaleStateError
from models.schemas import ExecutionRecord, ExecutionState

logger = structlog.get_logger()


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


_STATE_COLUMNS = (
    "tenant_id", "flow_id", "flow_version", "current_node_id", "variables",
    "recipient_id", "last_message", "failure_count", "step_count",
    "abort_requested", "abort_reason",
)


class SqlExecutionStore(BaseExecutionStore):
    """
    Persistent execution store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    # ── Live state ─────────────────────────────────────────

    async def get(self, conversation_id: str) -> Optional[ExecutionState]:
        async with get_session() as db:
            row = await db.get(ExecutionStateRow, conversation_id)
            return self._row_to_state(row) if row else None

    async def create(self, state: ExecutionState) -> ExecutionState:
        created = state.model_copy(update={"revision": 1})
        try:
            async with get_session() as db:
                db.add(ExecutionStateRow(**self._state_values(created)))
                await db.flush()
        except IntegrityError as exc:
            raise ExecutionConflictError(state.conversation_id) from exc
        return created

    async def compare_and_set(self, state: ExecutionState, expected_revision: int) -> ExecutionState:
        updated = state.model_copy(update={"revision": expected_revision + 1})
        values = self._state_values(updated)
        values.pop("conversation_id")
        async with get_session() as db:
            stmt = (
                update(ExecutionStateRow)
                .where(
                    ExecutionStateRow.conversation_id == state.conversation_id,
                    ExecutionStateRow.revision == expected_revision,
                )
                .values(**values)
            )
            result = await db.execute(stmt)
            if result.rowcount != 1:
                raise StaleStateError(state.conversation_id, expected_revision)
        return updated

    async def request_abort(self, conversation_id: str, reason: str) -> bool:
        async with get_session() as db:
            row = await db.get(ExecutionStateRow, conversation_id, with_for_update=True)
            if row is None:
                return False
            row.abort_requested = True
            row.abort_reason = row.abort_reason or reason
            row.revision = row.revision + 1
            row.updated_at = datetime.now(timezone.utc)
            return True

    async def list_due(self, now: datetime, limit: int = 100) -> list[ExecutionState]:
        async with get_session() as db:
            stmt = (
                select(ExecutionStateRow)
                .where(
                    ExecutionStateRow.status.in_(DUE_STATUSES),
                    ExecutionStateRow.wake_at.is_not(None),
                    ExecutionStateRow.wake_at <= _utc(now),
                )
                .order_by(ExecutionStateRow.wake_at)
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_state(r) for r in result.scalars()]

    # ── History ────────────────────────────────────────────

    async def archive(self, state: ExecutionState) -> ExecutionRecord:
        record = ExecutionRecord.from_state(state, ended_at=datetime.now(timezone.utc))
        async with get_session() as db:
            await db.execute(
                delete(ExecutionStateRow)
                .where(ExecutionStateRow.conversation_id == state.conversation_id)
            )
            db.add(ExecutionArchiveRow(
                conversation_id=record.conversation_id,
                tenant_id=record.tenant_id,
                flow_id=record.flow_id,
                flow_version=record.flow_version,
                status=record.status.value,
                reason=record.reason,
                last_node_id=record.last_node_id,
                variables=dict(record.variables),
                step_count=record.step_count,
                started_at=record.started_at,
                ended_at=record.ended_at,
            ))
        return record

    async def get_history(self, conversation_id: str, limit: int = 20) -> list[ExecutionRecord]:
        async with get_session() as db:
            stmt = (
                select(ExecutionArchiveRow)
                .where(ExecutionArchiveRow.conversation_id == conversation_id)
                .order_by(ExecutionArchiveRow.ended_at.desc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [
                ExecutionRecord(
                    conversation_id=r.conversation_id,
                    tenant_id=r.tenant_id or "",
                    flow_id=r.flow_id,
                    flow_version=r.flow_version,
                    status=r.status,
                    reason=r.reason or "",
                    last_node_id=r.last_node_id or "",
                    variables=r.variables or {},
                    step_count=r.step_count or 0,
                    started_at=_utc(r.started_at),
                    ended_at=_utc(r.ended_at),
                )
                for r in result.scalars()
            ]

    # ── Stats ──────────────────────────────────────────────

    async def stats(self) -> dict[str, Any]:
        async with get_session() as db:
            rows = await db.execute(
                select(ExecutionStateRow.status, func.count())
                .group_by(ExecutionStateRow.status)
            )
            by_status = {status: count for status, count in rows.all()}
            archived = await db.scalar(select(func.count()).select_from(ExecutionArchiveRow))
        return {
            "backend": "sql",
            "live": sum(by_status.values()),
            "by_status": by_status,
            "archived": archived or 0,
        }

    # ── Helpers ────────────────────────────────────────────

    @staticmethod
    def _state_values(state: ExecutionState) -> dict[str, Any]:
        values = {col: getattr(state, col) for col in _STATE_COLUMNS}
        values.update(
            conversation_id=state.conversation_id,
            variables=dict(state.variables),
            status=state.status.value,
            platform=state.platform.value if state.platform else None,
            wake_at=_utc(state.wake_at),
            revision=state.revision,
            started_at=_utc(state.started_at),
            updated_at=_utc(state.updated_at),
        )
        return values

    @staticmethod
    def _row_to_state(row: ExecutionStateRow) -> ExecutionState:
        return ExecutionState(
            conversation_id=row.conversation_id,
            tenant_id=row.tenant_id or "",
            flow_id=row.flow_id,
            flow_version=row.flow_version,
            current_node_id=row.current_node_id,
            status=row.status,
            variables=row.variables or {},
            platform=row.platform,
            recipient_id=row.recipient_id,
            last_message=row.last_message or "",
            wake_at=_utc(row.wake_at),
            failure_count=row.failure_count or 0,
            step_count=row.step_count or 0,
            abort_requested=bool(row.abort_requested),
            abort_reason=row.abort_reason or "",
            revision=row.revision,
            started_at=_utc(row.started_at),
            updated_at=_utc(row.updated_at),
        )
