"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB — on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - One execution_states row per conversation (conversation_id is the primary
    key), so "at most one live execution" is enforced by the database.
  - Optimistic concurrency through the integer `revision` column.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, Boolean, DateTime, Text, Index, JSON,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Flow definitions (one row per version)
# ──────────────────────────────────────────────────────────────

class FlowDefinitionRow(Base):
    __tablename__ = "flow_definitions"

    flow_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_latest: Mapped[bool] = mapped_column(Boolean, default=True)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    document: Mapped[Any] = mapped_column(JSON, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_flows_tenant_latest", "tenant_id", "is_latest", "is_active"),
    )


# ──────────────────────────────────────────────────────────────
#  Execution state (live, one per conversation)
# ──────────────────────────────────────────────────────────────

class ExecutionStateRow(Base):
    __tablename__ = "execution_states"

    conversation_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(128), default="", index=True)
    flow_id: Mapped[str] = mapped_column(String(128), nullable=False)
    flow_version: Mapped[int] = mapped_column(Integer, nullable=False)
    current_node_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    variables: Mapped[Any] = mapped_column(JSON, default=dict)

    platform: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    recipient_id: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    last_message: Mapped[str] = mapped_column(Text, default="")

    wake_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    failure_count: Mapped[int] = mapped_column(Integer, default=0)
    step_count: Mapped[int] = mapped_column(Integer, default=0)
    abort_requested: Mapped[bool] = mapped_column(Boolean, default=False)
    abort_reason: Mapped[str] = mapped_column(String(128), default="")
    revision: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_exec_due", "status", "wake_at"),
    )


# ──────────────────────────────────────────────────────────────
#  Execution history (finished executions)
# ──────────────────────────────────────────────────────────────

class ExecutionArchiveRow(Base):
    __tablename__ = "execution_history"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    conversation_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    tenant_id: Mapped[str] = mapped_column(String(128), default="")
    flow_id: Mapped[str] = mapped_column(String(128), nullable=False)
    flow_version: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    reason: Mapped[str] = mapped_column(String(128), default="")
    last_node_id: Mapped[str] = mapped_column(String(128), default="")
    variables: Mapped[Any] = mapped_column(JSON, default=dict)
    step_count: Mapped[int] = mapped_column(Integer, default=0)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    ended_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, index=True)
