"""
Database layer — Multi-backend persistence for execution state and flows.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for small deployments)

Quick start:
  from database import create_persistence
  persistence = create_persistence({"store_backend": "memory", "flow_backend": "memory"})
  state = await persistence.store.get("conv-1")
"""
from database.models import (
    Base, ExecutionStateRow, ExecutionArchiveRow, FlowDefinitionRow,
)
from database.session import close_db, describe_database, get_engine, get_session, init_db, uses_sql
from database.store_base import BaseExecutionStore
from database.store import SqlExecutionStore
from database.store_memory import InMemoryExecutionStore
from database.store_file import FileExecutionStore
from database.store_factory import (
    Persistence, create_flow_repository, create_persistence, create_store, get_store, reset_store,
)

__all__ = [
    # ORM models
    "Base", "ExecutionStateRow", "ExecutionArchiveRow", "FlowDefinitionRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db", "describe_database", "uses_sql",
    # Store interface
    "BaseExecutionStore",
    # Store backends
    "SqlExecutionStore", "InMemoryExecutionStore", "FileExecutionStore",
    # Factory
    "Persistence", "create_persistence", "create_store", "create_flow_repository",
    "get_store", "reset_store",
]
