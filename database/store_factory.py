"""
Persistence factory — the execution store and the flow repository, built from
the `database` settings section.

    database:
      store_backend: memory | file | sql     live execution state
      store_file_dir: ./data                 file backend directory
      flow_backend: memory | sql             saved flow versions
      url: sqlite:///./converse_flows.db     shared by both "sql" backends

The execution store is a process-wide singleton: the scheduler, the timer
manager and the API all have to see the same live states.

Usage:
    persistence = create_persistence(settings.database, on_rejected=report)
    if persistence.uses_sql:
        await init_db()
"""
from __future__ import annotations

import structlog
from dataclasses import asdict, dataclass, is_dataclass
from typing import Any, Optional, Union

from config.settings import DatabaseConfig
from database.session import uses_sql
from database.store_base import BaseExecutionStore

logger = structlog.get_logger()

_instance: Optional[BaseExecutionStore] = None

ConfigLike = Union[DatabaseConfig, dict[str, Any], None]


def _as_dict(config: ConfigLike) -> dict[str, Any]:
    if config is None:
        return {}
    return asdict(config) if is_dataclass(config) else dict(config)


@dataclass
class Persistence:
    store: BaseExecutionStore
    flows: Any                          # flows.repository.BaseFlowRepository
    uses_sql: bool


def create_store(config: ConfigLike = None) -> BaseExecutionStore:
    """Execution store for `store_backend`; the first call wins."""
    global _instance
    if _instance is not None:
        return _instance

    config = _as_dict(config)
    backend = config.get("store_backend", "memory")
    if backend == "sql":
        from database.store import SqlExecutionStore
        _instance = SqlExecutionStore()
    elif backend == "file":
        from database.store_file import FileExecutionStore
        _instance = FileExecutionStore(data_dir=config.get("store_file_dir", "./data"))
    else:
        from database.store_memory import InMemoryExecutionStore
        _instance = InMemoryExecutionStore()
    logger.info("store_created", backend=backend if backend in ("sql", "file") else "memory")
    return _instance


def create_flow_repository(config: ConfigLike = None, on_rejected=None):
    """Flow repository for `flow_backend`. Not cached: tests build several."""
    from flows.repository import InMemoryFlowRepository, SqlFlowRepository

    if _as_dict(config).get("flow_backend", "memory") == "sql":
        logger.info("flow_repository_created", backend="sql")
        return SqlFlowRepository(on_rejected)
    logger.info("flow_repository_created", backend="memory")
    return InMemoryFlowRepository(on_rejected)


def create_persistence(config: ConfigLike = None, on_rejected=None) -> Persistence:
    return Persistence(
        store=create_store(config),
        flows=create_flow_repository(config, on_rejected),
        uses_sql=uses_sql(_as_dict(config)),
    )


def get_store() -> BaseExecutionStore:
    """The singleton store, a memory store if none was configured."""
    return _instance if _instance is not None else create_store()


def reset_store() -> None:
    """Forget the singleton (tests)."""
    global _instance
    _instance = None
