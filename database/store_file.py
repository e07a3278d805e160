"""
FileExecutionStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    executions.json      live states, keyed by conversation id
    history.json         finished executions, {conversation_id: [records]}

Features:
  - Survives process restarts (unlike InMemoryExecutionStore)
  - No external dependencies (no database server, no Redis)
  - Every mutation is flushed (write to .tmp, then rename)
  - Single-process only (no concurrent write safety)

Best for: small deployments, demos, edge devices, air-gapped environments.
"""
from __future__ import annotations

import json
import structlog
from collections import defaultdict
from pathlib import Path
from typing import Any

from database.store_memory import InMemoryExecutionStore
from models.schemas import ExecutionRecord, ExecutionState

logger = structlog.get_logger()

_COLLECTIONS = ["executions", "history"]


class FileExecutionStore(InMemoryExecutionStore):
    """
    Extends InMemoryExecutionStore with JSON file persistence.

    On init: loads all data from JSON files into memory.
    On every write: flushes the changed collection to disk.
    """

    def __init__(self, data_dir: str = "./data"):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._load_all()
        logger.info("file_store_initialized", data_dir=str(self._data_dir),
                    live=len(self._states))

    # ── Load / Save ───────────────────────────────────────

    def _file_path(self, collection: str) -> Path:
        return self._data_dir / f"{collection}.json"

    def _load_all(self):
        for collection in _COLLECTIONS:
            path = self._file_path(collection)
            if not path.exists():
                continue
            try:
                with open(path, "r") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("file_store_load_error", collection=collection, error=str(e))
                continue
            if not isinstance(data, dict):
                continue
            if collection == "executions":
                self._states = data
            else:
                self._history = defaultdict(list, data)

    def _get_collection_data(self, collection: str) -> Any:
        if collection == "executions":
            return self._states
        return dict(self._history)

    def _flush_collection(self, collection: str):
        """Write a single collection to disk."""
        path = self._file_path(collection)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(self._get_collection_data(collection), f, indent=2, default=str)
        tmp_path.rename(path)  # atomic on POSIX

    def flush_all(self):
        for c in _COLLECTIONS:
            self._flush_collection(c)
        logger.info("file_store_flushed_all")

    # ── Override write methods to trigger persistence ──────

    async def create(self, state: ExecutionState) -> ExecutionState:
        result = await super().create(state)
        self._flush_collection("executions")
        return result

    async def compare_and_set(self, state: ExecutionState, expected_revision: int) -> ExecutionState:
        result = await super().compare_and_set(state, expected_revision)
        self._flush_collection("executions")
        return result

    async def request_abort(self, conversation_id: str, reason: str) -> bool:
        found = await super().request_abort(conversation_id, reason)
        if found:
            self._flush_collection("executions")
        return found

    async def archive(self, state: ExecutionState) -> ExecutionRecord:
        record = await super().archive(state)
        self._flush_collection("executions")
        self._flush_collection("history")
        return record

    async def stats(self) -> dict[str, Any]:
        result = await super().stats()
        result["backend"] = "file"
        result["data_dir"] = str(self._data_dir)
        return result
