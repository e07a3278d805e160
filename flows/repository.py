"""
Flow Definition Store — validated, versioned flow graphs.

Read-mostly. Flows arrive from the authoring tool (HTTP API or a directory
of JSON/YAML documents) and are validated before they are stored. Saving a
flow whose id already exists creates version n+1; older versions stay
readable so executions started on them can finish.

Implementations:
  - InMemoryFlowRepository  (dicts; development, tests)
  - SqlFlowRepository       (flow_definitions table via SQLAlchemy)
"""
from __future__ import annotations

import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, Union

import structlog
import yaml
from pydantic import ValidationError
from sqlalchemy import func, select, update

from database.models import FlowDefinitionRow
from database.session import get_session
from flows.graph import FlowGraph, compile_flow
from models.errors import AuthoringError
from models.schemas import FlowDefinition

logger = structlog.get_logger()

RejectedCallback = Callable[[str, list[str]], None]

_FLOW_SUFFIXES = (".json", ".yaml", ".yml")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _content(flow: FlowDefinition) -> dict[str, Any]:
    """Fields that make two versions different."""
    return flow.model_dump(mode="json", exclude={"version", "updated_at"})


class BaseFlowRepository(ABC):
    """
    Version bookkeeping, validation and graph caching are shared; backends
    only implement the storage primitives.
    """

    def __init__(self, on_rejected: Optional[RejectedCallback] = None):
        self._graphs: dict[tuple[str, int], FlowGraph] = {}
        self._on_rejected = on_rejected

    # ── Storage primitives ────────────────────────────────────

    @abstractmethod
    async def _load(self, flow_id: str, version: Optional[int]) -> Optional[FlowDefinition]:
        """Return one version, or the latest when version is None."""
        ...

    @abstractmethod
    async def _insert(self, flow: FlowDefinition) -> None:
        ...

    @abstractmethod
    async def _list_latest(self, tenant_id: Optional[str]) -> list[FlowDefinition]:
        ...

    @abstractmethod
    async def _store_active(self, flow: FlowDefinition) -> None:
        """Persist the is_active flag of the latest version."""
        ...

    @abstractmethod
    async def _store_retired(self, flow_id: str) -> None:
        """Deactivate every version and leave the flow without a latest one."""
        ...

    @abstractmethod
    async def _highest_version(self, flow_id: str) -> int:
        """Highest stored version, retired ones included; 0 when none."""
        ...

    # ── Read API ──────────────────────────────────────────────

    async def get_active_flows(self, tenant_id: str) -> list[FlowDefinition]:
        return [f for f in await self._list_latest(tenant_id) if f.is_active]

    async def list_flows(self, tenant_id: Optional[str] = None) -> list[FlowDefinition]:
        return await self._list_latest(tenant_id)

    async def get_flow(self, flow_id: str, version: Optional[int] = None) -> Optional[FlowDefinition]:
        return await self._load(flow_id, version)

    async def get_graph(self, flow_id: str, version: int) -> Optional[FlowGraph]:
        """Compiled graph of an exact version, cached for the process lifetime."""
        key = (flow_id, version)
        graph = self._graphs.get(key)
        if graph is not None:
            return graph
        flow = await self._load(flow_id, version)
        if flow is None:
            return None
        try:
            graph = compile_flow(flow)
        except AuthoringError as exc:
            await self._reject(flow_id, exc.errors)
            return None
        self._graphs[key] = graph
        return graph

    # ── Write API ─────────────────────────────────────────────

    async def save_flow(self, source: Union[FlowDefinition, dict[str, Any]]) -> FlowDefinition:
        """
        Validate and store a flow. Raises AuthoringError for an invalid flow.
        Re-saving unchanged content returns the stored version.
        """
        graph = compile_flow(source)
        flow = graph.flow
        latest = await self._load(flow.id, None)

        if latest is not None:
            if latest.tenant_id != flow.tenant_id:
                raise AuthoringError(flow.id, [
                    f"flow id already belongs to tenant '{latest.tenant_id}'"
                ])
            if _content(latest) == _content(flow):
                return latest
            version = latest.version + 1
        else:
            # a retired id keeps counting, its old versions may still be running
            version = max(flow.version, await self._highest_version(flow.id) + 1)

        flow = flow.model_copy(update={"version": version, "updated_at": _utcnow()})
        await self._insert(flow)
        self._graphs[(flow.id, flow.version)] = FlowGraph(flow)
        logger.info("flow_saved", flow_id=flow.id, version=flow.version,
                    tenant_id=flow.tenant_id, nodes=len(flow.nodes),
                    active=flow.is_active)
        return flow

    async def set_active(self, flow_id: str, active: bool) -> Optional[FlowDefinition]:
        latest = await self._load(flow_id, None)
        if latest is None:
            return None
        if latest.is_active != active:
            latest = latest.model_copy(update={"is_active": active})
            await self._store_active(latest)
            logger.info("flow_toggled", flow_id=flow_id, version=latest.version, active=active)
        return latest

    async def retire_flow(self, flow_id: str) -> bool:
        """
        Soft delete. The flow stops matching, listing and starting, but every
        version stays readable through get_flow(id, version) and get_graph so
        executions already on it can finish. Saving the id again continues
        the version sequence.
        """
        latest = await self._load(flow_id, None)
        if latest is None:
            return False
        await self._store_retired(flow_id)
        logger.info("flow_retired", flow_id=flow_id, version=latest.version,
                    tenant_id=latest.tenant_id)
        return True

    async def load_directory(self, path: Union[str, Path]) -> list[FlowDefinition]:
        """Load every flow document under a directory. Invalid ones are rejected, not raised."""
        directory = Path(path)
        if not directory.is_dir():
            logger.warning("flows_dir_missing", path=str(directory))
            return []

        loaded = []
        for file in sorted(directory.iterdir()):
            if file.suffix not in _FLOW_SUFFIXES:
                continue
            try:
                with open(file) as f:
                    raw = json.load(f) if file.suffix == ".json" else yaml.safe_load(f)
            except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
                logger.error("flow_file_unreadable", file=str(file), error=str(e))
                await self._reject(file.stem, [f"unreadable: {e}"])
                continue

            for document in (raw if isinstance(raw, list) else [raw]):
                flow_id = str(document.get("id", file.stem)) if isinstance(document, dict) else file.stem
                try:
                    loaded.append(await self.save_flow(document))
                except AuthoringError as exc:
                    await self._reject(flow_id, exc.errors)

        logger.info("flows_loaded", path=str(directory), count=len(loaded))
        return loaded

    async def _reject(self, flow_id: str, errors: list[str]) -> None:
        """Deactivate a flow that failed validation and report it."""
        logger.error("flow_rejected", flow_id=flow_id, errors=errors)
        latest = await self._load(flow_id, None)
        if latest is not None and latest.is_active:
            await self._store_active(latest.model_copy(update={"is_active": False}))
        if self._on_rejected:
            self._on_rejected(flow_id, list(errors))


# ──────────────────────────────────────────────────────────────
#  In-memory backend
# ──────────────────────────────────────────────────────────────

class InMemoryFlowRepository(BaseFlowRepository):

    def __init__(self, on_rejected: Optional[RejectedCallback] = None):
        super().__init__(on_rejected)
        self._versions: dict[str, dict[int, FlowDefinition]] = {}
        self._retired: set[str] = set()

    async def _load(self, flow_id: str, version: Optional[int]) -> Optional[FlowDefinition]:
        versions = self._versions.get(flow_id)
        if not versions:
            return None
        if version is None:
            return None if flow_id in self._retired else versions[max(versions)]
        return versions.get(version)

    async def _insert(self, flow: FlowDefinition) -> None:
        self._versions.setdefault(flow.id, {})[flow.version] = flow
        self._retired.discard(flow.id)

    async def _list_latest(self, tenant_id: Optional[str]) -> list[FlowDefinition]:
        latest = [v[max(v)] for flow_id, v in self._versions.items() if v and flow_id not in self._retired]
        return [f for f in latest if tenant_id is None or f.tenant_id == tenant_id]

    async def _store_active(self, flow: FlowDefinition) -> None:
        self._versions[flow.id][flow.version] = flow

    async def _store_retired(self, flow_id: str) -> None:
        versions = self._versions.get(flow_id, {})
        for number, flow in versions.items():
            versions[number] = flow.model_copy(update={"is_active": False})
        self._retired.add(flow_id)

    async def _highest_version(self, flow_id: str) -> int:
        return max(self._versions.get(flow_id) or [0])


# ──────────────────────────────────────────────────────────────
#  SQL backend
# ──────────────────────────────────────────────────────────────

class SqlFlowRepository(BaseFlowRepository):
    """One flow_definitions row per version; is_latest marks the current one."""

    def _row_to_flow(self, row: FlowDefinitionRow) -> Optional[FlowDefinition]:
        document = dict(row.document or {})
        document["isActive"] = bool(row.is_active)
        document["version"] = row.version
        try:
            return FlowDefinition.model_validate(document)
        except ValidationError as exc:
            logger.error("flow_row_invalid", flow_id=row.flow_id, version=row.version,
                         errors=[e.get("msg") for e in exc.errors()])
            return None

    async def _load(self, flow_id: str, version: Optional[int]) -> Optional[FlowDefinition]:
        async with get_session() as db:
            stmt = select(FlowDefinitionRow).where(FlowDefinitionRow.flow_id == flow_id)
            if version is None:
                stmt = stmt.where(FlowDefinitionRow.is_latest.is_(True))
            else:
                stmt = stmt.where(FlowDefinitionRow.version == version)
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_flow(row) if row else None

    async def _insert(self, flow: FlowDefinition) -> None:
        async with get_session() as db:
            await db.execute(
                update(FlowDefinitionRow)
                .where(FlowDefinitionRow.flow_id == flow.id)
                .values(is_latest=False)
            )
            db.add(FlowDefinitionRow(
                flow_id=flow.id,
                version=flow.version,
                tenant_id=flow.tenant_id,
                is_active=flow.is_active,
                is_latest=True,
                priority=flow.priority,
                document=flow.to_document(),
                updated_at=flow.updated_at,
            ))

    async def _list_latest(self, tenant_id: Optional[str]) -> list[FlowDefinition]:
        async with get_session() as db:
            stmt = select(FlowDefinitionRow).where(FlowDefinitionRow.is_latest.is_(True))
            if tenant_id is not None:
                stmt = stmt.where(FlowDefinitionRow.tenant_id == tenant_id)
            rows = list((await db.execute(stmt)).scalars())

        flows = []
        for row in rows:
            flow = self._row_to_flow(row)
            if flow is None:
                if row.is_active:
                    async with get_session() as db:
                        await db.execute(
                            update(FlowDefinitionRow)
                            .where(FlowDefinitionRow.flow_id == row.flow_id)
                            .values(is_active=False)
                        )
                    await self._reject(row.flow_id, ["stored document failed validation"])
                continue
            flows.append(flow)
        return flows

    async def _store_active(self, flow: FlowDefinition) -> None:
        async with get_session() as db:
            await db.execute(
                update(FlowDefinitionRow)
                .where(
                    FlowDefinitionRow.flow_id == flow.id,
                    FlowDefinitionRow.version == flow.version,
                )
                .values(is_active=flow.is_active)
            )


    async def _store_retired(self, flow_id: str) -> None:
        async with get_session() as db:
            await db.execute(
                update(FlowDefinitionRow)
                .where(FlowDefinitionRow.flow_id == flow_id)
                .values(is_active=False, is_latest=False)
            )

    async def _highest_version(self, flow_id: str) -> int:
        async with get_session() as db:
            highest = await db.scalar(
                select(func.max(FlowDefinitionRow.version)).where(FlowDefinitionRow.flow_id == flow_id)
            )
        return highest or 0
