"""
Flow graph compilation.

A FlowDefinition is validated once and compiled into a FlowGraph: an arena of
nodes indexed by id. Everything that can be wrong with an authored flow is
detected here, so execution never meets a dangling reference.

Usage:
    graph = compile_flow(raw_document)        # raises AuthoringError
    node = graph.get(state.current_node_id)
"""
from __future__ import annotations

from typing import Any, Optional, Union

import structlog
from pydantic import ValidationError

from models.errors import AuthoringError
from models.schemas import (
    SUSPENDING_NODE_TYPES, SYNTHETIC_VARIABLES,
    ActionNode, ActionType, CollectInputNode, FlowDefinition, MessageNode, Node,
    OptionNode,
)

logger = structlog.get_logger()


class FlowGraph:
    """Compiled, immutable view of one flow version."""

    def __init__(self, flow: FlowDefinition):
        self.flow = flow
        self.nodes_by_id: dict[str, Node] = {n.id: n for n in flow.nodes}
        self.entry_id: str = flow.nodes[0].id

    @property
    def flow_id(self) -> str:
        return self.flow.id

    @property
    def version(self) -> int:
        return self.flow.version

    def get(self, node_id: Optional[str]) -> Optional[Node]:
        if node_id is None:
            return None
        return self.nodes_by_id.get(node_id)

    @property
    def entry(self) -> Node:
        return self.nodes_by_id[self.entry_id]

    def successors(self, node_id: str) -> list[str]:
        node = self.nodes_by_id.get(node_id)
        return node.successor_ids() if node else []

    def reachable_ids(self) -> set[str]:
        seen: set[str] = set()
        stack = [self.entry_id]
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.successors(current))
        return seen

    def unreachable_ids(self) -> list[str]:
        reachable = self.reachable_ids()
        return [n.id for n in self.flow.nodes if n.id not in reachable]

    def __repr__(self):
        return f"<FlowGraph {self.flow.id} v{self.flow.version} [{len(self.nodes_by_id)} nodes]>"


# ──────────────────────────────────────────────────────────────
#  Compilation
# ──────────────────────────────────────────────────────────────

def _format_validation_error(exc: ValidationError) -> list[str]:
    errors = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err.get("loc", ()))
        errors.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
    return errors


def _validate_graph(flow: FlowDefinition) -> list[str]:
    """Validate a parsed flow. Returns list of error messages."""
    errors: list[str] = []
    if not flow.nodes:
        return ["flow has no nodes"]

    ids: set[str] = set()
    for node in flow.nodes:
        if node.id in ids:
            errors.append(f"duplicate node id '{node.id}'")
        ids.add(node.id)

    for node in flow.nodes:
        for ref in node.successor_ids():
            if ref not in ids:
                errors.append(f"node '{node.id}' references missing node '{ref}'")

        if isinstance(node, MessageNode) and not node.text and not node.image_url:
            errors.append(f"message node '{node.id}' has neither text nor imageUrl")
        elif isinstance(node, OptionNode) and not node.choices():
            errors.append(f"{node.type} node '{node.id}' has no selectable options")
        elif isinstance(node, ActionNode):
            if node.action == ActionType.ADD_TAG and not (node.action_value or "").strip():
                errors.append(f"add_tag action '{node.id}' has no actionValue")
        elif isinstance(node, CollectInputNode):
            if not node.save_as.strip():
                errors.append(f"collect_input node '{node.id}' has an empty saveAs")
            elif node.save_as in SYNTHETIC_VARIABLES:
                errors.append(f"collect_input node '{node.id}' writes reserved variable '{node.save_as}'")

    if not errors:
        cycle = _find_busy_cycle(flow)
        if cycle:
            errors.append(f"cycle without a suspending node: {' -> '.join(cycle)}")
    return errors


def _find_busy_cycle(flow: FlowDefinition) -> Optional[list[str]]:
    """Find a cycle made only of non-suspending nodes (it would never yield)."""
    busy = {n.id: n for n in flow.nodes if n.node_type not in SUSPENDING_NODE_TYPES}
    WHITE, GREY, BLACK = 0, 1, 2
    colour = {node_id: WHITE for node_id in busy}
    path: list[str] = []

    def visit(node_id: str) -> Optional[list[str]]:
        colour[node_id] = GREY
        path.append(node_id)
        for succ in busy[node_id].successor_ids():
            if succ not in busy:
                continue
            if colour[succ] == GREY:
                return path[path.index(succ):] + [succ]
            if colour[succ] == WHITE:
                found = visit(succ)
                if found:
                    return found
        path.pop()
        colour[node_id] = BLACK
        return None

    for node_id in busy:
        if colour[node_id] == WHITE:
            found = visit(node_id)
            if found:
                return found
    return None


def compile_flow(source: Union[FlowDefinition, dict[str, Any]]) -> FlowGraph:
    """Parse (if needed), validate and compile a flow. Raises AuthoringError."""
    if isinstance(source, FlowDefinition):
        flow = source
    else:
        flow_id = str(source.get("id", "?")) if isinstance(source, dict) else "?"
        try:
            flow = FlowDefinition.model_validate(source)
        except ValidationError as exc:
            errors = _format_validation_error(exc)
            logger.error("invalid_flow", flow_id=flow_id, errors=errors)
            raise AuthoringError(flow_id, errors) from exc

    errors = _validate_graph(flow)
    if errors:
        logger.error("invalid_flow", flow_id=flow.id, version=flow.version, errors=errors)
        raise AuthoringError(flow.id, errors)

    graph = FlowGraph(flow)
    unreachable = graph.unreachable_ids()
    if unreachable:
        logger.warning("flow_unreachable_nodes", flow_id=flow.id, node_ids=unreachable)
    return graph
