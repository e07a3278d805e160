"""Flow definitions: compilation, versioned storage and trigger matching."""
from flows.graph import FlowGraph, compile_flow
from flows.matcher import TriggerMatcher
from flows.repository import BaseFlowRepository, InMemoryFlowRepository, SqlFlowRepository

__all__ = [
    "FlowGraph", "compile_flow", "TriggerMatcher",
    "BaseFlowRepository", "InMemoryFlowRepository", "SqlFlowRepository",
]
