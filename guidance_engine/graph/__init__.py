"""Graph model: script versions as id-indexed node/edge arenas."""

from guidance_engine.graph.graph import ScriptGraph
from guidance_engine.graph.loader import DefinitionLoader, build_records
from guidance_engine.graph.schemas import EdgeSpec, NodeSpec, NodeType, ScriptDefinition
from guidance_engine.graph.service import GraphService

__all__ = [
    "ScriptGraph",
    "GraphService",
    "DefinitionLoader",
    "build_records",
    "NodeType",
    "NodeSpec",
    "EdgeSpec",
    "ScriptDefinition",
]
