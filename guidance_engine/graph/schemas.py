"""Pydantic models for script definitions."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class NodeType(str, Enum):
    """Kinds of graph vertices."""

    START = "START"
    QUESTION = "QUESTION"
    CHOICE = "CHOICE"
    ACTION = "ACTION"
    END = "END"
    CONNECTOR = "CONNECTOR"


# =============================================================================
# Definition Models
# =============================================================================


class NodeSpec(BaseModel):
    """A node as authored. ``key`` is the stable, human-facing identifier."""

    key: str
    type: NodeType
    label: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)


class EdgeSpec(BaseModel):
    """A directed connection written in terms of node keys."""

    source: str = Field(..., description="Source node key")
    target: str = Field(..., description="Target node key")
    condition: Any = Field(None, description="JSON-logic condition; null is always true")
    label: str | None = None


class ScriptDefinition(BaseModel):
    """One version's worth of graph, ready to be stored."""

    key: str | None = Field(None, description="Script key when imported from a file")
    name: str | None = None
    entry: str | None = Field(None, description="Key of the START node; defaults to the only START")
    nodes: list[NodeSpec] = Field(default_factory=list)
    edges: list[EdgeSpec] = Field(default_factory=list)

    def entry_key(self) -> str | None:
        if self.entry:
            return self.entry
        starts = [n.key for n in self.nodes if n.type == NodeType.START]
        if len(starts) == 1:
            return starts[0]
        return None
