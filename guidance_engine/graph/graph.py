"""
In-memory graph of one script version.

Nodes and edges live in flat id-indexed dicts and are looked up by id on
every step, so cycles and self-loops need no special handling.
"""

from __future__ import annotations

from guidance_engine.errors import GuidanceError, InvalidDefinition, NotFound
from guidance_engine.graph.schemas import NodeType
from guidance_engine.routing.conditions import parse_condition
from guidance_engine.routing.schemas import ChoiceConfig
from guidance_engine.storage.models import EdgeRecord, NodeRecord, ScriptVersionRecord


class ScriptGraph:
    """Read-only node/edge arena for a ScriptVersion."""

    def __init__(
        self,
        version: ScriptVersionRecord,
        nodes: list[NodeRecord],
        edges: list[EdgeRecord],
    ):
        self.version = version
        self.nodes: dict[str, NodeRecord] = {}
        self.edges: dict[str, EdgeRecord] = {}
        self._ids_by_key: dict[str, list[str]] = {}
        self._outgoing: dict[str, list[str]] = {}

        for node in sorted(nodes, key=lambda n: n.position):
            self.nodes[node.id] = node
            self._ids_by_key.setdefault(node.key, []).append(node.id)

        for edge in sorted(edges, key=lambda e: e.position):
            self.edges[edge.id] = edge
            self._outgoing.setdefault(edge.source, []).append(edge.id)

    # =========================================================================
    # Lookups
    # =========================================================================

    def entry_node(self) -> NodeRecord:
        """The START node referenced by the version.

        Raises:
            InvalidDefinition: If the entry is unset, missing, or not START
        """
        entry_id = self.version.entry_node_id
        if not entry_id:
            raise InvalidDefinition("Script version has no entry node")
        node = self.nodes.get(entry_id)
        if node is None:
            raise InvalidDefinition(f"Entry node {entry_id} not found in version")
        if node.type != NodeType.START.value:
            raise InvalidDefinition(f"Entry node {node.key} is {node.type}, expected START")
        return node

    def node_by_key(self, key: str) -> NodeRecord:
        ids = self._ids_by_key.get(key)
        if not ids:
            raise NotFound(f"Node not found: {key}")
        return self.nodes[ids[0]]

    def node_by_id(self, node_id: str) -> NodeRecord:
        node = self.nodes.get(node_id)
        if node is None:
            raise NotFound(f"Node not found: {node_id}")
        return node

    def has_key(self, key: str) -> bool:
        return key in self._ids_by_key

    def outgoing_edges(self, node_id: str) -> list[EdgeRecord]:
        """Edges leaving ``node_id`` in definition order."""
        return [self.edges[edge_id] for edge_id in self._outgoing.get(node_id, [])]

    def resolve_target(self, ref: str) -> NodeRecord:
        """Resolve a routing target given as a node id or a node key."""
        if ref in self.nodes:
            return self.nodes[ref]
        return self.node_by_key(ref)

    # =========================================================================
    # Validation
    # =========================================================================

    def validate(self) -> list[str]:
        """Collect definition problems; an empty list means publishable."""
        problems: list[str] = []

        starts = [n for n in self.nodes.values() if n.type == NodeType.START.value]
        if not starts:
            problems.append("No START node")
        elif len(starts) > 1:
            problems.append(f"Multiple START nodes: {', '.join(n.key for n in starts)}")

        try:
            self.entry_node()
        except InvalidDefinition as e:
            problems.append(e.message)

        for key, ids in self._ids_by_key.items():
            if len(ids) > 1:
                problems.append(f"Duplicate node key: {key}")

        valid_types = {t.value for t in NodeType}
        for node in self.nodes.values():
            if node.type not in valid_types:
                problems.append(f"Node {node.key} has unknown type {node.type}")
            if node.type == NodeType.ACTION.value and not (node.config or {}).get("action"):
                problems.append(f"ACTION node {node.key} missing config.action")
            if node.type == NodeType.CHOICE.value:
                try:
                    config = ChoiceConfig.from_raw(node.config)
                except GuidanceError as e:
                    problems.append(f"CHOICE node {node.key}: {e.message}")
                    continue
                for ref in config.targets():
                    if ref not in self.nodes and ref not in self._ids_by_key:
                        problems.append(f"CHOICE node {node.key} targets unknown node {ref}")

        for edge in self.edges.values():
            if edge.source not in self.nodes:
                problems.append(f"Edge {edge.id} has unknown source {edge.source}")
            if edge.target not in self.nodes:
                problems.append(f"Edge {edge.id} has unknown target {edge.target}")
            try:
                parse_condition(edge.condition)
            except GuidanceError as e:
                problems.append(f"Edge {edge.id}: {e.message}")

        return problems
