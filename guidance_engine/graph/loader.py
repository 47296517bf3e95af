"""
Definition loader for YAML/JSON script files.

A definition names nodes by key and writes edges in terms of those keys.
Node ids are generated when a definition is turned into storage rows.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from guidance_engine.errors import InvalidDefinition
from guidance_engine.graph.graph import ScriptGraph
from guidance_engine.graph.schemas import EdgeSpec, NodeSpec, ScriptDefinition
from guidance_engine.storage.models import ScriptRecord, generate_uuid

logger = logging.getLogger(__name__)

DEFINITION_SUFFIXES = (".yaml", ".yml", ".json")


class DefinitionLoader:
    """Loads and validates script definitions from files or directories."""

    def __init__(self, definitions_dir: str | Path | None = None):
        self.definitions_dir = Path(definitions_dir) if definitions_dir else None

    def load_file(self, path: str | Path) -> list[ScriptDefinition]:
        """Load definitions from a single YAML or JSON file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Definition file not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            if path.suffix == ".json":
                content = json.load(f)
            else:
                content = yaml.safe_load(f)

        items = content if isinstance(content, list) else [content]
        return [self.parse(item) for item in items]

    def load_directory(self, path: str | Path | None = None) -> list[ScriptDefinition]:
        """Load every definition file in a directory."""
        path = Path(path) if path else self.definitions_dir
        if not path:
            raise ValueError("No definitions directory specified")
        if not path.exists():
            raise FileNotFoundError(f"Definitions directory not found: {path}")

        definitions = []
        for file in sorted(path.iterdir()):
            if file.suffix not in DEFINITION_SUFFIXES:
                continue
            try:
                definitions.extend(self.load_file(file))
            except (InvalidDefinition, yaml.YAMLError, json.JSONDecodeError) as e:
                logger.warning("Failed to load %s: %s", file, e)

        return definitions

    def parse(self, data: Any) -> ScriptDefinition:
        """Validate raw data into a ScriptDefinition.

        Raises:
            InvalidDefinition: If the data does not describe a definition
        """
        if not isinstance(data, dict):
            raise InvalidDefinition("Definition must be a mapping")
        try:
            return ScriptDefinition.model_validate(data)
        except ValidationError as e:
            raise InvalidDefinition(f"Invalid script definition: {e}") from e

    def dump(self, graph: ScriptGraph, script: ScriptRecord | None = None) -> str:
        """Export a stored version as a YAML definition."""
        entry = graph.nodes.get(graph.version.entry_node_id or "")
        key_of = {node.id: node.key for node in graph.nodes.values()}

        data: dict[str, Any] = {}
        if script:
            data["key"] = script.key
            if script.name:
                data["name"] = script.name
        if entry:
            data["entry"] = entry.key
        data["nodes"] = [
            _compact(
                {
                    "key": node.key,
                    "type": node.type,
                    "label": node.label,
                    "config": node.config or None,
                }
            )
            for node in graph.nodes.values()
        ]
        data["edges"] = [
            _compact(
                {
                    "source": key_of.get(edge.source, edge.source),
                    "target": key_of.get(edge.target, edge.target),
                    "condition": edge.condition,
                    "label": edge.label,
                }
            )
            for edge in graph.edges.values()
        ]

        return yaml.safe_dump(data, sort_keys=False, allow_unicode=True)


def build_records(
    definition: ScriptDefinition,
) -> tuple[list[dict[str, Any]], list[dict[str, Any]], str | None]:
    """Turn a definition into node rows, edge rows and the entry node id.

    Raises:
        InvalidDefinition: On duplicate node keys or edges naming unknown keys
    """
    ids: dict[str, str] = {}
    nodes = []
    for position, spec in enumerate(definition.nodes):
        if spec.key in ids:
            raise InvalidDefinition(f"Duplicate node key: {spec.key}")
        ids[spec.key] = generate_uuid()
        nodes.append(_node_row(ids[spec.key], spec, position))

    edges = []
    for position, spec in enumerate(definition.edges):
        edges.append(_edge_row(ids, spec, position))

    entry_key = definition.entry_key()
    if entry_key is not None and entry_key not in ids:
        raise InvalidDefinition(f"Entry node not found: {entry_key}")

    return nodes, edges, ids.get(entry_key) if entry_key else None


def _node_row(node_id: str, spec: NodeSpec, position: int) -> dict[str, Any]:
    return {
        "id": node_id,
        "key": spec.key,
        "type": spec.type.value,
        "label": spec.label,
        "config": spec.config,
        "position": position,
    }


def _edge_row(ids: dict[str, str], spec: EdgeSpec, position: int) -> dict[str, Any]:
    for ref in (spec.source, spec.target):
        if ref not in ids:
            raise InvalidDefinition(f"Edge references unknown node: {ref}")
    return {
        "id": generate_uuid(),
        "source": ids[spec.source],
        "target": ids[spec.target],
        "condition": spec.condition,
        "label": spec.label,
        "position": position,
    }


def _compact(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}
