"""Resolves stored script versions into graphs."""

from __future__ import annotations

from guidance_engine.errors import InvalidState, NotFound
from guidance_engine.graph.graph import ScriptGraph
from guidance_engine.storage.models import ScriptRecord, ScriptVersionRecord
from guidance_engine.storage.repositories.script_repo import ScriptRepository


class GraphService:
    """Loads versions and their node/edge arenas from storage."""

    def __init__(self, repo: ScriptRepository | None = None):
        self.repo = repo or ScriptRepository()

    def resolve_active_version(self, script: ScriptRecord) -> ScriptVersionRecord:
        """The single ACTIVE version of ``script``.

        Raises:
            NotFound: If no version is ACTIVE
            InvalidState: If more than one version is ACTIVE
        """
        active = self.repo.get_active_versions(script.id)
        if not active:
            raise NotFound(f"No active version for script {script.key}")
        if len(active) > 1:
            raise InvalidState(f"Script {script.key} has {len(active)} active versions")
        return active[0]

    def load_graph(self, version: ScriptVersionRecord) -> ScriptGraph:
        return ScriptGraph(
            version,
            self.repo.get_nodes(version.id),
            self.repo.get_edges(version.id),
        )

    def load_version_graph(self, script_id: str, version: int) -> ScriptGraph:
        """Load the graph a run is bound to."""
        record = self.repo.get_version(script_id, version)
        if record is None:
            raise NotFound(f"Version {version} not found for script {script_id}")
        return self.load_graph(record)
