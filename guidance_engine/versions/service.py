"""
Version lifecycle manager.

Versions are created as DRAFT, become ACTIVE on publish, and are RETIRED
when a later version is published. At most one version per script is ACTIVE.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from guidance_engine.errors import InvalidDefinition, NotFound
from guidance_engine.graph.graph import ScriptGraph
from guidance_engine.graph.loader import DefinitionLoader, build_records
from guidance_engine.graph.schemas import ScriptDefinition
from guidance_engine.graph.service import GraphService
from guidance_engine.storage.models import ScriptEventType, ScriptRecord, ScriptVersionRecord
from guidance_engine.storage.repositories.event_repo import EventSink, ScriptEventRepository
from guidance_engine.storage.repositories.script_repo import ScriptRepository

logger = logging.getLogger(__name__)

SCRIPT_TARGET = "Script"


@dataclass
class ActiveScript:
    """A script with its ACTIVE version and that version's graph."""

    script: ScriptRecord
    version: ScriptVersionRecord
    graph: ScriptGraph


class VersionLifecycleManager:
    """Creates, lists and publishes script versions."""

    def __init__(
        self,
        scripts: ScriptRepository | None = None,
        events: EventSink | None = None,
        graphs: GraphService | None = None,
    ):
        self.scripts = scripts or ScriptRepository()
        self.events = events or ScriptEventRepository()
        self.graphs = graphs or GraphService(self.scripts)

    # =========================================================================
    # Scripts
    # =========================================================================

    def create_script(self, tenant_id: str | None, key: str, name: str | None = None) -> ScriptRecord:
        script = self.scripts.create_script(key, tenant_id=tenant_id, name=name)
        logger.info("Created script %s (%s)", script.key, script.id)
        return script

    def get_script(self, script_id: str) -> ScriptRecord:
        script = self.scripts.get_script(script_id)
        if script is None:
            raise NotFound(f"Script not found: {script_id}")
        return script

    def get_active_script(self, tenant_id: str | None, key: str) -> ActiveScript:
        """Resolve a script key to its ACTIVE version and graph.

        Raises:
            NotFound: If the script or an ACTIVE version is absent
        """
        script = self.scripts.get_script_by_key(key, tenant_id)
        if script is None:
            raise NotFound(f"Script not found: {key}")
        version = self.graphs.resolve_active_version(script)
        return ActiveScript(script=script, version=version, graph=self.graphs.load_graph(version))

    # =========================================================================
    # Versions
    # =========================================================================

    def create_version(
        self,
        script_id: str,
        definition: ScriptDefinition,
        actor_id: str | None = None,
    ) -> ScriptVersionRecord:
        """Store a definition as the script's next DRAFT version.

        Raises:
            NotFound: If the script is absent
            InvalidDefinition: If edges or the entry name unknown node keys
        """
        script = self.get_script(script_id)
        nodes, edges, entry_node_id = build_records(definition)

        version = self.scripts.create_version(
            script.id,
            nodes,
            edges,
            entry_node_id,
            created_by=actor_id,
        )
        self.events.record(
            actor_id,
            ScriptEventType.VERSION_CREATED,
            SCRIPT_TARGET,
            script.id,
            {"version": version.version},
        )
        logger.info("Created %s v%s with %d nodes", script.key, version.version, len(nodes))
        return version

    def list_versions(self, script_id: str) -> list[ScriptVersionRecord]:
        self.get_script(script_id)
        return self.scripts.list_versions(script_id)

    def get_version(self, script_id: str, version: int) -> ScriptVersionRecord:
        record = self.scripts.get_version(script_id, version)
        if record is None:
            raise NotFound(f"Version {version} not found for script {script_id}")
        return record

    def publish(self, script_id: str, version: int, actor_id: str | None = None) -> ScriptVersionRecord:
        """Make ``version`` the script's only ACTIVE version.

        The previous ACTIVE version is retired in the same transaction.
        Publishing the already ACTIVE version refreshes ``published_at``.

        Raises:
            NotFound: If the script or version is absent
            InvalidDefinition: If the version's graph fails validation
            InvalidState: If a concurrent publish trips the single-ACTIVE index
        """
        self.get_script(script_id)
        graph = self.graphs.load_graph(self.get_version(script_id, version))

        problems = graph.validate()
        if problems:
            raise InvalidDefinition(f"Version {version} cannot be published: {'; '.join(problems)}")

        published = self.scripts.publish_version(script_id, version)

        self.events.record(actor_id, ScriptEventType.PUBLISH, SCRIPT_TARGET, script_id, {"version": version})
        logger.info("Published script %s v%s", script_id, version)
        return published

    # =========================================================================
    # Import / Export
    # =========================================================================

    def seed_definitions(
        self,
        definitions: list[ScriptDefinition],
        tenant_id: str | None = None,
        actor_id: str | None = None,
    ) -> list[ScriptVersionRecord]:
        """Create and publish scripts for definitions whose key is not stored yet.

        Existing scripts are left alone, so seeding the same files again is a
        no-op.
        """
        published = []
        for definition in definitions:
            if not definition.key:
                logger.warning("Skipping definition without a script key")
                continue
            if self.scripts.get_script_by_key(definition.key, tenant_id) is not None:
                logger.debug("Script %s already exists, not seeding", definition.key)
                continue

            script = self.create_script(tenant_id, definition.key, definition.name)
            version = self.create_version(script.id, definition, actor_id=actor_id)
            published.append(self.publish(script.id, version.version, actor_id=actor_id))
        return published

    def export_version(self, script_id: str, version: int) -> str:
        """Render a stored version as a YAML definition.

        Raises:
            NotFound: If the script or version is absent
        """
        script = self.get_script(script_id)
        graph = self.graphs.load_graph(self.get_version(script_id, version))
        return DefinitionLoader().dump(graph, script)
