"""
Script repository for definition and version persistence.

Provides CRUD for scripts, their versions, and the nodes and edges each
version owns, plus the atomic publish transition.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from guidance_engine.errors import BadRequest, InvalidState, NotFound
from guidance_engine.storage.database import get_db, transaction
from guidance_engine.storage.models import (
    EdgeRecord,
    NodeRecord,
    ScriptRecord,
    ScriptVersionRecord,
    VersionStatus,
    dump_json,
    now_iso,
)


class ScriptRepository:
    """Repository for script definition persistence operations."""

    # =========================================================================
    # Scripts
    # =========================================================================

    def create_script(
        self,
        key: str,
        tenant_id: str | None = None,
        name: str | None = None,
    ) -> ScriptRecord:
        """Create a new script container.

        Args:
            key: Human key, unique per tenant
            tenant_id: Owning tenant
            name: Display name

        Returns:
            The created ScriptRecord

        Raises:
            BadRequest: If the key is already used by the tenant
        """
        record = ScriptRecord(key=key, tenant_id=tenant_id, name=name)
        try:
            with transaction() as conn:
                conn.execute(
                    text("""
                    INSERT INTO scripts (id, tenant_id, script_key, name, created_at)
                    VALUES (:id, :tenant_id, :script_key, :name, :created_at)
                    """),
                    {
                        "id": record.id,
                        "tenant_id": record.tenant_id,
                        "script_key": record.key,
                        "name": record.name,
                        "created_at": record.created_at,
                    },
                )
        except IntegrityError as e:
            raise BadRequest(f"Script key already exists: {key}") from e
        return record

    def get_script(self, script_id: str) -> ScriptRecord | None:
        """Get a script by its id."""
        with get_db() as conn:
            result = conn.execute(
                text("SELECT * FROM scripts WHERE id = :id"),
                {"id": script_id},
            )
            row = result.fetchone()
            if row:
                return ScriptRecord.from_row(row._mapping)
            return None

    def get_script_by_key(self, key: str, tenant_id: str | None = None) -> ScriptRecord | None:
        """Get a script by its human key.

        When no tenant is given the key is matched across tenants.
        """
        with get_db() as conn:
            if tenant_id is None:
                result = conn.execute(
                    text("SELECT * FROM scripts WHERE script_key = :key ORDER BY created_at LIMIT 1"),
                    {"key": key},
                )
            else:
                result = conn.execute(
                    text("SELECT * FROM scripts WHERE script_key = :key AND tenant_id = :tenant_id"),
                    {"key": key, "tenant_id": tenant_id},
                )
            row = result.fetchone()
            if row:
                return ScriptRecord.from_row(row._mapping)
            return None

    # =========================================================================
    # Versions
    # =========================================================================

    def create_version(
        self,
        script_id: str,
        nodes: list[dict[str, Any]],
        edges: list[dict[str, Any]],
        entry_node_id: str | None,
        created_by: str | None = None,
    ) -> ScriptVersionRecord:
        """Create a new DRAFT version with its nodes and edges.

        The version number is one past the script's current maximum.

        Args:
            script_id: Owning script
            nodes: Node dicts with id, key, type, label, config, position
            edges: Edge dicts with id, source, target, condition, label, position
            entry_node_id: Id of the START node
            created_by: Actor who created the version

        Returns:
            The created ScriptVersionRecord
        """
        with transaction() as conn:
            result = conn.execute(
                text("SELECT MAX(version) FROM script_versions WHERE script_id = :script_id"),
                {"script_id": script_id},
            )
            next_version = (result.fetchone()[0] or 0) + 1

            record = ScriptVersionRecord(
                script_id=script_id,
                version=next_version,
                entry_node_id=entry_node_id,
                created_by=created_by,
            )
            conn.execute(
                text("""
                INSERT INTO script_versions (
                    id, script_id, version, status, entry_node_id, created_at, created_by
                ) VALUES (:id, :script_id, :version, :status, :entry_node_id, :created_at, :created_by)
                """),
                {
                    "id": record.id,
                    "script_id": record.script_id,
                    "version": record.version,
                    "status": record.status.value,
                    "entry_node_id": record.entry_node_id,
                    "created_at": record.created_at,
                    "created_by": record.created_by,
                },
            )

            for node in nodes:
                conn.execute(
                    text("""
                    INSERT INTO script_nodes (id, version_id, node_key, type, label, config, position)
                    VALUES (:id, :version_id, :node_key, :type, :label, :config, :position)
                    """),
                    {
                        "id": node["id"],
                        "version_id": record.id,
                        "node_key": node["key"],
                        "type": node["type"],
                        "label": node.get("label"),
                        "config": dump_json(node.get("config") or {}),
                        "position": node.get("position", 0),
                    },
                )

            for edge in edges:
                conn.execute(
                    text("""
                    INSERT INTO script_edges (id, version_id, source, target, condition, label, position)
                    VALUES (:id, :version_id, :source, :target, :condition, :label, :position)
                    """),
                    {
                        "id": edge["id"],
                        "version_id": record.id,
                        "source": edge["source"],
                        "target": edge["target"],
                        "condition": dump_json(edge.get("condition")),
                        "label": edge.get("label"),
                        "position": edge.get("position", 0),
                    },
                )

        return record

    def get_version(self, script_id: str, version: int) -> ScriptVersionRecord | None:
        """Get a specific version of a script."""
        with get_db() as conn:
            result = conn.execute(
                text("SELECT * FROM script_versions WHERE script_id = :script_id AND version = :version"),
                {"script_id": script_id, "version": version},
            )
            row = result.fetchone()
            if row:
                return ScriptVersionRecord.from_row(row._mapping)
            return None

    def get_active_versions(self, script_id: str) -> list[ScriptVersionRecord]:
        """Get every ACTIVE version of a script (at most one when consistent)."""
        with get_db() as conn:
            result = conn.execute(
                text("""
                SELECT * FROM script_versions
                WHERE script_id = :script_id AND status = :status
                ORDER BY version DESC
                """),
                {"script_id": script_id, "status": VersionStatus.ACTIVE.value},
            )
            return [ScriptVersionRecord.from_row(row._mapping) for row in result.fetchall()]

    def list_versions(self, script_id: str) -> list[ScriptVersionRecord]:
        """Get all versions of a script, newest first."""
        with get_db() as conn:
            result = conn.execute(
                text("SELECT * FROM script_versions WHERE script_id = :script_id ORDER BY version DESC"),
                {"script_id": script_id},
            )
            return [ScriptVersionRecord.from_row(row._mapping) for row in result.fetchall()]

    def get_nodes(self, version_id: str) -> list[NodeRecord]:
        """Get the nodes of a version in definition order."""
        with get_db() as conn:
            result = conn.execute(
                text("SELECT * FROM script_nodes WHERE version_id = :version_id ORDER BY position, id"),
                {"version_id": version_id},
            )
            return [NodeRecord.from_row(row._mapping) for row in result.fetchall()]

    def get_edges(self, version_id: str) -> list[EdgeRecord]:
        """Get the edges of a version in definition order."""
        with get_db() as conn:
            result = conn.execute(
                text("SELECT * FROM script_edges WHERE version_id = :version_id ORDER BY position, id"),
                {"version_id": version_id},
            )
            return [EdgeRecord.from_row(row._mapping) for row in result.fetchall()]

    # =========================================================================
    # Publish
    # =========================================================================

    def publish_version(self, script_id: str, version: int) -> ScriptVersionRecord:
        """Retire the ACTIVE version and activate ``version`` in one transaction.

        Either both status writes commit or neither does.

        Raises:
            NotFound: If the version does not exist for the script
            InvalidState: If the single-ACTIVE index rejects the transition
        """
        published_at = now_iso()
        try:
            with transaction() as conn:
                result = conn.execute(
                    text("SELECT id FROM script_versions WHERE script_id = :script_id AND version = :version"),
                    {"script_id": script_id, "version": version},
                )
                if result.fetchone() is None:
                    raise NotFound(f"Version {version} not found for script {script_id}")

                conn.execute(
                    text("""
                    UPDATE script_versions SET status = :retired
                    WHERE script_id = :script_id AND status = :active AND version != :version
                    """),
                    {
                        "retired": VersionStatus.RETIRED.value,
                        "active": VersionStatus.ACTIVE.value,
                        "script_id": script_id,
                        "version": version,
                    },
                )
                conn.execute(
                    text("""
                    UPDATE script_versions SET status = :active, published_at = :published_at
                    WHERE script_id = :script_id AND version = :version
                    """),
                    {
                        "active": VersionStatus.ACTIVE.value,
                        "published_at": published_at,
                        "script_id": script_id,
                        "version": version,
                    },
                )
        except IntegrityError as e:
            raise InvalidState(f"Concurrent publish rejected for script {script_id}") from e

        return self.get_version(script_id, version)
