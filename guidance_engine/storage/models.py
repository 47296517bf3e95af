"""
Record types for the storage layer.

Uses dataclasses for lightweight, serialization-friendly record types.
These mirror the database schema; JSON columns are decoded on read.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def now_iso() -> str:
    """Get current time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def dump_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value)


def load_json(raw: str | None, default: Any = None) -> Any:
    if raw is None:
        return default
    return json.loads(raw)


class VersionStatus(str, Enum):
    """Lifecycle status of a script version."""

    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    RETIRED = "RETIRED"


class ScriptEventType(str, Enum):
    """Lifecycle events written to the audit log."""

    RUN_START = "GUIDANCE_RUN_START"
    RUN_COMPLETE = "GUIDANCE_RUN_COMPLETE"
    PUBLISH = "GUIDANCE_PUBLISH"
    VERSION_CREATED = "GUIDANCE_VERSION_CREATED"


# =============================================================================
# Script Records
# =============================================================================


@dataclass
class ScriptRecord:
    """Database record for a script container."""

    key: str
    tenant_id: str | None = None
    name: str | None = None
    id: str = field(default_factory=generate_uuid)
    created_at: str = field(default_factory=now_iso)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> ScriptRecord:
        """Create from database row."""
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            key=row["script_key"],
            name=row["name"],
            created_at=row["created_at"],
        )


@dataclass
class ScriptVersionRecord:
    """Database record for one version of a script."""

    script_id: str
    version: int
    status: VersionStatus = VersionStatus.DRAFT
    entry_node_id: str | None = None
    id: str = field(default_factory=generate_uuid)
    created_at: str = field(default_factory=now_iso)
    created_by: str | None = None
    published_at: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> ScriptVersionRecord:
        """Create from database row."""
        return cls(
            id=row["id"],
            script_id=row["script_id"],
            version=row["version"],
            status=VersionStatus(row["status"]),
            entry_node_id=row["entry_node_id"],
            created_at=row["created_at"],
            created_by=row["created_by"],
            published_at=row["published_at"],
        )


@dataclass
class NodeRecord:
    """Database record for a graph node."""

    version_id: str
    key: str
    type: str
    config: dict[str, Any] = field(default_factory=dict)
    label: str | None = None
    position: int = 0
    id: str = field(default_factory=generate_uuid)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> NodeRecord:
        """Create from database row."""
        return cls(
            id=row["id"],
            version_id=row["version_id"],
            key=row["node_key"],
            type=row["type"],
            label=row["label"],
            config=load_json(row["config"], {}) or {},
            position=row["position"],
        )


@dataclass
class EdgeRecord:
    """Database record for a directed graph edge."""

    version_id: str
    source: str
    target: str
    condition: Any = None
    label: str | None = None
    position: int = 0
    id: str = field(default_factory=generate_uuid)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> EdgeRecord:
        """Create from database row."""
        return cls(
            id=row["id"],
            version_id=row["version_id"],
            source=row["source"],
            target=row["target"],
            condition=load_json(row["condition"]),
            label=row["label"],
            position=row["position"],
        )


# =============================================================================
# Run Records
# =============================================================================


@dataclass
class RunRecord:
    """Database record for a script run.

    ``state`` holds the wire shape ``{"cursor": str, "answers": {...}}``.
    ``revision`` increases by one on every persisted update.
    """

    script_id: str
    script_version: int
    state: dict[str, Any]
    tenant_id: str | None = None
    subject_schema: str | None = None
    subject_model: str | None = None
    subject_id: str | None = None
    started_by: str | None = None
    id: str = field(default_factory=generate_uuid)
    started_at: str = field(default_factory=now_iso)
    completed_at: str | None = None
    revision: int = 0

    @property
    def cursor(self) -> str | None:
        return self.state.get("cursor")

    @property
    def answers(self) -> dict[str, Any]:
        return self.state.setdefault("answers", {})

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> RunRecord:
        """Create from database row."""
        state = load_json(row["state"], {}) or {}
        state.setdefault("answers", {})
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            script_id=row["script_id"],
            script_version=row["script_version"],
            subject_schema=row["subject_schema"],
            subject_model=row["subject_model"],
            subject_id=row["subject_id"],
            state=state,
            started_by=row["started_by"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            revision=row["revision"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "script_id": self.script_id,
            "script_version": self.script_version,
            "subject_schema": self.subject_schema,
            "subject_model": self.subject_model,
            "subject_id": self.subject_id,
            "state": dump_json(self.state),
            "started_by": self.started_by,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "revision": self.revision,
        }


@dataclass
class AnswerRecord:
    """Append-only record of one submitted answer."""

    run_id: str
    node_key: str
    value: Any = None
    sequence_number: int | None = None
    id: str = field(default_factory=generate_uuid)
    created_at: str = field(default_factory=now_iso)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> AnswerRecord:
        """Create from database row."""
        return cls(
            id=row["id"],
            run_id=row["run_id"],
            node_key=row["node_key"],
            value=load_json(row["value"]),
            sequence_number=row["sequence_number"],
            created_at=row["created_at"],
        )


@dataclass
class ScriptEventRecord:
    """Append-only audit event."""

    actor: str
    event_type: str
    target_type: str
    target_id: str
    meta: dict[str, Any] | None = None
    sequence_number: int | None = None
    id: str = field(default_factory=generate_uuid)
    timestamp: str = field(default_factory=now_iso)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> ScriptEventRecord:
        """Create from database row."""
        return cls(
            id=row["id"],
            sequence_number=row["sequence_number"],
            actor=row["actor"],
            event_type=row["event_type"],
            target_type=row["target_type"],
            target_id=row["target_id"],
            meta=load_json(row["meta"]),
            timestamp=row["timestamp"],
        )
