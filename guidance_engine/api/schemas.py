"""Pydantic models for guidance API requests and responses."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from guidance_engine.routing.schemas import Decision
from guidance_engine.storage.models import (
    AnswerRecord,
    EdgeRecord,
    NodeRecord,
    RunRecord,
    ScriptEventRecord,
    ScriptRecord,
    ScriptVersionRecord,
)


# =============================================================================
# Requests
# =============================================================================


class StartRunRequest(BaseModel):
    """Subject the run is about."""

    subject_schema: str | None = None
    subject_model: str | None = None
    subject_id: str | None = None


class AnswerRequest(BaseModel):
    node_key: str = Field(..., description="Key of the QUESTION node being answered")
    value: Any = None


class PublishRequest(BaseModel):
    version: int = Field(..., ge=1)


class CreateScriptRequest(BaseModel):
    key: str = Field(..., min_length=1)
    name: str | None = None


# =============================================================================
# Responses
# =============================================================================


class ScriptResponse(BaseModel):
    id: str
    tenant_id: str | None
    key: str
    name: str | None
    created_at: str

    @classmethod
    def from_record(cls, record: ScriptRecord) -> ScriptResponse:
        return cls(
            id=record.id,
            tenant_id=record.tenant_id,
            key=record.key,
            name=record.name,
            created_at=record.created_at,
        )


class VersionResponse(BaseModel):
    id: str
    script_id: str
    version: int
    status: str
    entry_node_id: str | None
    created_at: str
    created_by: str | None
    published_at: str | None

    @classmethod
    def from_record(cls, record: ScriptVersionRecord) -> VersionResponse:
        return cls(
            id=record.id,
            script_id=record.script_id,
            version=record.version,
            status=record.status.value,
            entry_node_id=record.entry_node_id,
            created_at=record.created_at,
            created_by=record.created_by,
            published_at=record.published_at,
        )


class NodeResponse(BaseModel):
    id: str
    key: str
    type: str
    label: str | None
    config: dict[str, Any]

    @classmethod
    def from_record(cls, record: NodeRecord) -> NodeResponse:
        return cls(id=record.id, key=record.key, type=record.type, label=record.label, config=record.config)


class EdgeResponse(BaseModel):
    id: str
    source: str
    target: str
    condition: Any = None
    label: str | None = None

    @classmethod
    def from_record(cls, record: EdgeRecord) -> EdgeResponse:
        return cls(
            id=record.id,
            source=record.source,
            target=record.target,
            condition=record.condition,
            label=record.label,
        )


class ActiveScriptResponse(BaseModel):
    """Script, its ACTIVE version, and the version's graph."""

    script: ScriptResponse
    version: VersionResponse
    nodes: list[NodeResponse]
    edges: list[EdgeResponse]


class RunResponse(BaseModel):
    id: str
    tenant_id: str | None
    script_id: str
    script_version: int
    subject_schema: str | None
    subject_model: str | None
    subject_id: str | None
    state: dict[str, Any]
    started_by: str | None
    started_at: str
    completed_at: str | None
    revision: int

    @classmethod
    def from_record(cls, record: RunRecord) -> RunResponse:
        return cls(
            id=record.id,
            tenant_id=record.tenant_id,
            script_id=record.script_id,
            script_version=record.script_version,
            subject_schema=record.subject_schema,
            subject_model=record.subject_model,
            subject_id=record.subject_id,
            state=record.state,
            started_by=record.started_by,
            started_at=record.started_at,
            completed_at=record.completed_at,
            revision=record.revision,
        )


class AdvanceResponse(BaseModel):
    """Run after the step, the routing decisions taken, and any action result."""

    run: RunResponse
    decisions: list[Decision]
    path: list[str]
    action: str | None = None
    action_result: Any = None


class AnswerResponse(BaseModel):
    id: str
    run_id: str
    node_key: str
    value: Any
    sequence_number: int | None
    created_at: str

    @classmethod
    def from_record(cls, record: AnswerRecord) -> AnswerResponse:
        return cls(
            id=record.id,
            run_id=record.run_id,
            node_key=record.node_key,
            value=record.value,
            sequence_number=record.sequence_number,
            created_at=record.created_at,
        )


class EventResponse(BaseModel):
    id: str
    sequence_number: int | None
    actor: str
    event_type: str
    target_type: str
    target_id: str
    meta: dict[str, Any] | None
    timestamp: str

    @classmethod
    def from_record(cls, record: ScriptEventRecord) -> EventResponse:
        return cls(
            id=record.id,
            sequence_number=record.sequence_number,
            actor=record.actor,
            event_type=record.event_type,
            target_type=record.target_type,
            target_id=record.target_id,
            meta=record.meta,
            timestamp=record.timestamp,
        )
