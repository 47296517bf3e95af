"""
Script event repository for the lifecycle audit log.

Provides append-only operations for run and version lifecycle events.
"""

from __future__ import annotations

from typing import Any, Protocol

from sqlalchemy import text

from guidance_engine.storage.database import get_db, transaction
from guidance_engine.storage.models import (
    ScriptEventRecord,
    ScriptEventType,
    dump_json,
)


class EventSink(Protocol):
    def record(
        self,
        actor_id: str | None,
        event_name: str | ScriptEventType,
        target_type: str,
        target_id: str,
        meta: dict[str, Any] | None = None,
    ) -> None: ...


class ScriptEventRepository:
    """Repository for lifecycle event persistence operations.

    Events are append-only and form an audit log of run and version changes.
    Implements the event sink interface consumed by the run and version
    services through ``record``.
    """

    # =========================================================================
    # Event Operations
    # =========================================================================

    def append_event(
        self,
        actor: str | None,
        event_type: str | ScriptEventType,
        target_type: str,
        target_id: str,
        meta: dict[str, Any] | None = None,
    ) -> ScriptEventRecord:
        """Append a new event to the event log.

        Args:
            actor: Who triggered the event; ``system`` when unknown
            event_type: Type of event (GUIDANCE_RUN_START, GUIDANCE_PUBLISH, ...)
            target_type: Kind of record the event is about (ScriptRun, Script)
            target_id: Id of that record
            meta: Optional event payload

        Returns:
            The created ScriptEventRecord
        """
        if isinstance(event_type, ScriptEventType):
            event_type = event_type.value

        record = ScriptEventRecord(
            actor=actor or "system",
            event_type=event_type,
            target_type=target_type,
            target_id=target_id,
            meta=meta,
        )

        with transaction() as conn:
            result = conn.execute(text("SELECT MAX(sequence_number) FROM script_events"))
            record.sequence_number = (result.fetchone()[0] or 0) + 1

            conn.execute(
                text("""
                INSERT INTO script_events (
                    id, sequence_number, actor, event_type, target_type, target_id, meta, timestamp
                ) VALUES (:id, :sequence_number, :actor, :event_type, :target_type, :target_id,
                          :meta, :timestamp)
                """),
                {
                    "id": record.id,
                    "sequence_number": record.sequence_number,
                    "actor": record.actor,
                    "event_type": record.event_type,
                    "target_type": record.target_type,
                    "target_id": record.target_id,
                    "meta": dump_json(record.meta),
                    "timestamp": record.timestamp,
                },
            )

        return record

    def record(
        self,
        actor_id: str | None,
        event_name: str | ScriptEventType,
        target_type: str,
        target_id: str,
        meta: dict[str, Any] | None = None,
    ) -> None:
        self.append_event(actor_id, event_name, target_type, target_id, meta)

    def get_events_for_target(
        self,
        target_type: str,
        target_id: str,
        limit: int | None = None,
    ) -> list[ScriptEventRecord]:
        """Get events for one record, oldest first."""
        query = """
            SELECT * FROM script_events
            WHERE target_type = :target_type AND target_id = :target_id
            ORDER BY sequence_number
        """
        params: dict[str, Any] = {"target_type": target_type, "target_id": target_id}
        if limit:
            query += " LIMIT :limit"
            params["limit"] = limit

        with get_db() as conn:
            result = conn.execute(text(query), params)
            return [ScriptEventRecord.from_row(row._mapping) for row in result.fetchall()]

    def get_events_by_type(
        self,
        event_type: str | ScriptEventType,
        limit: int = 100,
    ) -> list[ScriptEventRecord]:
        """Get the most recent events of one type, newest first."""
        if isinstance(event_type, ScriptEventType):
            event_type = event_type.value

        with get_db() as conn:
            result = conn.execute(
                text("""
                SELECT * FROM script_events
                WHERE event_type = :event_type
                ORDER BY sequence_number DESC
                LIMIT :limit
                """),
                {"event_type": event_type, "limit": limit},
            )
            return [ScriptEventRecord.from_row(row._mapping) for row in result.fetchall()]
