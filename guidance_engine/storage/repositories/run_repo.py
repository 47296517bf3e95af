"""
Run repository for run state and answer history.

Run updates are compare-and-swap on the ``revision`` column so two writers
can never interleave into a corrupted state.
"""

from __future__ import annotations

from sqlalchemy import text
from sqlalchemy.engine import Connection

from guidance_engine.errors import ConcurrentModification
from guidance_engine.storage.database import get_db, transaction
from guidance_engine.storage.models import AnswerRecord, RunRecord, dump_json


class RunRepository:
    """Repository for run persistence operations."""

    # =========================================================================
    # Runs
    # =========================================================================

    def create_run(self, record: RunRecord) -> RunRecord:
        """Insert a new run."""
        with transaction() as conn:
            conn.execute(
                text("""
                INSERT INTO script_runs (
                    id, tenant_id, script_id, script_version, subject_schema, subject_model,
                    subject_id, state, started_by, started_at, completed_at, revision
                ) VALUES (:id, :tenant_id, :script_id, :script_version, :subject_schema, :subject_model,
                          :subject_id, :state, :started_by, :started_at, :completed_at, :revision)
                """),
                record.to_dict(),
            )
        return record

    def get_run(self, run_id: str) -> RunRecord | None:
        """Get a run by id."""
        with get_db() as conn:
            result = conn.execute(
                text("SELECT * FROM script_runs WHERE id = :id"),
                {"id": run_id},
            )
            row = result.fetchone()
            if row:
                return RunRecord.from_row(row._mapping)
            return None

    def update_run(self, record: RunRecord) -> RunRecord:
        """Persist a run's state and completion.

        The write only applies if the stored revision still equals
        ``record.revision``; on success the record's revision is bumped.

        Raises:
            ConcurrentModification: If another writer updated the run first
        """
        with transaction() as conn:
            self._update_run(conn, record)
        return record

    def restore_run(self, record: RunRecord, snapshot: RunRecord) -> RunRecord:
        """Put a run back to ``snapshot`` after a claimed step was abandoned.

        Applies only while the stored revision still equals
        ``record.revision``, so nothing written since the claim is lost. The
        revision is rewound to the snapshot's.

        Raises:
            ConcurrentModification: If another writer updated the run first
        """
        with transaction() as conn:
            result = conn.execute(
                text("""
                UPDATE script_runs
                SET state = :state, completed_at = :completed_at, revision = :revision
                WHERE id = :id AND revision = :claimed
                """),
                {
                    "state": dump_json(snapshot.state),
                    "completed_at": snapshot.completed_at,
                    "revision": snapshot.revision,
                    "id": record.id,
                    "claimed": record.revision,
                },
            )
            if result.rowcount == 0:
                raise ConcurrentModification(f"Run {record.id} was modified concurrently")
        return snapshot

    def save_answer(self, record: RunRecord, answer: AnswerRecord) -> AnswerRecord:
        """Append an answer and persist the run state in one transaction."""
        with transaction() as conn:
            result = conn.execute(
                text("SELECT COUNT(*) FROM script_answers WHERE run_id = :run_id"),
                {"run_id": answer.run_id},
            )
            answer.sequence_number = result.fetchone()[0] + 1

            conn.execute(
                text("""
                INSERT INTO script_answers (id, run_id, node_key, value, sequence_number, created_at)
                VALUES (:id, :run_id, :node_key, :value, :sequence_number, :created_at)
                """),
                {
                    "id": answer.id,
                    "run_id": answer.run_id,
                    "node_key": answer.node_key,
                    "value": dump_json(answer.value),
                    "sequence_number": answer.sequence_number,
                    "created_at": answer.created_at,
                },
            )
            self._update_run(conn, record)
        return answer

    def list_runs(self, script_id: str, active_only: bool = False) -> list[RunRecord]:
        """Get runs of a script, newest first."""
        with get_db() as conn:
            if active_only:
                result = conn.execute(
                    text("""
                    SELECT * FROM script_runs
                    WHERE script_id = :script_id AND completed_at IS NULL
                    ORDER BY started_at DESC
                    """),
                    {"script_id": script_id},
                )
            else:
                result = conn.execute(
                    text("SELECT * FROM script_runs WHERE script_id = :script_id ORDER BY started_at DESC"),
                    {"script_id": script_id},
                )
            return [RunRecord.from_row(row._mapping) for row in result.fetchall()]

    # =========================================================================
    # Answers
    # =========================================================================

    def list_answers(self, run_id: str, node_key: str | None = None) -> list[AnswerRecord]:
        """Get the answer history of a run, oldest first."""
        with get_db() as conn:
            if node_key is None:
                result = conn.execute(
                    text("SELECT * FROM script_answers WHERE run_id = :run_id ORDER BY sequence_number"),
                    {"run_id": run_id},
                )
            else:
                result = conn.execute(
                    text("""
                    SELECT * FROM script_answers
                    WHERE run_id = :run_id AND node_key = :node_key
                    ORDER BY sequence_number
                    """),
                    {"run_id": run_id, "node_key": node_key},
                )
            return [AnswerRecord.from_row(row._mapping) for row in result.fetchall()]

    # =========================================================================
    # Internals
    # =========================================================================

    def _update_run(self, conn: Connection, record: RunRecord) -> None:
        result = conn.execute(
            text("""
            UPDATE script_runs
            SET state = :state, completed_at = :completed_at, revision = :next_revision
            WHERE id = :id AND revision = :revision
            """),
            {
                "state": dump_json(record.state),
                "completed_at": record.completed_at,
                "next_revision": record.revision + 1,
                "id": record.id,
                "revision": record.revision,
            },
        )
        if result.rowcount == 0:
            raise ConcurrentModification(f"Run {record.id} was modified concurrently")
        record.revision += 1
