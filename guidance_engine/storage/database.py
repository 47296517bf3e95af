"""
Database connection management and initialization.

Supports both SQLite (local dev) and PostgreSQL (production) via DATABASE_URL.
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, Connection

from guidance_engine.config import get_settings


# Global engine instance
_engine: Engine | None = None
_DB_PATH: Path | None = None


def _database_url_from_env() -> str | None:
    return os.getenv("DATABASE_URL") or get_settings().database_url


def _is_postgres() -> bool:
    """Check if using PostgreSQL database."""
    return get_database_url().startswith("postgresql")


def get_database_url() -> str:
    """Get database URL from environment or default to SQLite.

    Handles the postgres:// URL form by converting to postgresql://.
    An explicit set_db_path() always wins so tests stay on SQLite.
    """
    if _DB_PATH is not None:
        return f"sqlite:///{_DB_PATH}"

    database_url = _database_url_from_env()
    if database_url:
        # SQLAlchemy requires postgresql://
        if database_url.startswith("postgres://"):
            database_url = database_url.replace("postgres://", "postgresql://", 1)
        return database_url

    return f"sqlite:///{get_db_path()}"


def get_db_path() -> Path:
    """Get the SQLite database file path (used when DATABASE_URL not set)."""
    global _DB_PATH
    if _DB_PATH is None:
        # storage/database.py -> guidance_engine/ -> project_root/
        project_root = Path(__file__).parent.parent.parent
        data_dir = project_root / get_settings().data_dir
        data_dir.mkdir(exist_ok=True)
        return data_dir / "guidance.db"
    return _DB_PATH


def set_db_path(path: Path | str) -> None:
    """Set a custom database path (useful for testing)."""
    global _DB_PATH, _engine
    _DB_PATH = Path(path)
    if _engine is not None:
        _engine.dispose()
    _engine = None  # Reset engine when path changes


def get_engine() -> Engine:
    """Get SQLAlchemy engine for database operations."""
    global _engine
    if _engine is None:
        database_url = get_database_url()

        # SQLite-specific connection args
        connect_args = {}
        if database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False

        _engine = create_engine(database_url, echo=False, connect_args=connect_args)
    return _engine


def reset_engine() -> None:
    """Reset the engine (useful for testing or reconfiguration)."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None


@contextmanager
def get_db() -> Generator[Connection, None, None]:
    """Get a database connection.

    Callers commit explicitly. Usage:
        with get_db() as conn:
            result = conn.execute(text("SELECT * FROM scripts"))
            rows = result.fetchall()
    """
    engine = get_engine()
    with engine.connect() as conn:
        if not _is_postgres():
            conn.execute(text("PRAGMA foreign_keys = ON"))
        yield conn


@contextmanager
def transaction() -> Generator[Connection, None, None]:
    """Get a connection inside a single transaction.

    Commits when the block exits normally and rolls back every statement
    issued in the block if it raises.
    """
    engine = get_engine()
    with engine.begin() as conn:
        if not _is_postgres():
            conn.execute(text("PRAGMA foreign_keys = ON"))
        yield conn


def init_db() -> None:
    """Initialize database schema.

    Creates all tables if they don't exist. Safe to call multiple times.
    """
    with transaction() as conn:
        for statement in _split_statements(_SCHEMA):
            conn.execute(text(statement))


def _split_statements(script: str) -> list[str]:
    """Split the schema script into individual statements, dropping comments."""
    statements = []
    current_stmt: list[str] = []
    for line in script.split("\n"):
        if "--" in line:
            line = line[: line.index("--")]
        stripped = line.strip()
        if not stripped:
            continue
        current_stmt.append(line.rstrip())
        if stripped.endswith(";"):
            statement = "\n".join(current_stmt).strip().rstrip(";")
            if statement:
                statements.append(statement)
            current_stmt = []
    return statements


# =============================================================================
# Database Schema (SQLite, PostgreSQL-compatible design)
# =============================================================================

_SCHEMA = """
-- =============================================================================
-- SCRIPT DEFINITIONS
-- =============================================================================

CREATE TABLE IF NOT EXISTS scripts (
    id TEXT PRIMARY KEY,                -- UUID
    tenant_id TEXT,
    script_key TEXT NOT NULL,           -- Human key, unique per tenant
    name TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (tenant_id, script_key)
);

CREATE TABLE IF NOT EXISTS script_versions (
    id TEXT PRIMARY KEY,                -- UUID
    script_id TEXT NOT NULL,
    version INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'DRAFT',
    entry_node_id TEXT,
    created_at TEXT NOT NULL,
    created_by TEXT,
    published_at TEXT,
    UNIQUE (script_id, version),
    FOREIGN KEY (script_id) REFERENCES scripts(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS script_nodes (
    id TEXT PRIMARY KEY,                -- UUID
    version_id TEXT NOT NULL,
    node_key TEXT NOT NULL,
    type TEXT NOT NULL,                 -- START, QUESTION, CHOICE, ACTION, END, CONNECTOR
    label TEXT,
    config TEXT,                        -- JSON
    position INTEGER NOT NULL DEFAULT 0,
    UNIQUE (version_id, node_key),
    FOREIGN KEY (version_id) REFERENCES script_versions(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS script_edges (
    id TEXT PRIMARY KEY,                -- UUID
    version_id TEXT NOT NULL,
    source TEXT NOT NULL,               -- Node id
    target TEXT NOT NULL,               -- Node id
    condition TEXT,                     -- JSON-logic condition
    label TEXT,
    position INTEGER NOT NULL DEFAULT 0,
    FOREIGN KEY (version_id) REFERENCES script_versions(id) ON DELETE CASCADE
);

-- =============================================================================
-- RUNS
-- =============================================================================

CREATE TABLE IF NOT EXISTS script_runs (
    id TEXT PRIMARY KEY,                -- UUID
    tenant_id TEXT,
    script_id TEXT NOT NULL,
    script_version INTEGER NOT NULL,    -- Bound at creation, never migrates
    subject_schema TEXT,
    subject_model TEXT,
    subject_id TEXT,
    state TEXT NOT NULL,                -- JSON {cursor, answers}
    started_by TEXT,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    revision INTEGER NOT NULL DEFAULT 0,
    FOREIGN KEY (script_id) REFERENCES scripts(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS script_answers (
    id TEXT PRIMARY KEY,                -- UUID
    run_id TEXT NOT NULL,
    node_key TEXT NOT NULL,
    value TEXT,                         -- JSON
    sequence_number INTEGER NOT NULL,   -- Per-run submission order
    created_at TEXT NOT NULL,
    FOREIGN KEY (run_id) REFERENCES script_runs(id) ON DELETE CASCADE
);

-- =============================================================================
-- AUDIT EVENTS
-- =============================================================================

CREATE TABLE IF NOT EXISTS script_events (
    id TEXT PRIMARY KEY,                -- UUID
    sequence_number INTEGER NOT NULL,
    actor TEXT NOT NULL,
    event_type TEXT NOT NULL,
    target_type TEXT NOT NULL,
    target_id TEXT NOT NULL,
    meta TEXT,                          -- JSON
    timestamp TEXT NOT NULL
);

-- =============================================================================
-- INDEXES
-- =============================================================================

CREATE UNIQUE INDEX IF NOT EXISTS idx_versions_one_active
    ON script_versions(script_id) WHERE status = 'ACTIVE';
CREATE INDEX IF NOT EXISTS idx_nodes_version ON script_nodes(version_id, position);
CREATE INDEX IF NOT EXISTS idx_edges_version ON script_edges(version_id, position);
CREATE INDEX IF NOT EXISTS idx_runs_script ON script_runs(script_id, script_version);
CREATE INDEX IF NOT EXISTS idx_answers_run ON script_answers(run_id, sequence_number);
CREATE INDEX IF NOT EXISTS idx_events_target ON script_events(target_type, target_id);
"""


def reset_db() -> None:
    """Drop all tables and recreate schema. USE WITH CAUTION."""
    with transaction() as conn:
        for table in _TABLES:
            conn.execute(text(f"DROP TABLE IF EXISTS {table}"))

    init_db()


# Child tables first so foreign keys never block a drop
_TABLES = [
    "script_events",
    "script_answers",
    "script_runs",
    "script_edges",
    "script_nodes",
    "script_versions",
    "scripts",
]


def get_table_stats() -> dict[str, int]:
    """Get row counts for all engine tables (useful for diagnostics)."""
    with get_db() as conn:
        stats = {}
        for table in _TABLES:
            result = conn.execute(text(f"SELECT COUNT(*) as count FROM {table}"))
            stats[table] = result.fetchone()[0]
        return stats
