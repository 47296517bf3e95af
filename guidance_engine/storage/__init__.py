"""Storage domain - database, records, and repositories."""

# Database
from guidance_engine.storage.database import (
    get_db,
    get_db_path,
    set_db_path,
    get_engine,
    reset_engine,
    transaction,
    init_db,
    reset_db,
    get_table_stats,
)

# Records
from guidance_engine.storage.models import (
    AnswerRecord,
    EdgeRecord,
    NodeRecord,
    RunRecord,
    ScriptEventRecord,
    ScriptEventType,
    ScriptRecord,
    ScriptVersionRecord,
    VersionStatus,
    generate_uuid,
    now_iso,
)

# Repositories
from guidance_engine.storage.repositories import (
    RunRepository,
    ScriptEventRepository,
    ScriptRepository,
)

__all__ = [
    # Database
    "get_db",
    "get_db_path",
    "set_db_path",
    "get_engine",
    "reset_engine",
    "transaction",
    "init_db",
    "reset_db",
    "get_table_stats",
    # Records
    "AnswerRecord",
    "EdgeRecord",
    "NodeRecord",
    "RunRecord",
    "ScriptEventRecord",
    "ScriptEventType",
    "ScriptRecord",
    "ScriptVersionRecord",
    "VersionStatus",
    "generate_uuid",
    "now_iso",
    # Repositories
    "RunRepository",
    "ScriptEventRepository",
    "ScriptRepository",
]
