"""Repositories for definition, run, and event persistence."""

from guidance_engine.storage.repositories.script_repo import ScriptRepository
from guidance_engine.storage.repositories.run_repo import RunRepository
from guidance_engine.storage.repositories.event_repo import EventSink, ScriptEventRepository

__all__ = [
    "ScriptRepository",
    "RunRepository",
    "ScriptEventRepository",
    "EventSink",
]
