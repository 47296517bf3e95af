"""Run state machine and action dispatch."""

from guidance_engine.runs.actions import ActionDispatcher, ActionInput, ActionRegistry
from guidance_engine.runs.locks import RunLockRegistry
from guidance_engine.runs.service import AdvanceResult, RequestContext, RunService

__all__ = [
    "RunService",
    "RequestContext",
    "AdvanceResult",
    "ActionDispatcher",
    "ActionInput",
    "ActionRegistry",
    "RunLockRegistry",
]
