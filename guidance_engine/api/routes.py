"""Guidance API routes - scripts, versions and runs.

Thin transport over the run service and the version lifecycle manager.
Tenant and user come from the X-Tenant-Id and X-User-Id headers.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from guidance_engine.errors import GuidanceError
from guidance_engine.graph.schemas import ScriptDefinition
from guidance_engine.runs.actions import ActionRegistry
from guidance_engine.runs.service import RUN_TARGET, RequestContext, RunService
from guidance_engine.storage.repositories.event_repo import ScriptEventRepository
from guidance_engine.versions.service import SCRIPT_TARGET, VersionLifecycleManager

from .schemas import (
    ActiveScriptResponse,
    AdvanceResponse,
    AnswerRequest,
    AnswerResponse,
    CreateScriptRequest,
    EdgeResponse,
    EventResponse,
    NodeResponse,
    PublishRequest,
    RunResponse,
    ScriptResponse,
    StartRunRequest,
    VersionResponse,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Router Setup
# =============================================================================

router = APIRouter(prefix="/guidance", tags=["guidance"])

STATUS_CODES = {
    "not_found": 404,
    "invalid_definition": 422,
    "invalid_state": 409,
    "bad_request": 400,
    "concurrent_modification": 409,
    "dispatch_failure": 502,
}


async def guidance_error_handler(request: Request, exc: GuidanceError) -> JSONResponse:
    """Map engine errors to HTTP status codes by their stable code."""
    status_code = STATUS_CODES.get(exc.code, 500)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


# =============================================================================
# Shared State
# =============================================================================

_actions: ActionRegistry | None = None
_run_service: RunService | None = None
_versions: VersionLifecycleManager | None = None
_events: ScriptEventRepository | None = None


def get_action_registry() -> ActionRegistry:
    """Get or create the action registry used by ACTION nodes."""
    global _actions
    if _actions is None:
        _actions = ActionRegistry()
    return _actions


def get_run_service() -> RunService:
    """Get or create the run service instance."""
    global _run_service
    if _run_service is None:
        _run_service = RunService(dispatcher=get_action_registry())
    return _run_service


def get_versions() -> VersionLifecycleManager:
    """Get or create the version lifecycle manager instance."""
    global _versions
    if _versions is None:
        _versions = VersionLifecycleManager()
    return _versions


def get_event_log() -> ScriptEventRepository:
    """Get or create the audit event repository used for history queries."""
    global _events
    if _events is None:
        _events = ScriptEventRepository()
    return _events


def reset_services() -> None:
    """Drop shared instances so the next request builds fresh ones."""
    global _actions, _run_service, _versions, _events
    _actions = None
    _run_service = None
    _versions = None
    _events = None


def get_context(
    x_tenant_id: str | None = Header(None),
    x_user_id: str | None = Header(None),
) -> RequestContext:
    return RequestContext(tenant_id=x_tenant_id, user_id=x_user_id)


# =============================================================================
# Script Endpoints
# =============================================================================


@router.post("/scripts", response_model=ScriptResponse, status_code=201)
async def create_script(
    request: CreateScriptRequest,
    ctx: RequestContext = Depends(get_context),
) -> ScriptResponse:
    """Create an empty script container."""
    script = get_versions().create_script(ctx.tenant_id, request.key, request.name)
    return ScriptResponse.from_record(script)


@router.get("/scripts/{key}", response_model=ActiveScriptResponse)
async def get_active_script(
    key: str,
    ctx: RequestContext = Depends(get_context),
) -> ActiveScriptResponse:
    """Get a script with its ACTIVE version and graph."""
    active = get_versions().get_active_script(ctx.tenant_id, key)
    return ActiveScriptResponse(
        script=ScriptResponse.from_record(active.script),
        version=VersionResponse.from_record(active.version),
        nodes=[NodeResponse.from_record(n) for n in active.graph.nodes.values()],
        edges=[EdgeResponse.from_record(e) for e in active.graph.edges.values()],
    )


@router.post("/scripts/{script_id}/versions", response_model=VersionResponse, status_code=201)
async def create_version(
    script_id: str,
    definition: ScriptDefinition,
    ctx: RequestContext = Depends(get_context),
) -> VersionResponse:
    """Store a definition as the next DRAFT version."""
    version = get_versions().create_version(script_id, definition, actor_id=ctx.user_id)
    return VersionResponse.from_record(version)


@router.get("/scripts/{script_id}/versions", response_model=list[VersionResponse])
async def list_versions(script_id: str) -> list[VersionResponse]:
    """List versions, newest first."""
    return [VersionResponse.from_record(v) for v in get_versions().list_versions(script_id)]


@router.post("/scripts/{script_id}/publish", response_model=VersionResponse)
async def publish_version(
    script_id: str,
    request: PublishRequest,
    ctx: RequestContext = Depends(get_context),
) -> VersionResponse:
    """Make a version the script's only ACTIVE version."""
    version = get_versions().publish(script_id, request.version, actor_id=ctx.user_id)
    return VersionResponse.from_record(version)


@router.get("/scripts/{script_id}/versions/{version}/export", response_class=PlainTextResponse)
async def export_version(script_id: str, version: int) -> PlainTextResponse:
    """Download a version as a YAML definition."""
    content = get_versions().export_version(script_id, version)
    return PlainTextResponse(content, media_type="application/x-yaml")


@router.get("/scripts/{script_id}/runs", response_model=list[RunResponse])
async def list_script_runs(script_id: str, active_only: bool = False) -> list[RunResponse]:
    """Runs of a script, newest first."""
    runs = get_run_service().list_runs(script_id, active_only=active_only)
    return [RunResponse.from_record(r) for r in runs]


@router.get("/scripts/{script_id}/events", response_model=list[EventResponse])
async def list_script_events(script_id: str) -> list[EventResponse]:
    """Version and publish history of a script, oldest first."""
    get_versions().get_script(script_id)
    return [EventResponse.from_record(e) for e in get_event_log().get_events_for_target(SCRIPT_TARGET, script_id)]


# =============================================================================
# Run Endpoints
# =============================================================================


@router.post("/scripts/{key}/run", response_model=RunResponse, status_code=201)
async def start_run(
    key: str,
    request: StartRunRequest,
    ctx: RequestContext = Depends(get_context),
) -> RunResponse:
    """Start a run of the script's ACTIVE version."""
    run = get_run_service().start(
        ctx,
        key,
        subject_schema=request.subject_schema,
        subject_model=request.subject_model,
        subject_id=request.subject_id,
    )
    return RunResponse.from_record(run)


@router.get("/runs/{run_id}", response_model=RunResponse)
async def get_run(run_id: str) -> RunResponse:
    return RunResponse.from_record(get_run_service().get_run(run_id))


@router.post("/runs/{run_id}/answer", response_model=AnswerResponse)
async def answer(run_id: str, request: AnswerRequest) -> AnswerResponse:
    """Record an answer for a QUESTION node."""
    record = get_run_service().answer(run_id, request.node_key, request.value)
    return AnswerResponse.from_record(record)


@router.post("/runs/{run_id}/advance", response_model=AdvanceResponse)
async def advance(run_id: str) -> AdvanceResponse:
    """Move the run one step along the graph."""
    result = get_run_service().step(run_id)
    return AdvanceResponse(
        run=RunResponse.from_record(result.run),
        decisions=result.decisions,
        path=result.path,
        action=result.action,
        action_result=result.action_result,
    )


@router.get("/runs/{run_id}/answers", response_model=list[AnswerResponse])
async def list_answers(run_id: str) -> list[AnswerResponse]:
    """Full answer history, oldest first."""
    return [AnswerResponse.from_record(a) for a in get_run_service().list_answers(run_id)]


@router.get("/runs/{run_id}/events", response_model=list[EventResponse])
async def list_run_events(run_id: str) -> list[EventResponse]:
    """Start and completion events of a run, oldest first."""
    get_run_service().get_run(run_id)
    return [EventResponse.from_record(e) for e in get_event_log().get_events_for_target(RUN_TARGET, run_id)]


# =============================================================================
# Audit Endpoints
# =============================================================================


@router.get("/events", response_model=list[EventResponse])
async def list_events(
    event_type: str = Query(..., description="e.g. GUIDANCE_PUBLISH"),
    limit: int = Query(100, ge=1, le=1000),
) -> list[EventResponse]:
    """Most recent audit events of one type, newest first."""
    return [EventResponse.from_record(e) for e in get_event_log().get_events_by_type(event_type, limit=limit)]
