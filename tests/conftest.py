"""Pytest fixtures for test suite."""

import tempfile
from pathlib import Path
from typing import Any

import pytest

from guidance_engine.graph import ScriptDefinition
from guidance_engine.runs import ActionInput, RequestContext, RunService
from guidance_engine.storage import init_db, reset_engine, set_db_path
from guidance_engine.versions import VersionLifecycleManager


TENANT = "tenant-1"
USER = "user-1"


# =============================================================================
# Database
# =============================================================================


@pytest.fixture(autouse=True)
def temp_database():
    """Use a temporary database for each test."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        temp_path = Path(f.name)

    set_db_path(temp_path)
    init_db()
    yield temp_path

    reset_engine()
    temp_path.unlink(missing_ok=True)


# =============================================================================
# Dispatcher
# =============================================================================


class RecordingDispatcher:
    """Dispatcher that remembers every call and can be told to fail."""

    def __init__(self, result: Any = None, error: Exception | None = None):
        self.calls: list[tuple[str, ActionInput]] = []
        self.result = result
        self.error = error

    def dispatch(self, action: str, payload: ActionInput) -> Any:
        self.calls.append((action, payload))
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher(result={"createdCaseId": "case-1", "caseNumber": "SR-1"})


@pytest.fixture
def ctx() -> RequestContext:
    return RequestContext(tenant_id=TENANT, user_id=USER)


@pytest.fixture
def versions() -> VersionLifecycleManager:
    return VersionLifecycleManager()


@pytest.fixture
def run_service(dispatcher: RecordingDispatcher) -> RunService:
    return RunService(dispatcher=dispatcher)


# =============================================================================
# Script Definitions
# =============================================================================


def onboarding_definition() -> dict:
    """START -> QUESTION age -> CHOICE (age >= 18 -> adult, default minor)."""
    return {
        "key": "onboarding",
        "name": "Onboarding",
        "nodes": [
            {"key": "s0", "type": "START"},
            {"key": "age", "type": "QUESTION", "label": "How old are you?"},
            {
                "key": "c0",
                "type": "CHOICE",
                "config": {
                    "groups": [
                        {
                            "id": "group1",
                            "rules": [
                                {
                                    "id": "rule1",
                                    "target": "adult",
                                    "clauses": [
                                        {"id": "cl1", "variable": "age", "type": "number", "operator": ">=", "value": 18}
                                    ],
                                }
                            ],
                        }
                    ],
                    "defaultTarget": "minor",
                },
            },
            {"key": "adult", "type": "END"},
            {"key": "minor", "type": "END"},
        ],
        "edges": [
            {"source": "s0", "target": "age"},
            {"source": "age", "target": "c0"},
        ],
    }


def case_definition() -> dict:
    """START -> ACTION createCase -> END."""
    return {
        "key": "case-intake",
        "nodes": [
            {"key": "s0", "type": "START"},
            {
                "key": "create",
                "type": "ACTION",
                "config": {"action": "service.createCase", "args": {"caseNumber": "SR-1"}},
            },
            {"key": "done", "type": "END"},
        ],
        "edges": [
            {"source": "s0", "target": "create"},
            {"source": "create", "target": "done"},
        ],
    }


def publish_definition(
    versions: VersionLifecycleManager,
    data: dict,
    tenant_id: str = TENANT,
):
    """Create a script from a definition and publish it as v1."""
    definition = ScriptDefinition.model_validate(data)
    script = versions.create_script(tenant_id, definition.key, definition.name)
    versions.create_version(script.id, definition, actor_id=USER)
    versions.publish(script.id, 1, actor_id=USER)
    return script


@pytest.fixture
def onboarding(versions: VersionLifecycleManager):
    """The onboarding script, published as v1."""
    return publish_definition(versions, onboarding_definition())


@pytest.fixture
def case_script(versions: VersionLifecycleManager):
    """The case-intake script, published as v1."""
    return publish_definition(versions, case_definition())
