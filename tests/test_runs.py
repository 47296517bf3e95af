"""Tests for the run state machine."""

import copy
import threading

import pytest

from conftest import TENANT, USER, RecordingDispatcher, case_definition, publish_definition
from guidance_engine.errors import (
    BadRequest,
    ConcurrentModification,
    DispatchFailure,
    InvalidDefinition,
    InvalidState,
    NotFound,
)
from guidance_engine.graph import ScriptDefinition
from guidance_engine.runs import ActionRegistry, RequestContext, RunLockRegistry, RunService
from guidance_engine.storage import RunRepository, ScriptEventRepository, ScriptEventType, ScriptRepository


# =============================================================================
# Start
# =============================================================================


class TestStart:
    """Test run creation."""

    def test_cursor_is_entry_key(self, run_service, ctx, onboarding):
        run = run_service.start(ctx, "onboarding", "crm", "Party", "party-1")

        assert run.cursor == "s0"
        assert run.answers == {}
        assert run.completed_at is None
        assert run.script_version == 1
        assert run.tenant_id == TENANT
        assert run.started_by == USER
        assert run.subject_model == "Party"

        stored = run_service.get_run(run.id)
        assert stored.state == {"cursor": "s0", "answers": {}}

    def test_emits_start_event(self, run_service, ctx, onboarding):
        run = run_service.start(ctx, "onboarding")

        [event] = ScriptEventRepository().get_events_for_target("ScriptRun", run.id)
        assert event.event_type == ScriptEventType.RUN_START.value
        assert event.actor == USER
        assert event.meta == {"scriptId": onboarding.id, "version": 1}

    def test_unknown_script(self, run_service, ctx):
        with pytest.raises(NotFound):
            run_service.start(ctx, "missing")

    def test_other_tenant_cannot_see_script(self, run_service, onboarding):
        with pytest.raises(NotFound):
            run_service.start(RequestContext(tenant_id="tenant-2"), "onboarding")

    def test_no_active_version(self, run_service, ctx, versions):
        versions.create_script(TENANT, "draft-only")
        with pytest.raises(NotFound, match="No active version"):
            run_service.start(ctx, "draft-only")

    def test_entry_not_start(self, run_service, ctx, versions):
        script = ScriptRepository().create_script("broken", tenant_id=TENANT)
        scripts = ScriptRepository()
        scripts.create_version(
            script.id,
            nodes=[{"id": "n1", "key": "q", "type": "QUESTION"}],
            edges=[],
            entry_node_id="n1",
        )
        scripts.publish_version(script.id, 1)

        with pytest.raises(InvalidDefinition):
            run_service.start(ctx, "broken")


# =============================================================================
# Scenarios
# =============================================================================


class TestOnboardingScenarios:
    """Walk the onboarding script end to end."""

    def test_minor_goes_to_default(self, run_service, ctx, onboarding):
        run = run_service.start(ctx, "onboarding")
        assert run.cursor == "s0"

        run = run_service.advance(run.id)
        assert run.cursor == "age"
        assert run.completed_at is None

        run_service.answer(run.id, "age", 15)
        run = run_service.advance(run.id)

        assert run.cursor == "minor"
        assert run.completed_at is not None

    def test_adult_passes_group(self, run_service, ctx, onboarding):
        run = run_service.start(ctx, "onboarding")
        run_service.advance(run.id)
        run_service.answer(run.id, "age", 21)

        result = run_service.step(run.id)

        assert result.run.cursor == "adult"
        assert result.run.is_completed
        assert result.path == ["c0", "adult"]
        assert result.decision.group_id == "group1"
        assert result.decision.rule_id == "rule1"

    def test_completed_run_rejects_advance(self, run_service, ctx, onboarding):
        run = run_service.start(ctx, "onboarding")
        run_service.advance(run.id)
        run_service.answer(run.id, "age", 15)
        run_service.advance(run.id)

        with pytest.raises(InvalidState, match="Run is completed"):
            run_service.advance(run.id)
        with pytest.raises(InvalidState):
            run_service.answer(run.id, "age", 30)

        assert run_service.get_run(run.id).cursor == "minor"

    def test_completion_event(self, run_service, ctx, onboarding):
        run = run_service.start(ctx, "onboarding")
        run_service.advance(run.id)
        run_service.answer(run.id, "age", 40)
        run_service.advance(run.id)

        events = ScriptEventRepository().get_events_for_target("ScriptRun", run.id)
        assert [e.event_type for e in events] == ["GUIDANCE_RUN_START", "GUIDANCE_RUN_COMPLETE"]

    def test_run_stays_on_bound_version(self, run_service, ctx, versions, onboarding):
        run = run_service.start(ctx, "onboarding")

        data = case_definition()
        versions.create_version(onboarding.id, ScriptDefinition.model_validate(data))
        versions.publish(onboarding.id, 2)

        assert run_service.advance(run.id).cursor == "age"
        assert run_service.start(ctx, "onboarding").script_version == 2


# =============================================================================
# Answers
# =============================================================================


class TestAnswer:
    def test_overwrite_keeps_log(self, run_service, ctx, onboarding):
        run = run_service.start(ctx, "onboarding")

        run_service.answer(run.id, "age", 10)
        run_service.answer(run.id, "age", 20)

        assert run_service.get_run(run.id).answers["age"] == 20
        log = run_service.list_answers(run.id)
        assert [(a.node_key, a.value, a.sequence_number) for a in log] == [("age", 10, 1), ("age", 20, 2)]

    def test_node_must_exist(self, run_service, ctx, onboarding):
        run = run_service.start(ctx, "onboarding")
        with pytest.raises(BadRequest, match="Node not in this script"):
            run_service.answer(run.id, "nope", 1)

    def test_node_must_be_question(self, run_service, ctx, onboarding):
        run = run_service.start(ctx, "onboarding")
        with pytest.raises(BadRequest, match="Only QUESTION nodes accept answers"):
            run_service.answer(run.id, "c0", 1)

    def test_unknown_run(self, run_service):
        with pytest.raises(NotFound):
            run_service.answer("missing", "age", 1)
        with pytest.raises(NotFound):
            run_service.advance("missing")
        with pytest.raises(NotFound):
            run_service.list_answers("missing")

    def test_structured_values(self, run_service, ctx, onboarding):
        run = run_service.start(ctx, "onboarding")
        run_service.answer(run.id, "age", {"years": 3, "tags": ["a"]})
        assert run_service.get_run(run.id).answers["age"] == {"years": 3, "tags": ["a"]}


# =============================================================================
# Actions
# =============================================================================


class TestActions:
    """Test ACTION dispatch on advance."""

    def test_dispatch_once_with_args(self, run_service, dispatcher, ctx, case_script):
        run = run_service.start(ctx, "case-intake")

        result = run_service.step(run.id)

        assert result.run.cursor == "create"
        assert len(dispatcher.calls) == 1
        action, payload = dispatcher.calls[0]
        assert action == "service.createCase"
        assert payload.args == {"caseNumber": "SR-1"}
        assert payload.tenant_id == TENANT
        assert payload.run_id == run.id
        assert payload.user_id == USER
        assert result.action_result == {"createdCaseId": "case-1", "caseNumber": "SR-1"}

        # Result is observed, not stored
        assert run_service.get_run(run.id).state == {"cursor": "create", "answers": {}}

        run = run_service.advance(run.id)
        assert run.cursor == "done"
        assert run.is_completed
        assert len(dispatcher.calls) == 1

    def test_dispatch_failure_leaves_run_untouched(self, ctx, case_script):
        failing = RecordingDispatcher(error=RuntimeError("case service down"))
        service = RunService(dispatcher=failing)
        run = service.start(ctx, "case-intake")

        with pytest.raises(DispatchFailure) as exc_info:
            service.advance(run.id)

        assert exc_info.value.action == "service.createCase"
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        stored = service.get_run(run.id)
        assert stored.cursor == "s0"
        assert stored.revision == 0

    def test_registry_unknown_action(self, ctx, case_script):
        service = RunService(dispatcher=ActionRegistry())
        run = service.start(ctx, "case-intake")

        with pytest.raises(DispatchFailure, match="Unknown action: service.createCase"):
            service.advance(run.id)

    def test_registry_handler(self, ctx, case_script):
        registry = ActionRegistry()
        registry.register("service.createCase", lambda payload: {"caseNumber": payload.args["caseNumber"]})
        service = RunService(dispatcher=registry)
        run = service.start(ctx, "case-intake")

        assert service.step(run.id).action_result == {"caseNumber": "SR-1"}

    def test_missing_action_config(self, run_service, ctx):
        scripts = ScriptRepository()
        script = scripts.create_script("no-action", tenant_id=TENANT)
        scripts.create_version(
            script.id,
            nodes=[
                {"id": "n1", "key": "s0", "type": "START"},
                {"id": "n2", "key": "act", "type": "ACTION", "config": {"args": {}}},
            ],
            edges=[{"id": "e1", "source": "n1", "target": "n2"}],
            entry_node_id="n1",
        )
        scripts.publish_version(script.id, 1)
        run = run_service.start(ctx, "no-action")

        with pytest.raises(BadRequest, match="ACTION node missing config.action"):
            run_service.advance(run.id)


# =============================================================================
# Transitions
# =============================================================================


class TestTransitions:
    def test_no_outgoing_edge(self, run_service, ctx, versions):
        publish_definition(
            versions,
            {
                "key": "dead-end",
                "nodes": [{"key": "s0", "type": "START"}, {"key": "q", "type": "QUESTION"}],
                "edges": [{"source": "s0", "target": "q"}],
            },
        )
        run = run_service.start(ctx, "dead-end")
        run_service.advance(run.id)

        with pytest.raises(BadRequest, match="No valid transition from current node"):
            run_service.advance(run.id)

    def test_choice_without_target(self, run_service, ctx, versions):
        publish_definition(
            versions,
            {
                "key": "no-default",
                "nodes": [
                    {"key": "s0", "type": "START"},
                    {"key": "c0", "type": "CHOICE", "config": {"groups": []}},
                ],
                "edges": [{"source": "s0", "target": "c0"}],
            },
        )
        run = run_service.start(ctx, "no-default")

        with pytest.raises(BadRequest, match="No valid transition"):
            run_service.advance(run.id)
        assert run_service.get_run(run.id).cursor == "s0"

    def test_edge_conditions_route_on_answers(self, run_service, ctx, versions):
        publish_definition(
            versions,
            {
                "key": "colors",
                "nodes": [
                    {"key": "s0", "type": "START"},
                    {"key": "color", "type": "QUESTION"},
                    {"key": "red", "type": "END"},
                    {"key": "blue", "type": "END"},
                ],
                "edges": [
                    {"source": "s0", "target": "color"},
                    {"source": "color", "target": "red", "condition": {"==": [{"var": "answers.color"}, "red"]}},
                    {"source": "color", "target": "blue", "condition": {"==": [{"var": "answers.color"}, "blue"]}},
                ],
            },
        )
        run = run_service.start(ctx, "colors")
        run_service.advance(run.id)
        run_service.answer(run.id, "color", "blue")

        assert run_service.advance(run.id).cursor == "blue"

    def test_invalid_cursor(self, run_service, ctx, onboarding):
        run = run_service.start(ctx, "onboarding")
        run.state["cursor"] = "vanished"
        RunRepository().update_run(run)

        with pytest.raises(BadRequest, match="Invalid cursor"):
            run_service.advance(run.id)


# =============================================================================
# Concurrency
# =============================================================================


class TestConcurrency:
    """Test per-run serialization."""

    def test_stale_revision_is_rejected(self, run_service, ctx, onboarding):
        run = run_service.start(ctx, "onboarding")
        repo = RunRepository()

        first = repo.get_run(run.id)
        second = repo.get_run(run.id)
        repo.update_run(first)

        with pytest.raises(ConcurrentModification):
            repo.update_run(second)
        assert repo.get_run(run.id).revision == 1

    def test_concurrent_modification_is_bad_request(self):
        assert issubclass(ConcurrentModification, BadRequest)
        assert ConcurrentModification("x").code == "concurrent_modification"

    def test_parallel_answers_are_serialized(self, run_service, ctx, onboarding):
        run = run_service.start(ctx, "onboarding")
        errors: list[Exception] = []

        def submit(value):
            try:
                run_service.answer(run.id, "age", value)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=submit, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        stored = run_service.get_run(run.id)
        assert stored.revision == 8
        assert len(run_service.list_answers(run.id)) == 8
        assert stored.answers["age"] == run_service.list_answers(run.id)[-1].value


class StaleRunRepository(RunRepository):
    """Serves a run as another process read it before a concurrent write."""

    def __init__(self, snapshot):
        super().__init__()
        self.snapshot = snapshot

    def get_run(self, run_id):
        return copy.deepcopy(self.snapshot)


class TestActionClaim:
    """Only the writer that claims an ACTION transition dispatches it."""

    def test_losing_writer_does_not_dispatch(self, ctx, case_script):
        first = RecordingDispatcher(result={"ok": True})
        second = RecordingDispatcher(result={"ok": True})
        service_a = RunService(dispatcher=first, locks=RunLockRegistry())
        run = service_a.start(ctx, "case-intake")
        service_b = RunService(
            runs=StaleRunRepository(RunRepository().get_run(run.id)),
            dispatcher=second,
            locks=RunLockRegistry(),
        )

        service_a.step(run.id)
        with pytest.raises(ConcurrentModification):
            service_b.step(run.id)

        assert len(first.calls) + len(second.calls) == 1
        assert service_a.get_run(run.id).cursor == "create"

    def test_writer_stepping_mid_dispatch_does_not_repeat_action(self, ctx, case_script):
        other = RecordingDispatcher(result={"ok": True})
        service_b = RunService(dispatcher=other, locks=RunLockRegistry())

        class SteppingDispatcher(RecordingDispatcher):
            def dispatch(self, action, payload):
                super().dispatch(action, payload)
                service_b.step(payload.run_id)
                return self.result

        stepping = SteppingDispatcher(result={"ok": True})
        service_a = RunService(dispatcher=stepping, locks=RunLockRegistry())
        run = service_a.start(ctx, "case-intake")

        service_a.step(run.id)

        assert len(stepping.calls) + len(other.calls) == 1
        stored = service_a.get_run(run.id)
        assert stored.cursor == "done"
        assert stored.is_completed

    def test_failed_dispatch_after_another_write_keeps_that_write(self, ctx, case_script):
        service_b = RunService(dispatcher=RecordingDispatcher(), locks=RunLockRegistry())

        class FailingAfterStep(RecordingDispatcher):
            def dispatch(self, action, payload):
                super().dispatch(action, payload)
                service_b.step(payload.run_id)
                raise RuntimeError("case service down")

        service_a = RunService(dispatcher=FailingAfterStep(), locks=RunLockRegistry())
        run = service_a.start(ctx, "case-intake")

        with pytest.raises(DispatchFailure):
            service_a.step(run.id)

        assert service_a.get_run(run.id).cursor == "done"


class TestRunLockRegistry:
    def test_entries_are_released(self):
        locks = RunLockRegistry()
        with locks.hold("run-1"):
            with locks.hold("run-1"):
                assert len(locks) == 1
        assert len(locks) == 0
