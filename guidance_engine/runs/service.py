"""
Run state machine.

A run is RUNNING while ``completed_at`` is null and COMPLETED once an END
node is reached. ``answer`` and ``advance`` are serialized per run by an
in-process lock and guarded across processes by the run's ``revision``.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any

from guidance_engine.errors import (
    BadRequest,
    ConcurrentModification,
    DispatchFailure,
    InvalidState,
    NotFound,
)
from guidance_engine.graph.graph import ScriptGraph
from guidance_engine.graph.schemas import NodeType
from guidance_engine.graph.service import GraphService
from guidance_engine.routing.schemas import Decision
from guidance_engine.routing.service import RoutingEngine
from guidance_engine.runs.actions import ActionDispatcher, ActionInput, ActionRegistry
from guidance_engine.runs.locks import RunLockRegistry
from guidance_engine.storage.models import (
    AnswerRecord,
    NodeRecord,
    RunRecord,
    ScriptEventType,
    now_iso,
)
from guidance_engine.storage.repositories.event_repo import EventSink, ScriptEventRepository
from guidance_engine.storage.repositories.run_repo import RunRepository
from guidance_engine.storage.repositories.script_repo import ScriptRepository

logger = logging.getLogger(__name__)

RUN_TARGET = "ScriptRun"


@dataclass
class RequestContext:
    """Caller identity passed into every operation."""

    tenant_id: str | None = None
    user_id: str | None = None


@dataclass
class AdvanceResult:
    """Outcome of one advance: the persisted run and how it got there.

    ``path`` lists the node keys entered, in order; it has more than one
    entry when the step passed through CHOICE nodes.
    """

    run: RunRecord
    decisions: list[Decision] = field(default_factory=list)
    path: list[str] = field(default_factory=list)
    action: str | None = None
    action_result: Any = None

    @property
    def decision(self) -> Decision:
        return self.decisions[-1]


class RunService:
    """Starts runs, records answers and moves cursors."""

    def __init__(
        self,
        scripts: ScriptRepository | None = None,
        runs: RunRepository | None = None,
        events: EventSink | None = None,
        dispatcher: ActionDispatcher | None = None,
        graphs: GraphService | None = None,
        router: RoutingEngine | None = None,
        locks: RunLockRegistry | None = None,
    ):
        self.scripts = scripts or ScriptRepository()
        self.runs = runs or RunRepository()
        self.events = events or ScriptEventRepository()
        self.dispatcher = dispatcher or ActionRegistry()
        self.graphs = graphs or GraphService(self.scripts)
        self.router = router or RoutingEngine()
        self.locks = locks or RunLockRegistry()

    # =========================================================================
    # Operations
    # =========================================================================

    def start(
        self,
        ctx: RequestContext,
        script_key: str,
        subject_schema: str | None = None,
        subject_model: str | None = None,
        subject_id: str | None = None,
    ) -> RunRecord:
        """Start a run of the script's ACTIVE version at its entry node.

        Raises:
            NotFound: If the script or its active version is absent
            InvalidDefinition: If the version has no usable START entry
        """
        script = self.scripts.get_script_by_key(script_key, ctx.tenant_id)
        if script is None:
            raise NotFound(f"Script not found: {script_key}")

        version = self.graphs.resolve_active_version(script)
        entry = self.graphs.load_graph(version).entry_node()

        run = RunRecord(
            tenant_id=ctx.tenant_id or script.tenant_id,
            script_id=script.id,
            script_version=version.version,
            subject_schema=subject_schema,
            subject_model=subject_model,
            subject_id=subject_id,
            state={"cursor": entry.key, "answers": {}},
            started_by=ctx.user_id,
        )
        self.runs.create_run(run)

        self.events.record(
            ctx.user_id,
            ScriptEventType.RUN_START,
            RUN_TARGET,
            run.id,
            {"scriptId": script.id, "version": version.version},
        )
        logger.info("Started run %s of %s v%s", run.id, script.key, version.version)
        return run

    def answer(self, run_id: str, node_key: str, value: Any) -> AnswerRecord:
        """Record an answer for a QUESTION node.

        A repeated answer for the same node overwrites the value in the
        run state; every submission stays in the answer log.

        Raises:
            NotFound: If the run is absent
            InvalidState: If the run is completed
            BadRequest: If the node is not a QUESTION of the run's version
            ConcurrentModification: If another writer updated the run first
        """
        with self.locks.hold(run_id):
            run = self._get_running(run_id)
            graph = self._graph_for(run)

            if not graph.has_key(node_key):
                raise BadRequest("Node not in this script")
            node = graph.node_by_key(node_key)
            if node.type != NodeType.QUESTION.value:
                raise BadRequest("Only QUESTION nodes accept answers")

            run.answers[node_key] = value
            answer = AnswerRecord(run_id=run.id, node_key=node_key, value=value)
            try:
                self.runs.save_answer(run, answer)
            except ConcurrentModification:
                logger.warning("Answer for run %s lost a concurrent update", run_id)
                raise

            logger.debug("Run %s answered %s", run_id, node_key)
            return answer

    def advance(self, run_id: str) -> RunRecord:
        """Move the run's cursor one step; see ``step`` for details."""
        return self.step(run_id).run

    def step(self, run_id: str) -> AdvanceResult:
        """Route from the cursor node and persist the new position.

        A step that lands on a CHOICE node routes on through it. Entering
        an ACTION node first claims the transition with the revision
        compare-and-swap and only then dispatches, so a writer that loses
        the race never runs the action. If dispatch fails the claim is
        undone and the run is left as it was. Entering an END node
        completes the run.

        Raises:
            NotFound: If the run or a routing target is absent
            InvalidState: If the run is completed
            BadRequest: On an invalid cursor, no transition, or an ACTION
                node without ``config.action``
            DispatchFailure: If the action dispatcher fails
            ConcurrentModification: If another writer updated the run first
        """
        with self.locks.hold(run_id):
            run = self._get_running(run_id)
            graph = self._graph_for(run)

            try:
                current = graph.node_by_key(run.cursor or "")
            except NotFound as e:
                raise BadRequest(f"Invalid cursor: {run.cursor}") from e

            result = AdvanceResult(run=run)
            target = self._route(graph, current, run.answers, result)

            action = None
            if target.type == NodeType.ACTION.value:
                action = (target.config or {}).get("action")
                if not action:
                    raise BadRequest("ACTION node missing config.action")

            snapshot = copy.deepcopy(run)
            run.state["cursor"] = target.key
            if target.type == NodeType.END.value:
                run.completed_at = now_iso()

            try:
                self.runs.update_run(run)
            except ConcurrentModification:
                logger.warning("Advance of run %s lost a concurrent update", run_id)
                raise

            if action:
                try:
                    result.action_result = self._dispatch(run, action, target)
                except DispatchFailure:
                    self._undo_claim(run, snapshot)
                    raise
                result.action = action

            logger.info("Run %s moved %s -> %s", run_id, current.key, target.key)
            if run.is_completed:
                self.events.record(run.started_by, ScriptEventType.RUN_COMPLETE, RUN_TARGET, run.id)
                logger.info("Run %s completed at %s", run_id, target.key)

            return result

    def get_run(self, run_id: str) -> RunRecord:
        run = self.runs.get_run(run_id)
        if run is None:
            raise NotFound(f"Run not found: {run_id}")
        return run

    def list_answers(self, run_id: str) -> list[AnswerRecord]:
        """Full answer history of a run, oldest first."""
        self.get_run(run_id)
        return self.runs.list_answers(run_id)

    def list_runs(self, script_id: str, active_only: bool = False) -> list[RunRecord]:
        """Runs of a script across all its versions, newest first."""
        if self.scripts.get_script(script_id) is None:
            raise NotFound(f"Script not found: {script_id}")
        return self.runs.list_runs(script_id, active_only=active_only)

    # =========================================================================
    # Internals
    # =========================================================================

    def _get_running(self, run_id: str) -> RunRecord:
        run = self.get_run(run_id)
        if run.is_completed:
            logger.warning("Rejected operation on completed run %s", run_id)
            raise InvalidState("Run is completed")
        return run

    def _graph_for(self, run: RunRecord) -> ScriptGraph:
        return self.graphs.load_version_graph(run.script_id, run.script_version)

    def _route(
        self,
        graph: ScriptGraph,
        current: NodeRecord,
        answers: dict[str, Any],
        result: AdvanceResult,
    ) -> NodeRecord:
        """Follow routing from ``current`` until a non-CHOICE node is entered.

        CHOICE nodes take no input, so a step that lands on one keeps going.
        """
        node = current
        for _ in range(len(graph.nodes) + 1):
            decision = self.router.decide(graph, node, answers)
            result.decisions.append(decision)
            if decision.target is None:
                raise BadRequest("No valid transition from current node")
            node = graph.node_by_id(decision.target)
            result.path.append(node.key)
            if node.type != NodeType.CHOICE.value:
                return node
        raise BadRequest(f"CHOICE nodes route in a cycle from {current.key}")

    def _undo_claim(self, run: RunRecord, snapshot: RunRecord) -> None:
        try:
            self.runs.restore_run(run, snapshot)
        except ConcurrentModification:
            # Another writer already moved on from the claimed node
            logger.error("Run %s changed before its failed action could be undone", run.id)

    def _dispatch(self, run: RunRecord, action: str, node: NodeRecord) -> Any:
        payload = ActionInput(
            tenant_id=run.tenant_id,
            run_id=run.id,
            user_id=run.started_by,
            args=(node.config or {}).get("args") or {},
        )
        try:
            outcome = self.dispatcher.dispatch(action, payload)
        except DispatchFailure:
            logger.error("Action %s failed for run %s", action, run.id)
            raise
        except Exception as e:
            logger.error("Action %s failed for run %s: %s", action, run.id, e)
            raise DispatchFailure(action, f"Action {action} failed: {e}") from e

        logger.info("Dispatched action %s for run %s: %r", action, run.id, outcome)
        return outcome
