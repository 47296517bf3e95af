"""
Routing engine.

Decides the next node from a given node: CHOICE nodes route through their
ChoiceConfig, every other node through its outgoing edge conditions.
Evaluation is pure and reads only the in-memory variable bag.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from guidance_engine.routing.choice import route_choice
from guidance_engine.routing.conditions import describe, evaluate, parse_condition
from guidance_engine.routing.schemas import ChoiceConfig, Decision, TraceStep
from guidance_engine.storage.models import NodeRecord

if TYPE_CHECKING:
    from guidance_engine.graph.graph import ScriptGraph

CHOICE = "CHOICE"


class RoutingEngine:
    """Evaluates routing for a node with full tracing."""

    def decide(self, graph: ScriptGraph, node: NodeRecord, variables: dict[str, Any]) -> Decision:
        """Route from ``node``.

        The decision's target is a node id, or None when nothing applies.

        Raises:
            NotFound: If a CHOICE target names no node in the graph
            InvalidDefinition: If an edge condition cannot be parsed
        """
        if node.type == CHOICE:
            return self.decide_choice(graph, node, variables)
        return self.decide_edges(graph, node, variables)

    def decide_choice(self, graph: ScriptGraph, node: NodeRecord, variables: dict[str, Any]) -> Decision:
        config = ChoiceConfig.from_raw(node.config)
        decision = route_choice(variables, config)
        if decision.target is not None:
            decision.target = graph.resolve_target(decision.target).id
        return decision

    def decide_edges(self, graph: ScriptGraph, node: NodeRecord, variables: dict[str, Any]) -> Decision:
        outgoing = graph.outgoing_edges(node.id)
        trace: list[TraceStep] = []

        for edge in outgoing:
            condition = parse_condition(edge.condition)
            result = evaluate(condition, variables)
            trace.append(
                TraceStep(
                    node=edge.id,
                    condition=describe(condition),
                    result=result,
                )
            )
            if result:
                return Decision(target=edge.target, edge_id=edge.id, trace=trace)

        # No condition held: the first edge is taken unconditionally
        if outgoing:
            first = outgoing[0]
            return Decision(target=first.target, edge_id=first.id, fallback=True, trace=trace)

        return Decision(target=None, trace=trace)
