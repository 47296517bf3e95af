"""Rule evaluation: edge conditions and typed CHOICE clauses."""

from guidance_engine.routing.choice import evaluate_clause, evaluate_group, evaluate_rule, route_choice
from guidance_engine.routing.conditions import (
    And,
    Equals,
    Literal,
    Not,
    NotEquals,
    Or,
    Var,
    evaluate,
    parse_condition,
)
from guidance_engine.routing.schemas import (
    ChoiceConfig,
    Clause,
    ClauseType,
    Decision,
    Group,
    Rule,
    TraceStep,
)
from guidance_engine.routing.service import RoutingEngine

__all__ = [
    # Engine
    "RoutingEngine",
    "route_choice",
    "evaluate_clause",
    "evaluate_rule",
    "evaluate_group",
    # Conditions
    "parse_condition",
    "evaluate",
    "Var",
    "Literal",
    "Equals",
    "NotEquals",
    "And",
    "Or",
    "Not",
    # Models
    "ChoiceConfig",
    "Group",
    "Rule",
    "Clause",
    "ClauseType",
    "Decision",
    "TraceStep",
]
