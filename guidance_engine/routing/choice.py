"""
Typed clause evaluation for CHOICE nodes.

Groups are tried in order. A group passes only when every rule passes, and
a rule passes only when every clause is true. Empty rules and empty groups
never pass.
"""

from __future__ import annotations

import math
from datetime import date, datetime, timezone
from typing import Any

from guidance_engine.routing.conditions import strict_equals, truthy
from guidance_engine.routing.schemas import (
    ChoiceConfig,
    Clause,
    ClauseType,
    Decision,
    Group,
    Rule,
    TraceStep,
)


def evaluate_clause(variables: dict[str, Any], clause: Clause) -> tuple[bool, TraceStep]:
    """Evaluate a single clause against the variable bag."""
    left = (variables or {}).get(clause.variable)
    result = _compare(left, clause)
    step = TraceStep(
        node=clause.id,
        condition=f"{clause.variable} {clause.operator} {clause.value!r} ({clause.type})",
        result=result,
        value_checked=left,
    )
    return result, step


def _compare(left: Any, clause: Clause) -> bool:
    op = clause.operator

    if clause.type == ClauseType.STRING.value:
        if not isinstance(left, str):
            return False
        cmp = "" if clause.value is None else _stringify(clause.value)
        if op == "equals":
            return left == cmp
        if op == "notEquals":
            return left != cmp
        if op == "contains":
            return cmp in left
        if op == "notContains":
            return cmp not in left
        if op == "startsWith":
            return left.startswith(cmp)
        if op == "endsWith":
            return left.endswith(cmp)
        return False

    if clause.type in (ClauseType.NUMBER.value, ClauseType.DATE.value):
        is_date = clause.type == ClauseType.DATE.value
        left_num = to_number(left, is_date)
        right_num = to_number(clause.value, is_date)
        if not (math.isfinite(left_num) and math.isfinite(right_num)):
            return False
        if op == ">":
            return left_num > right_num
        if op == ">=":
            return left_num >= right_num
        if op == "<":
            return left_num < right_num
        if op == "<=":
            return left_num <= right_num
        if op == "=":
            return left_num == right_num
        if op == "!=":
            return left_num != right_num
        return False

    if clause.type == ClauseType.BOOLEAN.value:
        if op == "isTrue":
            return truthy(left)
        if op == "isFalse":
            return not truthy(left)
        return False

    if clause.type == ClauseType.ARRAY.value:
        left_items = ensure_list(left)
        right_items = ensure_list(clause.value)
        if op == "includes":
            return all(_member(item, left_items) for item in right_items)
        if op == "notIncludes":
            return not any(_member(item, left_items) for item in right_items)
        if op == "intersects":
            return any(_member(item, right_items) for item in left_items)
        if op == "notIntersects":
            return not any(_member(item, right_items) for item in left_items)
        return False

    return False


def evaluate_rule(variables: dict[str, Any], rule: Rule) -> tuple[bool, list[TraceStep]]:
    """AND of all clauses; stops at the first false clause."""
    trace: list[TraceStep] = []
    if not rule.clauses:
        return False, trace
    for clause in rule.clauses:
        result, step = evaluate_clause(variables, clause)
        trace.append(step)
        if not result:
            return False, trace
    return True, trace


def evaluate_group(variables: dict[str, Any], group: Group) -> tuple[bool, list[TraceStep]]:
    """AND of all rules; stops at the first failing rule."""
    trace: list[TraceStep] = []
    if not group.rules:
        return False, trace
    for rule in group.rules:
        result, sub_trace = evaluate_rule(variables, rule)
        trace.extend(sub_trace)
        if not result:
            return False, trace
    return True, trace


def route_choice(variables: dict[str, Any], config: ChoiceConfig) -> Decision:
    """Pick the target for a CHOICE node.

    In the first passing group the first rule with a target wins, falling
    back to the group's first rule. With no passing group the default
    target is used. The returned target may be None.
    """
    trace: list[TraceStep] = []
    for group in config.groups:
        passed, sub_trace = evaluate_group(variables, group)
        trace.extend(sub_trace)
        if not passed:
            continue

        chosen = next((rule for rule in group.rules if rule.target), group.rules[0])
        return Decision(target=chosen.target, group_id=group.id, rule_id=chosen.id, trace=trace)

    return Decision(target=config.default_target, fallback=True, trace=trace)


# =============================================================================
# Coercion
# =============================================================================


def ensure_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value
    if isinstance(value, tuple):
        return list(value)
    if value is None:
        return []
    return [value]


def _member(item: Any, items: list[Any]) -> bool:
    """Membership without cross-type matches (``True`` is not in ``[1]``)."""
    return any(strict_equals(item, other) for other in items)


def to_number(value: Any, is_date: bool = False) -> float:
    """Coerce to a float; NaN when there is no sensible numeric reading.

    With ``is_date`` set, ISO-8601 strings and date values become epoch
    milliseconds.
    """
    if value is None:
        return math.nan
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if is_date and isinstance(value, (date, datetime)):
        return _epoch_ms(value)
    if isinstance(value, str):
        stripped = value.strip()
        if stripped == "":
            return 0.0
        try:
            return float(stripped)
        except ValueError:
            pass
        if is_date:
            try:
                return _epoch_ms(datetime.fromisoformat(stripped.replace("Z", "+00:00")))
            except ValueError:
                return math.nan
        return math.nan
    return math.nan


def _epoch_ms(value: date | datetime) -> float:
    if not isinstance(value, datetime):
        value = datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    elif value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp() * 1000


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, list):
        return ",".join("" if v is None else _stringify(v) for v in value)
    return str(value)
