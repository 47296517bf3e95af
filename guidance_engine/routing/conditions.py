"""
Edge condition AST.

Stored edge conditions use a JSON-logic shape such as
``{"==": [{"var": "answers.age"}, 18]}``. They are parsed once into a closed
set of node classes and evaluated against the run's answer bag.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from guidance_engine.errors import InvalidDefinition


# =============================================================================
# AST Nodes
# =============================================================================


@dataclass(frozen=True)
class Var:
    """Dotted lookup into the variable bag."""

    path: str


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Equals:
    lhs: Condition
    rhs: Condition


@dataclass(frozen=True)
class NotEquals:
    lhs: Condition
    rhs: Condition


@dataclass(frozen=True)
class And:
    args: tuple[Condition, ...]


@dataclass(frozen=True)
class Or:
    args: tuple[Condition, ...]


@dataclass(frozen=True)
class Not:
    arg: Condition


Condition = Var | Literal | Equals | NotEquals | And | Or | Not


# =============================================================================
# Parsing
# =============================================================================


def parse_condition(raw: Any) -> Condition | None:
    """Parse a stored JSON-logic condition.

    None and empty dicts mean "always true" and parse to None.

    Raises:
        InvalidDefinition: If the condition uses an unsupported operator
            or a malformed operand list
    """
    if raw is None or raw == {}:
        return None
    return _parse(raw)


def _parse(raw: Any) -> Condition:
    if not isinstance(raw, dict):
        if isinstance(raw, list):
            raise InvalidDefinition(f"Unexpected list in condition: {raw!r}")
        return Literal(raw)

    if len(raw) != 1:
        raise InvalidDefinition(f"Condition must have exactly one operator: {raw!r}")

    op, operands = next(iter(raw.items()))

    if op == "var":
        if isinstance(operands, list):
            operands = operands[0] if operands else ""
        return Var(str(operands))

    args = operands if isinstance(operands, list) else [operands]

    if op in ("==", "==="):
        lhs, rhs = _binary(op, args)
        return Equals(lhs, rhs)
    if op in ("!=", "!=="):
        lhs, rhs = _binary(op, args)
        return NotEquals(lhs, rhs)
    if op == "and":
        return And(tuple(_parse(a) for a in args))
    if op == "or":
        return Or(tuple(_parse(a) for a in args))
    if op == "!":
        if len(args) != 1:
            raise InvalidDefinition(f"'!' takes one operand, got {len(args)}")
        return Not(_parse(args[0]))

    raise InvalidDefinition(f"Unsupported condition operator: {op}")


def _binary(op: str, args: list[Any]) -> tuple[Condition, Condition]:
    if len(args) != 2:
        raise InvalidDefinition(f"'{op}' takes two operands, got {len(args)}")
    return _parse(args[0]), _parse(args[1])


# =============================================================================
# Evaluation
# =============================================================================


def evaluate(cond: Condition | None, variables: dict[str, Any]) -> bool:
    """Evaluate a parsed condition to a boolean. None is always true."""
    if cond is None:
        return True
    return truthy(_value(cond, variables))


def _value(cond: Condition, variables: dict[str, Any]) -> Any:
    if isinstance(cond, Var):
        return resolve_var(cond.path, variables)
    if isinstance(cond, Literal):
        return cond.value
    if isinstance(cond, Equals):
        return strict_equals(_value(cond.lhs, variables), _value(cond.rhs, variables))
    if isinstance(cond, NotEquals):
        return not strict_equals(_value(cond.lhs, variables), _value(cond.rhs, variables))
    if isinstance(cond, And):
        return all(truthy(_value(a, variables)) for a in cond.args)
    if isinstance(cond, Or):
        return any(truthy(_value(a, variables)) for a in cond.args)
    if isinstance(cond, Not):
        return not truthy(_value(cond.arg, variables))
    raise TypeError(f"Unknown condition node: {type(cond).__name__}")


def resolve_var(path: str, variables: dict[str, Any]) -> Any:
    """Walk a dotted path through the variable bag.

    A leading ``answers.`` segment is dropped so conditions written against
    an ``{answers: ...}`` context resolve against the bare bag.
    """
    parts = path.split(".") if path else []
    if parts and parts[0] == "answers" and "answers" not in variables:
        parts = parts[1:]

    current: Any = variables
    for part in parts:
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
    return current


def strict_equals(left: Any, right: Any) -> bool:
    """Equality without cross-type coercion (``True`` never equals ``1``)."""
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    if isinstance(left, str) != isinstance(right, str):
        return False
    return left == right


def truthy(value: Any) -> bool:
    """Truthiness where only None, False, 0, NaN and "" are false."""
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)):
        return value != 0 and not math.isnan(value)
    if isinstance(value, str):
        return value != ""
    return True


def describe(cond: Condition | None) -> str:
    """Render a condition for decision traces."""
    if cond is None:
        return "always"
    if isinstance(cond, Var):
        return cond.path
    if isinstance(cond, Literal):
        return repr(cond.value)
    if isinstance(cond, Equals):
        return f"{describe(cond.lhs)} == {describe(cond.rhs)}"
    if isinstance(cond, NotEquals):
        return f"{describe(cond.lhs)} != {describe(cond.rhs)}"
    if isinstance(cond, And):
        return "(" + " and ".join(describe(a) for a in cond.args) + ")"
    if isinstance(cond, Or):
        return "(" + " or ".join(describe(a) for a in cond.args) + ")"
    if isinstance(cond, Not):
        return f"not {describe(cond.arg)}"
    raise TypeError(f"Unknown condition node: {type(cond).__name__}")
