"""Pydantic models for CHOICE routing configuration and routing decisions."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from guidance_engine.errors import InvalidDefinition
from guidance_engine.storage.models import generate_uuid


# =============================================================================
# Clause Types and Operators
# =============================================================================


class ClauseType(str, Enum):
    """Value types a clause can compare."""

    STRING = "string"
    NUMBER = "number"
    DATE = "date"
    ARRAY = "array"
    BOOLEAN = "boolean"


STRING_OPERATORS = ("equals", "notEquals", "contains", "notContains", "startsWith", "endsWith")
NUMERIC_OPERATORS = (">", ">=", "<", "<=", "=", "!=")
BOOLEAN_OPERATORS = ("isTrue", "isFalse")
ARRAY_OPERATORS = ("includes", "notIncludes", "intersects", "notIntersects")


# =============================================================================
# Choice Configuration
# =============================================================================


class Clause(BaseModel):
    """A single typed comparison between a variable and a literal or set."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=generate_uuid)
    variable: str = Field("", description="Name to look up in the variable bag")
    type: str = Field(ClauseType.STRING.value, description="string, number, date, array or boolean")
    operator: str = Field("equals", description="Operator valid for the clause type")
    value: Any = None


class Rule(BaseModel):
    """AND-combination of clauses, optionally carrying a target node."""

    id: str = Field(default_factory=generate_uuid)
    name: str | None = None
    target: str | None = Field(None, description="Target node id or key")
    clauses: list[Clause] = Field(default_factory=list)


class Group(BaseModel):
    """AND-combination of rules evaluated for a CHOICE node."""

    id: str = Field(default_factory=generate_uuid)
    title: str | None = None
    rules: list[Rule] = Field(default_factory=list)


class ChoiceConfig(BaseModel):
    """Ordered groups plus the target used when no group passes."""

    model_config = ConfigDict(populate_by_name=True)

    description: str | None = None
    groups: list[Group] = Field(default_factory=list)
    default_target: str | None = Field(None, alias="defaultTarget")

    @classmethod
    def from_raw(cls, data: Any) -> ChoiceConfig:
        """Build a config from stored node config, accepting older shapes.

        Handles the current wire shape, the ``defaultTargetNodeId`` alias,
        and the legacy shape where rules sit at the root and hold nested
        clause groups written with ``var``/``varType``/``op`` keys.

        Raises:
            InvalidDefinition: If a group, rule or clause has fields of the
                wrong type
        """
        try:
            return cls._build(data)
        except ValidationError as e:
            error = e.errors()[0]
            location = ".".join(str(part) for part in error["loc"])
            raise InvalidDefinition(f"Invalid CHOICE config at {location or 'root'}: {error['msg']}") from e

    @classmethod
    def _build(cls, data: Any) -> ChoiceConfig:
        if not isinstance(data, dict):
            return cls()

        default_target = _default_target(data)

        if isinstance(data.get("groups"), list):
            groups = []
            for g_idx, group in enumerate(data["groups"]):
                group = group if isinstance(group, dict) else {}
                rules = []
                for r_idx, rule in enumerate(_items(group.get("rules"))):
                    rule = rule if isinstance(rule, dict) else {}
                    rules.append(
                        Rule(
                            id=rule.get("id") or generate_uuid(),
                            name=rule.get("name") or f"Rule {r_idx + 1}",
                            target=rule.get("target"),
                            clauses=[Clause.model_validate(c) for c in _items(rule.get("clauses")) if isinstance(c, dict)],
                        )
                    )
                groups.append(
                    Group(
                        id=group.get("id") or generate_uuid(),
                        title=group.get("title") or f"Group {g_idx + 1}",
                        rules=rules,
                    )
                )
            return cls(description=data.get("description"), groups=groups, default_target=default_target)

        if isinstance(data.get("rules"), list):
            rules = []
            for idx, legacy in enumerate(data["rules"]):
                legacy = legacy if isinstance(legacy, dict) else {}
                clauses = []
                for legacy_group in _items(legacy.get("groups")):
                    if not isinstance(legacy_group, dict):
                        continue
                    for c in _items(legacy_group.get("clauses")):
                        if not isinstance(c, dict):
                            continue
                        clause_type = legacy_clause_type(c.get("varType"))
                        clauses.append(
                            Clause(
                                variable=c.get("var") or "",
                                type=clause_type,
                                operator=legacy_operator(c.get("op"), clause_type),
                                value=_normalize_value(c.get("value"), clause_type),
                            )
                        )
                rules.append(
                    Rule(
                        id=legacy.get("id") or generate_uuid(),
                        name=legacy.get("label") or f"Rule {idx + 1}",
                        target=legacy.get("target"),
                        clauses=clauses,
                    )
                )
            group = Group(title=data.get("title") or "Group 1", rules=rules)
            return cls(description=data.get("description"), groups=[group], default_target=default_target)

        return cls(description=data.get("description"), default_target=default_target)

    def targets(self) -> list[str]:
        """Every node reference named by the config."""
        refs = [rule.target for group in self.groups for rule in group.rules if rule.target]
        if self.default_target:
            refs.append(self.default_target)
        return refs


def _items(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _default_target(data: dict[str, Any]) -> str | None:
    for key in ("defaultTarget", "default_target", "defaultTargetNodeId"):
        value = data.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def legacy_clause_type(legacy: Any) -> str:
    """Map a legacy ``varType`` onto a clause type."""
    if legacy in ("number", "date", "boolean"):
        return legacy
    if legacy in ("singleSelect", "multiSelect", "string[]", "number[]"):
        return ClauseType.ARRAY.value
    return ClauseType.STRING.value


def legacy_operator(op: Any, clause_type: str) -> str:
    """Map a legacy ``op`` onto an operator valid for ``clause_type``."""
    if clause_type == ClauseType.STRING.value:
        if op == "neq":
            return "notEquals"
        if op in ("contains", "notContains", "startsWith", "endsWith"):
            return op
        return "equals"
    if clause_type in (ClauseType.NUMBER.value, ClauseType.DATE.value):
        return {"gt": ">", "gte": ">=", "lt": "<", "lte": "<=", "neq": "!="}.get(op, "=")
    if clause_type == ClauseType.ARRAY.value:
        if op in ("notIn", "excludesAll"):
            return "notIncludes"
        if op == "includesAny":
            return "intersects"
        if op == "notIntersects":
            return "notIntersects"
        return "includes"
    if clause_type == ClauseType.BOOLEAN.value:
        return "isFalse" if op == "neq" else "isTrue"
    return "equals"


def _normalize_value(value: Any, clause_type: str) -> Any:
    if clause_type != ClauseType.ARRAY.value:
        return value
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return [value] if value is not None else []


# =============================================================================
# Decisions
# =============================================================================


class TraceStep(BaseModel):
    """A single evaluated clause or edge condition."""

    node: str
    condition: str
    result: bool
    value_checked: Any = None


class Decision(BaseModel):
    """Outcome of routing from one node.

    ``target`` is a node reference (id for edges, id or key for choices)
    and is None when no transition applies.
    """

    target: str | None = None
    group_id: str | None = None
    rule_id: str | None = None
    edge_id: str | None = None
    fallback: bool = Field(False, description="Taken because nothing matched")
    trace: list[TraceStep] = Field(default_factory=list)
