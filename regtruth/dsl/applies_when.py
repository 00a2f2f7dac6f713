"""
Applies-when predicates.

A deliberately small JSON predicate form describing when a rule applies.
Predicates are validated with pydantic discriminated unions on ``op``:

    {"op": "and", "args": [...]}          {"op": "or", "args": [...]}
    {"op": "not", "arg": {...}}
    {"op": "cmp", "field": "entity.revenue", "cmp": "gte", "value": 40000}
    {"op": "in", "field": "entity.type", "values": ["DOO", "JDOO"]}
    {"op": "exists", "field": "entity.vat_id"}
    {"op": "between", "field": "entity.employees", "gte": 1, "lte": 49}
    {"op": "matches", "field": "entity.nkd", "pattern": "^47"}
    {"op": "date_in_effect", "dateField": "entity.registered_on", "on": "2025-01-01"}
    {"op": "true"}                        {"op": "false"}

References to other rules are carried as ``concept_ref``, ``rule_ref`` and
``depends_on`` keys anywhere in the document and are read by
``extract_references`` to build DEPENDS_ON edges.
"""

from __future__ import annotations

import json
import re
from datetime import date, datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

MAX_PATTERN_LENGTH = 100

_MISSING = object()


class _Node(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class AndPredicate(_Node):
    op: Literal["and"]
    args: list[Predicate]


class OrPredicate(_Node):
    op: Literal["or"]
    args: list[Predicate]


class NotPredicate(_Node):
    op: Literal["not"]
    arg: Predicate


class CmpPredicate(_Node):
    op: Literal["cmp"]
    field: str
    cmp: Literal["eq", "neq", "gt", "gte", "lt", "lte"]
    value: Any


class InPredicate(_Node):
    op: Literal["in"]
    field: str
    values: list[Any]


class ExistsPredicate(_Node):
    op: Literal["exists"]
    field: str


class BetweenPredicate(_Node):
    op: Literal["between"]
    field: str
    gte: Any = None
    lte: Any = None


class MatchesPredicate(_Node):
    op: Literal["matches"]
    field: str
    pattern: str

    @field_validator("pattern")
    @classmethod
    def _bounded_pattern(cls, value: str) -> str:
        if len(value) > MAX_PATTERN_LENGTH:
            raise ValueError(f"pattern longer than {MAX_PATTERN_LENGTH} characters")
        try:
            re.compile(value)
        except re.error as e:
            raise ValueError(f"invalid pattern: {e}") from e
        return value


class DateInEffectPredicate(_Node):
    op: Literal["date_in_effect"]
    date_field: str = Field(alias="dateField")
    on: str | None = None


class TruePredicate(_Node):
    op: Literal["true"]


class FalsePredicate(_Node):
    op: Literal["false"]


Predicate = Annotated[
    Union[
        AndPredicate,
        OrPredicate,
        NotPredicate,
        CmpPredicate,
        InPredicate,
        ExistsPredicate,
        BetweenPredicate,
        MatchesPredicate,
        DateInEffectPredicate,
        TruePredicate,
        FalsePredicate,
    ],
    Field(discriminator="op"),
]

for _model in (AndPredicate, OrPredicate, NotPredicate):
    _model.model_rebuild()

_PREDICATE_ADAPTER: TypeAdapter[Predicate] = TypeAdapter(Predicate)


class Reference(BaseModel):
    """A reference from one rule's predicate to another concept or rule."""
    kind: Literal["concept", "rule"]
    target: str


# =============================================================================
# Parsing
# =============================================================================


def parse_applies_when(raw: str | dict[str, Any]) -> Predicate:
    """Parse and validate a predicate.

    Raises:
        ValueError: On invalid JSON or an invalid predicate
    """
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"applies_when is not valid JSON: {e}") from e
    try:
        return _PREDICATE_ADAPTER.validate_python(raw)
    except ValidationError as e:
        raise ValueError(f"Invalid applies_when predicate: {e}") from e


def validate_applies_when(raw: str | dict[str, Any]) -> list[str]:
    """Return a list of validation errors (empty when valid)."""
    try:
        parse_applies_when(raw)
    except ValueError as e:
        return [str(e)]
    return []


# =============================================================================
# Evaluation
# =============================================================================


def get_field_value(context: dict[str, Any], path: str) -> Any:
    """Resolve a dot path against nested dicts; missing yields a sentinel."""
    current: Any = context
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def _compare(op: str, left: Any, right: Any) -> bool:
    try:
        if op == "eq":
            return left == right
        if op == "neq":
            return left != right
        if op == "gt":
            return left > right
        if op == "gte":
            return left >= right
        if op == "lt":
            return left < right
        if op == "lte":
            return left <= right
    except TypeError:
        return False
    return False


def _to_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
        except ValueError:
            return None
    return None


def evaluate_applies_when(predicate: Predicate | str | dict[str, Any], context: dict[str, Any]) -> bool:
    """Evaluate a predicate against a context.

    Comparisons against a missing field are false. ``date_in_effect``
    compares the field date with ``on`` or, failing that, ``context["as_of"]``.
    """
    if not isinstance(predicate, BaseModel):
        predicate = parse_applies_when(predicate)

    if isinstance(predicate, TruePredicate):
        return True
    if isinstance(predicate, FalsePredicate):
        return False
    if isinstance(predicate, AndPredicate):
        return all(evaluate_applies_when(arg, context) for arg in predicate.args)
    if isinstance(predicate, OrPredicate):
        return any(evaluate_applies_when(arg, context) for arg in predicate.args)
    if isinstance(predicate, NotPredicate):
        return not evaluate_applies_when(predicate.arg, context)

    if isinstance(predicate, DateInEffectPredicate):
        field_date = _to_date(get_field_value(context, predicate.date_field))
        check_date = _to_date(predicate.on or context.get("as_of"))
        if field_date is None or check_date is None:
            return False
        return field_date <= check_date

    value = get_field_value(context, predicate.field)
    if isinstance(predicate, ExistsPredicate):
        return value is not _MISSING and value is not None
    if value is _MISSING:
        return False

    if isinstance(predicate, CmpPredicate):
        return _compare(predicate.cmp, value, predicate.value)
    if isinstance(predicate, InPredicate):
        return value in predicate.values
    if isinstance(predicate, BetweenPredicate):
        if predicate.gte is not None and not _compare("gte", value, predicate.gte):
            return False
        if predicate.lte is not None and not _compare("lte", value, predicate.lte):
            return False
        return True
    if isinstance(predicate, MatchesPredicate):
        return re.search(predicate.pattern, str(value)) is not None
    return False


# =============================================================================
# Reference extraction
# =============================================================================


def extract_references(raw: str | dict[str, Any] | None) -> list[Reference]:
    """Collect concept and rule references from an applies-when document.

    Unparseable text yields no references; there is no heuristic fallback.
    """
    if raw is None:
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return []

    found: list[Reference] = []
    seen: set[tuple[str, str]] = set()

    def add(kind: str, target: Any) -> None:
        if isinstance(target, str) and target and (kind, target) not in seen:
            seen.add((kind, target))
            found.append(Reference(kind=kind, target=target))

    def walk(node: Any) -> None:
        if isinstance(node, dict):
            for key, value in node.items():
                if key == "concept_ref":
                    add("concept", value)
                elif key == "rule_ref":
                    add("rule", value)
                elif key == "depends_on":
                    for target in value if isinstance(value, list) else [value]:
                        add("concept", target)
                else:
                    walk(value)
        elif isinstance(node, list):
            for item in node:
                walk(item)

    walk(raw)
    return found
