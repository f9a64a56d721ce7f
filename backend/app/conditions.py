"""
Condition-Bäume: Parser + Evaluator.

Gespeicherte Form (JSON):
  Gruppe : {"and": [...], "or": [...]}   (beide optional)
  Blatt  : {"property": "owner_id", "operator": "equals", "value": "@current_user.id"}

Geparste Form (geschlossener Summentyp):
  ConditionGroup(kind="and"|"or", children)  |  LeafCondition(property, operator, value)
  value = LiteralValue(...) | SpecialValueRef("@...")

Semantik einer Gruppe mit and UND or: erst alle and-Kinder (Abbruch beim
ersten Fehlschlag), danach mindestens ein or-Kind. Wird beim Parsen als
AND[*and_kinder, OR[*or_kinder]] abgebildet.

Fail-closed: unbekannter Operator, unbekanntes @-Token, Special Value ohne
Wert oder inkompatible Typen -> False (nie Exception).
"""
from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union

from app.access_types import UserAccessContext
from app.logging_config import get_logger

logger = get_logger(__name__)


class ConditionError(ValueError):
    """Strukturell ungültige Condition (Validierung beim Speichern)."""


@dataclass(frozen=True)
class LiteralValue:
    value: Any


@dataclass(frozen=True)
class SpecialValueRef:
    token: str


@dataclass(frozen=True)
class LeafCondition:
    property: str
    operator: str
    value: Union[LiteralValue, SpecialValueRef]


@dataclass(frozen=True)
class ConditionGroup:
    kind: str  # "and" | "or"
    children: tuple = ()


Condition = Union[LeafCondition, ConditionGroup]

# Leere OR-Gruppe ist nie erfüllt: Platzhalter für kaputte gespeicherte Conditions
DENY_ALL = ConditionGroup("or", ())


# ── Special Values ───────────────────────────────────────────────────

_SpecialFn = Callable[[UserAccessContext, datetime], Any]

SPECIAL_VALUES: dict[str, _SpecialFn] = {
    "@current_user": lambda u, now: u.user_id,
    "@current_user.id": lambda u, now: u.user_id,
    "@current_user.email": lambda u, now: u.email,
    "@current_user.roles": lambda u, now: sorted(u.role_ids),
    "@current_user.teams": lambda u, now: sorted(u.team_ids),
    "@current_user.groups": lambda u, now: sorted(u.group_ids),
    "@current_user.department": lambda u, now: u.department_id,
    "@current_user.location": lambda u, now: u.location_id,
    "@now": lambda u, now: now.isoformat(),
    "@today": lambda u, now: now.date().isoformat(),
}

_UNRESOLVED = object()


# ── Parser ───────────────────────────────────────────────────────────

def condition_document(raw: Any) -> Optional[dict]:
    """Eingabe (dict oder JSON-Text) -> Condition-Objekt, None wenn leer.

    Raises:
        ConditionError wenn kein JSON-Objekt.
    """
    if raw is None:
        return None
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise ConditionError(f"Condition ist kein gültiges JSON: {exc}") from exc
        if raw is None:
            return None
    if not isinstance(raw, Mapping):
        raise ConditionError("Condition muss ein Objekt sein")
    return dict(raw) or None


def parse_condition(raw: Any) -> Optional[Condition]:
    """JSON-Form -> Baum. None/{} bedeutet "keine Condition".

    Raises:
        ConditionError bei struktureller Ungültigkeit.
    """
    document = condition_document(raw)
    if document is None:
        return None
    return _parse_node(document)


def _parse_node(raw: Any) -> Condition:
    if not isinstance(raw, Mapping):
        raise ConditionError("Condition-Knoten muss ein Objekt sein")

    if "and" in raw or "or" in raw:
        and_raw = raw.get("and") or []
        or_raw = raw.get("or") or []
        if not isinstance(and_raw, list) or not isinstance(or_raw, list):
            raise ConditionError("'and'/'or' müssen Listen sein")
        and_children = tuple(_parse_node(c) for c in and_raw)
        or_children = tuple(_parse_node(c) for c in or_raw)
        if and_children and or_children:
            return ConditionGroup("and", and_children + (ConditionGroup("or", or_children),))
        if or_children:
            return ConditionGroup("or", or_children)
        return ConditionGroup("and", and_children)

    prop = raw.get("property")
    if not isinstance(prop, str) or not prop.strip():
        raise ConditionError("Blatt-Condition ohne 'property'")
    operator = raw.get("operator")
    if not isinstance(operator, str) or not operator:
        raise ConditionError(f"Blatt-Condition '{prop}' ohne 'operator'")

    value = raw.get("value")
    if isinstance(value, str) and value.startswith("@"):
        return LeafCondition(prop, operator, SpecialValueRef(value))
    return LeafCondition(prop, operator, LiteralValue(value))


def parse_stored_condition(raw: Optional[str], *, rule_id: str) -> tuple[Optional[Condition], Optional[dict]]:
    """condition_json aus der DB -> (Baum, Objekt für den Row-Filter).

    Kaputt oder kein JSON-Objekt -> (DENY_ALL, None). Die Engine behandelt
    solche Regeln als nicht gewährend.
    """
    if not raw:
        return None, None
    try:
        document = condition_document(raw)
        if document is None:
            return None, None
        return _parse_node(document), document
    except ConditionError as exc:
        logger.warning("stored_condition_invalid", rule_id=rule_id, error=str(exc))
        return DENY_ALL, None


def is_enforceable(condition: Optional[Condition], condition_raw: Optional[dict]) -> bool:
    """False, wenn die Condition weder auswertbar noch als Row-Filter weitergebbar ist."""
    if condition is None:
        return True
    return condition is not DENY_ALL and condition_raw is not None


def condition_properties(node: Optional[Condition]) -> set[str]:
    """Alle von Blättern referenzierten Properties (für Validierung)."""
    if node is None:
        return set()
    if isinstance(node, LeafCondition):
        return {node.property}
    props: set[str] = set()
    for child in node.children:
        props |= condition_properties(child)
    return props


# ── Vergleich ────────────────────────────────────────────────────────

def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _loose_equals(actual: Any, expected: Any) -> bool:
    if actual == expected:
        return True
    if actual is None or expected is None:
        return False
    na, nb = _as_number(actual), _as_number(expected)
    if na is not None and nb is not None:
        return na == nb
    if isinstance(actual, (str, int, float)) and isinstance(expected, (str, int, float)):
        return str(actual) == str(expected)
    return False


def _ordered(cmp: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def _op(actual: Any, expected: Any) -> bool:
        if actual is None or expected is None:
            return False
        na, nb = _as_number(actual), _as_number(expected)
        if na is not None and nb is not None:
            return cmp(na, nb)
        return cmp(actual, expected)
    return _op


def _contains(actual: Any, expected: Any) -> bool:
    if actual is None:
        return False
    if isinstance(actual, (list, tuple, set, frozenset)):
        return expected in actual
    return str(expected) in str(actual)


def _in(actual: Any, expected: Any) -> bool:
    return isinstance(expected, (list, tuple, set, frozenset)) and actual in expected


def _not_in(actual: Any, expected: Any) -> bool:
    return isinstance(expected, (list, tuple, set, frozenset)) and actual not in expected


OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "equals": _loose_equals,
    "not_equals": lambda a, b: not _loose_equals(a, b),
    "greater_than": _ordered(lambda a, b: a > b),
    "greater_than_or_equals": _ordered(lambda a, b: a >= b),
    "less_than": _ordered(lambda a, b: a < b),
    "less_than_or_equals": _ordered(lambda a, b: a <= b),
    "contains": _contains,
    "in": _in,
    "not_in": _not_in,
}


def compare_values(actual: Any, operator: str, expected: Any) -> bool:
    fn = OPERATORS.get(operator)
    if fn is None:
        logger.debug("unknown_operator", operator=operator)
        return False
    try:
        return bool(fn(actual, expected))
    except (TypeError, ValueError):
        logger.debug("incomparable_values", operator=operator)
        return False


# ── Evaluator ────────────────────────────────────────────────────────

def resolve_value(value: Union[LiteralValue, SpecialValueRef], user: UserAccessContext, now: datetime) -> Any:
    """Literal unverändert; Special Value gegen User/Zeit. Unauflösbar -> _UNRESOLVED."""
    if isinstance(value, LiteralValue):
        return value.value
    fn = SPECIAL_VALUES.get(value.token)
    if fn is None:
        logger.debug("unknown_special_value", token=value.token)
        return _UNRESOLVED
    resolved = fn(user, now)
    if resolved is None:
        return _UNRESOLVED
    return resolved


def evaluate_condition(
    node: Condition,
    record: Mapping[str, Any] | None,
    user: UserAccessContext,
    now: datetime | None = None,
) -> tuple[bool, dict[str, Any]]:
    """Rekursive Auswertung. Returns (passed, details) mit Trace pro Knoten."""
    now = now or datetime.now(timezone.utc)

    if isinstance(node, ConditionGroup):
        details: list[dict[str, Any]] = []
        if node.kind == "or":
            passed = False
            for child in node.children:
                ok, d = evaluate_condition(child, record, user, now)
                details.append(d)
                if ok:
                    passed = True
                    break
        else:
            passed = True
            for child in node.children:
                ok, d = evaluate_condition(child, record, user, now)
                details.append(d)
                if not ok:
                    passed = False
                    break
        return passed, {"group": node.kind, "passed": passed, "children": details}

    expected = resolve_value(node.value, user, now)
    actual = record.get(node.property) if isinstance(record, Mapping) else None
    if expected is _UNRESOLVED:
        return False, {
            "property": node.property,
            "operator": node.operator,
            "record_value": actual,
            "expected_value": getattr(node.value, "token", None),
            "passed": False,
            "error": "unresolved_special_value",
        }

    passed = compare_values(actual, node.operator, expected)
    return passed, {
        "property": node.property,
        "operator": node.operator,
        "record_value": actual,
        "expected_value": expected,
        "passed": passed,
    }
