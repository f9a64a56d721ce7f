"""
Zugriffsentscheidung (check_access) und effektive Rechte (get_effective_permissions).

check_access (first-match-wins):
  Regeln in Prioritätsreihenfolge; pro Regel
    (a) Principal passt nicht          -> überspringen
    (b) Operation nicht gewährt        -> überspringen
    (c) Condition + konkreter Datensatz -> auswerten, bei Fehlschlag überspringen
    (d) sonst: Zugriff gewährt, sofort zurück
  Keine Regel gewährt -> deny mit NO_MATCHING_RULE (default-deny).
  Eine gespeicherte Condition, die weder auswertbar noch als Row-Filter
  weitergebbar ist, gewährt nie (auch nicht ohne Datensatz).
  Condition ohne Datensatz (Listen/Create): Regel gewährt, die Condition geht im
  Ergebnis an den Aufrufer (Row-Filter).

get_effective_permissions:
  - Collection-Ebene: Vereinigung. Die erste gewährende Regel setzt Flag und
    Condition, spätere Regeln können nichts zurücknehmen.
  - Property-Ebene: pro Property gewinnt genau EINE Regel
    (Priorität aufsteigend, Spezifität absteigend). Ohne Regel: lesen ja,
    schreiben = nicht readonly. requires_break_glass -> beides False.
"""
from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from app.access_types import (
    NO_MATCHING_RULE,
    OPERATIONS,
    AccessCheckResult,
    CollectionRule,
    EffectivePermissions,
    PropertyAccessResult,
    PropertyDef,
    PropertyRule,
    UserAccessContext,
)
from app.audit import AuditSink, should_audit_decision
from app.conditions import evaluate_condition, is_enforceable
from app.config import AUDIT_DECISIONS, DEFAULT_MASK_VALUE
from app.logging_config import get_logger
from app.principals import matches_collection_rule, matches_property_rule, specificity
from app.rule_cache import RuleCache

logger = get_logger(__name__)

# Operationen, deren Condition an den Row-Filter weitergegeben wird
_CONDITIONED_OPERATIONS = ("read", "update", "delete")
_MASKABLE_STRATEGIES_OFF = ("none", "")


def _trace_entry(
    rule: CollectionRule,
    result: str,
    *,
    principal_match: bool = False,
    permission_check: bool = False,
    condition_check: Optional[bool] = None,
    condition_details: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "rule_id": rule.rule_id,
        "rule_name": rule.name,
        "priority": rule.priority,
        "principal_match": principal_match,
        "permission_check": permission_check,
        "condition_check": condition_check,
        "result": result,
    }
    if condition_details is not None:
        entry["condition_details"] = condition_details
    return entry


def _property_rank(rule: PropertyRule) -> tuple:
    return (rule.priority, -specificity(rule.principal), rule.created_at, rule.rule_id)


def resolve_property(definition: PropertyDef, rules: list[PropertyRule]) -> PropertyAccessResult:
    """Feldrecht für eine Property aus den bereits gefilterten Regeln."""
    top = min(rules, key=_property_rank) if rules else None

    if top is not None:
        can_read, can_write = top.can_read, top.can_write
    else:
        can_read, can_write = True, not definition.is_readonly

    if definition.requires_break_glass:
        can_read = can_write = False

    sensitive = definition.is_sensitive or definition.is_phi or definition.is_pii
    is_masked = bool(
        sensitive
        and (definition.masking_strategy or "none") not in _MASKABLE_STRATEGIES_OFF
        and can_read
    )
    mask_value = None
    if is_masked:
        mask_value = (top.mask_value if top is not None else None) or definition.mask_value or DEFAULT_MASK_VALUE

    return PropertyAccessResult(
        property_id=definition.property_id,
        code=definition.code,
        can_read=can_read,
        can_write=can_write,
        is_masked=is_masked,
        mask_value=mask_value,
        is_phi=definition.is_phi,
        requires_break_glass=definition.requires_break_glass,
        rule_id=top.rule_id if top is not None else None,
    )


class AccessDecisionEngine:
    def __init__(
        self,
        rule_cache: RuleCache,
        audit_sink: Optional[AuditSink] = None,
        *,
        audit_decisions: str = AUDIT_DECISIONS,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._rules = rule_cache
        self._audit = audit_sink
        self._audit_decisions = audit_decisions
        self._clock = clock

    def check_access(
        self,
        user: UserAccessContext,
        collection_id: str,
        operation: str,
        record: Optional[Mapping[str, Any]] = None,
        include_trace: bool = False,
    ) -> AccessCheckResult:
        rules = self._rules.get_active_rules(collection_id)
        now = self._clock()
        trace: list[dict[str, Any]] = []
        result: Optional[AccessCheckResult] = None

        for rule in rules:
            if not matches_collection_rule(rule.principal, user):
                trace.append(_trace_entry(rule, "no_principal_match"))
                continue
            if not rule.grants(operation):
                trace.append(_trace_entry(rule, "no_permission", principal_match=True))
                continue
            if not is_enforceable(rule.condition, rule.condition_raw):
                trace.append(_trace_entry(
                    rule, "condition_failed",
                    principal_match=True, permission_check=True, condition_check=False,
                    condition_details={"error": "invalid_stored_condition"},
                ))
                continue
            if rule.condition is not None and record is not None:
                passed, details = evaluate_condition(rule.condition, record, user, now)
                if not passed:
                    trace.append(_trace_entry(
                        rule, "condition_failed",
                        principal_match=True, permission_check=True,
                        condition_check=False, condition_details=details,
                    ))
                    continue
                trace.append(_trace_entry(
                    rule, "matched",
                    principal_match=True, permission_check=True,
                    condition_check=True, condition_details=details,
                ))
            else:
                trace.append(_trace_entry(rule, "matched", principal_match=True, permission_check=True))

            result = AccessCheckResult(
                allowed=True,
                matched_rule_id=rule.rule_id,
                matched_rule_name=rule.name,
                condition=rule.condition_raw,
            )
            break

        if result is None:
            result = AccessCheckResult(allowed=False, reason=NO_MATCHING_RULE)
        if include_trace:
            result.trace = trace

        logger.debug(
            "access_check",
            user_id=user.user_id, collection_id=collection_id, operation=operation,
            allowed=result.allowed, rule_id=result.matched_rule_id, rules_considered=len(trace),
        )
        self._audit_decision(user, collection_id, operation, record, result, trace if include_trace else None)
        return result

    def _audit_decision(
        self,
        user: UserAccessContext,
        collection_id: str,
        operation: str,
        record: Optional[Mapping[str, Any]],
        result: AccessCheckResult,
        trace: Optional[list[dict[str, Any]]],
    ) -> None:
        if self._audit is None or not should_audit_decision(result.allowed, self._audit_decisions):
            return
        context: dict[str, Any] = {
            "operation": operation,
            "matched_rule_id": result.matched_rule_id,
            "reason": result.reason,
        }
        if isinstance(record, Mapping) and record.get("id") is not None:
            context["record_id"] = record.get("id")
        if trace is not None:
            context["trace"] = trace
        self._audit.record(
            principal_id=user.user_id,
            resource=collection_id,
            action=f"access_check:{operation}",
            decision="allow" if result.allowed else "deny",
            context=context,
        )

    def get_effective_permissions(self, collection_id: str, user: UserAccessContext) -> EffectivePermissions:
        perms = EffectivePermissions(collection_id=collection_id)

        for rule in self._rules.get_active_rules(collection_id):
            if not matches_collection_rule(rule.principal, user):
                continue
            if not is_enforceable(rule.condition, rule.condition_raw):
                continue
            contributed = False
            for op in OPERATIONS:
                if rule.grants(op) and not getattr(perms, f"can_{op}"):
                    setattr(perms, f"can_{op}", True)
                    if op in _CONDITIONED_OPERATIONS:
                        setattr(perms, f"{op}_condition", rule.condition_raw)
                    contributed = True
            if contributed:
                perms.applied_rules.append(rule.rule_id)

        definitions = self._rules.get_property_definitions(collection_id)
        by_id = {d.property_id: d for d in definitions}
        applicable: dict[str, list[PropertyRule]] = {}
        for prule in self._rules.get_active_property_rules():
            if prule.property_id not in by_id:
                continue
            if not matches_property_rule(prule.principal, user):
                continue
            applicable.setdefault(prule.property_id, []).append(prule)

        perms.properties = [
            resolve_property(d, applicable.get(d.property_id, [])) for d in definitions
        ]
        return perms
