"""
Rule Store: Lese-/Schreibzugriff auf Regeln, Property-Definitionen, Principals.

Die Engine sieht nur die find_*-Methoden (Query-Port). CRUD-Methoden werden
von rule_service/access_ingest benutzt und geben den Zustand als dict zurück
(für API-Antworten und den Audit-Trail previous/new).

Geladene Regeln werden sofort in Domain-Typen übersetzt:
Principal aus den drei Spalten, Condition geparst (kaputt -> DENY_ALL).
"""
from __future__ import annotations

import json
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.access_types import CollectionRule, PropertyDef, PropertyRule
from app.conditions import parse_stored_condition
from app.db import SessionLocal
from app.logging_config import get_logger
from app.models import (
    AccessGroup,
    CollectionAccessRule,
    PropertyAccessRule,
    PropertyDefinition,
    Role,
    User,
)
from app.principals import principal_from_columns

logger = get_logger(__name__)

RULE_MODELS = {
    "collection": CollectionAccessRule,
    "property": PropertyAccessRule,
}


def _load_json(raw: Optional[str], *, rule_id: str = "") -> Optional[dict]:
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except ValueError:
        logger.warning("condition_json_invalid", rule_id=rule_id)
        return None
    return value if isinstance(value, dict) else None


def rule_state(row: Any) -> dict[str, Any]:
    """ORM-Zeile -> dict (condition_json wird zu condition)."""
    data = {c.name: getattr(row, c.name) for c in row.__table__.columns}
    data["condition"] = _load_json(data.pop("condition_json", None), rule_id=data.get("rule_id", ""))
    return data


def sort_key(rule: Any) -> tuple:
    """Priorität aufsteigend, dann Anlagereihenfolge."""
    return (rule.priority, rule.created_at or "", rule.rule_id)


def to_collection_rule(row: CollectionAccessRule) -> CollectionRule:
    condition, document = parse_stored_condition(row.condition_json, rule_id=row.rule_id)
    return CollectionRule(
        rule_id=row.rule_id,
        collection_id=row.collection_id,
        name=row.name,
        principal=principal_from_columns(row.role_id, row.group_id, row.user_id, rule_id=row.rule_id),
        can_read=bool(row.can_read),
        can_create=bool(row.can_create),
        can_update=bool(row.can_update),
        can_delete=bool(row.can_delete),
        condition=condition,
        condition_raw=document,
        priority=int(row.priority if row.priority is not None else 100),
        is_active=bool(row.is_active),
        created_at=row.created_at or "",
        rule_key=row.rule_key,
    )


def to_property_rule(row: PropertyAccessRule) -> PropertyRule:
    condition, document = parse_stored_condition(row.condition_json, rule_id=row.rule_id)
    return PropertyRule(
        rule_id=row.rule_id,
        property_id=row.property_id,
        principal=principal_from_columns(row.role_id, row.group_id, row.user_id, rule_id=row.rule_id),
        can_read=bool(row.can_read),
        can_write=bool(row.can_write),
        condition=condition,
        condition_raw=document,
        mask_value=row.mask_value,
        priority=int(row.priority if row.priority is not None else 100),
        is_active=bool(row.is_active),
        created_at=row.created_at or "",
        rule_key=row.rule_key,
    )


def to_property_def(row: PropertyDefinition) -> PropertyDef:
    return PropertyDef(
        property_id=row.property_id,
        collection_id=row.collection_id,
        code=row.code,
        is_readonly=bool(row.is_readonly),
        is_sensitive=bool(row.is_sensitive),
        is_phi=bool(row.is_phi),
        is_pii=bool(row.is_pii),
        requires_break_glass=bool(row.requires_break_glass),
        masking_strategy=(row.masking_strategy or "none").lower(),
        mask_value=row.mask_value,
        position=int(row.position or 0),
    )


class SqlRuleStore:
    """SQLAlchemy-Implementierung des Rule Store."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    # ── Query-Port (Engine) ─────────────────────────────────────────

    def find_active_collection_rules(self, collection_id: str) -> list[CollectionRule]:
        with self._session_factory() as db:
            rows = db.scalars(
                select(CollectionAccessRule).where(
                    CollectionAccessRule.collection_id == collection_id,
                    CollectionAccessRule.is_active.is_(True),
                )
            ).all()
            rules = [to_collection_rule(r) for r in rows]
        return sorted(rules, key=sort_key)

    def find_active_property_rules(self) -> list[PropertyRule]:
        with self._session_factory() as db:
            rows = db.scalars(
                select(PropertyAccessRule).where(PropertyAccessRule.is_active.is_(True))
            ).all()
            rules = [to_property_rule(r) for r in rows]
        return sorted(rules, key=sort_key)

    def find_property_definitions(self, collection_id: str) -> list[PropertyDef]:
        with self._session_factory() as db:
            rows = db.scalars(
                select(PropertyDefinition)
                .where(
                    PropertyDefinition.collection_id == collection_id,
                    PropertyDefinition.is_active.is_(True),
                )
                .order_by(PropertyDefinition.position.asc(), PropertyDefinition.code.asc())
            ).all()
            return [to_property_def(r) for r in rows]

    def get_property_definition(self, property_id: str) -> Optional[PropertyDef]:
        with self._session_factory() as db:
            row = db.get(PropertyDefinition, property_id)
            return to_property_def(row) if row is not None else None

    def find_principal(self, principal_type: str, principal_id: Optional[str]) -> bool:
        """True wenn der referenzierte Principal existiert."""
        if principal_type == "everyone":
            return True
        model = {"role": Role, "team": AccessGroup, "group": AccessGroup, "user": User}.get(principal_type)
        if model is None:
            raise ValueError(f"unbekannter principal type '{principal_type}'")
        if not principal_id:
            return False
        with self._session_factory() as db:
            return db.get(model, principal_id) is not None

    # ── CRUD (Administration) ───────────────────────────────────────

    def list_collection_rules(self, collection_id: str, include_inactive: bool = False) -> list[dict[str, Any]]:
        with self._session_factory() as db:
            stmt = select(CollectionAccessRule).where(CollectionAccessRule.collection_id == collection_id)
            if not include_inactive:
                stmt = stmt.where(CollectionAccessRule.is_active.is_(True))
            rows = sorted(db.scalars(stmt).all(), key=sort_key)
            return [rule_state(r) for r in rows]

    def list_property_rules(self, property_id: str, include_inactive: bool = False) -> list[dict[str, Any]]:
        with self._session_factory() as db:
            stmt = select(PropertyAccessRule).where(PropertyAccessRule.property_id == property_id)
            if not include_inactive:
                stmt = stmt.where(PropertyAccessRule.is_active.is_(True))
            rows = sorted(db.scalars(stmt).all(), key=sort_key)
            return [rule_state(r) for r in rows]

    def get_rule(self, kind: str, rule_id: str) -> Optional[dict[str, Any]]:
        with self._session_factory() as db:
            row = db.get(RULE_MODELS[kind], rule_id)
            return rule_state(row) if row is not None else None

    def find_rule_by_key(self, kind: str, scope_id: str, rule_key: str) -> Optional[dict[str, Any]]:
        """Regel per stabilem Asset-Key (scope = collection_id bzw. property_id)."""
        model = RULE_MODELS[kind]
        scope_col = model.collection_id if kind == "collection" else model.property_id
        with self._session_factory() as db:
            row = db.scalars(
                select(model).where(scope_col == scope_id, model.rule_key == rule_key)
            ).first()
            return rule_state(row) if row is not None else None

    def insert_rule(self, kind: str, values: dict[str, Any]) -> dict[str, Any]:
        with self._session_factory() as db:
            row = RULE_MODELS[kind](**values)
            db.add(row)
            db.commit()
            db.refresh(row)
            return rule_state(row)

    def update_rule(
        self, kind: str, rule_id: str, values: dict[str, Any]
    ) -> Optional[tuple[dict[str, Any], dict[str, Any]]]:
        """Returns (previous, new) oder None wenn die Regel fehlt."""
        with self._session_factory() as db:
            row = db.get(RULE_MODELS[kind], rule_id)
            if row is None:
                return None
            previous = rule_state(row)
            for key, value in values.items():
                setattr(row, key, value)
            db.commit()
            db.refresh(row)
            return previous, rule_state(row)

    def delete_rule(self, kind: str, rule_id: str) -> Optional[dict[str, Any]]:
        """Löscht hart und gibt den vorherigen Zustand zurück."""
        with self._session_factory() as db:
            row = db.get(RULE_MODELS[kind], rule_id)
            if row is None:
                return None
            previous = rule_state(row)
            db.delete(row)
            db.commit()
            return previous

    def set_priorities(
        self,
        collection_id: str,
        priorities: Iterable[tuple[str, int]],
        *,
        updated_by: Optional[str],
        updated_at: str,
    ) -> int:
        """Setzt Prioritäten; Regeln anderer Collections werden ignoriert."""
        n = 0
        with self._session_factory() as db:
            for rule_id, priority in priorities:
                row = db.get(CollectionAccessRule, rule_id)
                if row is None or row.collection_id != collection_id:
                    continue
                row.priority = int(priority)
                row.updated_by = updated_by
                row.updated_at = updated_at
                n += 1
            db.commit()
        return n
