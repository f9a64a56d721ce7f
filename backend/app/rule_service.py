"""
Regel-Administration: CRUD für Collection- und Property-Regeln.

Jede Mutation:
  1. validiert (Principal-Typ + Existenz, Condition-Struktur, referenzierte Properties)
  2. schreibt in den Rule Store
  3. invalidiert den Rule Cache SYNCHRON (vor der Rückgabe)
  4. schreibt ein Audit-Event mit previous/new

Validierungsfehler -> HTTPException (400/404), wie im restlichen Backend.
"""
from __future__ import annotations

import json
import uuid
from typing import Any, Iterable, Optional

from fastapi import HTTPException

from app.access_types import PRINCIPAL_TYPES, Principal
from app.audit import AuditSink, utc_now_iso
from app.conditions import ConditionError, condition_document, condition_properties, parse_condition
from app.logging_config import get_logger
from app.principals import principal_columns, principal_from_type
from app.rule_cache import RuleCache
from app.rule_store import SqlRuleStore

logger = get_logger(__name__)

_COLLECTION_FLAGS = ("can_read", "can_create", "can_update", "can_delete")
_PROPERTY_FLAGS = ("can_read", "can_write")
_PRINCIPAL_KEYS = ("principal_type", "principal_id", "role_id", "group_id", "user_id")


def principal_of(state: dict[str, Any]) -> dict[str, Optional[str]]:
    """Zustand -> {"type", "id"} für API-Antworten."""
    if state.get("user_id"):
        return {"type": "user", "id": state["user_id"]}
    if state.get("role_id"):
        return {"type": "role", "id": state["role_id"]}
    if state.get("group_id"):
        return {"type": "group", "id": state["group_id"]}
    return {"type": "everyone", "id": None}


def public_state(state: dict[str, Any]) -> dict[str, Any]:
    out = dict(state)
    out["principal"] = principal_of(state)
    return out


class RuleService:
    def __init__(self, store: SqlRuleStore, cache: RuleCache, audit: Optional[AuditSink] = None):
        self._store = store
        self._cache = cache
        self._audit = audit

    # ── Validierung ─────────────────────────────────────────────────

    def _resolve_principal(self, data: dict[str, Any], current: Optional[dict[str, Any]] = None) -> Principal:
        """Principal aus den Eingabedaten.

        everyone nur bei explizitem principal_type oder (bei Neuanlage) ganz
        ohne Principal-Angaben. Bei Teil-Updates mit nur principal_id bleibt
        der bisherige Typ bestehen.
        """
        ptype = data.get("principal_type")
        pid = data.get("principal_id")
        if ptype is None:
            # Legacy-Form mit Einzelspalten
            legacy = {k: data.get(k) for k in ("role_id", "group_id", "user_id") if data.get(k)}
            if len(legacy) > 1:
                raise HTTPException(
                    status_code=400,
                    detail="Höchstens einer von role_id/group_id/user_id darf gesetzt sein",
                )
            if legacy:
                col, pid = next(iter(legacy.items()))
                ptype = {"role_id": "role", "group_id": "group", "user_id": "user"}[col]
            elif current is not None:
                ptype = principal_of(current)["type"]
                if ptype == "everyone":
                    raise HTTPException(
                        status_code=400,
                        detail="principal_id ohne principal_type: die Regel gilt für everyone",
                    )
            elif pid is not None:
                raise HTTPException(status_code=400, detail="principal_id ohne principal_type")
            else:
                ptype = "everyone"

        ptype = str(ptype).strip().lower()
        if ptype not in PRINCIPAL_TYPES:
            raise HTTPException(status_code=400, detail=f"Unbekannter Principal-Typ: {ptype}")
        try:
            principal = principal_from_type(ptype, pid)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if not self._store.find_principal(ptype, pid):
            raise HTTPException(status_code=400, detail=f"Principal nicht gefunden: {ptype}/{pid}")
        return principal

    def _validate_condition(self, raw: Any, collection_id: str) -> Optional[str]:
        """Condition prüfen, Rückgabe als JSON-Text des Objekts (oder None)."""
        try:
            document = condition_document(raw)
            node = parse_condition(document)
        except ConditionError as exc:
            raise HTTPException(status_code=400, detail=f"Ungültige Condition: {exc}") from exc
        if node is None:
            return None
        known = {d.code for d in self._store.find_property_definitions(collection_id)}
        unknown = sorted(condition_properties(node) - known)
        if unknown:
            raise HTTPException(
                status_code=400,
                detail=f"Condition referenziert unbekannte Properties: {', '.join(unknown)}",
            )
        return json.dumps(document, ensure_ascii=False)

    def _emit(self, actor: Optional[str], resource: str, action: str, context: dict[str, Any]) -> None:
        if self._audit is not None:
            self._audit.record(
                principal_id=actor, resource=resource, action=action, decision="allow", context=context,
            )

    # ── Collection-Regeln ───────────────────────────────────────────

    def list_collection_rules(self, collection_id: str, include_inactive: bool = False) -> list[dict[str, Any]]:
        return [public_state(s) for s in self._store.list_collection_rules(collection_id, include_inactive)]

    def get_collection_rule(self, rule_id: str) -> dict[str, Any]:
        state = self._store.get_rule("collection", rule_id)
        if state is None:
            raise HTTPException(status_code=404, detail="Regel nicht gefunden")
        return public_state(state)

    def create_collection_rule(self, collection_id: str, data: dict[str, Any], actor: Optional[str]) -> dict[str, Any]:
        principal = self._resolve_principal(data)
        now = utc_now_iso()
        values: dict[str, Any] = {
            "rule_id": str(uuid.uuid4()),
            "collection_id": collection_id,
            "rule_key": data.get("rule_key"),
            "name": (data.get("name") or "").strip() or "Unbenannte Regel",
            "description": data.get("description"),
            "condition_json": self._validate_condition(data.get("condition"), collection_id),
            "priority": int(data["priority"]) if data.get("priority") is not None else 100,
            "is_active": bool(data.get("is_active", True)),
            "created_by": actor,
            "created_at": now,
            **principal_columns(principal),
        }
        for flag in _COLLECTION_FLAGS:
            values[flag] = bool(data.get(flag) or False)

        state = self._store.insert_rule("collection", values)
        self._cache.invalidate(collection_id)
        self._emit(actor, collection_id, "rule_create", {"rule_id": state["rule_id"], "previous": None, "new": state})
        logger.info("collection_rule_created", rule_id=state["rule_id"], collection_id=collection_id, actor=actor)
        return public_state(state)

    def update_collection_rule(self, rule_id: str, data: dict[str, Any], actor: Optional[str]) -> dict[str, Any]:
        current = self._store.get_rule("collection", rule_id)
        if current is None:
            raise HTTPException(status_code=404, detail="Regel nicht gefunden")
        collection_id = current["collection_id"]

        values: dict[str, Any] = {}
        if any(k in data for k in _PRINCIPAL_KEYS):
            values.update(principal_columns(self._resolve_principal(data, current)))
        if "condition" in data:
            values["condition_json"] = self._validate_condition(data["condition"], collection_id)
        for key in ("name", "description", "rule_key", "is_active", "priority", *_COLLECTION_FLAGS):
            if key in data and data[key] is not None:
                values[key] = data[key]
        values["updated_by"] = actor
        values["updated_at"] = utc_now_iso()

        result = self._store.update_rule("collection", rule_id, values)
        if result is None:
            raise HTTPException(status_code=404, detail="Regel nicht gefunden")
        previous, new = result
        self._cache.invalidate(collection_id)
        self._emit(actor, collection_id, "rule_update", {"rule_id": rule_id, "previous": previous, "new": new})
        logger.info("collection_rule_updated", rule_id=rule_id, collection_id=collection_id, actor=actor)
        return public_state(new)

    def delete_collection_rule(self, rule_id: str, actor: Optional[str]) -> dict[str, Any]:
        previous = self._store.delete_rule("collection", rule_id)
        if previous is None:
            raise HTTPException(status_code=404, detail="Regel nicht gefunden")
        collection_id = previous["collection_id"]
        self._cache.invalidate(collection_id)
        self._emit(actor, collection_id, "rule_delete", {"rule_id": rule_id, "previous": previous, "new": None})
        logger.info("collection_rule_deleted", rule_id=rule_id, collection_id=collection_id, actor=actor)
        return {"ok": True, "rule_id": rule_id}

    def reorder_rules(self, collection_id: str, items: Iterable[tuple[str, int]], actor: Optional[str]) -> int:
        items = list(items)
        n = self._store.set_priorities(collection_id, items, updated_by=actor, updated_at=utc_now_iso())
        if n:
            self._cache.invalidate(collection_id)
            self._emit(actor, collection_id, "rule_reorder", {
                "updated": n,
                "new": [{"rule_id": rid, "priority": p} for rid, p in items],
            })
        return n

    def invalidate_cache(self, actor: Optional[str]) -> dict[str, Any]:
        """Kompletten Rule Cache verwerfen, z.B. nach Änderungen direkt in der DB (Migration, SQL)."""
        self._cache.invalidate_all()
        self._emit(actor, "*", "rule_cache_invalidate", {})
        logger.info("rule_cache_invalidated", actor=actor)
        return {"ok": True}

    # ── Property-Regeln ─────────────────────────────────────────────

    def _property_collection(self, property_id: str) -> str:
        definition = self._store.get_property_definition(property_id)
        if definition is None:
            raise HTTPException(status_code=404, detail="Property nicht gefunden")
        return definition.collection_id

    def list_property_rules(self, property_id: str, include_inactive: bool = False) -> list[dict[str, Any]]:
        self._property_collection(property_id)
        return [public_state(s) for s in self._store.list_property_rules(property_id, include_inactive)]

    def create_property_rule(self, property_id: str, data: dict[str, Any], actor: Optional[str]) -> dict[str, Any]:
        collection_id = self._property_collection(property_id)
        principal = self._resolve_principal(data)
        values: dict[str, Any] = {
            "rule_id": str(uuid.uuid4()),
            "property_id": property_id,
            "rule_key": data.get("rule_key"),
            "condition_json": self._validate_condition(data.get("condition"), collection_id),
            "mask_value": data.get("mask_value"),
            "priority": int(data["priority"]) if data.get("priority") is not None else 100,
            "is_active": bool(data.get("is_active", True)),
            "created_by": actor,
            "created_at": utc_now_iso(),
            **principal_columns(principal),
        }
        for flag in _PROPERTY_FLAGS:
            values[flag] = bool(data.get(flag, True))

        state = self._store.insert_rule("property", values)
        self._cache.invalidate_property_rules()
        self._emit(actor, collection_id, "property_rule_create", {
            "rule_id": state["rule_id"], "property_id": property_id, "previous": None, "new": state,
        })
        logger.info("property_rule_created", rule_id=state["rule_id"], property_id=property_id, actor=actor)
        return public_state(state)

    def update_property_rule(self, rule_id: str, data: dict[str, Any], actor: Optional[str]) -> dict[str, Any]:
        current = self._store.get_rule("property", rule_id)
        if current is None:
            raise HTTPException(status_code=404, detail="Regel nicht gefunden")
        collection_id = self._property_collection(current["property_id"])

        values: dict[str, Any] = {}
        if any(k in data for k in _PRINCIPAL_KEYS):
            values.update(principal_columns(self._resolve_principal(data, current)))
        if "condition" in data:
            values["condition_json"] = self._validate_condition(data["condition"], collection_id)
        if "mask_value" in data:
            values["mask_value"] = data["mask_value"]
        for key in ("rule_key", "is_active", "priority", *_PROPERTY_FLAGS):
            if key in data and data[key] is not None:
                values[key] = data[key]
        values["updated_by"] = actor
        values["updated_at"] = utc_now_iso()

        result = self._store.update_rule("property", rule_id, values)
        if result is None:
            raise HTTPException(status_code=404, detail="Regel nicht gefunden")
        previous, new = result
        self._cache.invalidate_property_rules()
        self._emit(actor, collection_id, "property_rule_update", {
            "rule_id": rule_id, "property_id": current["property_id"], "previous": previous, "new": new,
        })
        return public_state(new)

    def delete_property_rule(self, rule_id: str, actor: Optional[str]) -> dict[str, Any]:
        previous = self._store.delete_rule("property", rule_id)
        if previous is None:
            raise HTTPException(status_code=404, detail="Regel nicht gefunden")
        self._cache.invalidate_property_rules()
        definition = self._store.get_property_definition(previous["property_id"])
        resource = definition.collection_id if definition is not None else previous["property_id"]
        self._emit(actor, resource, "property_rule_delete", {
            "rule_id": rule_id, "property_id": previous["property_id"], "previous": previous, "new": None,
        })
        return {"ok": True, "rule_id": rule_id}
