"""
Access-Assets: Regeln als YAML/dict importieren (Upsert per stabilem Key).

Format:
    collections:
      - collection_id: invoices
        rules:
          - key: viewer-read
            name: Viewer dürfen lesen
            principal: {type: role, id: viewer}
            permissions: {read: true}
            conditions: {and: [{property: owner_id, operator: equals, value: "@current_user.id"}]}
            priority: 10
    fields:
      - property_id: invoices.ssn
        rules:
          - key: ssn-auditor
            principal: {type: role, id: auditor}
            permissions: {read: true, write: false}
            mask_value: "XXX-XX-XXXX"

Bestehende Regel mit gleichem Key -> Update (vollständig ersetzt), sonst Create.
Alle Schreibvorgänge laufen über RuleService (Validierung, Cache, Audit).
"""
from __future__ import annotations

from typing import Any, Optional

import yaml
from fastapi import HTTPException

from app.logging_config import get_logger
from app.rule_service import RuleService
from app.rule_store import SqlRuleStore

logger = get_logger(__name__)


def load_asset(raw: Any) -> dict[str, Any]:
    """YAML-Text oder bereits geparstes dict -> dict."""
    if isinstance(raw, (str, bytes)):
        try:
            raw = yaml.safe_load(raw)
        except yaml.YAMLError as exc:
            raise HTTPException(status_code=400, detail=f"Asset ist kein gültiges YAML: {exc}") from exc
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise HTTPException(status_code=400, detail="Asset muss ein Objekt sein")
    for section in ("collections", "fields"):
        if raw.get(section) is not None and not isinstance(raw.get(section), list):
            raise HTTPException(status_code=400, detail=f"'{section}' muss eine Liste sein")
    return raw


def _principal_data(rule: dict[str, Any]) -> dict[str, Any]:
    principal = rule.get("principal") or {"type": "everyone"}
    if not isinstance(principal, dict):
        raise HTTPException(status_code=400, detail=f"Regel '{rule.get('key')}': principal muss ein Objekt sein")
    ptype = principal.get("type") or "everyone"
    pid = principal.get("id") or principal.get(f"{ptype}_id")
    return {"principal_type": ptype, "principal_id": pid}


def _conditions(rule: dict[str, Any]) -> Any:
    conditions = rule.get("conditions")
    if conditions is not None and not isinstance(conditions, dict):
        raise HTTPException(status_code=400, detail=f"Regel '{rule.get('key')}': conditions muss ein Objekt sein")
    return conditions


def _rule_key(rule: Any) -> str:
    if not isinstance(rule, dict) or not rule.get("key"):
        raise HTTPException(status_code=400, detail="Jede Asset-Regel braucht einen 'key'")
    return str(rule["key"])


class AccessIngestService:
    def __init__(self, store: SqlRuleStore, rules: RuleService):
        self._store = store
        self._rules = rules

    def apply_access_asset(self, raw: Any, actor: Optional[str]) -> dict[str, int]:
        asset = load_asset(raw)
        summary = {"created": 0, "updated": 0}

        for entry in asset.get("collections") or []:
            collection_id = (entry or {}).get("collection_id")
            if not collection_id:
                raise HTTPException(status_code=400, detail="Collection-Eintrag ohne collection_id")
            for rule in entry.get("rules") or []:
                key = _rule_key(rule)
                perms = rule.get("permissions") or {}
                data: dict[str, Any] = {
                    "rule_key": key,
                    "name": rule.get("name") or key,
                    "description": rule.get("description"),
                    "can_read": bool(perms.get("read", False)),
                    "can_create": bool(perms.get("create", False)),
                    "can_update": bool(perms.get("update", False)),
                    "can_delete": bool(perms.get("delete", False)),
                    "condition": _conditions(rule),
                    "priority": rule.get("priority", 100),
                    "is_active": rule.get("is_active", True),
                    **_principal_data(rule),
                }
                existing = self._store.find_rule_by_key("collection", collection_id, key)
                if existing is not None:
                    self._rules.update_collection_rule(existing["rule_id"], data, actor)
                    summary["updated"] += 1
                else:
                    self._rules.create_collection_rule(collection_id, data, actor)
                    summary["created"] += 1

        for entry in asset.get("fields") or []:
            property_id = (entry or {}).get("property_id")
            if not property_id:
                raise HTTPException(status_code=400, detail="Field-Eintrag ohne property_id")
            for rule in entry.get("rules") or []:
                key = _rule_key(rule)
                perms = rule.get("permissions") or {}
                data = {
                    "rule_key": key,
                    "can_read": bool(perms.get("read", True)),
                    "can_write": bool(perms.get("write", True)),
                    "condition": _conditions(rule),
                    "mask_value": rule.get("mask_value"),
                    "priority": rule.get("priority", 100),
                    "is_active": rule.get("is_active", True),
                    **_principal_data(rule),
                }
                existing = self._store.find_rule_by_key("property", property_id, key)
                if existing is not None:
                    self._rules.update_property_rule(existing["rule_id"], data, actor)
                    summary["updated"] += 1
                else:
                    self._rules.create_property_rule(property_id, data, actor)
                    summary["created"] += 1

        logger.info("access_asset_applied", actor=actor, **summary)
        return summary

    def deactivate_access_asset(self, raw: Any, actor: Optional[str]) -> int:
        """Setzt alle Regeln des Assets (per Key) inaktiv. Returns: Anzahl."""
        asset = load_asset(raw)
        n = 0
        for entry in asset.get("collections") or []:
            collection_id = (entry or {}).get("collection_id")
            for rule in entry.get("rules") or []:
                existing = self._store.find_rule_by_key("collection", collection_id, _rule_key(rule))
                if existing is not None and existing["is_active"]:
                    self._rules.update_collection_rule(existing["rule_id"], {"is_active": False}, actor)
                    n += 1
        for entry in asset.get("fields") or []:
            property_id = (entry or {}).get("property_id")
            for rule in entry.get("rules") or []:
                existing = self._store.find_rule_by_key("property", property_id, _rule_key(rule))
                if existing is not None and existing["is_active"]:
                    self._rules.update_property_rule(existing["rule_id"], {"is_active": False}, actor)
                    n += 1
        logger.info("access_asset_deactivated", actor=actor, deactivated=n)
        return n
