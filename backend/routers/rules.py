"""Regel-Administration: Collection-/Property-Regeln, Reorder, Asset-Import."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from app.access_types import UserAccessContext
from app.auth import require_admin
from app.schemas import (
    AccessAssetReq,
    CollectionRuleCreate,
    CollectionRuleUpdate,
    PropertyRuleCreate,
    PropertyRuleUpdate,
    RuleReorderReq,
)
from app.services import ingest_service, rule_service

router = APIRouter()


# ── Collection-Regeln ────────────────────────────────────────────────

@router.get("/api/access/collections/{collection_id}/rules")
def list_collection_rules(
    collection_id: str,
    include_inactive: bool = False,
    admin: UserAccessContext = Depends(require_admin),
):
    return {"rules": rule_service.list_collection_rules(collection_id, include_inactive)}


@router.post("/api/access/collections/{collection_id}/rules")
def create_collection_rule(
    collection_id: str,
    body: CollectionRuleCreate,
    admin: UserAccessContext = Depends(require_admin),
):
    return rule_service.create_collection_rule(collection_id, body.model_dump(), admin.user_id)


@router.post("/api/access/collections/{collection_id}/rules/reorder")
def reorder_collection_rules(
    collection_id: str,
    body: RuleReorderReq,
    admin: UserAccessContext = Depends(require_admin),
):
    n = rule_service.reorder_rules(
        collection_id, [(item.rule_id, item.priority) for item in body.rules], admin.user_id
    )
    return {"updated": n}


@router.get("/api/access/rules/{rule_id}")
def get_collection_rule(rule_id: str, admin: UserAccessContext = Depends(require_admin)):
    return rule_service.get_collection_rule(rule_id)


@router.put("/api/access/rules/{rule_id}")
def update_collection_rule(
    rule_id: str,
    body: CollectionRuleUpdate,
    admin: UserAccessContext = Depends(require_admin),
):
    return rule_service.update_collection_rule(rule_id, body.model_dump(exclude_unset=True), admin.user_id)


@router.delete("/api/access/rules/{rule_id}")
def delete_collection_rule(rule_id: str, admin: UserAccessContext = Depends(require_admin)):
    return rule_service.delete_collection_rule(rule_id, admin.user_id)


# ── Property-Regeln ──────────────────────────────────────────────────

@router.get("/api/access/properties/{property_id}/rules")
def list_property_rules(
    property_id: str,
    include_inactive: bool = False,
    admin: UserAccessContext = Depends(require_admin),
):
    return {"rules": rule_service.list_property_rules(property_id, include_inactive)}


@router.post("/api/access/properties/{property_id}/rules")
def create_property_rule(
    property_id: str,
    body: PropertyRuleCreate,
    admin: UserAccessContext = Depends(require_admin),
):
    return rule_service.create_property_rule(property_id, body.model_dump(), admin.user_id)


@router.put("/api/access/property-rules/{rule_id}")
def update_property_rule(
    rule_id: str,
    body: PropertyRuleUpdate,
    admin: UserAccessContext = Depends(require_admin),
):
    return rule_service.update_property_rule(rule_id, body.model_dump(exclude_unset=True), admin.user_id)


@router.delete("/api/access/property-rules/{rule_id}")
def delete_property_rule(rule_id: str, admin: UserAccessContext = Depends(require_admin)):
    return rule_service.delete_property_rule(rule_id, admin.user_id)


@router.post("/api/access/cache/invalidate")
def invalidate_rule_cache(admin: UserAccessContext = Depends(require_admin)):
    return rule_service.invalidate_cache(admin.user_id)


# ── Asset-Import ─────────────────────────────────────────────────────

@router.post("/api/access/assets")
def apply_access_asset(body: AccessAssetReq, admin: UserAccessContext = Depends(require_admin)):
    raw = body.yaml if body.yaml is not None else body.asset
    if raw is None:
        raise HTTPException(status_code=400, detail="'yaml' oder 'asset' fehlt")
    if body.deactivate:
        return {"deactivated": ingest_service.deactivate_access_asset(raw, admin.user_id)}
    return ingest_service.apply_access_asset(raw, admin.user_id)
