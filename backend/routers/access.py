"""Zugriffsprüfung: check, effektive Rechte, Masking."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from app.access_types import UserAccessContext
from app.auth import get_access_context
from app.masking import apply_masking
from app.schemas import AccessCheckReq, AccessCheckResp, MaskReq
from app.services import break_glass, engine

router = APIRouter()


@router.post("/api/access/check", response_model=AccessCheckResp)
def access_check(
    body: AccessCheckReq,
    user: UserAccessContext = Depends(get_access_context),
):
    result = engine.check_access(
        user,
        body.collection_id,
        body.operation,
        record=body.record,
        include_trace=body.include_trace,
    )
    return result.to_dict()


@router.get("/api/access/collections/{collection_id}/effective")
def access_effective(
    collection_id: str,
    record_id: Optional[str] = None,
    user: UserAccessContext = Depends(get_access_context),
):
    perms = engine.get_effective_permissions(collection_id, user).to_dict()
    # Break-Glass wird nicht eingerechnet, nur mitgeliefert
    session = break_glass.check_active_session(user, collection_id, record_id)
    perms["break_glass_session_id"] = session["session_id"] if session else None
    return perms


@router.post("/api/access/collections/{collection_id}/mask")
def access_mask(
    collection_id: str,
    body: MaskReq,
    user: UserAccessContext = Depends(get_access_context),
):
    perms = engine.get_effective_permissions(collection_id, user)
    return {"payload": apply_masking(body.payload, perms.properties)}
