"""Break-Glass-Endpoints: Antrag, Freigabe, Widerruf, Abschluss, Abfragen."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from app.access_types import UserAccessContext
from app.auth import get_access_context, require_reviewer
from app.config import REVIEWER_ROLES
from app.schemas import (
    BreakGlassActionReq,
    BreakGlassApproveReq,
    BreakGlassRequestReq,
    BreakGlassRevokeReq,
)
from app.services import break_glass

router = APIRouter()


def _is_reviewer(user: UserAccessContext) -> bool:
    return bool(user.role_ids & REVIEWER_ROLES)


@router.post("/api/break_glass/request")
def break_glass_request(
    body: BreakGlassRequestReq,
    request: Request,
    user: UserAccessContext = Depends(get_access_context),
):
    return break_glass.request_break_glass(
        user,
        reason_code=body.reason_code,
        justification=body.justification,
        collection_id=body.collection_id,
        record_id=body.record_id,
        duration_minutes=body.duration_minutes,
        external_reference=body.external_reference,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
    )


@router.get("/api/break_glass/reason_codes")
def break_glass_reason_codes(user: UserAccessContext = Depends(get_access_context)):
    return {"reason_codes": break_glass.reason_codes()}


@router.get("/api/break_glass/active")
def break_glass_active(user: UserAccessContext = Depends(get_access_context)):
    return {"sessions": break_glass.get_active_sessions_for_user(user.user_id)}


@router.get("/api/break_glass/pending")
def break_glass_pending(reviewer: UserAccessContext = Depends(require_reviewer)):
    return {"sessions": break_glass.get_pending_sessions()}


@router.get("/api/break_glass/history")
def break_glass_history(
    user_id: Optional[str] = None,
    collection_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    user: UserAccessContext = Depends(get_access_context),
):
    # Ohne Reviewer-Rolle nur die eigene Historie
    if not _is_reviewer(user):
        user_id = user.user_id
    return break_glass.get_session_history(
        user_id=user_id, collection_id=collection_id, status=status, limit=limit, offset=offset,
    )


@router.post("/api/break_glass/expire")
def break_glass_expire(reviewer: UserAccessContext = Depends(require_reviewer)):
    return {"expired": break_glass.expire_old_sessions()}


@router.get("/api/break_glass/{session_id}")
def break_glass_get(session_id: str, user: UserAccessContext = Depends(get_access_context)):
    session = break_glass.get_session(session_id)
    if session["user_id"] != user.user_id and not _is_reviewer(user):
        raise HTTPException(status_code=404, detail="Break-Glass-Session nicht gefunden")
    return session


@router.post("/api/break_glass/{session_id}/approve")
def break_glass_approve(
    session_id: str,
    body: BreakGlassApproveReq,
    reviewer: UserAccessContext = Depends(require_reviewer),
):
    return break_glass.approve(session_id, reviewer.user_id, body.comment)


@router.post("/api/break_glass/{session_id}/revoke")
def break_glass_revoke(
    session_id: str,
    body: BreakGlassRevokeReq,
    reviewer: UserAccessContext = Depends(require_reviewer),
):
    return break_glass.revoke(session_id, reviewer.user_id, body.reason)


@router.post("/api/break_glass/{session_id}/complete")
def break_glass_complete(session_id: str, user: UserAccessContext = Depends(get_access_context)):
    return break_glass.complete(session_id, user.user_id)


@router.post("/api/break_glass/{session_id}/actions")
def break_glass_action(
    session_id: str,
    body: BreakGlassActionReq,
    user: UserAccessContext = Depends(get_access_context),
):
    session = break_glass.get_session(session_id)
    if session["user_id"] != user.user_id:
        raise HTTPException(status_code=404, detail="Break-Glass-Session nicht gefunden")
    return {"recorded": break_glass.record_action(session_id, body.action, body.details)}
