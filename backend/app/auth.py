"""
backend/app/auth.py

Trusted-Principal-Auflösung.

Die Authentifizierung (JWT/SSO) passiert vorgelagert im Gateway. Dieses setzt
X-User-Id; das Backend lädt daraus Rollen, Teams, Gruppen, Abteilung und
Standort und baut den UserAccessContext (einmal pro Request, immutable).

SICHERHEITSREGEL:
  Unbekannte oder deaktivierte User-IDs werden mit 403 abgewiesen.
  Niemals auto-erstellt.
"""

from __future__ import annotations

from typing import Callable

from fastapi import Depends, Header, HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.access_types import UserAccessContext
from app.config import ADMIN_ROLES, REVIEWER_ROLES
from app.db import SessionLocal
from app.models import AccessGroup, GroupMember, User, UserRole


def load_access_context(db: Session, user_id: str) -> UserAccessContext:
    """User + Zuordnungen aus der DB. 403 wenn unbekannt/deaktiviert."""
    u = db.get(User, user_id)
    if u is None:
        raise HTTPException(status_code=403, detail="Unbekannter User")
    if not u.is_active:
        raise HTTPException(status_code=403, detail="User deaktiviert")

    roles = frozenset(db.scalars(select(UserRole.role_id).where(UserRole.user_id == user_id)).all())
    memberships = db.execute(
        select(AccessGroup.group_id, AccessGroup.kind)
        .join(GroupMember, GroupMember.group_id == AccessGroup.group_id)
        .where(GroupMember.user_id == user_id)
    ).all()
    teams = frozenset(gid for gid, kind in memberships if (kind or "team") == "team")
    groups = frozenset(gid for gid, kind in memberships if kind == "group")

    return UserAccessContext(
        user_id=u.user_id,
        email=u.email,
        role_ids=roles,
        team_ids=teams,
        group_ids=groups,
        department_id=u.department_id,
        location_id=u.location_id,
    )


def get_access_context(
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
) -> UserAccessContext:
    """FastAPI-Dependency: X-User-Id -> UserAccessContext."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Nicht authentifiziert (X-User-Id fehlt)")
    with SessionLocal() as db:
        return load_access_context(db, user_id)


def require_role(allowed: frozenset[str] | set[str]) -> Callable[[UserAccessContext], UserAccessContext]:
    """Dependency-Factory: mindestens eine der Rollen nötig, sonst 403."""

    def _dep(user: UserAccessContext = Depends(get_access_context)) -> UserAccessContext:
        if not (user.role_ids & frozenset(allowed)):
            raise HTTPException(status_code=403, detail=f"Fehlende Rolle (eine von: {', '.join(sorted(allowed))})")
        return user

    return _dep


require_admin = require_role(ADMIN_ROLES)
require_reviewer = require_role(REVIEWER_ROLES)
