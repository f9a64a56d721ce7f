"""
Principal-Matcher: passt der Principal einer Regel zum anfragenden User?

Regeln:
  - Everyone        -> immer
  - UserPrincipal   -> user.user_id == rule.user_id
  - RolePrincipal   -> rule.role_id in user.role_ids
  - TeamPrincipal   -> Collection-Regeln: nur user.team_ids
                       Property-Regeln:   user.group_ids ∪ user.team_ids

Die Asymmetrie Team/Gruppe zwischen Collection- und Property-Regeln ist
bestehendes Verhalten und wird durch Tests festgehalten.
"""
from __future__ import annotations

from typing import Optional

from app.access_types import (
    EVERYONE,
    Everyone,
    Principal,
    RolePrincipal,
    TeamPrincipal,
    UserAccessContext,
    UserPrincipal,
)
from app.logging_config import get_logger

logger = get_logger(__name__)

# Spezifität für Property-Regeln (höher gewinnt bei gleicher Priorität)
SPECIFICITY = {
    "user": 3,
    "team": 2,
    "role": 1,
    "everyone": 0,
}


def principal_from_columns(
    role_id: Optional[str],
    group_id: Optional[str],
    user_id: Optional[str],
    *,
    rule_id: str = "",
) -> Principal:
    """Baut den Principal aus den drei DB-Spalten.

    Altdaten mit mehreren gesetzten Spalten: Warnung, Vorrang user > role > group.
    """
    set_cols = [c for c in (role_id, group_id, user_id) if c]
    if len(set_cols) > 1:
        logger.warning("rule_multiple_principals", rule_id=rule_id,
                       role_id=role_id, group_id=group_id, user_id=user_id)
    if user_id:
        return UserPrincipal(user_id)
    if role_id:
        return RolePrincipal(role_id)
    if group_id:
        return TeamPrincipal(group_id)
    return EVERYONE


def principal_from_type(principal_type: Optional[str], principal_id: Optional[str]) -> Principal:
    """API-/Asset-Form {type, id} -> Principal. Unbekannter Typ -> ValueError."""
    ptype = (principal_type or "everyone").strip().lower()
    if ptype == "everyone":
        return EVERYONE
    if not principal_id:
        raise ValueError(f"principal id fehlt für Typ '{ptype}'")
    if ptype == "role":
        return RolePrincipal(principal_id)
    if ptype in ("team", "group"):
        return TeamPrincipal(principal_id)
    if ptype == "user":
        return UserPrincipal(principal_id)
    raise ValueError(f"unbekannter principal type '{principal_type}'")


def principal_columns(principal: Principal) -> dict[str, Optional[str]]:
    """Principal -> {role_id, group_id, user_id} (genau eine oder keine gesetzt)."""
    cols: dict[str, Optional[str]] = {"role_id": None, "group_id": None, "user_id": None}
    if isinstance(principal, RolePrincipal):
        cols["role_id"] = principal.role_id
    elif isinstance(principal, TeamPrincipal):
        cols["group_id"] = principal.group_id
    elif isinstance(principal, UserPrincipal):
        cols["user_id"] = principal.user_id
    return cols


def specificity(principal: Principal) -> int:
    return SPECIFICITY.get(principal.kind, 0)


def matches_collection_rule(principal: Principal, user: UserAccessContext) -> bool:
    if isinstance(principal, Everyone):
        return True
    if isinstance(principal, UserPrincipal):
        return principal.user_id == user.user_id
    if isinstance(principal, RolePrincipal):
        return principal.role_id in user.role_ids
    if isinstance(principal, TeamPrincipal):
        return principal.group_id in user.team_ids
    return False


def matches_property_rule(principal: Principal, user: UserAccessContext) -> bool:
    if isinstance(principal, TeamPrincipal):
        return principal.group_id in user.group_ids or principal.group_id in user.team_ids
    return matches_collection_rule(principal, user)
