"""
Domain-Typen der Zugriffskontrolle (ohne DB-/HTTP-Abhängigkeit).

- UserAccessContext : vertrauenswürdiger Principal pro Request (immutable)
- Principal         : Everyone | RolePrincipal | TeamPrincipal | UserPrincipal,
                      einmal beim Laden einer Regel gebildet
- CollectionRule / PropertyRule / PropertyDef : geladene, geparste Regeln
- AccessCheckResult / EffectivePermissions / PropertyAccessResult : Ergebnisse
- BreakGlassStatus  : Zustände einer Break-Glass-Session
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Literal, Optional, Union

Operation = Literal["read", "create", "update", "delete"]
OPERATIONS: tuple[str, ...] = ("read", "create", "update", "delete")

PRINCIPAL_TYPES: tuple[str, ...] = ("everyone", "role", "team", "group", "user")

NO_MATCHING_RULE = "NO_MATCHING_RULE"


class BreakGlassStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"
    COMPLETED = "completed"


@dataclass(frozen=True)
class UserAccessContext:
    user_id: str
    email: Optional[str] = None
    role_ids: frozenset[str] = frozenset()
    team_ids: frozenset[str] = frozenset()
    group_ids: frozenset[str] = frozenset()
    department_id: Optional[str] = None
    location_id: Optional[str] = None

    def snapshot(self) -> dict[str, list[str]]:
        """Rollen/Gruppen zum Zeitpunkt eines Break-Glass-Antrags."""
        return {
            "roles": sorted(self.role_ids),
            "teams": sorted(self.team_ids),
            "groups": sorted(self.group_ids),
        }


# ── Principal (tagged union) ─────────────────────────────────────────

@dataclass(frozen=True)
class Everyone:
    kind: str = "everyone"


@dataclass(frozen=True)
class RolePrincipal:
    role_id: str
    kind: str = "role"


@dataclass(frozen=True)
class TeamPrincipal:
    """Team- oder Gruppen-Principal (Spalte group_id)."""
    group_id: str
    kind: str = "team"


@dataclass(frozen=True)
class UserPrincipal:
    user_id: str
    kind: str = "user"


Principal = Union[Everyone, RolePrincipal, TeamPrincipal, UserPrincipal]
EVERYONE = Everyone()


# ── Geladene Regeln ──────────────────────────────────────────────────

@dataclass(frozen=True)
class CollectionRule:
    rule_id: str
    collection_id: str
    name: str
    principal: Principal
    can_read: bool = False
    can_create: bool = False
    can_update: bool = False
    can_delete: bool = False
    condition: Any = None          # geparster Baum (app.conditions) oder None
    condition_raw: Optional[dict] = None
    priority: int = 100
    is_active: bool = True
    created_at: str = ""
    rule_key: Optional[str] = None

    def grants(self, operation: str) -> bool:
        return bool(getattr(self, f"can_{operation}", False))


@dataclass(frozen=True)
class PropertyRule:
    rule_id: str
    property_id: str
    principal: Principal
    can_read: bool = True
    can_write: bool = True
    condition: Any = None
    condition_raw: Optional[dict] = None
    mask_value: Optional[str] = None
    priority: int = 100
    is_active: bool = True
    created_at: str = ""
    rule_key: Optional[str] = None


@dataclass(frozen=True)
class PropertyDef:
    property_id: str
    collection_id: str
    code: str
    is_readonly: bool = False
    is_sensitive: bool = False
    is_phi: bool = False
    is_pii: bool = False
    requires_break_glass: bool = False
    masking_strategy: str = "none"
    mask_value: Optional[str] = None
    position: int = 0


# ── Ergebnisse ───────────────────────────────────────────────────────

@dataclass
class AccessCheckResult:
    allowed: bool
    matched_rule_id: Optional[str] = None
    matched_rule_name: Optional[str] = None
    condition: Optional[dict] = None
    reason: Optional[str] = None
    trace: Optional[list[dict[str, Any]]] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PropertyAccessResult:
    property_id: str
    code: str
    can_read: bool
    can_write: bool
    is_masked: bool
    mask_value: Optional[str]
    is_phi: bool
    requires_break_glass: bool
    rule_id: Optional[str] = None


@dataclass
class EffectivePermissions:
    collection_id: str
    can_read: bool = False
    can_create: bool = False
    can_update: bool = False
    can_delete: bool = False
    read_condition: Optional[dict] = None
    update_condition: Optional[dict] = None
    delete_condition: Optional[dict] = None
    applied_rules: list[str] = field(default_factory=list)
    properties: list[PropertyAccessResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
