# backend/app/models.py
from __future__ import annotations

"""
SQLAlchemy-Modelle (Datenbanktabellen) der Zugriffskontrolle.

Begriffe / Zweck:
- User/Role/AccessGroup : Principals. Rollen, Teams und Gruppen werden über
                          UserRole/GroupMember zugeordnet.
- PropertyDefinition    : Feld-Metadaten einer Collection (extern gepflegt,
                          hier nur gelesen): readonly, PHI/PII, Masking.
- CollectionAccessRule  : Zeilen-/Operationsrechte pro Collection.
- PropertyAccessRule    : Feldrechte (read/write, Maske) pro Property.
- BreakGlassSession     : Notfallzugang; wird nie gelöscht (Audit).
- AccessAuditEvent      : Audit-Log (append-only).

Hinweis:
- Zeitstempel sind ISO-8601 (UTC, Mikrosekunden) als String. Gleiches Format
  überall -> String-Vergleich entspricht zeitlicher Ordnung.
- Conditions und Kontext-Snapshots sind JSON als Text.
"""

from typing import Optional

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base


# -----------------------------------------------------------------------------
# Principals
# -----------------------------------------------------------------------------

class User(Base):
    """Interner Benutzer (Identität).

    Hinweis:
      - Authentifizierung (JWT) passiert vorgelagert. Die Engine vertraut dem
        Principal und lädt hier nur Attribute für Regeln und Conditions.
    """

    __tablename__ = "user"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)  # stable external id
    email: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    display_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    department_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    location_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[str] = mapped_column(String)  # ISO timestamp (UTC)


class Role(Base):
    """Rolle (stabiler Name, z.B. 'viewer', 'access_admin')."""

    __tablename__ = "role"

    role_id: Mapped[str] = mapped_column(String, primary_key=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class UserRole(Base):
    """Many-to-many: User -> Rollen."""

    __tablename__ = "user_role"

    user_id: Mapped[str] = mapped_column(String, ForeignKey("user.user_id"), primary_key=True)
    role_id: Mapped[str] = mapped_column(String, ForeignKey("role.role_id"), primary_key=True)

    created_at: Mapped[str] = mapped_column(String)  # ISO timestamp (UTC)
    created_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)


class AccessGroup(Base):
    """Team oder Gruppe.

    kind:
      - 'team'  : landet in UserAccessContext.team_ids
      - 'group' : landet in UserAccessContext.group_ids
    """

    __tablename__ = "access_group"

    group_id: Mapped[str] = mapped_column(String, primary_key=True)
    kind: Mapped[str] = mapped_column(String, default="team")  # "team" | "group"
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class GroupMember(Base):
    """Many-to-many: User -> Teams/Gruppen."""

    __tablename__ = "group_member"

    group_id: Mapped[str] = mapped_column(String, ForeignKey("access_group.group_id"), primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("user.user_id"), primary_key=True)
    created_at: Mapped[str] = mapped_column(String)


# -----------------------------------------------------------------------------
# Property-Metadaten (extern gepflegt, read-only für die Engine)
# -----------------------------------------------------------------------------

class PropertyDefinition(Base):
    """Feld einer Collection inkl. Sensitivitäts- und Masking-Flags."""

    __tablename__ = "property_definition"
    __table_args__ = (Index("ix_property_definition_collection", "collection_id"),)

    property_id: Mapped[str] = mapped_column(String, primary_key=True)
    collection_id: Mapped[str] = mapped_column(String)
    code: Mapped[str] = mapped_column(String)
    position: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    is_readonly: Mapped[bool] = mapped_column(Boolean, default=False)
    is_sensitive: Mapped[bool] = mapped_column(Boolean, default=False)
    is_phi: Mapped[bool] = mapped_column(Boolean, default=False)
    is_pii: Mapped[bool] = mapped_column(Boolean, default=False)
    requires_break_glass: Mapped[bool] = mapped_column(Boolean, default=False)

    # "none" | "partial" | "full"
    masking_strategy: Mapped[str] = mapped_column(String, default="none")
    mask_value: Mapped[Optional[str]] = mapped_column(String, nullable=True)


# -----------------------------------------------------------------------------
# Zugriffsregeln
# -----------------------------------------------------------------------------

class CollectionAccessRule(Base):
    """Regel auf Collection-Ebene.

    Principal: höchstens EINE der Spalten role_id / group_id / user_id ist
    gesetzt. Keine gesetzt = gilt für alle ("everyone").
    Priorität: kleiner = wird zuerst ausgewertet.
    """

    __tablename__ = "collection_access_rule"
    __table_args__ = (
        Index("ix_collection_rule_collection", "collection_id", "is_active"),
        Index("ix_collection_rule_key", "collection_id", "rule_key"),
    )

    rule_id: Mapped[str] = mapped_column(String, primary_key=True)  # UUID
    collection_id: Mapped[str] = mapped_column(String)
    rule_key: Mapped[Optional[str]] = mapped_column(String, nullable=True)  # stabil für Asset-Import

    name: Mapped[str] = mapped_column(String)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    role_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    group_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    user_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    can_read: Mapped[bool] = mapped_column(Boolean, default=False)
    can_create: Mapped[bool] = mapped_column(Boolean, default=False)
    can_update: Mapped[bool] = mapped_column(Boolean, default=False)
    can_delete: Mapped[bool] = mapped_column(Boolean, default=False)

    condition_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, default=100)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    updated_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[str] = mapped_column(String)
    updated_at: Mapped[Optional[str]] = mapped_column(String, nullable=True)


class PropertyAccessRule(Base):
    """Feldregel: read/write pro Property, optional eigene Maske."""

    __tablename__ = "property_access_rule"
    __table_args__ = (Index("ix_property_rule_property", "property_id", "is_active"),)

    rule_id: Mapped[str] = mapped_column(String, primary_key=True)  # UUID
    property_id: Mapped[str] = mapped_column(String, ForeignKey("property_definition.property_id"))
    rule_key: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    role_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    group_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    user_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    can_read: Mapped[bool] = mapped_column(Boolean, default=True)
    can_write: Mapped[bool] = mapped_column(Boolean, default=True)

    condition_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    mask_value: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, default=100)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    updated_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[str] = mapped_column(String)
    updated_at: Mapped[Optional[str]] = mapped_column(String, nullable=True)


# -----------------------------------------------------------------------------
# Break-Glass
# -----------------------------------------------------------------------------

class BreakGlassSession(Base):
    """Notfallzugang (zeitlich begrenzt, optional mit Freigabe).

    Scope:
      - collection_id NULL = alle Collections
      - record_id NULL     = alle Datensätze der Collection
    Status: pending | active | revoked | expired | completed
    """

    __tablename__ = "break_glass_session"
    __table_args__ = (
        Index("ix_break_glass_user_status", "user_id", "status"),
        Index("ix_break_glass_status_expires", "status", "expires_at"),
    )

    session_id: Mapped[str] = mapped_column(String, primary_key=True)  # UUID
    user_id: Mapped[str] = mapped_column(String)
    collection_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    record_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    reason_code: Mapped[str] = mapped_column(String)
    justification: Mapped[str] = mapped_column(Text)
    external_reference: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    status: Mapped[str] = mapped_column(String, default="active")
    started_at: Mapped[str] = mapped_column(String)
    expires_at: Mapped[str] = mapped_column(String)
    ended_at: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=60)

    approval_required: Mapped[bool] = mapped_column(Boolean, default=False)
    approved_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    approved_at: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    approval_comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    revoked_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    revocation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    ip_address: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    context_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # Rollen/Gruppen bei Antrag

    action_count: Mapped[int] = mapped_column(Integer, default=0)
    last_action_at: Mapped[Optional[str]] = mapped_column(String, nullable=True)


# -----------------------------------------------------------------------------
# Audit
# -----------------------------------------------------------------------------

class AccessAuditEvent(Base):
    """Zugriffs-/Regel-/Session-Audit (append-only, write-once)."""

    __tablename__ = "access_audit_event"
    __table_args__ = (Index("ix_access_audit_resource_ts", "resource", "ts"),)

    event_id: Mapped[str] = mapped_column(String, primary_key=True)  # UUID
    ts: Mapped[str] = mapped_column(String)  # ISO timestamp (UTC)

    principal_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    resource: Mapped[str] = mapped_column(String)  # collection_id oder "all_collections"
    action: Mapped[str] = mapped_column(String)    # e.g. "access_check:read", "break_glass_approve"
    decision: Mapped[str] = mapped_column(String)  # "allow" | "deny"
    context: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # JSON


__all__ = [
    "User",
    "Role",
    "UserRole",
    "AccessGroup",
    "GroupMember",
    "PropertyDefinition",
    "CollectionAccessRule",
    "PropertyAccessRule",
    "BreakGlassSession",
    "AccessAuditEvent",
]
