"""Initial schema - Zugriffskontrolle und Break-Glass

Revision ID: 001_access_schema
Revises: None
Create Date: 2026-10-19

Erstellt die komplette Datenbankstruktur als Baseline.
Bestehende Datenbanken, die via create_all() angelegt wurden,
werden als "bereits migriert" markiert (alembic stamp head).
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001_access_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Principals
    op.create_table(
        "user",
        sa.Column("user_id", sa.String(), primary_key=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("department_id", sa.String(), nullable=True),
        sa.Column("location_id", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.String(), nullable=False),
    )
    op.create_table(
        "role",
        sa.Column("role_id", sa.String(), primary_key=True),
        sa.Column("description", sa.Text(), nullable=True),
    )
    op.create_table(
        "user_role",
        sa.Column("user_id", sa.String(), sa.ForeignKey("user.user_id"), primary_key=True),
        sa.Column("role_id", sa.String(), sa.ForeignKey("role.role_id"), primary_key=True),
        sa.Column("created_at", sa.String(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
    )
    op.create_table(
        "access_group",
        sa.Column("group_id", sa.String(), primary_key=True),
        sa.Column("kind", sa.String(), nullable=False, server_default="team"),
        sa.Column("description", sa.Text(), nullable=True),
    )
    op.create_table(
        "group_member",
        sa.Column("group_id", sa.String(), sa.ForeignKey("access_group.group_id"), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("user.user_id"), primary_key=True),
        sa.Column("created_at", sa.String(), nullable=False),
    )

    # PropertyDefinition (extern gepflegt)
    op.create_table(
        "property_definition",
        sa.Column("property_id", sa.String(), primary_key=True),
        sa.Column("collection_id", sa.String(), nullable=False),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("is_readonly", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_sensitive", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_phi", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_pii", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("requires_break_glass", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("masking_strategy", sa.String(), nullable=False, server_default="none"),
        sa.Column("mask_value", sa.String(), nullable=True),
    )
    op.create_index("ix_property_definition_collection", "property_definition", ["collection_id"])

    # CollectionAccessRule
    op.create_table(
        "collection_access_rule",
        sa.Column("rule_id", sa.String(), primary_key=True),
        sa.Column("collection_id", sa.String(), nullable=False),
        sa.Column("rule_key", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("role_id", sa.String(), nullable=True),
        sa.Column("group_id", sa.String(), nullable=True),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("can_read", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("can_create", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("can_update", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("can_delete", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("condition_json", sa.Text(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("updated_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.String(), nullable=False),
        sa.Column("updated_at", sa.String(), nullable=True),
    )
    op.create_index("ix_collection_rule_collection", "collection_access_rule", ["collection_id", "is_active"])
    op.create_index("ix_collection_rule_key", "collection_access_rule", ["collection_id", "rule_key"])

    # PropertyAccessRule
    op.create_table(
        "property_access_rule",
        sa.Column("rule_id", sa.String(), primary_key=True),
        sa.Column("property_id", sa.String(), sa.ForeignKey("property_definition.property_id"), nullable=False),
        sa.Column("rule_key", sa.String(), nullable=True),
        sa.Column("role_id", sa.String(), nullable=True),
        sa.Column("group_id", sa.String(), nullable=True),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("can_read", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("can_write", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("condition_json", sa.Text(), nullable=True),
        sa.Column("mask_value", sa.String(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("updated_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.String(), nullable=False),
        sa.Column("updated_at", sa.String(), nullable=True),
    )
    op.create_index("ix_property_rule_property", "property_access_rule", ["property_id", "is_active"])

    # BreakGlassSession
    op.create_table(
        "break_glass_session",
        sa.Column("session_id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("collection_id", sa.String(), nullable=True),
        sa.Column("record_id", sa.String(), nullable=True),
        sa.Column("reason_code", sa.String(), nullable=False),
        sa.Column("justification", sa.Text(), nullable=False),
        sa.Column("external_reference", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("started_at", sa.String(), nullable=False),
        sa.Column("expires_at", sa.String(), nullable=False),
        sa.Column("ended_at", sa.String(), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=False, server_default="60"),
        sa.Column("approval_required", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("approved_by", sa.String(), nullable=True),
        sa.Column("approved_at", sa.String(), nullable=True),
        sa.Column("approval_comment", sa.Text(), nullable=True),
        sa.Column("revoked_by", sa.String(), nullable=True),
        sa.Column("revocation_reason", sa.Text(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("context_json", sa.Text(), nullable=True),
        sa.Column("action_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_action_at", sa.String(), nullable=True),
    )
    op.create_index("ix_break_glass_user_status", "break_glass_session", ["user_id", "status"])
    op.create_index("ix_break_glass_status_expires", "break_glass_session", ["status", "expires_at"])

    # AccessAuditEvent
    op.create_table(
        "access_audit_event",
        sa.Column("event_id", sa.String(), primary_key=True),
        sa.Column("ts", sa.String(), nullable=False),
        sa.Column("principal_id", sa.String(), nullable=True),
        sa.Column("resource", sa.String(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("decision", sa.String(), nullable=False),
        sa.Column("context", sa.Text(), nullable=True),
    )
    op.create_index("ix_access_audit_resource_ts", "access_audit_event", ["resource", "ts"])


def downgrade() -> None:
    op.drop_index("ix_access_audit_resource_ts", table_name="access_audit_event")
    op.drop_table("access_audit_event")
    op.drop_index("ix_break_glass_status_expires", table_name="break_glass_session")
    op.drop_index("ix_break_glass_user_status", table_name="break_glass_session")
    op.drop_table("break_glass_session")
    op.drop_index("ix_property_rule_property", table_name="property_access_rule")
    op.drop_table("property_access_rule")
    op.drop_index("ix_collection_rule_key", table_name="collection_access_rule")
    op.drop_index("ix_collection_rule_collection", table_name="collection_access_rule")
    op.drop_table("collection_access_rule")
    op.drop_index("ix_property_definition_collection", table_name="property_definition")
    op.drop_table("property_definition")
    op.drop_table("group_member")
    op.drop_table("access_group")
    op.drop_table("user_role")
    op.drop_table("role")
    op.drop_table("user")
