"""Initial database schema

Revision ID: 001
Revises:
Create Date: 2026-10-18

Creates the initial HealthChain access-control schema with:
- users: Patients, doctors, hospitals and admins
- permission_grants: Standing subject-initiated grants
- access_tokens: Short-lived consent codes (digest only)
- emergency_sessions: Break-glass overrides
- audit_log: Append-only access events
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Users table
    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("display_name", sa.String(200), nullable=True),
        sa.Column("role", sa.String(20), nullable=False, server_default="patient"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    # Permission Grants table
    op.create_table(
        "permission_grants",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("subject_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("grantee_name", sa.String(200), nullable=False),
        sa.Column("grantee_address", sa.String(255), nullable=False),
        sa.Column("grantee_kind", sa.String(20), nullable=False, server_default="doctor"),
        sa.Column("level", sa.String(30), nullable=False),
        sa.Column("purpose", sa.Text(), nullable=True),
        sa.Column("granted_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["subject_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("subject_id", "grantee_address", name="uq_grants_subject_grantee"),
    )
    op.create_index("ix_permission_grants_subject_id", "permission_grants", ["subject_id"])
    op.create_index("ix_permission_grants_grantee_address", "permission_grants", ["grantee_address"])

    # Access Tokens table
    op.create_table(
        "access_tokens",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("subject_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("code_digest", sa.String(64), nullable=False),
        sa.Column("level", sa.String(30), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["subject_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code_digest"),
    )
    op.create_index("ix_access_tokens_subject_id", "access_tokens", ["subject_id"])
    op.create_index(
        "uq_access_tokens_active_subject",
        "access_tokens",
        ["subject_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )

    # Emergency Sessions table
    op.create_table(
        "emergency_sessions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("subject_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("activated_by", sa.String(255), nullable=False),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("justification", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["subject_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_emergency_sessions_subject_id", "emergency_sessions", ["subject_id"])
    op.create_index("ix_emergency_sessions_activated_by", "emergency_sessions", ["activated_by"])
    op.create_index(
        "uq_emergency_sessions_active_subject",
        "emergency_sessions",
        ["subject_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )

    # Audit Log table (append-only, no FK so entries outlive subjects)
    op.create_table(
        "audit_log",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_identity", sa.String(255), nullable=False),
        sa.Column("subject_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("action", sa.String(40), nullable=False),
        sa.Column("context_ref", sa.String(100), nullable=True),
        sa.Column("details", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_log_actor_identity", "audit_log", ["actor_identity"])
    op.create_index("ix_audit_log_action", "audit_log", ["action"])
    op.create_index("ix_audit_log_subject_order", "audit_log", ["subject_id", "timestamp", "id"])
    op.create_index("ix_audit_log_order", "audit_log", ["timestamp", "id"])


def downgrade() -> None:
    op.drop_table("audit_log")
    op.drop_table("emergency_sessions")
    op.drop_table("access_tokens")
    op.drop_table("permission_grants")
    op.drop_table("users")
