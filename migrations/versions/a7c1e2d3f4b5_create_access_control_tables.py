"""create tenants, users, custom roles, invitations and audit tables

Revision ID: a7c1e2d3f4b5
Revises:
Create Date: 2026-10-18 09:12:41.204117

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'a7c1e2d3f4b5'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the tenant, role, membership, invitation and audit tables."""
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_tables = set(inspector.get_table_names())

    if "tenants" not in existing_tables:
        op.create_table(
            "tenants",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )

    if "custom_roles" not in existing_tables:
        op.create_table(
            "custom_roles",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("tenant_id", sa.Integer(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
            sa.Column("name", sa.String(64), nullable=False),
            sa.Column("name_key", sa.String(64), nullable=False),
            sa.Column("slug", sa.String(64), nullable=False),
            sa.Column("description", sa.String(500), nullable=True),
            sa.Column("color", sa.String(7), nullable=False, server_default="#6B7280"),
            sa.Column("icon", sa.String(16), nullable=False, server_default="👤"),
            sa.Column("level", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("permissions_json", sa.Text(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("created_by_user_id", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("deactivated_at", sa.DateTime(), nullable=True),
        )
        op.create_index("idx_custom_roles_tenant", "custom_roles", ["tenant_id"])
        op.create_index(
            "uq_custom_roles_tenant_name_active",
            "custom_roles",
            ["tenant_id", "name_key"],
            unique=True,
            sqlite_where=sa.text("is_active = 1"),
            postgresql_where=sa.text("is_active"),
        )

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("tenant_id", sa.Integer(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
            sa.Column("email", sa.String(320), nullable=False, unique=True),
            sa.Column("full_name", sa.String(255), nullable=True),
            sa.Column("password_hash", sa.String(255), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("builtin_role", sa.String(64), nullable=True),
            sa.Column(
                "custom_role_id",
                sa.Integer(),
                sa.ForeignKey("custom_roles.id", ondelete="RESTRICT"),
                nullable=True,
            ),
            sa.CheckConstraint(
                "(builtin_role IS NULL) <> (custom_role_id IS NULL)",
                name="ck_users_single_role",
            ),
        )
        op.create_index("idx_users_tenant", "users", ["tenant_id"])
        op.create_index("idx_users_custom_role", "users", ["custom_role_id"])

    if "invitations" not in existing_tables:
        op.create_table(
            "invitations",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("tenant_id", sa.Integer(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
            sa.Column("email", sa.String(320), nullable=False),
            sa.Column("builtin_role", sa.String(64), nullable=True),
            sa.Column(
                "custom_role_id",
                sa.Integer(),
                sa.ForeignKey("custom_roles.id", ondelete="RESTRICT"),
                nullable=True,
            ),
            sa.Column("token_hash", sa.String(64), nullable=False, unique=True),
            sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
            sa.Column("full_name", sa.String(255), nullable=True),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("invited_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("expires_at", sa.DateTime(), nullable=False),
            sa.Column("accepted_at", sa.DateTime(), nullable=True),
            sa.Column("accepted_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("revoked_at", sa.DateTime(), nullable=True),
            sa.Column("revoked_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.CheckConstraint(
                "(builtin_role IS NULL) <> (custom_role_id IS NULL)",
                name="ck_invitations_single_role",
            ),
        )
        op.create_index("idx_invitations_tenant_status", "invitations", ["tenant_id", "status"])
        op.create_index("idx_invitations_email", "invitations", ["email"])

    if "audit_entries" not in existing_tables:
        op.create_table(
            "audit_entries",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("tenant_id", sa.Integer(), sa.ForeignKey("tenants.id", ondelete="SET NULL"), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("request_id", sa.String(64), nullable=True),
            sa.Column("actor_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("action", sa.String(128), nullable=False),
            sa.Column("target_type", sa.String(64), nullable=True),
            sa.Column("target_id", sa.String(128), nullable=True),
            sa.Column("before_json", sa.Text(), nullable=True),
            sa.Column("after_json", sa.Text(), nullable=True),
            sa.Column("reason", sa.String(512), nullable=True),
            sa.Column("client_ip", sa.String(64), nullable=True),
        )
        op.create_index("idx_audit_tenant_created", "audit_entries", ["tenant_id", "created_at"])
        op.create_index("idx_audit_action", "audit_entries", ["action"])


def downgrade() -> None:
    op.drop_table("audit_entries")
    op.drop_table("invitations")
    op.drop_table("users")
    op.drop_table("custom_roles")
    op.drop_table("tenants")
