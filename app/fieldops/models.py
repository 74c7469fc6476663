from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text, event
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from app.fieldops.utils import utcnow

if TYPE_CHECKING:
    from app.fieldops.modules.custom_roles.models import CustomRole


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)


class User(Base):
    """
    A member of exactly one tenant holding exactly one active role:
    either a built-in catalog role (`builtin_role`) or a tenant custom role (`custom_role_id`).
    """

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint(
            "(builtin_role IS NULL) <> (custom_role_id IS NULL)",
            name="ck_users_single_role",
        ),
        Index("idx_users_tenant", "tenant_id"),
        Index("idx_users_custom_role", "custom_role_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    builtin_role: Mapped[str | None] = mapped_column(String(64), nullable=True)  # e.g. "project_manager"
    custom_role_id: Mapped[int | None] = mapped_column(
        ForeignKey("custom_roles.id", ondelete="RESTRICT"), nullable=True
    )

    custom_role: Mapped["CustomRole | None"] = relationship("CustomRole", lazy="select")


class AuditEntry(Base):
    """
    Append-only audit trail entry for permission-relevant actions.
    Rows are never updated or deleted (enforced by the mapper listeners below).
    """

    __tablename__ = "audit_entries"
    __table_args__ = (
        Index("idx_audit_tenant_created", "tenant_id", "created_at"),
        Index("idx_audit_action", "action"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int | None] = mapped_column(ForeignKey("tenants.id", ondelete="SET NULL"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    actor_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    action: Mapped[str] = mapped_column(String(128), nullable=False)  # e.g. "role.updated"
    target_type: Mapped[str | None] = mapped_column(String(64), nullable=True)  # e.g. "CustomRole"
    target_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    before_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    after_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    reason: Mapped[str | None] = mapped_column(String(512), nullable=True)
    client_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)


@event.listens_for(AuditEntry, "before_update")
def _audit_entry_no_update(mapper, connection, target) -> None:  # type: ignore[no-untyped-def]
    raise RuntimeError("AuditEntry rows are append-only and cannot be updated.")


@event.listens_for(AuditEntry, "before_delete")
def _audit_entry_no_delete(mapper, connection, target) -> None:  # type: ignore[no-untyped-def]
    raise RuntimeError("AuditEntry rows are append-only and cannot be deleted.")


# Ensure module models are imported so Base.metadata includes their tables.
# (Kept at bottom to avoid circular imports.)
from app.fieldops.modules.custom_roles.models import CustomRole  # noqa: E402,F401
from app.fieldops.modules.invitations.models import Invitation  # noqa: E402,F401
