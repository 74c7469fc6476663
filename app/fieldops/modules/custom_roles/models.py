from __future__ import annotations

import json
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from app.fieldops.models import Base
from app.fieldops.permissions import PermissionSet
from app.fieldops.utils import utcnow


class CustomRole(Base):
    __tablename__ = "custom_roles"
    __table_args__ = (
        # Names are unique per tenant (case-insensitive) among active roles only;
        # deactivated rows stay around for audit history.
        Index(
            "uq_custom_roles_tenant_name_active",
            "tenant_id",
            "name_key",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
        Index("idx_custom_roles_tenant", "tenant_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)

    name: Mapped[str] = mapped_column(String(64), nullable=False)
    name_key: Mapped[str] = mapped_column(String(64), nullable=False)  # lower-cased name
    slug: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    color: Mapped[str] = mapped_column(String(7), nullable=False, default="#6B7280")
    icon: Mapped[str] = mapped_column(String(16), nullable=False, default="👤")
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Full permission set, never a diff against a base role.
    permissions_json: Mapped[str] = mapped_column(Text, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # No FK: users.custom_role_id already points here.
    created_by_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    deactivated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    @property
    def permissions(self) -> PermissionSet:
        return PermissionSet.from_mapping(json.loads(self.permissions_json))

    def to_dict(self, member_count: int | None = None) -> dict:
        data = {
            "id": self.id,
            "role_name": self.name,
            "role_slug": self.slug,
            "description": self.description,
            "color": self.color,
            "icon": self.icon,
            "role_level": self.level,
            "permissions": self.permissions.to_dict(),
            "is_builtin": False,
            "is_active": self.is_active,
            "version": self.version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if member_count is not None:
            data["member_count"] = member_count
        return data
