from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Union

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from app.fieldops.catalog import RoleCatalog
from app.fieldops.errors import AccessError, ResolutionError, UnknownRole, ValidationError
from app.fieldops.permissions import Capability, PermissionSet
from app.fieldops.utils import text_field

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.fieldops.models import User
    from app.fieldops.modules.custom_roles.models import CustomRole

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuiltInRole:
    name: str
    level: int

    kind = "builtin"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "name": self.name, "level": self.level}


@dataclass(frozen=True)
class CustomRoleRef:
    id: int
    tenant_id: int
    name: str
    level: int
    base_permissions: PermissionSet

    kind = "custom"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "id": self.id, "name": self.name, "level": self.level}


RoleRef = Union[BuiltInRole, CustomRoleRef]


@dataclass(frozen=True)
class RoleSelector:
    """Unresolved role reference as submitted by a client: a built-in name or a custom role id."""

    builtin_role: str | None = None
    custom_role_id: int | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any] | None) -> "RoleSelector":
        payload = payload or {}
        if not isinstance(payload, dict):
            raise ValidationError("Role must be an object with builtin_role or custom_role_id.", field="role")
        builtin_raw = payload.get("builtin_role") or payload.get("role")
        builtin = (text_field(builtin_raw, "builtin_role") or "").strip() or None
        custom_raw = payload.get("custom_role_id")
        custom_id: int | None = None
        if isinstance(custom_raw, bool):
            raise ValidationError("custom_role_id must be an integer.", field="custom_role_id")
        if custom_raw not in (None, ""):
            try:
                custom_id = int(custom_raw)
            except (TypeError, ValueError):
                raise ValidationError("custom_role_id must be an integer.", field="custom_role_id") from None
        if (builtin is None) == (custom_id is None):
            raise ValidationError("Provide exactly one of builtin_role or custom_role_id.", field="role")
        return cls(builtin_role=builtin, custom_role_id=custom_id)


def role_columns(role: RoleRef) -> dict[str, Any]:
    """Column values for a users/invitations row holding `role` (exactly one is set)."""
    if isinstance(role, BuiltInRole):
        return {"builtin_role": role.name, "custom_role_id": None}
    return {"builtin_role": None, "custom_role_id": role.id}


def custom_role_ref(role: "CustomRole") -> CustomRoleRef:
    return CustomRoleRef(
        id=role.id,
        tenant_id=role.tenant_id,
        name=role.name,
        level=role.level,
        base_permissions=role.permissions,
    )


class PermissionResolver:
    """
    Resolves a user's effective permissions from the role catalog and the tenant's
    custom roles. No caching: every call reads the latest committed role state.
    """

    def __init__(self, session: "Session", catalog: RoleCatalog) -> None:
        self.session = session
        self.catalog = catalog

    def _load_custom_role(self, tenant_id: int, role_id: int) -> "CustomRole | None":
        from app.fieldops.modules.custom_roles.models import CustomRole

        try:
            return self.session.execute(
                select(CustomRole)
                .where(CustomRole.id == role_id, CustomRole.tenant_id == tenant_id)
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.exception("Custom role lookup failed (tenant_id=%s role_id=%s)", tenant_id, role_id)
            raise ResolutionError("Unable to resolve role.") from e

    def _fallback(self) -> BuiltInRole:
        low = self.catalog.lowest_privilege()
        return BuiltInRole(name=low.name, level=low.level)

    def role_for(self, user: "User") -> RoleRef:
        """
        The user's active role. A missing, deactivated or corrupt custom role resolves
        to the lowest-privilege built-in role.
        """
        if user.builtin_role is not None:
            return BuiltInRole(name=user.builtin_role, level=self.catalog.level(user.builtin_role))
        if user.custom_role_id is None:
            raise UnknownRole("User has no role assigned.", user_id=user.id)

        role = self._load_custom_role(user.tenant_id, user.custom_role_id)
        if role is None or not role.is_active:
            logger.warning(
                "Custom role %s for user %s is missing or inactive; falling back to %s",
                user.custom_role_id,
                user.id,
                self.catalog.lowest_privilege().name,
            )
            return self._fallback()
        try:
            return custom_role_ref(role)
        except (AccessError, ValueError) as e:
            logger.error("Custom role %s has an invalid permission set (%s); failing closed", role.id, e)
            return self._fallback()

    def level_of(self, role: RoleRef) -> int:
        if isinstance(role, BuiltInRole):
            return self.catalog.level(role.name)
        return role.level

    def permissions_for_role(self, role: RoleRef) -> PermissionSet:
        if isinstance(role, BuiltInRole):
            return self.catalog.resolve_builtin(role.name)
        return role.base_permissions

    def effective_permissions(self, user: "User") -> PermissionSet:
        return self.permissions_for_role(self.role_for(user))

    def has_capability(self, user: "User", capability: Capability | str) -> bool:
        cap = Capability.parse(capability)
        return self.effective_permissions(user).has(cap)

    def resolve_selector(self, tenant_id: int, selector: RoleSelector) -> RoleRef:
        """Resolve a client-supplied role reference inside a tenant; inactive custom roles do not resolve."""
        if selector.builtin_role is not None:
            return BuiltInRole(name=selector.builtin_role, level=self.catalog.level(selector.builtin_role))
        role = self._load_custom_role(tenant_id, int(selector.custom_role_id or 0))
        if role is None or not role.is_active:
            raise UnknownRole("Role not found.", custom_role_id=selector.custom_role_id)
        return custom_role_ref(role)

    def can_manage_role(
        self,
        actor_role: RoleRef,
        target_role: RoleRef,
        actor_permissions: PermissionSet | None = None,
    ) -> bool:
        """
        True iff the actor outranks the target strictly, or holds canManageAllRoles.
        The override applies regardless of level.
        """
        if actor_permissions is None:
            actor_permissions = self.permissions_for_role(actor_role)
        return can_manage_level(self.level_of(actor_role), self.level_of(target_role), actor_permissions)


def can_manage_level(actor_level: int, target_level: int, actor_permissions: PermissionSet) -> bool:
    if actor_permissions.has(Capability.MANAGE_ALL_ROLES):
        return True
    return actor_level > target_level

