from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, select, update

from app.fieldops import audit
from app.fieldops.catalog import RoleCatalog, current_catalog
from app.fieldops.errors import ConcurrentModification, Forbidden, NotFound, ValidationError
from app.fieldops.models import User
from app.fieldops.resolver import BuiltInRole, PermissionResolver, RoleRef, RoleSelector, role_columns
from app.fieldops.utils import text_field

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.fieldops.guard import AuthorizedContext
    from app.fieldops.modules.custom_roles.models import CustomRole

logger = logging.getLogger(__name__)


def _get_member(s: "Session", tenant_id: int, user_id: int) -> User:
    user = s.execute(
        select(User).where(User.id == user_id, User.tenant_id == tenant_id).execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if user is None:
        raise NotFound("User not found.", user_id=user_id)
    return user


def role_display(role: RoleRef, catalog: RoleCatalog, row: "CustomRole | None" = None) -> dict[str, Any]:
    if isinstance(role, BuiltInRole):
        return {
            **role.to_dict(),
            "display_name": catalog.display_name(role.name),
            "color": catalog.color(role.name),
            "icon": catalog.icon(role.name),
        }
    data = {**role.to_dict(), "display_name": role.name}
    if row is not None:
        data["color"] = row.color
        data["icon"] = row.icon
    return data


def _same_role_clause(builtin_role: str | None, custom_role_id: int | None):
    return and_(
        User.builtin_role.is_(None) if builtin_role is None else User.builtin_role == builtin_role,
        User.custom_role_id.is_(None) if custom_role_id is None else User.custom_role_id == custom_role_id,
    )


def list_members(s: "Session", tenant_id: int, *, catalog: RoleCatalog | None = None) -> list[dict[str, Any]]:
    """Tenant members with the role each one currently resolves to."""
    catalog = catalog or current_catalog()
    resolver = PermissionResolver(s, catalog)
    stmt = select(User).where(User.tenant_id == tenant_id).order_by(User.email)
    users = s.execute(stmt.execution_options(populate_existing=True)).scalars().all()
    out = []
    for u in users:
        role = resolver.role_for(u)
        out.append(
            {
                "id": u.id,
                "email": u.email,
                "full_name": u.full_name,
                "is_active": u.is_active,
                "role": role_display(role, catalog, u.custom_role if u.custom_role_id else None),
                "created_at": u.created_at.isoformat() if u.created_at else None,
            }
        )
    return out


def assign_role(
    s: "Session",
    ctx: "AuthorizedContext",
    target_user_id: int,
    selector: RoleSelector,
    *,
    reason: str | None = None,
    catalog: RoleCatalog | None = None,
) -> User:
    """
    Move a tenant member onto another role. The caller must be able to manage both
    the member's current role and the new one; nobody changes their own role.
    """
    reason = text_field(reason, "reason")
    catalog = catalog or current_catalog()
    resolver = PermissionResolver(s, catalog)

    target = _get_member(s, ctx.tenant_id, target_user_id)
    if target.id == ctx.user_id:
        raise ValidationError("You cannot change your own role.", field="user_id")

    current_role = resolver.role_for(target)
    new_role = resolver.resolve_selector(ctx.tenant_id, selector)
    for role in (current_role, new_role):
        if not resolver.can_manage_role(ctx.role, role, ctx.permissions):
            raise Forbidden("You cannot manage users with this role.", role=role.to_dict())

    before = {"builtin_role": target.builtin_role, "custom_role_id": target.custom_role_id}
    result = s.execute(
        update(User)
        .where(
            User.id == target.id,
            User.tenant_id == ctx.tenant_id,
            _same_role_clause(target.builtin_role, target.custom_role_id),
        )
        .values(**role_columns(new_role))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConcurrentModification("User's role was changed by another request; reload and retry.")

    audit.record(
        s,
        actor_id=ctx.user_id,
        tenant_id=ctx.tenant_id,
        action=audit.ROLE_ASSIGNED,
        target_type="User",
        target_id=target.id,
        before=before,
        after=role_columns(new_role),
        reason=reason,
    )
    logger.info(
        "Role assigned (tenant_id=%s user_id=%s role=%s by=%s)",
        ctx.tenant_id,
        target.id,
        new_role.to_dict(),
        ctx.user_id,
    )
    return _get_member(s, ctx.tenant_id, target.id)
