from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from app.fieldops import audit
from app.fieldops.catalog import RoleCatalog, current_catalog
from app.fieldops.errors import (
    ConcurrentModification,
    DanglingAssignment,
    DuplicateName,
    Forbidden,
    NotFound,
    ValidationError,
)
from app.fieldops.models import User
from app.fieldops.modules.custom_roles.models import CustomRole
from app.fieldops.permissions import Capability, PermissionSet
from app.fieldops.resolver import (
    CustomRoleRef,
    PermissionResolver,
    RoleRef,
    RoleSelector,
    can_manage_level,
    role_columns,
)
from app.fieldops.utils import text_field, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.fieldops.guard import AuthorizedContext

logger = logging.getLogger(__name__)

NAME_MIN, NAME_MAX = 3, 50
DESCRIPTION_MAX = 500
ICON_MAX = 10
DEFAULT_COLOR = "#6B7280"
DEFAULT_ICON = "👤"

_NAME_RE = re.compile(r"^[A-Za-z0-9\s_-]+$")
_COLOR_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")
_UNSET: Any = object()


def generate_role_slug(name: str) -> str:
    """URL-safe slug, e.g. "Site Safety Officer" -> "site-safety-officer"."""
    slug = name.strip().lower()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


def validate_role_name(raw: Any) -> str:
    name = " ".join((text_field(raw, "roleName") or "").split())
    if len(name) < NAME_MIN:
        raise ValidationError(f"Role name must be at least {NAME_MIN} characters.", field="roleName")
    if len(name) > NAME_MAX:
        raise ValidationError(f"Role name must be less than {NAME_MAX} characters.", field="roleName")
    if not _NAME_RE.match(name):
        raise ValidationError(
            "Role name can only contain letters, numbers, spaces, hyphens, and underscores.",
            field="roleName",
        )
    return name


def validate_color(raw: Any) -> str:
    color = (text_field(raw, "color") or DEFAULT_COLOR).strip()
    if not _COLOR_RE.match(color):
        raise ValidationError("Color must be a valid hex color (e.g., #FF5733).", field="color")
    return color.upper()


def validate_description(raw: Any) -> str | None:
    description = (text_field(raw, "description") or "").strip() or None
    if description and len(description) > DESCRIPTION_MAX:
        raise ValidationError(f"Description must be less than {DESCRIPTION_MAX} characters.", field="description")
    return description


def validate_icon(raw: Any) -> str:
    icon = (text_field(raw, "icon") or DEFAULT_ICON).strip() or DEFAULT_ICON
    if len(icon) > ICON_MAX:
        raise ValidationError(f"Icon must be {ICON_MAX} characters or less.", field="icon")
    return icon


def _coerce_permissions(permissions: PermissionSet | Mapping[str, Any] | None) -> PermissionSet:
    if isinstance(permissions, PermissionSet):
        return permissions
    if permissions is None:
        raise ValidationError("A full permission set is required.", field="permissions")
    return PermissionSet.from_mapping(permissions)


def _serialize(permissions: PermissionSet) -> str:
    return json.dumps(permissions.to_dict(), sort_keys=True)


def _ensure_can_grant(ctx: "AuthorizedContext", permissions: PermissionSet) -> None:
    """Without canManageAllRoles an actor cannot hand out capabilities they do not hold."""
    if ctx.permissions.has(Capability.MANAGE_ALL_ROLES):
        return
    excess = [c.value for c in permissions.granted() if not ctx.permissions.has(c)]
    if excess:
        raise Forbidden("Cannot grant capabilities you do not hold.", capabilities=excess)


def _ensure_can_manage_level(ctx: "AuthorizedContext", level: int) -> None:
    if not can_manage_level(ctx.role.level, level, ctx.permissions):
        raise Forbidden("You cannot manage roles at or above your own level.", role_level=level)


def _validate_level(raw: Any, catalog: RoleCatalog) -> int:
    if raw in (None, ""):
        return catalog.lowest_level
    try:
        level = int(raw)
    except (TypeError, ValueError):
        raise ValidationError("Role level must be an integer.", field="level") from None
    if not catalog.lowest_level <= level < catalog.top_level:
        raise ValidationError(
            f"Role level must be between {catalog.lowest_level} and {catalog.top_level - 1}.",
            field="level",
        )
    return level


def get_custom_role(s: "Session", tenant_id: int, role_id: int, *, include_inactive: bool = False) -> CustomRole:
    stmt = select(CustomRole).where(CustomRole.id == role_id, CustomRole.tenant_id == tenant_id)
    if not include_inactive:
        stmt = stmt.where(CustomRole.is_active.is_(True))
    role = s.execute(stmt.execution_options(populate_existing=True)).scalar_one_or_none()
    if role is None:
        raise NotFound("Role not found.", role_id=role_id)
    return role


def list_custom_roles(s: "Session", tenant_id: int, *, include_inactive: bool = False) -> list[CustomRole]:
    stmt = select(CustomRole).where(CustomRole.tenant_id == tenant_id)
    if not include_inactive:
        stmt = stmt.where(CustomRole.is_active.is_(True))
    stmt = stmt.order_by(CustomRole.name).execution_options(populate_existing=True)
    return list(s.execute(stmt).scalars().all())


def holder_count(s: "Session", tenant_id: int, role_id: int) -> int:
    return s.execute(
        select(func.count(User.id)).where(User.tenant_id == tenant_id, User.custom_role_id == role_id)
    ).scalar_one()


def holder_counts(s: "Session", tenant_id: int) -> dict[int, int]:
    rows = s.execute(
        select(User.custom_role_id, func.count(User.id))
        .where(User.tenant_id == tenant_id, User.custom_role_id.isnot(None))
        .group_by(User.custom_role_id)
    ).all()
    return {role_id: count for role_id, count in rows}


def _name_taken(s: "Session", tenant_id: int, name_key: str) -> bool:
    stmt = select(CustomRole.id).where(
        CustomRole.tenant_id == tenant_id,
        CustomRole.name_key == name_key,
        CustomRole.is_active.is_(True),
    )
    return s.execute(stmt.limit(1)).first() is not None


def create_custom_role(
    s: "Session",
    ctx: "AuthorizedContext",
    name: str,
    permissions: PermissionSet | Mapping[str, Any],
    *,
    description: str | None = None,
    color: str | None = None,
    icon: str | None = None,
    level: int | None = None,
    catalog: RoleCatalog | None = None,
) -> CustomRole:
    """Create a tenant custom role carrying a full permission set."""
    catalog = catalog or current_catalog()
    name = validate_role_name(name)
    perms = _coerce_permissions(permissions)
    role_level = _validate_level(level, catalog)
    _ensure_can_manage_level(ctx, role_level)
    _ensure_can_grant(ctx, perms)

    name_key = name.lower()
    if _name_taken(s, ctx.tenant_id, name_key):
        raise DuplicateName(f'A role with the name "{name}" already exists.', role_name=name)

    now = utcnow()
    role = CustomRole(
        tenant_id=ctx.tenant_id,
        name=name,
        name_key=name_key,
        slug=generate_role_slug(name),
        description=validate_description(description),
        color=validate_color(color),
        icon=validate_icon(icon),
        level=role_level,
        permissions_json=_serialize(perms),
        is_active=True,
        version=1,
        created_by_user_id=ctx.user_id,
        created_at=now,
        updated_at=now,
    )
    try:
        with s.begin_nested():
            s.add(role)
            s.flush()
    except IntegrityError:
        # Lost a race against a concurrent create with the same name.
        raise DuplicateName(f'A role with the name "{name}" already exists.', role_name=name) from None

    audit.record(
        s,
        actor_id=ctx.user_id,
        tenant_id=ctx.tenant_id,
        action=audit.ROLE_CREATED,
        target_type="CustomRole",
        target_id=role.id,
        after={"name": role.name, "level": role.level, "permissions": perms.to_dict()},
    )
    logger.info("Custom role created (tenant_id=%s role_id=%s name=%s)", ctx.tenant_id, role.id, role.name)
    return role


def update_custom_role(
    s: "Session",
    ctx: "AuthorizedContext",
    role_id: int,
    permissions: PermissionSet | Mapping[str, Any],
    *,
    expected_version: int | None = None,
    description: str | None = _UNSET,
    color: str | None = _UNSET,
    icon: str | None = _UNSET,
) -> CustomRole:
    """
    Replace a custom role's permission set in one conditional UPDATE.

    With `expected_version` this is compare-and-set: a concurrent edit that landed
    first makes this call raise ConcurrentModification instead of overwriting it.
    Without it the last writer wins, and the stored set is always exactly one of
    the submitted sets (never a merge).
    """
    perms = _coerce_permissions(permissions)
    current = get_custom_role(s, ctx.tenant_id, role_id)
    _ensure_can_manage_level(ctx, current.level)
    _ensure_can_grant(ctx, perms)
    before = {"permissions": current.permissions.to_dict(), "version": current.version}

    values: dict[str, Any] = {
        "permissions_json": _serialize(perms),
        "version": CustomRole.version + 1,
        "updated_at": utcnow(),
    }
    if description is not _UNSET:
        values["description"] = validate_description(description)
    if color is not _UNSET:
        values["color"] = validate_color(color)
    if icon is not _UNSET:
        values["icon"] = validate_icon(icon)

    stmt = (
        update(CustomRole)
        .where(
            CustomRole.id == role_id,
            CustomRole.tenant_id == ctx.tenant_id,
            CustomRole.is_active.is_(True),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if expected_version is not None:
        stmt = stmt.where(CustomRole.version == int(expected_version))
    result = s.execute(stmt)
    if result.rowcount != 1:
        latest = get_custom_role(s, ctx.tenant_id, role_id, include_inactive=True)
        if not latest.is_active:
            raise NotFound("Role not found.", role_id=role_id)
        raise ConcurrentModification(
            "Role was modified by another request; reload and retry.",
            expected_version=expected_version,
            current_version=latest.version,
        )

    role = get_custom_role(s, ctx.tenant_id, role_id)
    audit.record(
        s,
        actor_id=ctx.user_id,
        tenant_id=ctx.tenant_id,
        action=audit.ROLE_UPDATED,
        target_type="CustomRole",
        target_id=role.id,
        before=before,
        after={"permissions": perms.to_dict(), "version": role.version},
    )
    return role


def deactivate_custom_role(
    s: "Session",
    ctx: "AuthorizedContext",
    role_id: int,
    *,
    confirm: bool = False,
    reassign_to: RoleSelector | None = None,
    catalog: RoleCatalog | None = None,
) -> CustomRole:
    """
    Soft-delete a custom role. Refuses with DanglingAssignment while users hold it,
    unless the caller confirms and names a role to move those users to; the
    reassignment and the deactivation then happen in the same transaction.
    """
    catalog = catalog or current_catalog()
    role = get_custom_role(s, ctx.tenant_id, role_id)
    _ensure_can_manage_level(ctx, role.level)

    holder_ids = list(
        s.execute(
            select(User.id).where(User.tenant_id == ctx.tenant_id, User.custom_role_id == role.id).order_by(User.id)
        ).scalars()
    )
    if holder_ids and not (confirm and reassign_to is not None):
        raise DanglingAssignment(
            "Cannot deactivate a role that is assigned to team members.",
            member_count=len(holder_ids),
        )

    target: RoleRef | None = None
    if reassign_to is not None:
        target = PermissionResolver(s, catalog).resolve_selector(ctx.tenant_id, reassign_to)
        if isinstance(target, CustomRoleRef) and target.id == role.id:
            raise ValidationError("Cannot reassign members to the role being deactivated.", field="reassign_to")
        _ensure_can_manage_level(ctx, target.level)

    if holder_ids and target is not None:
        s.execute(
            update(User)
            .where(User.tenant_id == ctx.tenant_id, User.custom_role_id == role.id)
            .values(**role_columns(target))
            .execution_options(synchronize_session=False)
        )

    result = s.execute(
        update(CustomRole)
        .where(
            CustomRole.id == role.id,
            CustomRole.tenant_id == ctx.tenant_id,
            CustomRole.is_active.is_(True),
        )
        .values(is_active=False, version=CustomRole.version + 1, deactivated_at=utcnow(), updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConcurrentModification("Role was deactivated by another request.")

    # An assignment racing with this call would otherwise be left pointing at an inactive role.
    remaining = holder_count(s, ctx.tenant_id, role.id)
    if remaining:
        raise DanglingAssignment("Role was assigned concurrently; retry.", member_count=remaining)

    target_dict = target.to_dict() if target is not None else None
    audit.record(
        s,
        actor_id=ctx.user_id,
        tenant_id=ctx.tenant_id,
        action=audit.ROLE_DEACTIVATED,
        target_type="CustomRole",
        target_id=role.id,
        before={"is_active": True, "member_ids": holder_ids},
        after={"is_active": False, "reassigned_to": target_dict},
    )
    for user_id in holder_ids:
        audit.record(
            s,
            actor_id=ctx.user_id,
            tenant_id=ctx.tenant_id,
            action=audit.ROLE_ASSIGNED,
            target_type="User",
            target_id=user_id,
            before={"custom_role_id": role.id},
            after=target_dict,
            reason="Previous role deactivated",
        )

    logger.info(
        "Custom role deactivated (tenant_id=%s role_id=%s reassigned=%d)",
        ctx.tenant_id,
        role.id,
        len(holder_ids),
    )
    s.expire_all()
    return get_custom_role(s, ctx.tenant_id, role.id, include_inactive=True)


def clone_custom_role(
    s: "Session",
    ctx: "AuthorizedContext",
    role_id: int,
    new_name: str,
    *,
    catalog: RoleCatalog | None = None,
) -> CustomRole:
    original = get_custom_role(s, ctx.tenant_id, role_id)
    clone = create_custom_role(
        s,
        ctx,
        new_name,
        original.permissions,
        description=original.description,
        color=original.color,
        icon=original.icon,
        level=original.level,
        catalog=catalog,
    )
    audit.record(
        s,
        actor_id=ctx.user_id,
        tenant_id=ctx.tenant_id,
        action=audit.ROLE_CLONED,
        target_type="CustomRole",
        target_id=clone.id,
        before={"source_role_id": original.id},
        after={"name": clone.name},
    )
    return clone
