from __future__ import annotations

from typing import Any

from flask import Blueprint, jsonify, request
from sqlalchemy import func, select

from app.fieldops.catalog import current_catalog
from app.fieldops.db import db_session
from app.fieldops.errors import ValidationError
from app.fieldops.guard import require_identity, require_permission
from app.fieldops.models import User
from app.fieldops.modules.custom_roles.service import (
    clone_custom_role,
    create_custom_role,
    deactivate_custom_role,
    get_custom_role,
    holder_count,
    holder_counts,
    list_custom_roles,
    update_custom_role,
)
from app.fieldops.permissions import Capability
from app.fieldops.resolver import RoleSelector

bp = Blueprint("custom_roles", __name__)


def _payload() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


def _first(data: dict[str, Any], *keys: str) -> Any:
    for k in keys:
        if k in data:
            return data[k]
    return None


def _as_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw or "").strip().lower() in ("1", "true", "yes", "on")


def _builtin_counts(s, tenant_id: int) -> dict[str, int]:
    rows = s.execute(
        select(User.builtin_role, func.count(User.id))
        .where(User.tenant_id == tenant_id, User.builtin_role.isnot(None))
        .group_by(User.builtin_role)
    ).all()
    return {name: count for name, count in rows}


# ---------- List ----------
@bp.get("/roles")
def roles_list():
    ctx = require_identity()
    s = db_session()
    catalog = current_catalog()

    builtin_counts = _builtin_counts(s, ctx.tenant_id)
    builtin = [
        {
            "role_name": name,
            "display_name": catalog.display_name(name),
            "description": catalog.description(name),
            "color": catalog.color(name),
            "icon": catalog.icon(name),
            "role_level": catalog.level(name),
            "permissions": catalog.resolve_builtin(name).to_dict(),
            "is_builtin": True,
            "member_count": builtin_counts.get(name, 0),
        }
        for name in catalog.names()
    ]
    counts = holder_counts(s, ctx.tenant_id)
    custom = [r.to_dict(member_count=counts.get(r.id, 0)) for r in list_custom_roles(s, ctx.tenant_id)]
    return jsonify({"builtin_roles": builtin, "custom_roles": custom, "catalog_version": catalog.version})


# ---------- Create ----------
@bp.post("/roles")
def roles_create():
    ctx = require_permission(Capability.MANAGE_TEAM)
    data = _payload()
    s = db_session()
    role = create_custom_role(
        s,
        ctx,
        _first(data, "role_name", "roleName", "name"),
        data.get("permissions"),
        description=data.get("description"),
        color=data.get("color"),
        icon=data.get("icon"),
        level=_first(data, "role_level", "level"),
    )
    s.commit()
    return jsonify({"role": role.to_dict(member_count=0)}), 201


# ---------- Detail ----------
@bp.get("/roles/<int:role_id>")
def roles_detail(role_id: int):
    ctx = require_identity()
    s = db_session()
    role = get_custom_role(s, ctx.tenant_id, role_id)
    return jsonify({"role": role.to_dict(member_count=holder_count(s, ctx.tenant_id, role.id))})


# ---------- Update ----------
@bp.put("/roles/<int:role_id>")
def roles_update(role_id: int):
    ctx = require_permission(Capability.MANAGE_TEAM)
    data = _payload()
    expected = _first(data, "expected_version", "version")
    if expected is not None:
        try:
            expected = int(expected)
        except (TypeError, ValueError):
            raise ValidationError("expected_version must be an integer.", field="expected_version") from None

    optional = {k: data[k] for k in ("description", "color", "icon") if k in data}
    s = db_session()
    role = update_custom_role(s, ctx, role_id, data.get("permissions"), expected_version=expected, **optional)
    s.commit()
    return jsonify({"role": role.to_dict(member_count=holder_count(s, ctx.tenant_id, role.id))})


# ---------- Deactivate ----------
@bp.delete("/roles/<int:role_id>")
def roles_delete(role_id: int):
    ctx = require_permission(Capability.MANAGE_TEAM)
    data = _payload()
    confirm = _as_bool(data.get("confirm", request.args.get("confirm")))
    reassign_raw = data.get("reassign_to")
    reassign_to = RoleSelector.from_payload(reassign_raw) if reassign_raw else None

    s = db_session()
    role = deactivate_custom_role(s, ctx, role_id, confirm=confirm, reassign_to=reassign_to)
    s.commit()
    return jsonify({"role": role.to_dict(member_count=0)})


# ---------- Clone ----------
@bp.post("/roles/<int:role_id>/clone")
def roles_clone(role_id: int):
    ctx = require_permission(Capability.MANAGE_TEAM)
    data = _payload()
    s = db_session()
    clone = clone_custom_role(s, ctx, role_id, _first(data, "new_name", "role_name", "roleName", "name"))
    s.commit()
    return jsonify({"role": clone.to_dict(member_count=0)}), 201
