from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.fieldops.catalog import current_catalog
from app.fieldops.db import db_session
from app.fieldops.errors import ValidationError
from app.fieldops.guard import require_identity, require_permission
from app.fieldops.modules.team.service import assign_role, list_members, role_display
from app.fieldops.permissions import Capability
from app.fieldops.resolver import CustomRoleRef, RoleSelector

bp = Blueprint("team", __name__)


@bp.get("/me/permissions")
def my_permissions():
    """Effective permissions of the caller, recomputed on every call."""
    ctx = require_identity()
    row = ctx.user.custom_role if isinstance(ctx.role, CustomRoleRef) else None
    return jsonify(
        {
            "user_id": ctx.user_id,
            "tenant_id": ctx.tenant_id,
            "role": role_display(ctx.role, current_catalog(), row),
            "permissions": ctx.permissions.to_dict(),
        }
    )


@bp.get("/team")
def team_list():
    ctx = require_permission(Capability.MANAGE_TEAM)
    return jsonify({"members": list_members(db_session(), ctx.tenant_id)})


@bp.put("/users/<int:user_id>/role")
def user_role_update(user_id: int):
    ctx = require_permission(Capability.CHANGE_ROLES)
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")

    s = db_session()
    user = assign_role(s, ctx, user_id, RoleSelector.from_payload(data), reason=data.get("reason"))
    s.commit()
    return jsonify(
        {
            "user_id": user.id,
            "builtin_role": user.builtin_role,
            "custom_role_id": user.custom_role_id,
        }
    )
