from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request, session

from app.fieldops.db import db_session
from app.fieldops.errors import ValidationError
from app.fieldops.guard import require_permission
from app.fieldops.modules.invitations.service import (
    accept_invitation,
    create_invitation,
    expire_stale_invitations,
    invite_url,
    list_invitations,
    revoke_invitation,
)
from app.fieldops.permissions import Capability
from app.fieldops.resolver import RoleSelector
from app.fieldops.utils import text_field

bp = Blueprint("invitations", __name__)


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


def _is_production() -> bool:
    return (current_app.config.get("ENV") or "").strip().lower() in ("prod", "production")


@bp.get("/invitations")
def invitations_list():
    ctx = require_permission(Capability.INVITE_MEMBERS)
    s = db_session()
    expire_stale_invitations(s, ctx.tenant_id)
    invitations = list_invitations(s, ctx.tenant_id, (request.args.get("status") or "").strip() or None)
    s.commit()
    return jsonify({"invitations": [i.to_dict() for i in invitations]})


@bp.post("/invitations")
def invitations_create():
    ctx = require_permission(Capability.INVITE_MEMBERS)
    data = _json_body()
    s = db_session()
    inv, token = create_invitation(
        s,
        ctx,
        data.get("email") or "",
        RoleSelector.from_payload(data),
        full_name=data.get("full_name"),
        message=data.get("message"),
        expires_in_days=int(current_app.config.get("INVITATION_TTL_DAYS") or 7),
    )
    s.commit()

    body = {"invitation": inv.to_dict()}
    # E-mail delivery is out of scope; outside production hand the link back to the caller.
    if not _is_production():
        body["token"] = token
        body["invite_url"] = invite_url(current_app.config.get("INVITE_BASE_URL") or "", token)
    return jsonify(body), 201


@bp.delete("/invitations/<int:invitation_id>")
def invitations_revoke(invitation_id: int):
    ctx = require_permission(Capability.INVITE_MEMBERS)
    s = db_session()
    inv = revoke_invitation(s, ctx, invitation_id)
    s.commit()
    return jsonify({"invitation": inv.to_dict()})


@bp.post("/invitations/accept")
def invitations_accept():
    """Public: the token is the credential. Signs the new member in on success."""
    data = _json_body()
    s = db_session()
    user = accept_invitation(
        s,
        (text_field(data.get("token"), "token") or "").strip(),
        password=data.get("password") or "",
        full_name=data.get("full_name"),
    )
    s.commit()

    session.clear()
    session["user_id"] = user.id
    session["tenant_id"] = user.tenant_id
    session.permanent = True
    return jsonify({"user_id": user.id, "tenant_id": user.tenant_id}), 201
