from __future__ import annotations

from datetime import datetime

from flask import Blueprint, jsonify, request

from app.fieldops.audit import entry_to_dict, list_entries
from app.fieldops.db import db_session
from app.fieldops.errors import ValidationError
from app.fieldops.guard import require_permission
from app.fieldops.permissions import Capability

bp = Blueprint("audit_log", __name__)


def _parse_dt(name: str) -> datetime | None:
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 date or datetime.", field=name) from None


def _parse_int(name: str, default: int | None) -> int | None:
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer.", field=name) from None


@bp.get("/audit-log")
def audit_log_list():
    ctx = require_permission(Capability.VIEW_AUDIT_LOG)
    page = list_entries(
        db_session(),
        ctx.tenant_id,
        action=(request.args.get("action") or "").strip() or None,
        target_type=(request.args.get("target_type") or "").strip() or None,
        actor_id=_parse_int("actor_id", None),
        since=_parse_dt("since"),
        until=_parse_dt("until"),
        page=_parse_int("page", 1) or 1,
        per_page=_parse_int("per_page", 50) or 50,
    )
    return jsonify(
        {
            "entries": [entry_to_dict(e) for e in page.entries],
            "total": page.total,
            "page": page.page,
            "per_page": page.per_page,
            "pages": page.pages,
        }
    )
