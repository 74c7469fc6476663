from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from flask import g, has_request_context, request
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.fieldops.models import AuditEntry
from app.fieldops.utils import dumps_json, loads_json

logger = logging.getLogger(__name__)

ROLE_CREATED = "role.created"
ROLE_UPDATED = "role.updated"
ROLE_DEACTIVATED = "role.deactivated"
ROLE_CLONED = "role.cloned"
ROLE_ASSIGNED = "role.assigned"
INVITATION_CREATED = "invitation.created"
INVITATION_ACCEPTED = "invitation.accepted"
INVITATION_REVOKED = "invitation.revoked"
INVITATION_EXPIRED = "invitation.expired"
AUTH_LOGIN = "auth.login"
AUTH_LOGOUT = "auth.logout"
PERMISSION_DENIED = "permission.denied"

MAX_PAGE_SIZE = 100


def record(
    s: Session,
    *,
    actor_id: int | None,
    tenant_id: int | None,
    action: str,
    target_type: str | None = None,
    target_id: Any = None,
    before: dict[str, Any] | None = None,
    after: dict[str, Any] | None = None,
    reason: str | None = None,
    request_id: str | None = None,
) -> AuditEntry | None:
    """
    Append-only, best-effort audit write.

    The row is flushed inside a SAVEPOINT so that a failing audit insert rolls back
    only itself; the triggering mutation still commits. Failures go to the log.
    """
    rid = request_id
    client_ip = None
    if has_request_context():
        rid = rid or getattr(g, "request_id", None)
        client_ip = request.remote_addr
    entry = AuditEntry(
        tenant_id=tenant_id,
        request_id=rid,
        actor_user_id=actor_id,
        action=action,
        target_type=target_type,
        target_id=str(target_id) if target_id is not None else None,
        before_json=dumps_json(before),
        after_json=dumps_json(after),
        reason=reason,
        client_ip=client_ip,
    )
    try:
        with s.begin_nested():
            s.add(entry)
            s.flush()
    except SQLAlchemyError:
        logger.exception(
            "Audit write failed (action=%s target=%s:%s request_id=%s); continuing",
            action,
            target_type,
            target_id,
            rid,
        )
        return None
    return entry


@dataclass(frozen=True)
class AuditPage:
    entries: list[AuditEntry]
    total: int
    page: int
    per_page: int

    @property
    def pages(self) -> int:
        return (self.total + self.per_page - 1) // self.per_page if self.per_page else 0


def list_entries(
    s: Session,
    tenant_id: int,
    *,
    action: str | None = None,
    target_type: str | None = None,
    actor_id: int | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    page: int = 1,
    per_page: int = 50,
) -> AuditPage:
    """Tenant-scoped audit entries, newest first."""
    page = max(1, int(page))
    per_page = min(max(1, int(per_page)), MAX_PAGE_SIZE)

    stmt = select(AuditEntry).where(AuditEntry.tenant_id == tenant_id)
    if action:
        stmt = stmt.where(AuditEntry.action == action)
    if target_type:
        stmt = stmt.where(AuditEntry.target_type == target_type)
    if actor_id is not None:
        stmt = stmt.where(AuditEntry.actor_user_id == actor_id)
    if since is not None:
        stmt = stmt.where(AuditEntry.created_at >= since)
    if until is not None:
        stmt = stmt.where(AuditEntry.created_at <= until)

    total = s.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    rows = (
        s.execute(
            stmt.order_by(AuditEntry.created_at.desc(), AuditEntry.id.desc())
            .limit(per_page)
            .offset((page - 1) * per_page)
        )
        .scalars()
        .all()
    )
    return AuditPage(entries=list(rows), total=total, page=page, per_page=per_page)


def entry_to_dict(entry: AuditEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
        "actor_user_id": entry.actor_user_id,
        "action": entry.action,
        "target_type": entry.target_type,
        "target_id": entry.target_id,
        "before": loads_json(entry.before_json),
        "after": loads_json(entry.after_json),
        "reason": entry.reason,
        "request_id": entry.request_id,
    }
