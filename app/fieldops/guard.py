"""
AccessGuard: the explicit first call of every protected handler.

    ctx = require_permission(Capability.MANAGE_TEAM)
    ... business logic filtered by ctx.tenant_id ...

`check_permission` returns a GuardResult (ok context or typed error) for callers that
want to branch; `require_permission` raises the error so the app-level error handler
maps it to 401/403/400. Nothing is cached between calls.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from flask import g, has_app_context, has_request_context, request
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from app.fieldops import audit
from app.fieldops.catalog import RoleCatalog, current_catalog
from app.fieldops.errors import AccessError, Forbidden, ResolutionError, Unauthenticated, UnknownRole
from app.fieldops.models import User
from app.fieldops.permissions import Capability, PermissionSet
from app.fieldops.resolver import PermissionResolver, RoleRef

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.fieldops.auth import Identity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthorizedContext:
    user_id: int
    tenant_id: int
    role: RoleRef
    permissions: PermissionSet
    user: User = field(compare=False, repr=False)

    def has(self, capability: Capability | str) -> bool:
        return self.permissions.has(capability)


@dataclass(frozen=True)
class GuardResult:
    context: AuthorizedContext | None = None
    error: AccessError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.context is not None

    @property
    def status_code(self) -> int:
        return 200 if self.ok else (self.error.status_code if self.error else 500)

    def unwrap(self) -> AuthorizedContext:
        if self.error is not None:
            raise self.error
        if self.context is None:
            raise ResolutionError("Authorization produced neither a context nor an error.")
        return self.context


def _record_denial(session: "Session", user: User, missing: list[str]) -> None:
    """Best-effort: a failed write is logged and never turns the 403 into a 500."""
    user_id, tenant_id = user.id, user.tenant_id
    audit.record(
        session,
        actor_id=user_id,
        tenant_id=tenant_id,
        action=audit.PERMISSION_DENIED,
        target_type="Capability",
        target_id=",".join(missing),
        after={"required": missing, "path": request.path if has_request_context() else None},
    )
    try:
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Could not persist permission denial (user_id=%s)", user_id)


def _current_identity() -> "Identity | None":
    if not has_app_context():
        return None
    return getattr(g, "identity", None)


def check_permission(
    *capabilities: Capability | str,
    session: "Session | None" = None,
    catalog: RoleCatalog | None = None,
    identity: "Identity | None" = None,
    record_denial: bool = False,
) -> GuardResult:
    """
    Authenticate the caller and check that they hold every capability given
    (none given = authentication only). With `record_denial`, a Forbidden outcome is
    also written to the audit trail and committed.
    """
    required = [Capability.parse(c) for c in capabilities]

    ident = identity if identity is not None else _current_identity()
    if ident is None:
        return GuardResult(error=Unauthenticated())

    if session is None:
        from app.fieldops.db import db_session

        session = db_session()
    catalog = catalog or current_catalog()

    try:
        user = session.execute(
            select(User)
            .where(User.id == ident.user_id, User.tenant_id == ident.tenant_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
    except SQLAlchemyError as e:
        logger.exception("User lookup failed during authorization (user_id=%s)", ident.user_id)
        raise ResolutionError("Unable to resolve caller.") from e
    if user is None or not user.is_active:
        return GuardResult(error=Unauthenticated())

    resolver = PermissionResolver(session, catalog)
    try:
        role = resolver.role_for(user)
        permissions = resolver.permissions_for_role(role)
    except UnknownRole as e:
        logger.error("Role for user %s does not resolve: %s", user.id, e.message)
        return GuardResult(error=e)

    missing = permissions.missing(required)
    if missing:
        names = [c.value for c in missing]
        request_id = None
        if has_app_context():
            g.missing_permission = ",".join(names)
            request_id = getattr(g, "request_id", None)
        logger.warning(
            "Forbidden: user_id=%s tenant_id=%s missing=%s request_id=%s",
            user.id,
            user.tenant_id,
            ",".join(names),
            request_id,
        )
        if record_denial:
            _record_denial(session, user, names)
        return GuardResult(
            error=Forbidden(
                f"You do not have permission to perform this action (requires {', '.join(names)}).",
                required=names,
            )
        )

    return GuardResult(
        context=AuthorizedContext(
            user_id=user.id,
            tenant_id=user.tenant_id,
            role=role,
            permissions=permissions,
            user=user,
        )
    )


def require_permission(*capabilities: Capability | str) -> AuthorizedContext:
    if not capabilities:
        raise ValueError("require_permission() needs at least one capability; use require_identity().")
    return check_permission(*capabilities, record_denial=True).unwrap()


def require_identity() -> AuthorizedContext:
    return check_permission().unwrap()


def has_perm(capability: Capability | str) -> bool:
    """UI affordance helper: never raises, denies on any failure."""
    try:
        return check_permission(capability).ok
    except AccessError:
        return False
