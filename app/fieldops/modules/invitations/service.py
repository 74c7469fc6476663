from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from werkzeug.security import generate_password_hash

from app.fieldops import audit
from app.fieldops.catalog import RoleCatalog, current_catalog
from app.fieldops.errors import (
    Conflict,
    Forbidden,
    InvitationAlreadyConsumed,
    InvitationExpired,
    InvitationRevoked,
    NotFound,
    UnknownRole,
    ValidationError,
)
from app.fieldops.models import User
from app.fieldops.modules.invitations.models import (
    STATUS_ACCEPTED,
    STATUS_EXPIRED,
    STATUS_PENDING,
    STATUS_REVOKED,
    STATUSES,
    Invitation,
)
from app.fieldops.resolver import BuiltInRole, PermissionResolver, RoleRef, RoleSelector, role_columns
from app.fieldops.utils import is_valid_email, normalize_email, text_field, token_digest, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.fieldops.guard import AuthorizedContext

logger = logging.getLogger(__name__)

DEFAULT_TTL_DAYS = 7
MIN_PASSWORD_LENGTH = 8


def invite_url(base_url: str, token: str) -> str:
    return f"{base_url.rstrip('/')}/invite/{token}"


def _invitation_role(s: "Session", inv: Invitation, catalog: RoleCatalog) -> RoleRef:
    """The invited role; a custom role deactivated since the invite falls back to the lowest built-in role."""
    resolver = PermissionResolver(s, catalog)
    selector = RoleSelector(builtin_role=inv.builtin_role, custom_role_id=inv.custom_role_id)
    try:
        return resolver.resolve_selector(inv.tenant_id, selector)
    except UnknownRole:
        low = catalog.lowest_privilege()
        logger.warning(
            "Invited role for invitation %s no longer resolves; granting %s instead",
            inv.id,
            low.name,
        )
        return BuiltInRole(name=low.name, level=low.level)


def _mark_expired(s: "Session", inv: Invitation, now: datetime) -> bool:
    result = s.execute(
        update(Invitation)
        .where(Invitation.id == inv.id, Invitation.status == STATUS_PENDING)
        .values(status=STATUS_EXPIRED)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    audit.record(
        s,
        actor_id=None,
        tenant_id=inv.tenant_id,
        action=audit.INVITATION_EXPIRED,
        target_type="Invitation",
        target_id=inv.id,
        before={"status": STATUS_PENDING},
        after={"status": STATUS_EXPIRED, "expired_at": now},
    )
    return True


def _claim_invitation(s: "Session", invitation_id: int, now: datetime) -> bool:
    """Atomically move a live pending invitation to accepted. False if another request got there first."""
    result = s.execute(
        update(Invitation)
        .where(
            Invitation.id == invitation_id,
            Invitation.status == STATUS_PENDING,
            Invitation.expires_at > now,
        )
        .values(status=STATUS_ACCEPTED, accepted_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def get_invitation(s: "Session", tenant_id: int, invitation_id: int) -> Invitation:
    inv = s.execute(
        select(Invitation)
        .where(Invitation.id == invitation_id, Invitation.tenant_id == tenant_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if inv is None:
        raise NotFound("Invitation not found.", invitation_id=invitation_id)
    return inv


def list_invitations(s: "Session", tenant_id: int, status: str | None = None) -> list[Invitation]:
    stmt = select(Invitation).where(Invitation.tenant_id == tenant_id)
    if status:
        if status not in STATUSES:
            raise ValidationError(f"Unknown invitation status {status!r}.", field="status")
        stmt = stmt.where(Invitation.status == status)
    stmt = stmt.order_by(Invitation.created_at.desc(), Invitation.id.desc())
    return list(s.execute(stmt.execution_options(populate_existing=True)).scalars().all())


def expire_stale_invitations(s: "Session", tenant_id: int | None = None, now: datetime | None = None) -> int:
    """Move pending invitations past their expiry to `expired`. Returns how many moved."""
    now = now or utcnow()
    stmt = select(Invitation).where(Invitation.status == STATUS_PENDING, Invitation.expires_at <= now)
    if tenant_id is not None:
        stmt = stmt.where(Invitation.tenant_id == tenant_id)
    count = 0
    for inv in s.execute(stmt.execution_options(populate_existing=True)).scalars().all():
        if _mark_expired(s, inv, now):
            count += 1
    if count:
        logger.info("Expired %d stale invitation(s) (tenant_id=%s)", count, tenant_id)
    return count


def create_invitation(
    s: "Session",
    ctx: "AuthorizedContext",
    email: str,
    selector: RoleSelector,
    *,
    full_name: str | None = None,
    message: str | None = None,
    expires_in_days: int = DEFAULT_TTL_DAYS,
    catalog: RoleCatalog | None = None,
) -> tuple[Invitation, str]:
    """
    Invite `email` into the caller's tenant with the given role.

    Returns the invitation and the raw single-use token; only its sha256 digest is stored.
    """
    catalog = catalog or current_catalog()
    email = normalize_email(email)
    if not is_valid_email(email):
        raise ValidationError("Invalid email address.", field="email")
    if expires_in_days < 1:
        raise ValidationError("Invitation lifetime must be at least one day.", field="expires_in_days")
    full_name = (text_field(full_name, "full_name") or "").strip() or None
    message = (text_field(message, "message") or "").strip() or None

    resolver = PermissionResolver(s, catalog)
    role = resolver.resolve_selector(ctx.tenant_id, selector)
    if not resolver.can_manage_role(ctx.role, role, ctx.permissions):
        raise Forbidden("You cannot invite members with this role.", role=role.to_dict())

    if s.execute(select(User.id).where(User.email == email)).first() is not None:
        raise Conflict("A user with this email already exists.", email=email)

    now = utcnow()
    pending = s.execute(
        select(Invitation).where(
            Invitation.tenant_id == ctx.tenant_id,
            Invitation.email == email,
            Invitation.status == STATUS_PENDING,
        )
        .execution_options(populate_existing=True)
    ).scalars().all()
    for inv in pending:
        if inv.expires_at > now:
            raise Conflict("An invitation has already been sent to this email.", email=email)
        _mark_expired(s, inv, now)

    token = secrets.token_hex(32)
    inv = Invitation(
        tenant_id=ctx.tenant_id,
        email=email,
        token_hash=token_digest(token),
        status=STATUS_PENDING,
        full_name=full_name,
        message=message,
        invited_by_user_id=ctx.user_id,
        created_at=now,
        expires_at=now + timedelta(days=expires_in_days),
        **role_columns(role),
    )
    s.add(inv)
    s.flush()

    audit.record(
        s,
        actor_id=ctx.user_id,
        tenant_id=ctx.tenant_id,
        action=audit.INVITATION_CREATED,
        target_type="Invitation",
        target_id=inv.id,
        after={"email": email, "role": role.to_dict(), "expires_at": inv.expires_at},
    )
    logger.info("Invitation created (tenant_id=%s invitation_id=%s by=%s)", ctx.tenant_id, inv.id, ctx.user_id)
    return inv, token


def accept_invitation(
    s: "Session",
    token: str,
    *,
    password: str,
    full_name: str | None = None,
    now: datetime | None = None,
    catalog: RoleCatalog | None = None,
) -> User:
    """
    Redeem an invitation token, creating the member with the invited role.

    The token is claimed with a conditional UPDATE on status='pending', so of two
    concurrent redemptions exactly one creates a user. An invitation found past its
    expiry is marked expired and committed before InvitationExpired is raised.
    """
    catalog = catalog or current_catalog()
    now = now or utcnow()
    if not token:
        raise ValidationError("Invitation token is required.", field="token")
    full_name = (text_field(full_name, "full_name") or "").strip() or None

    inv = s.execute(
        select(Invitation).where(Invitation.token_hash == token_digest(token)).execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if inv is None:
        raise NotFound("Invitation not found.")
    if inv.status == STATUS_REVOKED:
        raise InvitationRevoked()
    if inv.status == STATUS_ACCEPTED:
        raise InvitationAlreadyConsumed()
    if inv.status == STATUS_EXPIRED:
        raise InvitationExpired()
    if inv.expires_at <= now:
        _mark_expired(s, inv, now)
        s.commit()
        raise InvitationExpired()

    if len(text_field(password, "password") or "") < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.", field="password")

    if not _claim_invitation(s, inv.id, now):
        raise InvitationAlreadyConsumed()

    role = _invitation_role(s, inv, catalog)
    user = User(
        tenant_id=inv.tenant_id,
        email=inv.email,
        full_name=full_name or inv.full_name,
        password_hash=generate_password_hash(password),
        is_active=True,
        created_at=now,
        **role_columns(role),
    )
    try:
        with s.begin_nested():
            s.add(user)
            s.flush()
    except IntegrityError:
        raise Conflict("A user with this email already exists.", email=inv.email) from None

    s.execute(
        update(Invitation)
        .where(Invitation.id == inv.id)
        .values(accepted_user_id=user.id)
        .execution_options(synchronize_session=False)
    )
    audit.record(
        s,
        actor_id=user.id,
        tenant_id=inv.tenant_id,
        action=audit.INVITATION_ACCEPTED,
        target_type="Invitation",
        target_id=inv.id,
        before={"status": STATUS_PENDING},
        after={"status": STATUS_ACCEPTED, "user_id": user.id, "role": role.to_dict()},
    )
    logger.info("Invitation accepted (tenant_id=%s invitation_id=%s user_id=%s)", inv.tenant_id, inv.id, user.id)
    return user


def revoke_invitation(
    s: "Session",
    ctx: "AuthorizedContext",
    invitation_id: int,
    *,
    catalog: RoleCatalog | None = None,
) -> Invitation:
    """Revoke a pending invitation. The caller must be able to manage the invited role."""
    catalog = catalog or current_catalog()
    inv = get_invitation(s, ctx.tenant_id, invitation_id)
    if inv.status != STATUS_PENDING:
        raise Conflict(f"Only pending invitations can be revoked (status is {inv.status}).", status=inv.status)

    role = _invitation_role(s, inv, catalog)
    if not PermissionResolver(s, catalog).can_manage_role(ctx.role, role, ctx.permissions):
        raise Forbidden("You cannot revoke invitations for this role.", role=role.to_dict())

    now = utcnow()
    result = s.execute(
        update(Invitation)
        .where(
            Invitation.id == inv.id,
            Invitation.tenant_id == ctx.tenant_id,
            Invitation.status == STATUS_PENDING,
        )
        .values(status=STATUS_REVOKED, revoked_at=now, revoked_by_user_id=ctx.user_id)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise Conflict("Invitation is no longer pending.")

    audit.record(
        s,
        actor_id=ctx.user_id,
        tenant_id=ctx.tenant_id,
        action=audit.INVITATION_REVOKED,
        target_type="Invitation",
        target_id=inv.id,
        before={"status": STATUS_PENDING},
        after={"status": STATUS_REVOKED},
    )
    return get_invitation(s, ctx.tenant_id, inv.id)
