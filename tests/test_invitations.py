"""Tests for the invitation lifecycle: create, accept exactly once, expire, revoke."""
from datetime import timedelta

import pytest
from sqlalchemy import select, update
from werkzeug.security import check_password_hash, generate_password_hash

from app.fieldops import create_app
from app.fieldops.auth import Identity
from app.fieldops.catalog import current_catalog
from app.fieldops.db import session_scope
from app.fieldops.errors import (
    Conflict,
    Forbidden,
    InvitationAlreadyConsumed,
    InvitationExpired,
    InvitationRevoked,
    NotFound,
    ValidationError,
)
from app.fieldops.guard import check_permission
from app.fieldops.models import AuditEntry, Base, Tenant, User
from app.fieldops.modules.custom_roles.models import CustomRole
from app.fieldops.modules.custom_roles.service import create_custom_role
from app.fieldops.modules.invitations.models import Invitation
from app.fieldops.modules.invitations import service as invitation_service
from app.fieldops.modules.invitations.service import (
    _claim_invitation,
    accept_invitation,
    create_invitation,
    expire_stale_invitations,
    list_invitations,
    revoke_invitation,
)
from app.fieldops.resolver import PermissionResolver, RoleSelector
from app.fieldops.utils import token_digest, utcnow


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.delenv("ROLE_CATALOG_PATH", raising=False)

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        acme = Tenant(name="Acme")
        s.add(acme)
        s.flush()
        for email, role in (("admin@example.com", "admin"), ("super@example.com", "superintendent")):
            s.add(
                User(
                    tenant_id=acme.id,
                    email=email,
                    password_hash=generate_password_hash("pw"),
                    is_active=True,
                    builtin_role=role,
                )
            )
    return app


@pytest.fixture()
def s(app):
    with app.app_context():
        sess = app.extensions["sqlalchemy_sessionmaker"]()
        try:
            yield sess
        finally:
            sess.close()


def _ctx(s, email):
    u = s.execute(select(User).where(User.email == email)).scalar_one()
    return check_permission(session=s, identity=Identity(user_id=u.id, tenant_id=u.tenant_id)).unwrap()


def _invite(s, email="new.hire@example.com", role="field_tech"):
    inv, token = create_invitation(s, _ctx(s, "admin@example.com"), email, RoleSelector(builtin_role=role))
    s.commit()
    return inv, token


def test_create_stores_only_token_digest(s):
    inv, token = _invite(s, "New.Hire@Example.com ")
    assert inv.email == "new.hire@example.com"
    assert inv.status == "pending"
    assert inv.token_hash == token_digest(token)
    assert token not in inv.token_hash
    assert inv.expires_at - inv.created_at == timedelta(days=7)
    assert s.execute(select(AuditEntry).where(AuditEntry.action == "invitation.created")).scalar_one()


def test_accept_creates_member_with_invited_role(app, s):
    inv, token = _invite(s)
    user = accept_invitation(s, token, password="s3cret-pass", full_name="New Hire")
    s.commit()

    assert user.tenant_id == inv.tenant_id
    assert user.builtin_role == "field_tech"
    assert check_password_hash(user.password_hash, "s3cret-pass")

    refreshed = s.execute(select(Invitation).where(Invitation.id == inv.id).execution_options(populate_existing=True)).scalar_one()
    assert refreshed.status == "accepted"
    assert refreshed.accepted_user_id == user.id


def test_token_consumed_twice(app, s):
    _inv, token = _invite(s)

    with session_scope(app) as first:
        accept_invitation(first, token, password="s3cret-pass")

    with pytest.raises(InvitationAlreadyConsumed):
        with session_scope(app) as second:
            accept_invitation(second, token, password="other-pass")

    assert len(s.execute(select(User).where(User.email == "new.hire@example.com")).scalars().all()) == 1


def test_concurrent_redemptions_create_one_member(app, s, monkeypatch):
    _inv, token = _invite(s)
    claim = invitation_service._claim_invitation

    def claim_after_rival(sess, invitation_id, now):
        # This request already saw the invitation as pending; a rival redeems it first.
        monkeypatch.setattr(invitation_service, "_claim_invitation", claim)
        sess.rollback()  # SQLite: drop this reader's lock so the rival can commit
        with session_scope(app) as rival:
            accept_invitation(rival, token, password="rival-pass")
        return claim(sess, invitation_id, now)

    monkeypatch.setattr(invitation_service, "_claim_invitation", claim_after_rival)
    late = app.extensions["sqlalchemy_sessionmaker"]()
    try:
        with pytest.raises(InvitationAlreadyConsumed):
            accept_invitation(late, token, password="s3cret-pass")
        late.rollback()
    finally:
        late.close()

    users = s.execute(
        select(User).where(User.email == "new.hire@example.com").execution_options(populate_existing=True)
    ).scalars().all()
    assert len(users) == 1
    assert check_password_hash(users[0].password_hash, "rival-pass")


def test_claim_is_exactly_once(s):
    inv, _token = _invite(s)
    now = utcnow()
    assert _claim_invitation(s, inv.id, now) is True
    assert _claim_invitation(s, inv.id, now) is False


def test_expired_invitation_is_marked_and_rejected(app, s):
    inv, token = _invite(s)
    with pytest.raises(InvitationExpired):
        accept_invitation(s, token, password="s3cret-pass", now=inv.expires_at + timedelta(seconds=1))

    with session_scope(app) as check:
        assert check.get(Invitation, inv.id).status == "expired"
    with pytest.raises(InvitationExpired):
        accept_invitation(s, token, password="s3cret-pass")


def test_revoked_invitation(s):
    inv, token = _invite(s)
    revoked = revoke_invitation(s, _ctx(s, "admin@example.com"), inv.id)
    s.commit()
    assert revoked.status == "revoked"

    with pytest.raises(InvitationRevoked):
        accept_invitation(s, token, password="s3cret-pass")
    with pytest.raises(Conflict):
        revoke_invitation(s, _ctx(s, "admin@example.com"), inv.id)


def test_revoke_requires_managing_the_invited_role(s):
    above, _token = _invite(s, "lead@example.com", role="superintendent")
    below, _token = _invite(s, "crew@example.com", role="field_tech")

    sup = _ctx(s, "super@example.com")
    with pytest.raises(Forbidden):
        revoke_invitation(s, sup, above.id)
    s.rollback()
    assert revoke_invitation(s, _ctx(s, "super@example.com"), below.id).status == "revoked"
    s.commit()

    statuses = {i.id: i.status for i in list_invitations(s, above.tenant_id)}
    assert statuses == {above.id: "pending", below.id: "revoked"}


def test_unknown_token(s):
    with pytest.raises(NotFound):
        accept_invitation(s, "not-a-token", password="s3cret-pass")


def test_short_password_rejected(s):
    _inv, token = _invite(s)
    with pytest.raises(ValidationError):
        accept_invitation(s, token, password="short")


def test_existing_member_cannot_be_invited(s):
    with pytest.raises(Conflict):
        _invite(s, "super@example.com")


def test_live_pending_invitation_blocks_duplicate(s):
    _invite(s)
    with pytest.raises(Conflict):
        _invite(s)


def test_stale_pending_invitation_is_replaced(s):
    old, _token = _invite(s)
    s.execute(update(Invitation).where(Invitation.id == old.id).values(expires_at=utcnow() - timedelta(days=1)))
    s.commit()

    new, _token = _invite(s)
    assert new.id != old.id
    statuses = {i.id: i.status for i in list_invitations(s, new.tenant_id)}
    assert statuses == {old.id: "expired", new.id: "pending"}


def test_invalid_email_rejected(s):
    with pytest.raises(ValidationError):
        _invite(s, "not-an-email")


def test_cannot_invite_at_or_above_own_level(s):
    sup = _ctx(s, "super@example.com")
    with pytest.raises(Forbidden):
        create_invitation(s, sup, "boss@example.com", RoleSelector(builtin_role="admin"))
    with pytest.raises(Forbidden):
        create_invitation(s, sup, "peer@example.com", RoleSelector(builtin_role="superintendent"))
    inv, _token = create_invitation(s, sup, "pm@example.com", RoleSelector(builtin_role="project_manager"))
    assert inv.builtin_role == "project_manager"


def test_expire_stale_invitations(s):
    inv, _token = _invite(s)
    _invite(s, "second@example.com")
    assert expire_stale_invitations(s, inv.tenant_id, now=inv.expires_at + timedelta(minutes=1)) == 2
    s.commit()
    assert list_invitations(s, inv.tenant_id, "pending") == []
    assert len(s.execute(select(AuditEntry).where(AuditEntry.action == "invitation.expired")).scalars().all()) == 2


def test_invite_into_custom_role_deactivated_before_accept(s):
    admin = _ctx(s, "admin@example.com")
    role = create_custom_role(s, admin, "Survey Crew", {"canUploadPhotos": True})
    s.commit()
    _inv, token = create_invitation(s, admin, "surveyor@example.com", RoleSelector(custom_role_id=role.id))
    s.commit()

    s.execute(update(CustomRole).where(CustomRole.id == role.id).values(is_active=False))
    s.commit()

    user = accept_invitation(s, token, password="s3cret-pass")
    s.commit()
    assert user.builtin_role == "viewer"
    perms = PermissionResolver(s, current_catalog()).effective_permissions(user)
    assert perms == current_catalog().resolve_builtin("viewer")
