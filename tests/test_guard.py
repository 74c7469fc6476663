"""Tests for the access guard (check_permission / require_permission / has_perm)."""
import pytest
from flask import g
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError
from werkzeug.security import generate_password_hash

from app.fieldops import create_app
from app.fieldops.auth import Identity
from app.fieldops.db import session_scope
from app.fieldops.errors import Forbidden, ResolutionError, Unauthenticated, UnknownCapability, UnknownRole
from app.fieldops.guard import GuardResult, check_permission, has_perm, require_identity, require_permission
from app.fieldops.models import AuditEntry, Base, Tenant, User
from app.fieldops.permissions import Capability


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
        other = Tenant(name="Other")
        s.add_all([acme, other])
        s.flush()
        s.add_all(
            [
                User(
                    tenant_id=acme.id,
                    email="tech@example.com",
                    password_hash=generate_password_hash("pw"),
                    is_active=True,
                    builtin_role="field_tech",
                ),
                User(
                    tenant_id=acme.id,
                    email="pm@example.com",
                    password_hash=generate_password_hash("pw"),
                    is_active=True,
                    builtin_role="project_manager",
                ),
                User(
                    tenant_id=other.id,
                    email="admin@other.com",
                    password_hash=generate_password_hash("pw"),
                    is_active=True,
                    builtin_role="admin",
                ),
            ]
        )
    return app


def _identity(app, email):
    with session_scope(app) as s:
        u = s.execute(select(User).where(User.email == email)).scalar_one()
        return Identity(user_id=u.id, tenant_id=u.tenant_id)


def test_field_tech_cannot_view_financials(app):
    ident = _identity(app, "tech@example.com")
    with app.app_context():
        g.identity = ident
        result = check_permission(Capability.VIEW_FINANCIALS)
        assert not result.ok
        assert isinstance(result.error, Forbidden)
        assert result.status_code == 403
        assert result.error.details["required"] == ["canViewFinancials"]
        assert g.missing_permission == "canViewFinancials"
        with pytest.raises(Forbidden):
            require_permission("canViewFinancials")


def test_granted_capability_returns_context(app):
    ident = _identity(app, "pm@example.com")
    with app.app_context():
        g.identity = ident
        ctx = require_permission(Capability.VIEW_FINANCIALS, Capability.MANAGE_TASKS)
        assert ctx.user_id == ident.user_id
        assert ctx.tenant_id == ident.tenant_id
        assert ctx.role.name == "project_manager"
        assert ctx.has("canViewFinancials")


def test_all_capabilities_must_be_held(app):
    ident = _identity(app, "pm@example.com")
    with app.app_context():
        g.identity = ident
        result = check_permission(Capability.VIEW_FINANCIALS, Capability.MANAGE_FINANCES)
        assert isinstance(result.error, Forbidden)
        assert result.error.details["required"] == ["canManageFinances"]


def test_anonymous_is_unauthenticated(app):
    with app.app_context():
        result = check_permission(Capability.VIEW_PUNCH_LIST)
        assert isinstance(result.error, Unauthenticated)
        assert result.status_code == 401
        with pytest.raises(Unauthenticated):
            require_identity()


def test_inactive_user_is_unauthenticated(app):
    ident = _identity(app, "tech@example.com")
    with session_scope(app) as s:
        s.execute(update(User).where(User.id == ident.user_id).values(is_active=False))
    with app.app_context():
        result = check_permission(Capability.VIEW_PUNCH_LIST, identity=ident)
        assert isinstance(result.error, Unauthenticated)


def test_identity_with_wrong_tenant_is_unauthenticated(app):
    ident = _identity(app, "tech@example.com")
    other = _identity(app, "admin@other.com")
    forged = Identity(user_id=ident.user_id, tenant_id=other.tenant_id)
    with app.app_context():
        assert isinstance(check_permission(identity=forged).error, Unauthenticated)


def test_unknown_role_is_reported(app):
    ident = _identity(app, "tech@example.com")
    with session_scope(app) as s:
        s.execute(update(User).where(User.id == ident.user_id).values(builtin_role="foreman"))
    with app.app_context():
        result = check_permission(Capability.VIEW_PUNCH_LIST, identity=ident)
        assert isinstance(result.error, UnknownRole)
        assert result.status_code == 400


def test_unknown_capability_raises(app):
    ident = _identity(app, "tech@example.com")
    with app.app_context():
        with pytest.raises(UnknownCapability):
            check_permission("canFlyDrones", identity=ident)


def test_require_permission_needs_a_capability(app):
    with app.app_context():
        with pytest.raises(ValueError):
            require_permission()


def test_storage_failure_raises_resolution_error(app, monkeypatch):
    ident = _identity(app, "tech@example.com")
    with app.app_context():
        s = app.extensions["sqlalchemy_sessionmaker"]()

        def _boom(*args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("db down"))

        monkeypatch.setattr(s, "execute", _boom)
        with pytest.raises(ResolutionError):
            check_permission(Capability.VIEW_PUNCH_LIST, session=s, identity=ident)
        s.close()


def test_has_perm_never_raises(app):
    ident = _identity(app, "pm@example.com")
    with app.app_context():
        assert has_perm(Capability.VIEW_FINANCIALS) is False
        g.identity = ident
        assert has_perm(Capability.VIEW_FINANCIALS) is True
        assert has_perm(Capability.MANAGE_FINANCES) is False


def test_require_permission_audits_denials_check_permission_does_not(app):
    ident = _identity(app, "tech@example.com")
    with app.app_context():
        g.identity = ident
        assert not check_permission(Capability.VIEW_FINANCIALS).ok
        assert not has_perm(Capability.VIEW_FINANCIALS)
        with pytest.raises(Forbidden):
            require_permission(Capability.VIEW_FINANCIALS)

    with session_scope(app) as s:
        entries = s.execute(select(AuditEntry).where(AuditEntry.action == "permission.denied")).scalars().all()
        assert len(entries) == 1
        assert entries[0].actor_user_id == ident.user_id
        assert entries[0].target_id == "canViewFinancials"


def test_empty_guard_result_does_not_unwrap():
    with pytest.raises(ResolutionError):
        GuardResult().unwrap()
