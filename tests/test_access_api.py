"""HTTP tests for the roles, team, invitations and audit-log endpoints."""
import pytest
from werkzeug.security import generate_password_hash

from app.fieldops import create_app
from app.fieldops.auth import _login_attempts
from app.fieldops.db import session_scope
from app.fieldops.models import Base, Tenant, User


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("INVITE_BASE_URL", "https://ops.example.com/")
    monkeypatch.delenv("ROLE_CATALOG_PATH", raising=False)
    _login_attempts.clear()

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        acme = Tenant(name="Acme")
        s.add(acme)
        s.flush()
        for email, role in (
            ("admin@example.com", "admin"),
            ("super@example.com", "superintendent"),
            ("pm@example.com", "project_manager"),
            ("tech@example.com", "field_tech"),
        ):
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
def client(app):
    return app.test_client()


def _login(client, email):
    r = client.post("/auth/login", json={"email": email, "password": "pw"})
    assert r.status_code == 200
    return {"X-CSRF-Token": r.json["csrf_token"]}


def _user_id(app, email):
    with session_scope(app) as s:
        return s.query(User).filter(User.email == email).one().id


def _create_role(client, headers, name="Site Lead", **extra):
    payload = {"role_name": name, "permissions": {"canManageTasks": True, "canViewReports": True}}
    payload.update(extra)
    return client.post("/api/roles", json=payload, headers=headers)


def test_mutation_requires_csrf(client):
    _login(client, "admin@example.com")
    r = client.post("/api/roles", json={"role_name": "Site Lead", "permissions": {}})
    assert r.status_code == 400
    assert r.json["error"] == "csrf_failed"


def test_field_tech_forbidden(client):
    h = _login(client, "tech@example.com")
    r = _create_role(client, h)
    assert r.status_code == 403
    assert r.json["error"] == "forbidden"
    assert r.json["required"] == ["canManageTeam"]

    r = client.get("/api/me/permissions")
    assert r.json["permissions"]["canViewFinancials"] is False


def test_role_crud(client):
    h = _login(client, "admin@example.com")

    r = _create_role(client, h, color="#112233", role_level=2)
    assert r.status_code == 201
    role = r.json["role"]
    assert role["role_slug"] == "site-lead"
    assert role["role_level"] == 2
    assert role["version"] == 1

    r = _create_role(client, h, "SITE LEAD")
    assert r.status_code == 409
    assert r.json["error"] == "duplicate_name"

    r = client.get("/api/roles")
    assert r.status_code == 200
    assert len(r.json["builtin_roles"]) == 7
    assert [c["role_name"] for c in r.json["custom_roles"]] == ["Site Lead"]

    r = client.put(
        f"/api/roles/{role['id']}",
        json={"permissions": {"canViewReports": True}, "expected_version": 1},
        headers=h,
    )
    assert r.status_code == 200
    assert r.json["role"]["version"] == 2
    assert r.json["role"]["permissions"]["canManageTasks"] is False

    r = client.put(
        f"/api/roles/{role['id']}",
        json={"permissions": {"canExportData": True}, "expected_version": 1},
        headers=h,
    )
    assert r.status_code == 409
    assert r.json["error"] == "concurrent_modification"

    r = client.post(f"/api/roles/{role['id']}/clone", json={"new_name": "Site Lead Copy"}, headers=h)
    assert r.status_code == 201

    r = client.get(f"/api/roles/{role['id']}")
    assert r.status_code == 200
    assert r.json["role"]["member_count"] == 0

    r = client.delete(f"/api/roles/{role['id']}", headers=h)
    assert r.status_code == 200
    assert r.json["role"]["is_active"] is False
    assert client.get(f"/api/roles/{role['id']}").status_code == 404


def test_role_validation_errors(client):
    h = _login(client, "admin@example.com")
    r = client.post("/api/roles", json={"role_name": "Drone Ops", "permissions": {"canFlyDrones": True}}, headers=h)
    assert r.status_code == 400
    assert r.json["error"] == "unknown_capability"

    r = client.post("/api/roles", json={"role_name": "x", "permissions": {}}, headers=h)
    assert r.status_code == 400
    assert r.json["error"] == "validation_failed"


@pytest.mark.parametrize(
    "path,payload,field",
    [
        ("/api/roles", {"role_name": 123, "permissions": {}}, "roleName"),
        ("/api/roles", {"role_name": "Site Lead", "permissions": {}, "color": 7}, "color"),
        ("/api/invitations", {"email": "a@example.com", "builtin_role": 5}, "builtin_role"),
        ("/api/invitations", {"email": 42, "builtin_role": "viewer"}, "email"),
        ("/api/invitations", {"email": "a@example.com", "builtin_role": "viewer", "full_name": ["A"]}, "full_name"),
    ],
)
def test_wrongly_typed_fields_are_client_errors(client, path, payload, field):
    h = _login(client, "admin@example.com")
    r = client.post(path, json=payload, headers=h)
    assert r.status_code == 400
    assert r.json["error"] == "validation_failed"
    assert r.json["field"] == field


def test_reassign_target_must_be_an_object(app, client):
    h = _login(client, "admin@example.com")
    role_id = _create_role(client, h).json["role"]["id"]
    client.put(f"/api/users/{_user_id(app, 'tech@example.com')}/role", json={"custom_role_id": role_id}, headers=h)

    r = client.delete(f"/api/roles/{role_id}", json={"confirm": True, "reassign_to": "viewer"}, headers=h)
    assert r.status_code == 400
    assert r.json["field"] == "role"

    r = client.post("/api/invitations/accept", json={"token": 12345, "password": "s3cret-pass"})
    assert r.status_code == 400
    assert r.json["field"] == "token"


def test_delete_role_with_holders(app, client):
    h = _login(client, "admin@example.com")
    role_id = _create_role(client, h).json["role"]["id"]
    target_id = _create_role(client, h, "Crew B").json["role"]["id"]

    for email in ("pm@example.com", "tech@example.com", "super@example.com"):
        r = client.put(f"/api/users/{_user_id(app, email)}/role", json={"custom_role_id": role_id}, headers=h)
        assert r.status_code == 200

    r = client.delete(f"/api/roles/{role_id}", headers=h)
    assert r.status_code == 409
    assert r.json["error"] == "dangling_assignment"
    assert r.json["member_count"] == 3

    r = client.delete(
        f"/api/roles/{role_id}",
        json={"confirm": True, "reassign_to": {"custom_role_id": target_id}},
        headers=h,
    )
    assert r.status_code == 200

    members = {m["email"]: m for m in client.get("/api/team").json["members"]}
    for email in ("pm@example.com", "tech@example.com", "super@example.com"):
        assert members[email]["role"]["id"] == target_id


def test_assign_role_rules(app, client):
    h = _login(client, "super@example.com")
    r = client.put(
        f"/api/users/{_user_id(app, 'tech@example.com')}/role",
        json={"builtin_role": "project_manager"},
        headers=h,
    )
    assert r.status_code == 403
    assert r.json["required"] == ["canChangeRoles"]

    h = _login(client, "admin@example.com")
    r = client.put(
        f"/api/users/{_user_id(app, 'tech@example.com')}/role",
        json={"builtin_role": "project_manager"},
        headers=h,
    )
    assert r.status_code == 200
    assert r.json["builtin_role"] == "project_manager"

    r = client.put(f"/api/users/{_user_id(app, 'tech@example.com')}/role", json={"builtin_role": "foreman"}, headers=h)
    assert r.status_code == 400
    assert r.json["error"] == "unknown_role"

    r = client.put(
        f"/api/users/{_user_id(app, 'tech@example.com')}/role",
        json={"builtin_role": "viewer", "custom_role_id": 1},
        headers=h,
    )
    assert r.status_code == 400

    r = client.put(f"/api/users/{_user_id(app, 'admin@example.com')}/role", json={"builtin_role": "viewer"}, headers=h)
    assert r.status_code == 400

    r = client.put("/api/users/9999/role", json={"builtin_role": "viewer"}, headers=h)
    assert r.status_code == 404


def test_invitation_flow(app, client):
    h = _login(client, "super@example.com")
    r = client.post("/api/invitations", json={"email": "boss@example.com", "builtin_role": "admin"}, headers=h)
    assert r.status_code == 403

    r = client.post(
        "/api/invitations",
        json={"email": "new.hire@example.com", "role": "field_tech", "full_name": "New Hire"},
        headers=h,
    )
    assert r.status_code == 201
    token = r.json["token"]
    assert r.json["invite_url"] == f"https://ops.example.com/invite/{token}"
    invitation_id = r.json["invitation"]["id"]

    r = client.get("/api/invitations?status=pending")
    assert [i["id"] for i in r.json["invitations"]] == [invitation_id]

    newcomer = app.test_client()
    r = newcomer.post("/api/invitations/accept", json={"token": token, "password": "s3cret-pass"})
    assert r.status_code == 201
    r = newcomer.get("/api/me/permissions")
    assert r.json["role"]["name"] == "field_tech"

    r = app.test_client().post("/api/invitations/accept", json={"token": token, "password": "s3cret-pass"})
    assert r.status_code == 409
    assert r.json["error"] == "invitation_already_consumed"


def test_revoke_invitation(app, client):
    h = _login(client, "admin@example.com")
    r = client.post("/api/invitations", json={"email": "temp@example.com", "role": "viewer"}, headers=h)
    token = r.json["token"]

    r = client.delete(f"/api/invitations/{r.json['invitation']['id']}", headers=h)
    assert r.status_code == 200
    assert r.json["invitation"]["status"] == "revoked"

    r = app.test_client().post("/api/invitations/accept", json={"token": token, "password": "s3cret-pass"})
    assert r.status_code == 410
    assert r.json["error"] == "invitation_revoked"


def test_audit_log_endpoint(client):
    h = _login(client, "pm@example.com")
    assert client.get("/api/audit-log").status_code == 403

    h = _login(client, "admin@example.com")
    _create_role(client, h)
    r = client.get("/api/audit-log?action=role.created")
    assert r.status_code == 200
    assert r.json["total"] == 1
    assert r.json["entries"][0]["after"]["name"] == "Site Lead"

    r = client.get("/api/audit-log?since=yesterday")
    assert r.status_code == 400


def test_permission_denials_are_audited(app, client):
    h = _login(client, "tech@example.com")
    assert _create_role(client, h).status_code == 403

    _login(client, "admin@example.com")
    r = client.get("/api/audit-log?action=permission.denied")
    assert r.status_code == 200
    assert r.json["total"] == 1
    entry = r.json["entries"][0]
    assert entry["actor_user_id"] == _user_id(app, "tech@example.com")
    assert entry["target_type"] == "Capability"
    assert entry["after"] == {"required": ["canManageTeam"], "path": "/api/roles"}
