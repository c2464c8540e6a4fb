"""Mailroom staff management: roles, removal, invitations, and accepting an invitation."""
from datetime import datetime, timedelta

import pytest
from werkzeug.security import generate_password_hash

from app.mailroom import create_app
from app.mailroom.constants import PERMISSIONS, ROLE_NAMES, ROLE_PERMISSIONS
from app.mailroom.db import session_scope
from app.mailroom.errors import Forbidden, NotificationFailure, ValidationError
from app.mailroom.models import AuditEvent, Base, Mailroom, Organization, Permission, Role, User
from app.mailroom.modules.staff.models import Invitation
from app.mailroom.modules.staff.service import (
    accept_invitation,
    change_user_role,
    create_invitation,
    list_invitations,
)

STAFF_ID = 1
MANAGER_ID = 2
ADMIN_ID = 3


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[tuple[str, str, str, str | None]] = []

    def send(self, to, subject, body, *, reply_to=None):
        if self.fail:
            raise NotificationFailure("SMTP server unavailable")
        self.sent.append((to, subject, body, reply_to))


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("JWT_SECRET_KEY", "test-jwt-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("NOTIFICATIONS_ENABLED", "0")
    monkeypatch.setenv("INVITE_ACCEPT_URL", "https://mail.example.edu/join")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    app.extensions["package_notifier"] = RecordingNotifier()

    with session_scope(app) as s:
        perms = {key: Permission(key=key, name=name) for key, name in PERMISSIONS.items()}
        roles = {}
        for key, perm_keys in ROLE_PERMISSIONS.items():
            roles[key] = Role(key=key, name=ROLE_NAMES[key])
            roles[key].permissions.extend(perms[k] for k in perm_keys)
        s.add_all([*perms.values(), *roles.values()])

        home = Organization(name="Test University", slug="test-university")
        other = Organization(name="Other College", slug="other-college")
        s.add_all([home, other])
        s.flush()
        north = Mailroom(
            organization_id=home.id, name="North Hall", slug="north-hall", admin_email="north@university.edu"
        )
        east = Mailroom(organization_id=other.id, name="East Hall", slug="east-hall")
        s.add_all([north, east])
        s.flush()

        pw = generate_password_hash("pw")
        staff = User(email="staff@example.com", password_hash=pw, mailroom_id=north.id)
        staff.roles.append(roles["user"])
        manager = User(email="manager@example.com", password_hash=pw, mailroom_id=north.id)
        manager.roles.append(roles["manager"])
        admin = User(email="admin@example.com", password_hash=pw, organization_id=home.id)
        admin.roles.append(roles["admin"])
        outsider = User(email="outsider@example.com", password_hash=pw, mailroom_id=east.id)
        outsider.roles.append(roles["manager"])
        deputy = User(email="deputy@example.com", password_hash=pw, mailroom_id=north.id)
        deputy.roles.append(roles["manager"])
        s.add_all([staff, manager, admin, outsider, deputy])
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _auth(client, email: str = "manager@example.com") -> dict[str, str]:
    r = client.post("/auth/token", json={"email": email, "password": "pw"})
    assert r.status_code == 200
    return {"Authorization": f"Bearer {r.json['access_token']}"}


def _invite(client, headers, email="new@example.com", **extra):
    return client.post("/api/mailrooms/1/invitations", json={"email": email, **extra}, headers=headers)


def _actions(app) -> list[str]:
    with session_scope(app) as s:
        return [e.action for e in s.query(AuditEvent).order_by(AuditEvent.id).all()]


def test_manager_lists_mailroom_staff(client):
    r = client.get("/api/mailrooms/1/users", headers=_auth(client))
    assert r.status_code == 200
    assert [u["email"] for u in r.json["users"]] == ["deputy@example.com", "manager@example.com", "staff@example.com"]
    assert r.json["invitations"] == []


def test_regular_staff_cannot_manage_staff(client):
    r = client.get("/api/mailrooms/1/users", headers=_auth(client, "staff@example.com"))
    assert r.status_code == 403
    assert r.json["missing_permission"] == "staff.manage"


def test_manager_promotes_and_demotes_staff(app, client):
    h = _auth(client)
    r = client.patch(f"/api/users/{STAFF_ID}/role", json={"role": "manager"}, headers=h)
    assert r.status_code == 200
    assert r.json["roles"] == ["manager"]

    r = client.patch(f"/api/users/{STAFF_ID}/role", json={"role": "user"}, headers=h)
    assert r.json["roles"] == ["user"]
    assert _actions(app).count("staff.role_change") == 2


def test_manager_cannot_grant_admin(client):
    r = client.patch(f"/api/users/{STAFF_ID}/role", json={"role": "admin"}, headers=_auth(client))
    assert r.status_code == 403
    assert r.json["error"] == "forbidden"
    assert r.json["missing_permission"] == "role:admin"


@pytest.mark.parametrize("role", ["super-admin", "", "janitor"])
def test_only_assignable_roles_are_accepted(client, role):
    r = client.patch(f"/api/users/{STAFF_ID}/role", json={"role": role}, headers=_auth(client))
    assert r.status_code == 400
    assert r.json["error"] == "validation_error"


def test_cannot_change_own_role(client):
    r = client.patch(f"/api/users/{MANAGER_ID}/role", json={"role": "user"}, headers=_auth(client))
    assert r.status_code == 403


def test_manager_cannot_act_on_higher_role(app):
    with session_scope(app) as s:
        with pytest.raises(Forbidden) as exc:
            change_user_role(s, s.get(User, ADMIN_ID), "user", actor=s.get(User, MANAGER_ID))
    assert exc.value.missing_permission == "role:admin"


def test_other_mailroom_manager_is_forbidden(client):
    h = _auth(client, "outsider@example.com")
    r = client.patch(f"/api/users/{STAFF_ID}/role", json={"role": "manager"}, headers=h)
    assert r.status_code == 403
    assert r.json["missing_permission"] == "mailroom:1"
    assert client.get("/api/mailrooms/1/users", headers=h).status_code == 403


def test_org_admin_can_grant_admin(client):
    r = client.patch(f"/api/users/{STAFF_ID}/role", json={"role": "admin"}, headers=_auth(client, "admin@example.com"))
    assert r.status_code == 200
    assert r.json["roles"] == ["admin"]


def test_removed_user_loses_access(app, client):
    staff_headers = _auth(client, "staff@example.com")
    assert client.get("/api/mailrooms/1/packages", headers=staff_headers).status_code == 200

    r = client.delete(f"/api/users/{STAFF_ID}", headers=_auth(client))
    assert r.status_code == 200
    assert r.json["is_active"] is False

    assert client.get("/api/mailrooms/1/packages", headers=staff_headers).status_code == 401
    listed = client.get("/api/mailrooms/1/users", headers=_auth(client)).json["users"]
    assert "staff@example.com" not in [u["email"] for u in listed]
    assert "staff.remove" in _actions(app)


def test_invitation_is_created_and_emailed(app, client):
    h = _auth(client)
    r = _invite(client, h, email=" New@Example.com ")
    assert r.status_code == 201
    assert r.json["email"] == "new@example.com"
    assert r.json["role"] == "user"
    assert r.json["status"] == "PENDING"
    assert r.json["email_sent"] is True

    to, subject, body, reply_to = app.extensions["package_notifier"].sent[0]
    assert to == "new@example.com"
    assert "North Hall" in subject
    assert f"https://mail.example.edu/join?token={r.json['token']}" in body
    assert reply_to == "north@university.edu"

    listed = client.get("/api/mailrooms/1/invitations", headers=h).json["invitations"]
    assert [i["email"] for i in listed] == ["new@example.com"]
    assert "token" not in listed[0]


@pytest.mark.parametrize("email", ["new@example.com", "staff@example.com", "", "not-an-email"])
def test_invitation_rejects_duplicates_and_bad_email(client, email):
    h = _auth(client)
    assert _invite(client, h).status_code == 201
    r = _invite(client, h, email=email)
    assert r.status_code == 400
    assert r.json["error"] == "validation_error"


def test_manager_cannot_invite_admin(client):
    r = _invite(client, _auth(client), role="admin")
    assert r.status_code == 403
    assert r.json["missing_permission"] == "role:admin"


def test_invitation_survives_email_failure(app, client):
    app.extensions["package_notifier"] = RecordingNotifier(fail=True)
    h = _auth(client)
    r = _invite(client, h)
    assert r.status_code == 201
    assert r.json["email_sent"] is False
    assert len(client.get("/api/mailrooms/1/invitations", headers=h).json["invitations"]) == 1


def test_accepting_invitation_creates_scoped_account(app, client):
    token = _invite(client, _auth(client), role="manager").json["token"]

    r = client.post("/auth/accept-invitation", json={"token": token, "password": "correct-horse"})
    assert r.status_code == 201
    h = {"Authorization": f"Bearer {r.json['access_token']}"}
    assert client.get("/api/mailrooms/1/users", headers=h).status_code == 200
    assert client.get("/api/mailrooms/2/packages", headers=h).status_code == 403

    with session_scope(app) as s:
        u = s.get(User, r.json["user_id"])
        assert u.email == "new@example.com"
        assert u.mailroom_id == 1
        assert u.organization_id == 1
        assert [role.key for role in u.roles] == ["manager"]
        inv = s.query(Invitation).one()
        assert inv.status == "ACCEPTED"
        assert inv.used is True

    again = client.post("/auth/accept-invitation", json={"token": token, "password": "correct-horse"})
    assert again.status_code == 400
    assert client.get("/api/mailrooms/1/invitations", headers=_auth(client)).json["invitations"] == []
    assert "staff.invitation_accept" in _actions(app)


@pytest.mark.parametrize("payload", [{}, {"token": "nope", "password": "correct-horse"}, {"token": "x", "password": "short"}])
def test_accept_invitation_validates_input(client, payload):
    r = client.post("/auth/accept-invitation", json=payload)
    assert r.status_code == 400
    assert r.json["error"] == "validation_error"


def test_expired_invitation_cannot_be_accepted(app):
    sent_at = datetime(2026, 1, 1, 9, 0)
    with session_scope(app) as s:
        inv = create_invitation(
            s, s.get(Mailroom, 1), {"email": "late@example.com"}, user=s.get(User, MANAGER_ID), now=sent_at
        )
        token = inv.token
    later = sent_at + timedelta(days=8)
    with session_scope(app) as s:
        assert [i.email for i in list_invitations(s, 1, now=sent_at + timedelta(days=6))] == ["late@example.com"]
        assert list_invitations(s, 1, now=later) == []
        with pytest.raises(ValidationError):
            accept_invitation(s, token, "correct-horse", now=later)


def test_only_creator_or_admin_deletes_invitation(app, client):
    inv_id = _invite(client, _auth(client)).json["id"]

    r = client.delete(f"/api/invitations/{inv_id}", headers=_auth(client, "deputy@example.com"))
    assert r.status_code == 403
    assert r.json["missing_permission"] == f"invitation:{inv_id}"

    r = client.delete(f"/api/invitations/{inv_id}", headers=_auth(client, "outsider@example.com"))
    assert r.status_code == 403

    r = client.delete(f"/api/invitations/{inv_id}", headers=_auth(client, "admin@example.com"))
    assert r.status_code == 200
    with session_scope(app) as s:
        assert s.query(Invitation).count() == 0
    assert client.delete(f"/api/invitations/{inv_id}", headers=_auth(client)).status_code == 404
