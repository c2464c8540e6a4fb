import pytest
from werkzeug.security import generate_password_hash

from app.mailroom import create_app
from app.mailroom.constants import PERMISSIONS, ROLE_NAMES, ROLE_PERMISSIONS
from app.mailroom.db import session_scope
from app.mailroom.models import AuditEvent, Base, Mailroom, Organization, Permission, Resident, Role, User


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("JWT_SECRET_KEY", "test-jwt-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("NOTIFICATIONS_ENABLED", "0")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        perms = {key: Permission(key=key, name=name) for key, name in PERMISSIONS.items()}
        roles = {}
        for key, perm_keys in ROLE_PERMISSIONS.items():
            roles[key] = Role(key=key, name=ROLE_NAMES[key])
            roles[key].permissions.extend(perms[k] for k in perm_keys)
        s.add_all([*perms.values(), *roles.values()])

        org = Organization(name="Test University", slug="test-university")
        s.add(org)
        s.flush()
        north = Mailroom(organization_id=org.id, name="North Hall", slug="north-hall")
        south = Mailroom(organization_id=org.id, name="South Hall", slug="south-hall")
        s.add_all([north, south])
        s.flush()

        pw = generate_password_hash("pw")
        manager = User(email="manager@example.com", password_hash=pw, mailroom_id=north.id)
        manager.roles.append(roles["manager"])
        staff = User(email="staff@example.com", password_hash=pw, mailroom_id=north.id)
        staff.roles.append(roles["user"])
        s.add_all([manager, staff])
        s.add(Resident(mailroom_id=south.id, student_id="S123", first_name="Other", last_name="Person"))
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _auth(client, email: str = "manager@example.com") -> dict[str, str]:
    r = client.post("/auth/token", json={"email": email, "password": "pw"})
    assert r.status_code == 200
    return {"Authorization": f"Bearer {r.json['access_token']}"}


ADA = {"student_id": " S123 ", "first_name": "Ada", "last_name": "Lovelace", "email": "Ada@University.edu"}


def test_add_resident(app, client):
    r = client.post("/api/mailrooms/1/residents", json=ADA, headers=_auth(client))
    assert r.status_code == 201
    assert r.json["student_id"] == "S123"
    assert r.json["email"] == "ada@university.edu"
    assert r.json["status"] == "ACTIVE"
    assert r.json["mailroom_id"] == 1

    with session_scope(app) as s:
        assert s.query(AuditEvent).filter(AuditEvent.action == "resident.create").count() == 1


def test_same_student_id_in_two_mailrooms_is_allowed_but_not_twice_in_one(client):
    h = _auth(client)
    assert client.post("/api/mailrooms/1/residents", json=ADA, headers=h).status_code == 201
    r = client.post("/api/mailrooms/1/residents", json=ADA, headers=h)
    assert r.status_code == 400
    assert "already exists" in r.json["message"]


def test_add_resident_validation(client):
    r = client.post("/api/mailrooms/1/residents", json={"email": "not-an-email"}, headers=_auth(client))
    assert r.status_code == 400
    assert r.json["errors"] == [
        "student_id is required.",
        "first_name is required.",
        "last_name is required.",
        "email must be a valid email address.",
    ]


def test_remove_and_readd_reactivates(app, client):
    h = _auth(client)
    rid = client.post("/api/mailrooms/1/residents", json=ADA, headers=h).json["id"]

    r = client.delete(f"/api/mailrooms/1/residents/{rid}", headers=h)
    assert r.status_code == 200
    assert r.json["status"] == "REMOVED_INDIVIDUAL"
    assert client.get("/api/mailrooms/1/residents", headers=h).json["residents"] == []
    removed = client.get("/api/mailrooms/1/residents?include_removed=1", headers=h).json["residents"]
    assert [x["id"] for x in removed] == [rid]

    r = client.post("/api/mailrooms/1/residents", json={**ADA, "last_name": "King"}, headers=h)
    assert r.status_code == 201
    assert r.json["id"] == rid
    assert r.json["last_name"] == "King"
    assert r.json["status"] == "ACTIVE"


def test_remove_resident_from_other_mailroom_is_404(client):
    # resident 1 lives in South Hall; the manager works in North Hall
    r = client.delete("/api/mailrooms/1/residents/1", headers=_auth(client))
    assert r.status_code == 404


def test_list_search(client):
    h = _auth(client)
    client.post("/api/mailrooms/1/residents", json=ADA, headers=h)
    client.post(
        "/api/mailrooms/1/residents",
        json={"student_id": "S456", "first_name": "Alan", "last_name": "Turing"},
        headers=h,
    )
    names = [x["first_name"] for x in client.get("/api/mailrooms/1/residents", headers=h).json["residents"]]
    assert names == ["Ada", "Alan"]
    hits = client.get("/api/mailrooms/1/residents?q=turing", headers=h).json["residents"]
    assert [x["student_id"] for x in hits] == ["S456"]


def test_staff_can_view_but_not_manage(client):
    h = _auth(client, "staff@example.com")
    assert client.get("/api/mailrooms/1/residents", headers=h).status_code == 200
    r = client.post("/api/mailrooms/1/residents", json=ADA, headers=h)
    assert r.status_code == 403
    assert r.json["missing_permission"] == "residents.manage"


def test_other_mailroom_is_forbidden(client):
    r = client.get("/api/mailrooms/2/residents", headers=_auth(client))
    assert r.status_code == 403
