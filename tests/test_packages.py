"""Service-level tests for package registration, transitions and the failed package log."""
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from werkzeug.security import generate_password_hash

from app.mailroom import create_app
from app.mailroom.db import session_scope
from app.mailroom.errors import (
    InvalidTransition,
    NotFound,
    NotificationFailure,
    PersistenceFailure,
    PoolExhausted,
    ResidentNotFound,
    ValidationError,
)
from app.mailroom.models import AuditEvent, Base, FailedPackageLog, Mailroom, Organization, Package, Resident, User
from app.mailroom.modules.packages import service as package_service
from app.mailroom.modules.packages.allocator import get_allocator
from app.mailroom.modules.packages.lifecycle import PackageStatus
from app.mailroom.modules.packages.models import PackageNumber
from app.mailroom.modules.packages.service import (
    list_failed_packages,
    list_packages,
    record_failed_package,
    register_package,
    resolve_failed_package,
    transition_package,
    transition_package_by_id,
)

MAILROOM_ID = 1
STAFF_ID = 1


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[tuple[str, str, str, str | None]] = []

    def send(self, to, subject, body, *, reply_to=None):
        if self.fail:
            raise NotificationFailure("SMTP server unavailable")
        if not to:
            raise NotificationFailure("Recipient has no email address.")
        self.sent.append((to, subject, body, reply_to))


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("NOTIFICATIONS_ENABLED", "0")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        org = Organization(name="Test University", slug="test-university")
        s.add(org)
        s.flush()
        m = Mailroom(
            organization_id=org.id,
            name="North Hall",
            slug="north-hall",
            admin_email="mailroom@university.edu",
            mailroom_hours={"monday": [{"start": "09:00", "end": "17:00"}]},
            email_additional_text="Please collect within 7 days.",
        )
        s.add(m)
        s.flush()
        s.add(User(email="staff@example.com", password_hash=generate_password_hash("pw"), mailroom_id=m.id))
        s.add_all(
            [
                Resident(mailroom_id=m.id, student_id="S123", first_name="Ada", last_name="Lovelace", email="ada@university.edu"),
                Resident(mailroom_id=m.id, student_id="S456", first_name="Alan", last_name="Turing", email=None),
                Resident(
                    mailroom_id=m.id,
                    student_id="S789",
                    first_name="Grace",
                    last_name="Hopper",
                    email="grace@university.edu",
                    status="REMOVED_INDIVIDUAL",
                ),
            ]
        )
    get_allocator(app).seed(MAILROOM_ID)
    return app


def _register(app, student_id="S123", provider="UPS", **kwargs) -> Package:
    with app.app_context(), session_scope(app) as s:
        return register_package(s, s.get(Mailroom, MAILROOM_ID), student_id, provider, s.get(User, STAFF_ID), **kwargs)


def _transition(app, package_row_id: int, target: str) -> Package:
    with app.app_context(), session_scope(app) as s:
        return transition_package(s, s.get(Package, package_row_id), target, s.get(User, STAFF_ID))


def _stored_status(app, package_row_id: int) -> str:
    with session_scope(app) as s:
        return s.get(Package, package_row_id).status


def test_register_resolve_register_reuses_number(app):
    p1 = _register(app)
    assert p1.package_id == 1
    assert p1.status == "WAITING"
    assert p1.provider == "UPS"

    resolved = _transition(app, p1.id, "RESOLVED")
    assert resolved.status == "RESOLVED"
    assert resolved.resolved_timestamp is not None
    assert get_allocator(app).is_available(MAILROOM_ID, 1)

    p2 = _register(app)
    assert p2.package_id == 1
    assert p2.id != p1.id


def test_register_999_then_exhausted_then_reuse(app):
    # 998 live packages set up in bulk; the 999th goes through the real workflow.
    now = datetime.utcnow()
    with session_scope(app) as s:
        s.add_all(
            Package(
                mailroom_id=MAILROOM_ID,
                resident_id=1,
                package_id=n,
                provider="UPS",
                status="WAITING",
                created_at=now,
                updated_at=now,
            )
            for n in range(1, 999)
        )
        s.execute(
            update(PackageNumber)
            .where(PackageNumber.mailroom_id == MAILROOM_ID, PackageNumber.number < 999)
            .values(is_available=False, last_used_at=now)
        )

    last = _register(app)
    assert last.package_id == 999

    with pytest.raises(PoolExhausted) as exc:
        _register(app)
    assert exc.value.mailroom_id == MAILROOM_ID
    with session_scope(app) as s:
        assert s.query(Package).count() == 999

    with session_scope(app) as s:
        victim = s.query(Package).filter(Package.package_id == 417).one()
    _transition(app, victim.id, "RESOLVED")
    assert _register(app).package_id == 417


def test_resident_not_found_has_no_side_effects(app):
    with pytest.raises(ResidentNotFound) as exc:
        _register(app, student_id="NOPE")
    assert exc.value.student_id == "NOPE"
    assert exc.value.mailroom_id == MAILROOM_ID
    assert get_allocator(app).stats(MAILROOM_ID).in_use == 0
    with session_scope(app) as s:
        assert s.query(Package).count() == 0


def test_removed_resident_is_not_matched(app):
    with pytest.raises(ResidentNotFound):
        _register(app, student_id="S789")


def test_missing_provider_is_rejected_before_acquire(app):
    with pytest.raises(ValidationError):
        _register(app, provider="  ")
    assert get_allocator(app).stats(MAILROOM_ID).in_use == 0


def test_known_provider_is_normalized(app):
    assert _register(app, provider="fedex").provider == "FedEx"
    assert _register(app, provider="Campus Courier").provider == "Campus Courier"


def test_persistence_failure_releases_number(app, monkeypatch):
    def _boom(s, **kwargs):
        raise OperationalError("INSERT INTO packages", {}, Exception("disk I/O error"))

    monkeypatch.setattr(package_service, "_insert_package", _boom)
    with pytest.raises(PersistenceFailure) as exc:
        _register(app)
    assert exc.value.mailroom_id == MAILROOM_ID

    allocator = get_allocator(app)
    assert allocator.stats(MAILROOM_ID).in_use == 0
    assert allocator.acquire(MAILROOM_ID) == 1


def _break_register_audit(monkeypatch):
    """Make the package.register audit row violate NOT NULL so the failure only appears at commit."""
    real = package_service.record_event

    def _record(s, **kwargs):
        ev = real(s, **kwargs)
        if kwargs.get("action") == "package.register":
            ev.action = None
        return ev

    monkeypatch.setattr(package_service, "record_event", _record)


def test_commit_time_integrity_error_releases_number(app, monkeypatch):
    _break_register_audit(monkeypatch)
    with pytest.raises(PersistenceFailure) as exc:
        _register(app)
    assert exc.value.mailroom_id == MAILROOM_ID

    allocator = get_allocator(app)
    assert allocator.stats(MAILROOM_ID).in_use == 0
    with session_scope(app) as s:
        assert s.query(Package).count() == 0
    assert allocator.acquire(MAILROOM_ID) == 1


def test_failed_holder_lookup_still_releases_number(app, monkeypatch):
    _break_register_audit(monkeypatch)

    def _lookup_fails(s, mailroom_id, number):
        raise OperationalError("SELECT packages", {}, Exception("database is locked"))

    monkeypatch.setattr(package_service, "find_live_package", _lookup_fails)
    with pytest.raises(PersistenceFailure):
        _register(app)
    assert get_allocator(app).stats(MAILROOM_ID).in_use == 0


def test_pool_drift_retries_with_next_number(app):
    p1 = _register(app)
    # Pool claims #1 is free even though a live package holds it.
    get_allocator(app).release(MAILROOM_ID, 1)

    p2 = _register(app, student_id="S456")
    assert p2.package_id == 2
    assert _stored_status(app, p1.id) == "WAITING"
    assert not get_allocator(app).is_available(MAILROOM_ID, 1)


def test_retrieved_then_resolved(app):
    p = _register(app)
    retrieved = _transition(app, p.id, "retrieved")
    assert retrieved.status == "RETRIEVED"
    assert retrieved.retrieved_timestamp is not None
    assert retrieved.pickup_staff_id == STAFF_ID
    # still holds the number
    assert not get_allocator(app).is_available(MAILROOM_ID, p.package_id)

    resolved = _transition(app, p.id, "RESOLVED")
    assert resolved.resolved_by_user_id == STAFF_ID
    assert get_allocator(app).is_available(MAILROOM_ID, p.package_id)


@pytest.mark.parametrize(
    "source,target",
    [
        ("WAITING", "WAITING"),
        ("WAITING", "FAILED"),
        ("RETRIEVED", "WAITING"),
        ("RETRIEVED", "RETRIEVED"),
        ("RETRIEVED", "FAILED"),
        ("RESOLVED", "WAITING"),
        ("RESOLVED", "RETRIEVED"),
        ("RESOLVED", "RESOLVED"),
        ("RESOLVED", "FAILED"),
        ("FAILED", "WAITING"),
        ("FAILED", "RETRIEVED"),
        ("FAILED", "RESOLVED"),
        ("FAILED", "FAILED"),
    ],
)
def test_illegal_transitions_leave_row_unchanged(app, source, target):
    now = datetime.utcnow()
    with session_scope(app) as s:
        p = Package(
            mailroom_id=MAILROOM_ID,
            resident_id=1,
            package_id=42,
            provider="UPS",
            status=source,
            created_at=now,
            updated_at=now,
        )
        s.add(p)
        s.flush()
        pk = p.id

    with pytest.raises(InvalidTransition) as exc:
        _transition(app, pk, target)
    assert (exc.value.source, exc.value.target) == (source, target)
    assert _stored_status(app, pk) == source


def test_retried_resolve_releases_once(app):
    p1 = _register(app)
    _transition(app, p1.id, "RESOLVED")
    p2 = _register(app)  # takes #1 again
    assert p2.package_id == 1

    with pytest.raises(InvalidTransition):
        _transition(app, p1.id, "RESOLVED")
    # p2 still owns #1
    assert not get_allocator(app).is_available(MAILROOM_ID, 1)


def test_concurrent_resolve_of_same_package_releases_once(app):
    p1 = _register(app)
    with app.app_context(), session_scope(app) as s1, session_scope(app) as s2:
        staff = s1.get(User, STAFF_ID)
        a = s1.get(Package, p1.id)
        b = s2.get(Package, p1.id)
        transition_package(s1, a, "RESOLVED", staff)
        p2 = _register(app)
        assert p2.package_id == 1
        with pytest.raises(InvalidTransition) as exc:
            transition_package(s2, b, "RESOLVED", s2.get(User, STAFF_ID))
        assert exc.value.source == "RESOLVED"
    assert not get_allocator(app).is_available(MAILROOM_ID, 1)


def test_concurrent_registrations_get_distinct_numbers(app):
    def _one(_):
        return _register(app).package_id

    with ThreadPoolExecutor(max_workers=6) as pool:
        numbers = list(pool.map(_one, range(24)))
    assert sorted(numbers) == list(range(1, 25))
    with session_scope(app) as s:
        assert s.query(Package).filter(Package.status == "WAITING").count() == 24


def test_notification_sent_with_package_details(app):
    notifier = RecordingNotifier()
    p = _register(app, notifier=notifier)
    assert len(notifier.sent) == 1
    to, subject, body, reply_to = notifier.sent[0]
    assert to == "ada@university.edu"
    assert subject == f"New Package Notification (#{p.package_id})"
    assert "Hello Ada" in body
    assert "from UPS" in body
    assert "Monday: 9:00 AM - 5:00 PM" in body
    assert "Please collect within 7 days." in body
    assert reply_to == "mailroom@university.edu"


def test_notification_failure_is_logged_not_raised(app):
    p = _register(app, notifier=RecordingNotifier(fail=True))
    assert p.status == "WAITING"
    assert not get_allocator(app).is_available(MAILROOM_ID, p.package_id)

    with session_scope(app) as s:
        logs = list_failed_packages(s, MAILROOM_ID)
        assert len(logs) == 1
        assert logs[0].failure_type == "notification"
        assert logs[0].package_row_id == p.id
        assert logs[0].status == "FAILED"
        assert "SMTP server unavailable" in logs[0].error_details
        assert s.get(Package, p.id).status == "WAITING"


def test_resident_without_email_is_logged(app):
    p = _register(app, student_id="S456", notifier=RecordingNotifier())
    with session_scope(app) as s:
        logs = list_failed_packages(s, MAILROOM_ID)
        assert [(log.student_id, log.package_row_id) for log in logs] == [("S456", p.id)]


def test_registration_is_audited(app):
    p = _register(app)
    _transition(app, p.id, "RESOLVED")
    with session_scope(app) as s:
        actions = [e.action for e in s.query(AuditEvent).order_by(AuditEvent.id).all()]
    assert actions == ["package.register", "package.transition"]


def test_list_packages_filters(app):
    p1 = _register(app)
    _register(app)
    _transition(app, p1.id, "RESOLVED")
    with session_scope(app) as s:
        assert [p.package_id for p in list_packages(s, MAILROOM_ID, status="waiting")] == [2]
        assert [p.status for p in list_packages(s, MAILROOM_ID, number=1)] == ["RESOLVED"]
        assert len(list_packages(s, MAILROOM_ID)) == 2


def test_list_packages_by_student_id(app):
    ada = _register(app)
    _register(app, student_id="S456")
    _transition(app, ada.id, "RETRIEVED")
    _register(app)
    with session_scope(app) as s:
        rows = list_packages(s, MAILROOM_ID, student_id=" S123 ")
        assert [(p.package_id, p.status) for p in rows] == [(3, "WAITING"), (1, "RETRIEVED")]
        assert [p.package_id for p in list_packages(s, MAILROOM_ID, student_id="S123", status="WAITING")] == [3]
        assert [p.package_id for p in list_packages(s, MAILROOM_ID, student_id="S456")] == [2]


@pytest.mark.parametrize("student_id", ["X999", "S789"])
def test_list_packages_unknown_or_removed_student(app, student_id):
    _register(app)
    with session_scope(app) as s:
        with pytest.raises(ResidentNotFound) as exc:
            list_packages(s, MAILROOM_ID, student_id=student_id)
    assert exc.value.student_id == student_id


def test_transition_by_row_id(app):
    p = _register(app)
    with app.app_context(), session_scope(app) as s:
        pkg = transition_package_by_id(s, p.id, "resolved", s.get(User, STAFF_ID))
        assert pkg.status == "RESOLVED"
    assert _stored_status(app, p.id) == "RESOLVED"
    with session_scope(app) as s:
        assert s.get(PackageNumber, (MAILROOM_ID, 1)).is_available is True


def test_transition_by_row_id_unknown_package(app):
    with app.app_context(), session_scope(app) as s:
        with pytest.raises(NotFound) as exc:
            transition_package_by_id(s, 42, "RESOLVED", s.get(User, STAFF_ID))
    assert exc.value.entity == "Package"


def test_failed_package_log_lifecycle(app):
    with app.app_context(), session_scope(app) as s:
        m = s.get(Mailroom, MAILROOM_ID)
        staff = s.get(User, STAFF_ID)
        log = record_failed_package(
            s,
            m,
            {"student_id": "X999", "provider": "dhl", "first_name": "Unknown", "error_details": "Resident not found"},
            user=staff,
        )
        s.commit()
        assert log.failure_type == "registration"
        assert log.status == PackageStatus.FAILED.value
        assert log.provider == "DHL"
        assert log.package_row_id is None

        resolve_failed_package(s, log, user=staff, notes="Resident added to roster")
        s.commit()
        assert log.resolved is True
        assert log.resolved_by_user_id == STAFF_ID
        assert log.resolved_at is not None

        with pytest.raises(ValidationError):
            resolve_failed_package(s, log, user=staff)

        assert list_failed_packages(s, MAILROOM_ID) == []
        assert len(list_failed_packages(s, MAILROOM_ID, include_resolved=True)) == 1
        assert s.query(FailedPackageLog).count() == 1
    assert get_allocator(app).stats(MAILROOM_ID).in_use == 0


def test_failed_package_log_requires_student_and_provider(app):
    with app.app_context(), session_scope(app) as s:
        with pytest.raises(ValidationError) as exc:
            record_failed_package(s, s.get(Mailroom, MAILROOM_ID), {}, user=None)
        assert len(exc.value.errors) == 2
