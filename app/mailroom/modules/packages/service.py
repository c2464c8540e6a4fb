"""
Package registration and lifecycle service.

Registration order (each step has its own failure policy):
1. resolve the ACTIVE resident by student ID       -> ResidentNotFound, nothing persisted
2. claim a display number from the allocator       -> PoolExhausted, nothing persisted
3. persist the WAITING row                         -> PersistenceFailure, number released first
4. notify the resident (best effort)               -> failure logged to failed_package_logs only

Resolving a package commits the status change first and only then hands the
number back, so a failed commit never frees a number a live row still holds.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.mailroom.audit import record_event
from app.mailroom.constants import KNOWN_PROVIDERS
from app.mailroom.errors import (
    InvalidTransition,
    NotFound,
    NotificationFailure,
    PersistenceFailure,
    ResidentNotFound,
    ValidationError,
)
from app.mailroom.modules.notifications.mailer import Notifier
from app.mailroom.modules.notifications.service import build_package_message, get_notifier
from app.mailroom.modules.packages.allocator import PackageNumberAllocator, get_allocator, validate_number
from app.mailroom.modules.packages.lifecycle import (
    LIVE_STATUSES,
    PackageStatus,
    apply_transition,
    parse_status,
    releases_number,
)
from app.mailroom.modules.packages.models import FailedPackageLog, Package
from app.mailroom.modules.residents.models import Resident
from app.mailroom.modules.residents.service import find_active_resident, normalize_student_id
from app.mailroom.utils import isoformat

if TYPE_CHECKING:
    from app.mailroom.models import Mailroom, User

logger = logging.getLogger(__name__)

FAILURE_REGISTRATION = "registration"
FAILURE_NOTIFICATION = "notification"


def normalize_provider(value: Any) -> str:
    raw = str(value or "").strip()
    if not raw:
        raise ValidationError(["provider is required."])
    if len(raw) > 64:
        raise ValidationError(["provider must be at most 64 characters."])
    for known in KNOWN_PROVIDERS:
        if known.lower() == raw.lower():
            return known
    return raw


# ── lookups ─────────────────────────────────────────────────────────────────


def get_package(s: Session, package_row_id: int) -> Package:
    p = s.get(Package, package_row_id)
    if not p:
        raise NotFound("Package", package_row_id)
    return p


def find_live_package(s: Session, mailroom_id: int, number: int) -> Package | None:
    """The package currently holding display number `number`, if any."""
    return (
        s.query(Package)
        .filter(
            Package.mailroom_id == mailroom_id,
            Package.package_id == number,
            Package.status.in_([st.value for st in LIVE_STATUSES]),
        )
        .one_or_none()
    )


def live_numbers(s: Session, mailroom_id: int) -> set[int]:
    rows = (
        s.query(Package.package_id)
        .filter(Package.mailroom_id == mailroom_id, Package.status.in_([st.value for st in LIVE_STATUSES]))
        .all()
    )
    return {int(r[0]) for r in rows}


def list_packages(
    s: Session,
    mailroom_id: int,
    *,
    status: str | None = None,
    number: int | None = None,
    student_id: str | None = None,
    limit: int = 200,
) -> list[Package]:
    """
    Packages in a mailroom, newest first. `student_id` narrows to one ACTIVE
    resident (the pickup lookup) and raises ResidentNotFound when none matches.
    """
    query = s.query(Package).filter(Package.mailroom_id == mailroom_id)
    if student_id is not None:
        resident = find_active_resident(s, mailroom_id, student_id)
        if resident is None:
            raise ResidentNotFound(mailroom_id, normalize_student_id(student_id))
        query = query.filter(Package.resident_id == resident.id)
    if status:
        query = query.filter(Package.status == parse_status(status).value)
    if number is not None:
        query = query.filter(Package.package_id == validate_number(number))
    return query.order_by(Package.created_at.desc(), Package.id.desc()).limit(limit).all()


# ── registration ────────────────────────────────────────────────────────────


def _insert_package(
    s: Session,
    *,
    mailroom: Mailroom,
    resident: Resident,
    number: int,
    provider: str,
    user: User | None,
) -> Package:
    now = datetime.utcnow()
    with s.begin_nested():
        p = Package(
            mailroom_id=mailroom.id,
            resident_id=resident.id,
            staff_id=user.id if user else None,
            package_id=number,
            provider=provider,
            status=PackageStatus.WAITING.value,
            created_at=now,
            updated_at=now,
        )
        s.add(p)
        s.flush()
    record_event(
        s,
        actor=user,
        action="package.register",
        entity_type="Package",
        entity_id=str(p.id),
        metadata={
            "mailroom_id": mailroom.id,
            "package_id": number,
            "resident_id": resident.id,
            "student_id": resident.student_id,
            "provider": provider,
        },
    )
    s.commit()
    return p


def _live_holder_id(s: Session, mailroom_id: int, number: int) -> int | None:
    """Row id of the live package holding `number`; None when nobody does or the lookup itself fails."""
    try:
        holder = find_live_package(s, mailroom_id, number)
    except SQLAlchemyError:
        s.rollback()
        logger.exception("Could not check which package holds number %s in mailroom %s", number, mailroom_id)
        return None
    return holder.id if holder is not None else None


def _release_after_failure(allocator: PackageNumberAllocator, mailroom_id: int, number: int) -> None:
    try:
        allocator.release(mailroom_id, number)
    except PersistenceFailure:
        logger.exception(
            "Could not release package number %s for mailroom %s after a failed registration; "
            "run scripts/reconcile_package_numbers.py",
            number,
            mailroom_id,
        )


def register_package(
    s: Session,
    mailroom: Mailroom,
    student_id: str,
    provider: str,
    user: User | None,
    *,
    allocator: PackageNumberAllocator | None = None,
    notifier: Notifier | None = None,
) -> Package:
    """
    Register a package for the ACTIVE resident `student_id` in `mailroom`.

    Returns the committed WAITING package. A failed notification does not fail
    the registration; it is written to the failed package log instead.
    """
    sid = normalize_student_id(student_id)
    resident = find_active_resident(s, mailroom.id, sid)
    if resident is None:
        logger.info("Registration rejected: no active resident %r in mailroom %s", sid, mailroom.id)
        raise ResidentNotFound(mailroom.id, sid)
    provider = normalize_provider(provider)
    allocator = allocator or get_allocator()
    mailroom_id = mailroom.id

    pkg: Package | None = None
    for attempt in range(1, allocator.max_attempts + 1):
        number = allocator.acquire(mailroom_id)
        try:
            pkg = _insert_package(s, mailroom=mailroom, resident=resident, number=number, provider=provider, user=user)
            break
        except SQLAlchemyError as e:
            # The failure may surface at flush or at commit; either way the session is unusable until rolled back.
            s.rollback()
            holder_id = _live_holder_id(s, mailroom_id, number) if isinstance(e, IntegrityError) else None
            if holder_id is not None:
                # Pool said free but a live row has it; the claim we just made is correct, keep it.
                logger.warning(
                    "Package number %s in mailroom %s already held by package %s; retrying (attempt %s)",
                    number,
                    mailroom_id,
                    holder_id,
                    attempt,
                )
                continue
            _release_after_failure(allocator, mailroom_id, number)
            detail = e.orig if isinstance(e, IntegrityError) else e
            raise PersistenceFailure(f"Failed to save package: {detail}", mailroom_id=mailroom_id) from e

    if pkg is None:
        raise PersistenceFailure(
            f"Could not register package after {allocator.max_attempts} attempts.", mailroom_id=mailroom_id
        )

    logger.info("Registered package %s (#%s) in mailroom %s", pkg.id, pkg.package_id, mailroom_id)
    _notify_resident(s, mailroom=mailroom, resident=resident, package=pkg, user=user, notifier=notifier)
    return pkg


def _notify_resident(
    s: Session,
    *,
    mailroom: Mailroom,
    resident: Resident,
    package: Package,
    user: User | None,
    notifier: Notifier | None,
) -> None:
    notifier = notifier or get_notifier()
    if notifier is None:
        return

    subject, body = build_package_message(
        first_name=resident.first_name,
        number=package.package_id,
        provider=package.provider,
        mailroom_hours=mailroom.mailroom_hours,
        additional_text=mailroom.email_additional_text,
    )
    try:
        notifier.send(resident.email or "", subject, body, reply_to=mailroom.admin_email)
        return
    except NotificationFailure as e:
        logger.warning("Notification for package %s failed: %s", package.id, e.message)
        error_details = e.message

    try:
        _add_failed_log(
            s,
            mailroom_id=mailroom.id,
            failure_type=FAILURE_NOTIFICATION,
            package_row_id=package.id,
            student_id=resident.student_id,
            first_name=resident.first_name,
            last_name=resident.last_name,
            email=resident.email,
            provider=package.provider,
            error_details=error_details,
            user=user,
        )
        s.commit()
    except SQLAlchemyError:
        s.rollback()
        logger.exception("Could not record notification failure for package %s", package.id)


# ── lifecycle ───────────────────────────────────────────────────────────────


def transition_package(
    s: Session,
    package: Package,
    target_status: str | PackageStatus,
    user: User | None,
    *,
    allocator: PackageNumberAllocator | None = None,
) -> Package:
    """
    Move `package` to `target_status` through the lifecycle table.
    Illegal pairs raise InvalidTransition and leave the stored row untouched.

    When another request changed the row first (version mismatch at commit),
    InvalidTransition reports the status that request committed as `source`,
    not the status this call read and tried to leave.
    """
    target = parse_status(target_status)
    src, dst = apply_transition(package, target, user=user)
    record_event(
        s,
        actor=user,
        action="package.transition",
        entity_type="Package",
        entity_id=str(package.id),
        metadata={"mailroom_id": package.mailroom_id, "package_id": package.package_id, "from": src.value, "to": dst.value},
    )
    try:
        s.commit()
    except StaleDataError:
        s.rollback()
        raise InvalidTransition(package.status, dst.value, package_id=package.id) from None
    except SQLAlchemyError as e:
        s.rollback()
        raise PersistenceFailure(f"Failed to update package: {e}", mailroom_id=package.mailroom_id) from e

    if src in LIVE_STATUSES and releases_number(dst):
        allocator = allocator or get_allocator()
        try:
            allocator.release(package.mailroom_id, package.package_id)
        except PersistenceFailure:
            logger.exception(
                "Package %s resolved but number %s was not released; run scripts/reconcile_package_numbers.py",
                package.id,
                package.package_id,
            )
    logger.info("Package %s: %s -> %s", package.id, src.value, dst.value)
    return package


def transition_package_by_id(
    s: Session,
    package_row_id: int,
    target_status: str | PackageStatus,
    user: User | None,
    *,
    allocator: PackageNumberAllocator | None = None,
) -> Package:
    """transition_package for callers holding only the package row id (NotFound when absent)."""
    return transition_package(s, get_package(s, package_row_id), target_status, user, allocator=allocator)


# ── failed package log ──────────────────────────────────────────────────────


def _add_failed_log(
    s: Session,
    *,
    mailroom_id: int,
    failure_type: str,
    student_id: str,
    provider: str,
    user: User | None,
    package_row_id: int | None = None,
    first_name: str | None = None,
    last_name: str | None = None,
    email: str | None = None,
    error_details: str | None = None,
    notes: str | None = None,
) -> FailedPackageLog:
    now = datetime.utcnow()
    log = FailedPackageLog(
        mailroom_id=mailroom_id,
        staff_id=user.id if user else None,
        failure_type=failure_type,
        status=PackageStatus.FAILED.value,
        package_row_id=package_row_id,
        student_id=student_id,
        first_name=first_name,
        last_name=last_name,
        email=email,
        provider=provider,
        error_details=error_details,
        notes=notes,
        resolved=False,
        created_at=now,
        updated_at=now,
    )
    s.add(log)
    s.flush()
    record_event(
        s,
        actor=user,
        action="package.failed_log",
        entity_type="FailedPackageLog",
        entity_id=str(log.id),
        reason=error_details,
        metadata={"mailroom_id": mailroom_id, "failure_type": failure_type, "student_id": student_id},
    )
    return log


def record_failed_package(
    s: Session,
    mailroom: Mailroom,
    payload: dict[str, Any],
    *,
    user: User | None,
) -> FailedPackageLog:
    """
    Log a package that could not be registered (e.g. unknown student ID) for
    staff follow-up. Holds no number and never enters the live pool.
    """
    sid = normalize_student_id(payload.get("student_id"))
    errs: list[str] = []
    if not sid:
        errs.append("student_id is required.")
    try:
        provider = normalize_provider(payload.get("provider"))
    except ValidationError as e:
        errs.extend(e.errors)
        provider = ""
    if errs:
        raise ValidationError(errs)

    def _opt(key: str) -> str | None:
        return (str(payload.get(key) or "")).strip() or None

    return _add_failed_log(
        s,
        mailroom_id=mailroom.id,
        failure_type=FAILURE_REGISTRATION,
        student_id=sid,
        provider=provider,
        user=user,
        first_name=_opt("first_name"),
        last_name=_opt("last_name"),
        email=_opt("email"),
        error_details=_opt("error_details"),
        notes=_opt("notes"),
    )


def get_failed_log(s: Session, log_id: int) -> FailedPackageLog:
    log = s.get(FailedPackageLog, log_id)
    if not log:
        raise NotFound("FailedPackageLog", log_id)
    return log


def list_failed_packages(s: Session, mailroom_id: int, *, include_resolved: bool = False) -> list[FailedPackageLog]:
    query = s.query(FailedPackageLog).filter(FailedPackageLog.mailroom_id == mailroom_id)
    if not include_resolved:
        query = query.filter(FailedPackageLog.resolved.is_(False))
    return query.order_by(FailedPackageLog.created_at.desc(), FailedPackageLog.id.desc()).all()


def resolve_failed_package(
    s: Session,
    log: FailedPackageLog,
    *,
    user: User | None,
    notes: str | None = None,
) -> FailedPackageLog:
    if log.resolved:
        raise ValidationError(["Failed package log is already resolved."])
    now = datetime.utcnow()
    log.resolved = True
    log.resolved_at = now
    log.resolved_by_user_id = user.id if user else None
    if notes:
        log.notes = notes.strip()
    log.updated_at = now
    record_event(
        s,
        actor=user,
        action="package.failed_log_resolve",
        entity_type="FailedPackageLog",
        entity_id=str(log.id),
        metadata={"mailroom_id": log.mailroom_id},
    )
    return log


# ── serialization ───────────────────────────────────────────────────────────


def package_to_dict(p: Package) -> dict[str, Any]:
    r = p.resident
    return {
        "id": p.id,
        "mailroom_id": p.mailroom_id,
        "package_id": p.package_id,
        "status": p.status,
        "provider": p.provider,
        "resident": {
            "id": r.id,
            "student_id": r.student_id,
            "first_name": r.first_name,
            "last_name": r.last_name,
            "email": r.email,
        }
        if r
        else None,
        "staff_id": p.staff_id,
        "pickup_staff_id": p.pickup_staff_id,
        "resolved_by_user_id": p.resolved_by_user_id,
        "created_at": isoformat(p.created_at),
        "updated_at": isoformat(p.updated_at),
        "retrieved_timestamp": isoformat(p.retrieved_timestamp),
        "resolved_timestamp": isoformat(p.resolved_timestamp),
    }


def failed_log_to_dict(log: FailedPackageLog) -> dict[str, Any]:
    return {
        "id": log.id,
        "mailroom_id": log.mailroom_id,
        "failure_type": log.failure_type,
        "status": log.status,
        "package_row_id": log.package_row_id,
        "student_id": log.student_id,
        "first_name": log.first_name,
        "last_name": log.last_name,
        "email": log.email,
        "provider": log.provider,
        "error_details": log.error_details,
        "notes": log.notes,
        "resolved": log.resolved,
        "resolved_at": isoformat(log.resolved_at),
        "resolved_by_user_id": log.resolved_by_user_id,
        "staff_id": log.staff_id,
        "created_at": isoformat(log.created_at),
    }
