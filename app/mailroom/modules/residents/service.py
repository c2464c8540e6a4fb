from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy.orm import Session

from app.mailroom.audit import record_event
from app.mailroom.errors import NotFound, ValidationError
from app.mailroom.modules.residents.models import RESIDENT_ACTIVE, RESIDENT_STATUSES, Resident

if TYPE_CHECKING:
    from app.mailroom.models import User

REMOVED_INDIVIDUAL = "REMOVED_INDIVIDUAL"


def normalize_student_id(value: Any) -> str:
    return str(value or "").strip()


def find_active_resident(s: Session, mailroom_id: int, student_id: str) -> Resident | None:
    sid = normalize_student_id(student_id)
    if not sid:
        return None
    return (
        s.query(Resident)
        .filter(
            Resident.mailroom_id == mailroom_id,
            Resident.student_id == sid,
            Resident.status == RESIDENT_ACTIVE,
        )
        .one_or_none()
    )


def get_resident(s: Session, mailroom_id: int, resident_id: int) -> Resident:
    r = s.get(Resident, resident_id)
    if not r or r.mailroom_id != mailroom_id:
        raise NotFound("Resident", resident_id)
    return r


def list_residents(s: Session, mailroom_id: int, *, include_removed: bool = False, q: str = "") -> list[Resident]:
    query = s.query(Resident).filter(Resident.mailroom_id == mailroom_id)
    if not include_removed:
        query = query.filter(Resident.status == RESIDENT_ACTIVE)
    if q:
        like = f"%{q}%"
        query = query.filter(
            Resident.student_id.ilike(like)
            | Resident.first_name.ilike(like)
            | Resident.last_name.ilike(like)
            | Resident.email.ilike(like)
        )
    return query.order_by(Resident.last_name.asc(), Resident.first_name.asc()).all()


def validate_resident_payload(payload: dict[str, Any]) -> list[str]:
    errs: list[str] = []
    if not normalize_student_id(payload.get("student_id")):
        errs.append("student_id is required.")
    if not (payload.get("first_name") or "").strip():
        errs.append("first_name is required.")
    if not (payload.get("last_name") or "").strip():
        errs.append("last_name is required.")
    email = (payload.get("email") or "").strip()
    if email and "@" not in email:
        errs.append("email must be a valid email address.")
    return errs


def add_resident(s: Session, mailroom_id: int, payload: dict[str, Any], *, user: User | None) -> Resident:
    """
    Add a resident, or reactivate a previously removed one with the same student ID.
    Raises ValidationError when an ACTIVE resident already holds the student ID.
    """
    errs = validate_resident_payload(payload)
    if errs:
        raise ValidationError(errs)

    sid = normalize_student_id(payload.get("student_id"))
    email = (payload.get("email") or "").strip().lower() or None
    existing = (
        s.query(Resident).filter(Resident.mailroom_id == mailroom_id, Resident.student_id == sid).one_or_none()
    )
    if existing and existing.is_active:
        raise ValidationError([f"A resident with student ID {sid} already exists in this mailroom."])

    now = datetime.utcnow()
    if existing:
        r = existing
        r.status = RESIDENT_ACTIVE
        r.updated_at = now
    else:
        r = Resident(mailroom_id=mailroom_id, student_id=sid, created_at=now)
        s.add(r)
    r.first_name = payload["first_name"].strip()
    r.last_name = payload["last_name"].strip()
    r.email = email
    r.updated_at = now
    r.added_by_user_id = user.id if user else None
    s.flush()

    record_event(
        s,
        actor=user,
        action="resident.create",
        entity_type="Resident",
        entity_id=str(r.id),
        metadata={"mailroom_id": mailroom_id, "student_id": sid, "reactivated": bool(existing)},
    )
    return r


def remove_resident(
    s: Session,
    resident: Resident,
    *,
    user: User | None,
    status: str = REMOVED_INDIVIDUAL,
) -> Resident:
    if status == RESIDENT_ACTIVE or status not in RESIDENT_STATUSES:
        raise ValidationError([f"Invalid removal status: {status}"])
    old = resident.status
    resident.status = status
    resident.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="resident.remove",
        entity_type="Resident",
        entity_id=str(resident.id),
        metadata={"mailroom_id": resident.mailroom_id, "student_id": resident.student_id, "from": old, "to": status},
    )
    return resident


def resident_to_dict(r: Resident) -> dict[str, Any]:
    return {
        "id": r.id,
        "mailroom_id": r.mailroom_id,
        "student_id": r.student_id,
        "first_name": r.first_name,
        "last_name": r.last_name,
        "email": r.email,
        "status": r.status,
    }
