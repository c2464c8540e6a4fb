from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.mailroom.audit import record_event
from app.mailroom.errors import NotFound, ValidationError
from app.mailroom.modules.notifications.service import DAY_ORDER
from app.mailroom.modules.organizations.models import Mailroom, Organization
from app.mailroom.modules.packages.allocator import PackageNumberAllocator, get_allocator
from app.mailroom.rbac import require_mailroom_access
from app.mailroom.utils import isoformat

if TYPE_CHECKING:
    from app.mailroom.models import User

logger = logging.getLogger(__name__)

ORG_STATUSES = {"ACTIVE", "DEFUNCT", "DEMO"}
_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (value or "").strip().lower()).strip("-")
    return slug[:128]


def get_organization(s: Session, org_id: int) -> Organization:
    org = s.get(Organization, org_id)
    if not org:
        raise NotFound("Organization", org_id)
    return org


def get_mailroom(s: Session, mailroom_id: int) -> Mailroom:
    m = s.get(Mailroom, mailroom_id)
    if not m:
        raise NotFound("Mailroom", mailroom_id)
    return m


def get_mailroom_for(s: Session, mailroom_id: int, user: User | None) -> Mailroom:
    """Mailroom lookup within the caller's tenant scope (403 outside it)."""
    m = get_mailroom(s, mailroom_id)
    require_mailroom_access(user, m)
    return m


def create_organization(s: Session, payload: dict[str, Any], *, user: User | None) -> Organization:
    name = (payload.get("name") or "").strip()
    errs: list[str] = []
    if not name:
        errs.append("name is required.")
    slug = slugify(payload.get("slug") or name)
    if name and not slug:
        errs.append("slug must contain letters or digits.")
    status = (payload.get("status") or "ACTIVE").strip().upper()
    if status not in ORG_STATUSES:
        errs.append(f"status must be one of: {', '.join(sorted(ORG_STATUSES))}.")
    if errs:
        raise ValidationError(errs)
    if s.query(Organization).filter(Organization.slug == slug).one_or_none():
        raise ValidationError([f"Organization slug '{slug}' is already taken."])

    org = Organization(
        name=name,
        slug=slug,
        notification_email=(payload.get("notification_email") or "").strip() or None,
        status=status,
        created_at=datetime.utcnow(),
        created_by_user_id=user.id if user else None,
    )
    s.add(org)
    s.flush()
    record_event(
        s,
        actor=user,
        action="organization.create",
        entity_type="Organization",
        entity_id=str(org.id),
        metadata={"name": name, "slug": slug},
    )
    return org


def validate_mailroom_hours(hours: Any) -> list[str]:
    if hours is None:
        return []
    if not isinstance(hours, dict):
        return ["mailroom_hours must be an object keyed by weekday."]
    errs: list[str] = []
    for day, periods in hours.items():
        if day not in DAY_ORDER:
            errs.append(f"mailroom_hours: unknown day '{day}'.")
            continue
        if not isinstance(periods, list):
            errs.append(f"mailroom_hours.{day} must be a list of periods.")
            continue
        for p in periods:
            start = p.get("start") if isinstance(p, dict) else None
            end = p.get("end") if isinstance(p, dict) else None
            if not (isinstance(start, str) and _TIME_RE.match(start) and isinstance(end, str) and _TIME_RE.match(end)):
                errs.append(f"mailroom_hours.{day}: each period needs start/end as HH:MM.")
            elif start >= end:
                errs.append(f"mailroom_hours.{day}: period start must be before end.")
    return errs


def create_mailroom(
    s: Session,
    org: Organization,
    payload: dict[str, Any],
    *,
    user: User | None,
    allocator: PackageNumberAllocator | None = None,
) -> Mailroom:
    """
    Create a mailroom and seed its number pool.
    Commits: the pool rows reference the mailroom, so it must exist first.
    """
    name = (payload.get("name") or "").strip()
    errs: list[str] = []
    if not name:
        errs.append("name is required.")
    slug = slugify(payload.get("slug") or name)
    if name and not slug:
        errs.append("slug must contain letters or digits.")
    errs.extend(validate_mailroom_hours(payload.get("mailroom_hours")))
    if errs:
        raise ValidationError(errs)

    now = datetime.utcnow()
    m = Mailroom(
        organization_id=org.id,
        name=name,
        slug=slug,
        status="ACTIVE",
        admin_email=(payload.get("admin_email") or "").strip() or None,
        mailroom_hours=payload.get("mailroom_hours"),
        email_additional_text=(payload.get("email_additional_text") or "").strip() or None,
        created_at=now,
        updated_at=now,
        created_by_user_id=user.id if user else None,
    )
    try:
        with s.begin_nested():
            s.add(m)
            s.flush()
    except IntegrityError:
        raise ValidationError([f"Mailroom slug '{slug}' is already taken in this organization."]) from None

    record_event(
        s,
        actor=user,
        action="mailroom.create",
        entity_type="Mailroom",
        entity_id=str(m.id),
        metadata={"organization_id": org.id, "name": name, "slug": slug},
    )
    s.commit()

    seeded = (allocator or get_allocator()).seed(m.id)
    logger.info("Created mailroom %s (%s) with %s package numbers", m.id, slug, seeded)
    return m


def update_mailroom_settings(s: Session, m: Mailroom, payload: dict[str, Any], *, user: User | None) -> Mailroom:
    errs: list[str] = []
    if "mailroom_hours" in payload:
        errs.extend(validate_mailroom_hours(payload.get("mailroom_hours")))
    if "admin_email" in payload:
        admin_email = (payload.get("admin_email") or "").strip()
        if admin_email and "@" not in admin_email:
            errs.append("admin_email must be a valid email address.")
    if errs:
        raise ValidationError(errs)

    changed: dict[str, Any] = {}
    if "admin_email" in payload:
        m.admin_email = (payload.get("admin_email") or "").strip() or None
        changed["admin_email"] = m.admin_email
    if "mailroom_hours" in payload:
        m.mailroom_hours = payload.get("mailroom_hours")
        changed["mailroom_hours"] = True
    if "email_additional_text" in payload:
        m.email_additional_text = (payload.get("email_additional_text") or "").strip() or None
        changed["email_additional_text"] = True
    if not changed:
        raise ValidationError(["No settings to update."])
    m.updated_at = datetime.utcnow()

    record_event(
        s,
        actor=user,
        action="mailroom.settings_update",
        entity_type="Mailroom",
        entity_id=str(m.id),
        metadata=changed,
    )
    return m


def organization_to_dict(org: Organization) -> dict[str, Any]:
    return {
        "id": org.id,
        "name": org.name,
        "slug": org.slug,
        "status": org.status,
        "notification_email": org.notification_email,
        "created_at": isoformat(org.created_at),
    }


def mailroom_to_dict(m: Mailroom, *, pool: dict[str, int] | None = None) -> dict[str, Any]:
    data = {
        "id": m.id,
        "organization_id": m.organization_id,
        "name": m.name,
        "slug": m.slug,
        "status": m.status,
        "admin_email": m.admin_email,
        "mailroom_hours": m.mailroom_hours,
        "email_additional_text": m.email_additional_text,
        "created_at": isoformat(m.created_at),
    }
    if pool is not None:
        data["pool"] = pool
    return data
