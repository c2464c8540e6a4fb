from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session
from werkzeug.security import generate_password_hash

from app.mailroom.audit import record_event
from app.mailroom.constants import (
    ASSIGNABLE_ROLES,
    INVITATION_EXPIRY_DAYS,
    ROLE_ADMIN,
    ROLE_NAMES,
    ROLE_RANK,
    ROLE_USER,
)
from app.mailroom.errors import Forbidden, NotFound, NotificationFailure, ValidationError
from app.mailroom.models import Role, User
from app.mailroom.modules.notifications.mailer import Notifier
from app.mailroom.modules.notifications.service import build_invitation_message, get_notifier
from app.mailroom.modules.organizations.models import Mailroom
from app.mailroom.modules.staff.models import INVITATION_ACCEPTED, INVITATION_PENDING, Invitation
from app.mailroom.utils import isoformat

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8


def role_rank(user: User | None) -> int:
    """Highest rank among the user's roles; -1 for nobody."""
    if not user:
        return -1
    return max((ROLE_RANK.get(r.key, -1) for r in user.roles), default=-1)


def _top_role(user: User) -> str | None:
    keys = [r.key for r in user.roles if r.key in ROLE_RANK]
    return max(keys, key=ROLE_RANK.__getitem__) if keys else None


def _get_role(s: Session, key: str) -> Role:
    role = s.query(Role).filter(Role.key == key).one_or_none()
    if not role:
        raise ValidationError([f"Role '{key}' is not configured; run scripts/init_db.py."])
    return role


def _parse_role(value: Any, *, default: str | None = None) -> str:
    role = str(value or default or "").strip().lower()
    if role not in ASSIGNABLE_ROLES:
        raise ValidationError([f"role must be one of: {', '.join(ASSIGNABLE_ROLES)}."])
    return role


def _require_rank_for(actor: User | None, role: str) -> None:
    if ROLE_RANK[role] > role_rank(actor):
        raise Forbidden(f"You cannot assign the '{role}' role.", missing_permission=f"role:{role}")


def _require_can_manage(actor: User | None, target: User) -> None:
    if actor and actor.id == target.id:
        raise Forbidden("You cannot change your own account here.", missing_permission=f"user:{target.id}")
    if role_rank(target) > role_rank(actor):
        top = _top_role(target)
        raise Forbidden(f"You cannot manage a user with the '{top}' role.", missing_permission=f"role:{top}")


# ── users ────────────────────────────────────────────────────────────────


def get_user(s: Session, user_id: int) -> User:
    u = s.get(User, user_id)
    if not u:
        raise NotFound("User", user_id)
    return u


def list_mailroom_users(s: Session, mailroom_id: int, *, include_inactive: bool = False) -> list[User]:
    query = s.query(User).filter(User.mailroom_id == mailroom_id)
    if not include_inactive:
        query = query.filter(User.is_active.is_(True))
    return query.order_by(User.email.asc()).all()


def change_user_role(s: Session, target: User, role: Any, *, actor: User | None) -> User:
    """
    Replace the target's assignable role (user/manager/admin) with `role`.

    Callers may neither act on someone ranked above themselves nor hand out a
    role ranked above their own. Non-assignable roles (super-admin) are kept.
    """
    new_role = _parse_role(role)
    _require_can_manage(actor, target)
    _require_rank_for(actor, new_role)

    old = sorted(r.key for r in target.roles)
    target.roles = [r for r in target.roles if r.key not in ASSIGNABLE_ROLES] + [_get_role(s, new_role)]
    record_event(
        s,
        actor=actor,
        action="staff.role_change",
        entity_type="User",
        entity_id=str(target.id),
        metadata={"from": old, "to": sorted(r.key for r in target.roles), "mailroom_id": target.mailroom_id},
    )
    logger.info("User %s role changed %s -> %s", target.id, old, new_role)
    return target


def remove_user(s: Session, target: User, *, actor: User | None) -> User:
    """Deactivate the account; existing tokens and sessions stop working on the next request."""
    _require_can_manage(actor, target)
    was_active = target.is_active
    target.is_active = False
    record_event(
        s,
        actor=actor,
        action="staff.remove",
        entity_type="User",
        entity_id=str(target.id),
        metadata={"email": target.email, "mailroom_id": target.mailroom_id, "was_active": was_active},
    )
    return target


def user_to_dict(u: User) -> dict[str, Any]:
    return {
        "id": u.id,
        "email": u.email,
        "roles": sorted(r.key for r in u.roles),
        "is_active": u.is_active,
        "organization_id": u.organization_id,
        "mailroom_id": u.mailroom_id,
        "created_at": isoformat(u.created_at),
    }


# ── invitations ──────────────────────────────────────────────────────────


def _open_invitations(s: Session, mailroom_id: int, now: datetime):
    return s.query(Invitation).filter(
        Invitation.mailroom_id == mailroom_id,
        Invitation.status == INVITATION_PENDING,
        Invitation.used.is_(False),
        Invitation.expires_at > now,
    )


def list_invitations(s: Session, mailroom_id: int, *, now: datetime | None = None) -> list[Invitation]:
    """Pending invitations that can still be accepted."""
    now = now or datetime.utcnow()
    return _open_invitations(s, mailroom_id, now).order_by(Invitation.created_at.desc(), Invitation.id.desc()).all()


def get_invitation(s: Session, invitation_id: int) -> Invitation:
    inv = s.get(Invitation, invitation_id)
    if not inv:
        raise NotFound("Invitation", invitation_id)
    return inv


def create_invitation(
    s: Session,
    mailroom: Mailroom,
    payload: dict[str, Any],
    *,
    user: User | None,
    now: datetime | None = None,
) -> Invitation:
    now = now or datetime.utcnow()
    email = str(payload.get("email") or "").strip().lower()
    if not email:
        raise ValidationError(["email is required."])
    if "@" not in email:
        raise ValidationError(["email must be a valid email address."])
    role = _parse_role(payload.get("role"), default=ROLE_USER)
    _require_rank_for(user, role)

    if s.query(User).filter(User.email == email).one_or_none():
        raise ValidationError([f"A user with email {email} already exists."])
    if _open_invitations(s, mailroom.id, now).filter(Invitation.email == email).first():
        raise ValidationError([f"{email} already has a pending invitation to this mailroom."])

    inv = Invitation(
        email=email,
        role=role,
        organization_id=mailroom.organization_id,
        mailroom_id=mailroom.id,
        invited_by_user_id=user.id if user else None,
        token=secrets.token_urlsafe(32),
        status=INVITATION_PENDING,
        used=False,
        expires_at=now + timedelta(days=INVITATION_EXPIRY_DAYS),
        created_at=now,
        updated_at=now,
    )
    s.add(inv)
    s.flush()
    record_event(
        s,
        actor=user,
        action="staff.invite",
        entity_type="Invitation",
        entity_id=str(inv.id),
        metadata={"email": email, "role": role, "mailroom_id": mailroom.id},
    )
    return inv


def send_invitation(
    mailroom: Mailroom,
    inv: Invitation,
    *,
    notifier: Notifier | None = None,
    accept_url: str | None = None,
) -> bool:
    """
    Email the invitation. Best effort: returns False when notifications are
    disabled or delivery failed, and the invitation stays valid either way.
    """
    notifier = notifier or get_notifier()
    if notifier is None:
        return False
    subject, body = build_invitation_message(
        mailroom_name=mailroom.name,
        role=ROLE_NAMES.get(inv.role, inv.role),
        token=inv.token,
        expires_at=inv.expires_at,
        accept_url=accept_url,
    )
    try:
        notifier.send(inv.email, subject, body, reply_to=mailroom.admin_email)
    except NotificationFailure as e:
        logger.warning("Invitation %s email to %s failed: %s", inv.id, inv.email, e.message)
        return False
    return True


def delete_invitation(s: Session, inv: Invitation, *, user: User | None) -> None:
    """Admins may delete any invitation in scope; everyone else only their own."""
    if role_rank(user) < ROLE_RANK[ROLE_ADMIN] and (not user or inv.invited_by_user_id != user.id):
        raise Forbidden("You can only delete invitations you created.", missing_permission=f"invitation:{inv.id}")
    record_event(
        s,
        actor=user,
        action="staff.invitation_delete",
        entity_type="Invitation",
        entity_id=str(inv.id),
        metadata={"email": inv.email, "mailroom_id": inv.mailroom_id, "status": inv.status},
    )
    s.delete(inv)


def accept_invitation(s: Session, token: Any, password: Any, *, now: datetime | None = None) -> User:
    """Create the invited account with the invitation's role and tenant scope; the invitation is then spent."""
    now = now or datetime.utcnow()
    token = str(token or "").strip()
    password = str(password or "")
    errs: list[str] = []
    if not token:
        errs.append("token is required.")
    if len(password) < MIN_PASSWORD_LENGTH:
        errs.append(f"password must be at least {MIN_PASSWORD_LENGTH} characters.")
    if errs:
        raise ValidationError(errs)

    inv = s.query(Invitation).filter(Invitation.token == token).one_or_none()
    if not inv or not inv.is_open(now):
        raise ValidationError(["Invitation is invalid or has expired."])
    if s.query(User).filter(User.email == inv.email).one_or_none():
        raise ValidationError([f"A user with email {inv.email} already exists."])

    user = User(
        email=inv.email,
        password_hash=generate_password_hash(password),
        is_active=True,
        organization_id=inv.organization_id,
        mailroom_id=inv.mailroom_id,
        created_at=now,
    )
    user.roles.append(_get_role(s, inv.role))
    s.add(user)
    inv.status = INVITATION_ACCEPTED
    inv.used = True
    inv.updated_at = now
    s.flush()
    record_event(
        s,
        actor=user,
        action="staff.invitation_accept",
        entity_type="Invitation",
        entity_id=str(inv.id),
        metadata={"user_id": user.id, "role": inv.role, "mailroom_id": inv.mailroom_id},
    )
    return user


def invitation_to_dict(inv: Invitation) -> dict[str, Any]:
    return {
        "id": inv.id,
        "email": inv.email,
        "role": inv.role,
        "organization_id": inv.organization_id,
        "mailroom_id": inv.mailroom_id,
        "invited_by_user_id": inv.invited_by_user_id,
        "status": inv.status,
        "expires_at": isoformat(inv.expires_at),
        "created_at": isoformat(inv.created_at),
    }
