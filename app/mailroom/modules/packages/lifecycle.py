"""
Package lifecycle state machine.

Every status change goes through `validate_transition` / `apply_transition`;
call sites never compare status strings on their own.

    WAITING ──► RETRIEVED ──► RESOLVED
       └──────────────────────►┘
    FAILED (registration failures only; never live, never holds a number)
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from app.mailroom.errors import InvalidTransition, ValidationError

if TYPE_CHECKING:
    from app.mailroom.models import User
    from app.mailroom.modules.packages.models import Package


class PackageStatus(str, Enum):
    WAITING = "WAITING"
    RETRIEVED = "RETRIEVED"
    RESOLVED = "RESOLVED"
    FAILED = "FAILED"


TRANSITIONS: dict[PackageStatus, frozenset[PackageStatus]] = {
    PackageStatus.WAITING: frozenset({PackageStatus.RETRIEVED, PackageStatus.RESOLVED}),
    PackageStatus.RETRIEVED: frozenset({PackageStatus.RESOLVED}),
    PackageStatus.RESOLVED: frozenset(),
    PackageStatus.FAILED: frozenset(),
}

# Statuses whose package still holds its display number.
LIVE_STATUSES = frozenset({PackageStatus.WAITING, PackageStatus.RETRIEVED})
TERMINAL_STATUSES = frozenset(s for s, targets in TRANSITIONS.items() if not targets)


def parse_status(value: object) -> PackageStatus:
    """Coerce caller input ("resolved", "RESOLVED", enum) to a PackageStatus."""
    if isinstance(value, PackageStatus):
        return value
    raw = str(value or "").strip().upper()
    try:
        return PackageStatus(raw)
    except ValueError:
        allowed = ", ".join(s.value for s in PackageStatus)
        raise ValidationError([f"Unknown package status {value!r}; expected one of: {allowed}."]) from None


def can_transition(source: PackageStatus | str, target: PackageStatus | str) -> bool:
    return parse_status(target) in TRANSITIONS[parse_status(source)]


def validate_transition(
    source: PackageStatus | str,
    target: PackageStatus | str,
    *,
    package_id: int | None = None,
) -> tuple[PackageStatus, PackageStatus]:
    src = parse_status(source)
    dst = parse_status(target)
    if dst not in TRANSITIONS[src]:
        raise InvalidTransition(src.value, dst.value, package_id=package_id)
    return src, dst


def releases_number(target: PackageStatus) -> bool:
    """Entering a terminal status from a live one hands the number back to the pool."""
    return target in TERMINAL_STATUSES


def apply_transition(
    package: "Package",
    target: PackageStatus | str,
    *,
    user: "User | None" = None,
    now: datetime | None = None,
) -> tuple[PackageStatus, PackageStatus]:
    """
    Validate and mutate `package` in place (status + timestamps).
    Raises InvalidTransition before touching anything. Releasing the number is
    the caller's job and must happen only after the change is committed.
    """
    src, dst = validate_transition(package.status, target, package_id=package.id)
    now = now or datetime.utcnow()

    if dst is PackageStatus.RETRIEVED:
        package.retrieved_timestamp = now
        package.pickup_staff_id = user.id if user else None
    elif dst is PackageStatus.RESOLVED:
        package.resolved_timestamp = now
        package.resolved_by_user_id = user.id if user else None

    package.status = dst.value
    package.updated_at = now
    return src, dst
