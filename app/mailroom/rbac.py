from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g

from app.mailroom.constants import ROLE_ADMIN, ROLE_SUPER_ADMIN
from app.mailroom.errors import Unauthenticated
from app.mailroom.models import Mailroom, User


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    for role in user.roles:
        for perm in role.permissions:
            if perm.key == permission_key:
                return True
    return False


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            if not user or not user.is_active:
                raise Unauthenticated("Authentication required.")
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def can_access_mailroom(user: User | None, mailroom: Mailroom) -> bool:
    """
    Tenant scope check.

    super-admin: every mailroom; admin: every mailroom in their organization;
    everyone else: only the mailroom on their profile.
    """
    if not user or not user.is_active:
        return False
    if user.has_role(ROLE_SUPER_ADMIN):
        return True
    if user.has_role(ROLE_ADMIN) and user.organization_id is not None:
        return mailroom.organization_id == user.organization_id
    return user.mailroom_id is not None and user.mailroom_id == mailroom.id


def require_mailroom_access(user: User | None, mailroom: Mailroom) -> None:
    if not can_access_mailroom(user, mailroom):
        g.missing_permission = f"mailroom:{mailroom.id}"
        abort(403)


def require_organization_access(user: User | None, organization_id: int) -> None:
    """Org-level actions: super-admin anywhere, admin only inside their own organization."""
    if user and user.has_role(ROLE_SUPER_ADMIN):
        return
    if user and user.organization_id is not None and user.organization_id == organization_id:
        return
    g.missing_permission = f"organization:{organization_id}"
    abort(403)
