from __future__ import annotations

from flask import Blueprint, abort, current_app, g, jsonify
from sqlalchemy.orm import Session

from app.mailroom.constants import ROLE_SUPER_ADMIN
from app.mailroom.db import db_session
from app.mailroom.models import User
from app.mailroom.modules.organizations.service import get_mailroom, get_mailroom_for
from app.mailroom.modules.staff.service import (
    change_user_role,
    create_invitation,
    delete_invitation,
    get_invitation,
    get_user,
    invitation_to_dict,
    list_invitations,
    list_mailroom_users,
    remove_user,
    send_invitation,
    user_to_dict,
)
from app.mailroom.rbac import require_mailroom_access, require_organization_access, require_permission
from app.mailroom.utils import json_payload

bp = Blueprint("staff", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _require_user_scope(s: Session, actor: User, target: User) -> None:
    """Staff are scoped by their mailroom; org-level accounts by their organization."""
    if target.mailroom_id is not None:
        require_mailroom_access(actor, get_mailroom(s, target.mailroom_id))
    elif target.organization_id is not None:
        require_organization_access(actor, target.organization_id)
    elif not actor.has_role(ROLE_SUPER_ADMIN):
        g.missing_permission = f"user:{target.id}"
        abort(403)


@bp.get("/mailrooms/<int:mailroom_id>/users")
@require_permission("staff.manage")
def staff_list(mailroom_id: int):
    s = db_session()
    m = get_mailroom_for(s, mailroom_id, _current_user())
    return jsonify(
        {
            "users": [user_to_dict(u) for u in list_mailroom_users(s, m.id)],
            "invitations": [invitation_to_dict(i) for i in list_invitations(s, m.id)],
        }
    )


@bp.patch("/users/<int:user_id>/role")
@require_permission("staff.manage")
def staff_change_role(user_id: int):
    s = db_session()
    u = _current_user()
    target = get_user(s, user_id)
    _require_user_scope(s, u, target)
    change_user_role(s, target, json_payload().get("role"), actor=u)
    s.commit()
    return jsonify(user_to_dict(target))


@bp.delete("/users/<int:user_id>")
@require_permission("staff.manage")
def staff_remove(user_id: int):
    s = db_session()
    u = _current_user()
    target = get_user(s, user_id)
    _require_user_scope(s, u, target)
    remove_user(s, target, actor=u)
    s.commit()
    return jsonify(user_to_dict(target))


@bp.get("/mailrooms/<int:mailroom_id>/invitations")
@require_permission("staff.manage")
def invitations_list(mailroom_id: int):
    s = db_session()
    m = get_mailroom_for(s, mailroom_id, _current_user())
    return jsonify({"invitations": [invitation_to_dict(i) for i in list_invitations(s, m.id)]})


@bp.post("/mailrooms/<int:mailroom_id>/invitations")
@require_permission("staff.manage")
def invitations_create(mailroom_id: int):
    s = db_session()
    u = _current_user()
    m = get_mailroom_for(s, mailroom_id, u)
    inv = create_invitation(s, m, json_payload(), user=u)
    s.commit()
    # Email only once the token is committed.
    sent = send_invitation(m, inv, accept_url=current_app.config.get("INVITE_ACCEPT_URL") or None)
    return jsonify({**invitation_to_dict(inv), "token": inv.token, "email_sent": sent}), 201


@bp.delete("/invitations/<int:invitation_id>")
@require_permission("staff.manage")
def invitations_delete(invitation_id: int):
    s = db_session()
    u = _current_user()
    inv = get_invitation(s, invitation_id)
    require_mailroom_access(u, get_mailroom(s, inv.mailroom_id))
    delete_invitation(s, inv, user=u)
    s.commit()
    return jsonify({"ok": True})
