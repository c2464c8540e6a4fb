from __future__ import annotations

from flask import Blueprint, g, jsonify

from app.mailroom.db import db_session
from app.mailroom.models import User
from app.mailroom.modules.organizations.service import (
    create_mailroom,
    create_organization,
    get_mailroom_for,
    get_organization,
    mailroom_to_dict,
    organization_to_dict,
    update_mailroom_settings,
)
from app.mailroom.modules.packages.allocator import get_allocator
from app.mailroom.rbac import require_organization_access, require_permission
from app.mailroom.utils import json_payload

bp = Blueprint("organizations", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


@bp.post("/organizations")
@require_permission("organizations.create")
def organization_create():
    s = db_session()
    org = create_organization(s, json_payload(), user=_current_user())
    s.commit()
    return jsonify(organization_to_dict(org)), 201


@bp.post("/organizations/<int:org_id>/mailrooms")
@require_permission("mailrooms.create")
def mailroom_create(org_id: int):
    s = db_session()
    u = _current_user()
    org = get_organization(s, org_id)
    require_organization_access(u, org.id)
    m = create_mailroom(s, org, json_payload(), user=u)
    return jsonify(mailroom_to_dict(m, pool=get_allocator().stats(m.id).to_dict())), 201


@bp.get("/mailrooms/<int:mailroom_id>")
@require_permission("packages.view")
def mailroom_detail(mailroom_id: int):
    s = db_session()
    m = get_mailroom_for(s, mailroom_id, _current_user())
    return jsonify(mailroom_to_dict(m, pool=get_allocator().stats(m.id).to_dict()))


@bp.patch("/mailrooms/<int:mailroom_id>/settings")
@require_permission("mailrooms.settings")
def mailroom_settings_update(mailroom_id: int):
    s = db_session()
    u = _current_user()
    m = get_mailroom_for(s, mailroom_id, u)
    update_mailroom_settings(s, m, json_payload(), user=u)
    s.commit()
    return jsonify(mailroom_to_dict(m))
