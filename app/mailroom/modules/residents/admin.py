from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from app.mailroom.db import db_session
from app.mailroom.models import User
from app.mailroom.modules.organizations.service import get_mailroom_for
from app.mailroom.modules.residents.service import (
    add_resident,
    get_resident,
    list_residents,
    remove_resident,
    resident_to_dict,
)
from app.mailroom.rbac import require_permission
from app.mailroom.utils import json_payload

bp = Blueprint("residents", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


@bp.get("/mailrooms/<int:mailroom_id>/residents")
@require_permission("residents.view")
def residents_list(mailroom_id: int):
    s = db_session()
    m = get_mailroom_for(s, mailroom_id, _current_user())
    include_removed = (request.args.get("include_removed") or "").strip() in ("1", "true")
    q = (request.args.get("q") or "").strip()
    rows = list_residents(s, m.id, include_removed=include_removed, q=q)
    return jsonify({"residents": [resident_to_dict(r) for r in rows]})


@bp.post("/mailrooms/<int:mailroom_id>/residents")
@require_permission("residents.manage")
def residents_create(mailroom_id: int):
    s = db_session()
    u = _current_user()
    m = get_mailroom_for(s, mailroom_id, u)
    r = add_resident(s, m.id, json_payload(), user=u)
    s.commit()
    return jsonify(resident_to_dict(r)), 201


@bp.delete("/mailrooms/<int:mailroom_id>/residents/<int:resident_id>")
@require_permission("residents.manage")
def residents_remove(mailroom_id: int, resident_id: int):
    s = db_session()
    u = _current_user()
    m = get_mailroom_for(s, mailroom_id, u)
    r = remove_resident(s, get_resident(s, m.id, resident_id), user=u)
    s.commit()
    return jsonify(resident_to_dict(r))
