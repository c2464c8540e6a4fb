from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from app.mailroom.db import db_session
from app.mailroom.errors import ValidationError
from app.mailroom.models import User
from app.mailroom.modules.organizations.service import get_mailroom, get_mailroom_for
from app.mailroom.modules.packages.service import (
    failed_log_to_dict,
    get_failed_log,
    get_package,
    list_failed_packages,
    list_packages,
    package_to_dict,
    record_failed_package,
    register_package,
    resolve_failed_package,
    transition_package,
)
from app.mailroom.rbac import require_mailroom_access, require_permission
from app.mailroom.utils import clean_str, json_payload, parse_int

bp = Blueprint("packages", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


@bp.get("/mailrooms/<int:mailroom_id>/packages")
@require_permission("packages.view")
def packages_list(mailroom_id: int):
    s = db_session()
    m = get_mailroom_for(s, mailroom_id, _current_user())
    status = clean_str(request.args.get("status"))
    raw_number = clean_str(request.args.get("number"))
    number = parse_int(raw_number)
    if raw_number and number is None:
        raise ValidationError(["number must be an integer."])
    student_id = clean_str(request.args.get("student_id"))
    limit = min(max(parse_int(request.args.get("limit")) or 200, 1), 1000)
    rows = list_packages(s, m.id, status=status, number=number, student_id=student_id, limit=limit)
    return jsonify({"packages": [package_to_dict(p) for p in rows]})


@bp.post("/mailrooms/<int:mailroom_id>/packages")
@require_permission("packages.register")
def packages_register(mailroom_id: int):
    s = db_session()
    u = _current_user()
    m = get_mailroom_for(s, mailroom_id, u)
    payload = json_payload()
    pkg = register_package(s, m, payload.get("student_id") or "", payload.get("provider") or "", u)
    current_app.logger.info(
        "Package #%s registered in mailroom %s by user %s (request_id=%s)",
        pkg.package_id,
        m.id,
        u.id,
        getattr(g, "request_id", None),
    )
    return jsonify(package_to_dict(pkg)), 201


@bp.post("/packages/<int:package_row_id>/transition")
@require_permission("packages.update")
def packages_transition(package_row_id: int):
    s = db_session()
    u = _current_user()
    pkg = get_package(s, package_row_id)
    require_mailroom_access(u, get_mailroom(s, pkg.mailroom_id))
    payload = json_payload()
    target = clean_str(payload.get("status"))
    if not target:
        raise ValidationError(["status is required."])
    transition_package(s, pkg, target, u)
    return jsonify(package_to_dict(pkg))


@bp.get("/mailrooms/<int:mailroom_id>/failed-packages")
@require_permission("packages.view")
def failed_packages_list(mailroom_id: int):
    s = db_session()
    m = get_mailroom_for(s, mailroom_id, _current_user())
    include_resolved = (request.args.get("include_resolved") or "").strip() in ("1", "true")
    rows = list_failed_packages(s, m.id, include_resolved=include_resolved)
    return jsonify({"failed_packages": [failed_log_to_dict(r) for r in rows]})


@bp.post("/mailrooms/<int:mailroom_id>/failed-packages")
@require_permission("packages.register")
def failed_packages_create(mailroom_id: int):
    s = db_session()
    u = _current_user()
    m = get_mailroom_for(s, mailroom_id, u)
    log = record_failed_package(s, m, json_payload(), user=u)
    s.commit()
    return jsonify(failed_log_to_dict(log)), 201


@bp.post("/failed-packages/<int:log_id>/resolve")
@require_permission("packages.resolve_failures")
def failed_packages_resolve(log_id: int):
    s = db_session()
    u = _current_user()
    log = get_failed_log(s, log_id)
    require_mailroom_access(u, get_mailroom(s, log.mailroom_id))
    payload = json_payload()
    resolve_failed_package(s, log, user=u, notes=clean_str(payload.get("notes")))
    s.commit()
    return jsonify(failed_log_to_dict(log))
