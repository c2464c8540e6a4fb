from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, g, jsonify, request, session
from jose import JWTError, jwt
from werkzeug.security import check_password_hash

from app.mailroom.audit import record_event
from app.mailroom.db import db_session
from app.mailroom.errors import Unauthenticated
from app.mailroom.models import User
from app.mailroom.modules.staff.service import accept_invitation
from app.mailroom.security import ensure_csrf_token
from app.mailroom.utils import json_payload

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds
ALGORITHM = "HS256"


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def create_access_token(user: User) -> str:
    """Signed bearer token for API clients."""
    expire = datetime.utcnow() + timedelta(hours=int(current_app.config.get("JWT_EXPIRE_HOURS") or 24))
    claims = {
        "sub": str(user.id),
        "email": user.email,
        "roles": sorted(r.key for r in user.roles),
        "exp": expire,
    }
    return jwt.encode(claims, current_app.config["JWT_SECRET_KEY"], algorithm=ALGORITHM)


def decode_token(token: str) -> dict | None:
    """Decode and validate a bearer token; None when invalid or expired."""
    try:
        return jwt.decode(token, current_app.config["JWT_SECRET_KEY"], algorithms=[ALGORITHM])
    except JWTError:
        return None


def user_from_bearer(header: str) -> User:
    """
    Resolve the caller identity from an `Authorization: Bearer` header.
    Raises Unauthenticated for a missing, malformed, expired, or revoked credential.
    """
    if not header.startswith("Bearer "):
        raise Unauthenticated("Missing or invalid token.")
    payload = decode_token(header.split(" ", 1)[1].strip())
    if payload is None or not payload.get("sub"):
        raise Unauthenticated("Invalid token.")
    try:
        user_id = int(payload["sub"])
    except (TypeError, ValueError):
        raise Unauthenticated("Invalid token.") from None
    user = db_session().get(User, user_id)
    if not user or not user.is_active:
        raise Unauthenticated("Invalid token.")
    return user


def load_current_user() -> None:
    """
    Loads g.current_user from a bearer token or the signed session cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    g.current_user = None

    auth_header = request.headers.get("Authorization") or ""
    if auth_header:
        try:
            g.current_user = user_from_bearer(auth_header)
        except Unauthenticated as e:
            current_app.logger.info("Bearer auth rejected (request_id=%s): %s", g.request_id, e.message)
        return

    user_id = session.get("user_id")
    if not user_id:
        return

    user = db_session().get(User, int(user_id))
    if not user or not user.is_active:
        session.pop("user_id", None)
        return
    g.current_user = user


def _credentials() -> tuple[str, str]:
    payload = request.get_json(silent=True) if request.is_json else None
    if isinstance(payload, dict):
        return (str(payload.get("email") or "")).strip().lower(), str(payload.get("password") or "")
    return (request.form.get("email") or "").strip().lower(), request.form.get("password") or ""


def _authenticate(action: str) -> User:
    email, password = _credentials()
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        raise Unauthenticated("Too many login attempts. Please wait 5 minutes.")
    _record_attempt(ip)

    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none()
    if not user or not user.is_active or not check_password_hash(user.password_hash, password):
        record_event(
            s,
            actor=None,
            action="auth.login_failed",
            entity_type="User",
            entity_id=email,
            reason="Invalid credentials",
            metadata={"email": email, "via": action},
        )
        s.commit()
        raise Unauthenticated("Invalid credentials.")

    _login_attempts[ip].clear()
    record_event(s, actor=user, action=action, entity_type="User", entity_id=str(user.id))
    s.commit()
    return user


@bp.get("/csrf")
def csrf_token():
    return jsonify({"csrf_token": ensure_csrf_token()})


@bp.post("/login")
def login_post():
    user = _authenticate("auth.login")
    session["user_id"] = user.id
    return jsonify({"user_id": user.id, "csrf_token": ensure_csrf_token()})


@bp.post("/token")
def token_post():
    user = _authenticate("auth.token")
    return jsonify({"access_token": create_access_token(user), "token_type": "bearer"})


@bp.get("/logout")
def logout():
    s = db_session()
    user = getattr(g, "current_user", None)
    if user:
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.pop("user_id", None)
    return jsonify({"ok": True})


@bp.post("/accept-invitation")
def accept_invitation_post():
    payload = json_payload()
    s = db_session()
    user = accept_invitation(s, payload.get("token"), payload.get("password"))
    s.commit()
    return jsonify({"user_id": user.id, "access_token": create_access_token(user), "token_type": "bearer"}), 201
