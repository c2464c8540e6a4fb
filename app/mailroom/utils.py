from __future__ import annotations

from typing import Any

from flask import request

from app.mailroom.errors import ValidationError


def json_payload() -> dict[str, Any]:
    """Request body as a dict; form posts are accepted the same way."""
    if request.is_json:
        payload = request.get_json(silent=True)
        if payload is None:
            raise ValidationError(["Request body must be valid JSON."])
        if not isinstance(payload, dict):
            raise ValidationError(["Request body must be a JSON object."])
        return payload
    return request.form.to_dict()


def clean_str(value: Any) -> str | None:
    text = str(value).strip() if value is not None else ""
    return text or None


def parse_int(value: Any) -> int | None:
    v = str(value).strip() if value is not None else ""
    if not v:
        return None
    try:
        return int(v)
    except ValueError:
        return None


def isoformat(value) -> str | None:
    return value.isoformat() if value is not None else None
