"""
Error kinds surfaced by the package core and rendered by the JSON API.

Each error carries enough detail (mailroom id, student id, attempted state pair)
for a caller to show an actionable message.
"""
from __future__ import annotations

from typing import Any

from flask import Flask, current_app, g, jsonify


class MailroomError(RuntimeError):
    error_code = "mailroom_error"
    http_status = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def details(self) -> dict[str, Any]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.error_code, "message": self.message, **self.details()}


class Unauthenticated(MailroomError):
    error_code = "unauthenticated"
    http_status = 401


class Forbidden(MailroomError):
    """Authenticated and in scope, but the action reaches above the caller's own role."""

    error_code = "forbidden"
    http_status = 403

    def __init__(self, message: str, *, missing_permission: str | None = None) -> None:
        super().__init__(message)
        self.missing_permission = missing_permission

    def details(self) -> dict[str, Any]:
        return {"missing_permission": self.missing_permission}


class ValidationError(MailroomError):
    error_code = "validation_error"
    http_status = 400

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors

    def details(self) -> dict[str, Any]:
        return {"errors": list(self.errors)}


class NotFound(MailroomError):
    error_code = "not_found"
    http_status = 404

    def __init__(self, entity: str, entity_id: object) -> None:
        super().__init__(f"{entity} {entity_id} not found.")
        self.entity = entity
        self.entity_id = entity_id

    def details(self) -> dict[str, Any]:
        return {"entity": self.entity, "entity_id": self.entity_id}


class ResidentNotFound(MailroomError):
    error_code = "resident_not_found"
    http_status = 404

    def __init__(self, mailroom_id: int, student_id: str) -> None:
        super().__init__(f"No resident found with student ID {student_id} in this mailroom.")
        self.mailroom_id = mailroom_id
        self.student_id = student_id

    def details(self) -> dict[str, Any]:
        return {"mailroom_id": self.mailroom_id, "student_id": self.student_id}


class PoolExhausted(MailroomError):
    error_code = "pool_exhausted"
    http_status = 409

    def __init__(self, mailroom_id: int) -> None:
        super().__init__(
            "No package numbers available: every number in this mailroom is held by a "
            "package that has not been resolved."
        )
        self.mailroom_id = mailroom_id

    def details(self) -> dict[str, Any]:
        return {"mailroom_id": self.mailroom_id}


class InvalidPackageNumber(MailroomError, ValueError):
    error_code = "invalid_package_number"
    http_status = 400

    def __init__(self, number: object) -> None:
        super().__init__(f"Package number {number!r} is outside the allowed range.")
        self.number = number

    def details(self) -> dict[str, Any]:
        return {"number": self.number}


class InvalidTransition(MailroomError):
    error_code = "invalid_transition"
    http_status = 409

    def __init__(self, source: str, target: str, *, package_id: int | None = None) -> None:
        super().__init__(f"Cannot transition package from '{source}' to '{target}'.")
        self.source = source
        self.target = target
        self.package_id = package_id

    def details(self) -> dict[str, Any]:
        return {"source": self.source, "target": self.target, "package_id": self.package_id}


class PersistenceFailure(MailroomError):
    error_code = "persistence_failure"
    http_status = 503

    def __init__(self, message: str, *, mailroom_id: int | None = None) -> None:
        super().__init__(message)
        self.mailroom_id = mailroom_id

    def details(self) -> dict[str, Any]:
        return {"mailroom_id": self.mailroom_id}


class NotificationFailure(MailroomError):
    """Non-fatal: recorded out of band, never returned to a registering caller."""

    error_code = "notification_failure"
    http_status = 502


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(MailroomError)
    def _mailroom_error(e: MailroomError):  # type: ignore[no-redef]
        if e.http_status >= 500:
            current_app.logger.error(
                "%s (request_id=%s): %s", e.error_code, getattr(g, "request_id", None), e.message
            )
        return jsonify(e.to_dict()), e.http_status

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            current_app.logger.warning(
                "Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None)
            )
        return jsonify({"error": "forbidden", "message": "Not allowed.", "missing_permission": missing}), 403

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return jsonify({"error": "not_found", "message": "Not found."}), 404

    @app.errorhandler(405)
    def _err_405(e):  # type: ignore[no-redef]
        return jsonify({"error": "method_not_allowed", "message": "Method not allowed."}), 405

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"error": "internal_error", "message": "Internal server error."}), 500
