import logging
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request, session
from sqlalchemy import inspect as sa_inspect

from app.mailroom.config import load_config
from app.mailroom.db import init_db, teardown_db_session
from app.mailroom.errors import register_error_handlers
from app.mailroom.routes import bp as routes_bp
from app.mailroom.auth import bp as auth_bp, load_current_user
from app.mailroom.modules.notifications.mailer import notifier_from_config
from app.mailroom.modules.organizations.admin import bp as organizations_bp
from app.mailroom.modules.packages.admin import bp as packages_bp
from app.mailroom.modules.packages.allocator import init_allocator
from app.mailroom.modules.residents.admin import bp as residents_bp
from app.mailroom.modules.staff.admin import bp as staff_bp

REQUIRED_TABLES = (
    "organizations",
    "mailrooms",
    "residents",
    "package_numbers",
    "packages",
    "failed_package_logs",
    "invitations",
)


def create_app(config_overrides: dict | None = None) -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    if config_overrides:
        app.config.update(config_overrides)
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True
    app.json.sort_keys = bool(app.config.get("JSON_SORT_KEYS"))

    # CSRF protection (cookie sessions only)
    from app.mailroom.security import ensure_csrf_token, has_bearer_credentials, validate_csrf

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/health", "/healthz")):
            return None
        if has_bearer_credentials(request):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # login/token/logout establish the session themselves
            if (request.endpoint or "").startswith("auth."):
                return None
            if not validate_csrf(request):
                return jsonify({"error": "csrf_failed", "message": "CSRF token missing or invalid."}), 400

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")
        if not app.config.get("JWT_SECRET_KEY") or str(app.config["JWT_SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("JWT_SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        import os

        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    init_allocator(app)
    app.extensions["package_notifier"] = notifier_from_config(app.config)
    if app.extensions["package_notifier"] is None:
        app.logger.info("Package notifications disabled")

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(organizations_bp, url_prefix="/api")
    app.register_blueprint(residents_bp, url_prefix="/api")
    app.register_blueprint(packages_bp, url_prefix="/api")
    app.register_blueprint(staff_bp, url_prefix="/api")
    register_error_handlers(app)

    def _load_user_wrapper():
        if request.path.startswith(("/health", "/healthz")):
            g.current_user = None
            return None
        return load_current_user()

    app.before_request(_load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    # Migration health (lean): detect a database that was never migrated.
    app.config.setdefault("_schema_health_ok", True)
    app.config.setdefault("_schema_health_missing", [])

    def _run_schema_health_check() -> None:
        missing: list[str] = []
        try:
            insp = sa_inspect(app.extensions["sqlalchemy_engine"])
            missing = [t for t in REQUIRED_TABLES if not insp.has_table(t)]
        except Exception as e:
            app.logger.exception("Schema health check failed: %s", e)
        app.config["_schema_health_missing"] = missing
        app.config["_schema_health_ok"] = not missing
        if missing:
            app.logger.error("DB schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing))

    _run_schema_health_check()

    @app.before_request
    def _schema_health_guardrail():  # type: ignore[no-redef]
        if app.config.get("_schema_health_ok") or not request.path.startswith("/api"):
            return None
        # Tables may have been created after startup (tests, first deploy); re-check once more.
        _run_schema_health_check()
        if app.config.get("_schema_health_ok"):
            return None
        return jsonify({"error": "schema_out_of_date", "missing": app.config.get("_schema_health_missing") or []}), 500

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")
    return app
