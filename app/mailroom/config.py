import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    jwt_secret_key: str
    jwt_expire_hours: int

    smtp_server: str
    smtp_port: int
    smtp_use_tls: bool
    smtp_username: str
    smtp_password: str
    email_from: str
    notifications_enabled: bool
    invite_accept_url: str

    allocator_max_attempts: int
    reconcile_grace_minutes: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _getenv_bool(name: str, default: bool) -> bool:
    raw = _getenv(name).lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///mailroom.db"),
        jwt_secret_key=_getenv("JWT_SECRET_KEY", "change-me"),
        jwt_expire_hours=_getenv_int("JWT_EXPIRE_HOURS", 24),
        smtp_server=_getenv("SMTP_SERVER", ""),
        smtp_port=_getenv_int("SMTP_PORT", 587),
        smtp_use_tls=_getenv_bool("SMTP_USE_TLS", True),
        smtp_username=_getenv("SMTP_USERNAME", ""),
        smtp_password=_getenv("SMTP_PASSWORD", ""),
        email_from=_getenv("EMAIL_FROM", ""),
        notifications_enabled=_getenv_bool("NOTIFICATIONS_ENABLED", True),
        invite_accept_url=_getenv("INVITE_ACCEPT_URL", ""),
        allocator_max_attempts=_getenv_int("ALLOCATOR_MAX_ATTEMPTS", 10),
        reconcile_grace_minutes=_getenv_int("RECONCILE_GRACE_MINUTES", 10),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "JWT_SECRET_KEY": s.jwt_secret_key,
        "JWT_EXPIRE_HOURS": s.jwt_expire_hours,
        "SMTP_SERVER": s.smtp_server,
        "SMTP_PORT": s.smtp_port,
        "SMTP_USE_TLS": s.smtp_use_tls,
        "SMTP_USERNAME": s.smtp_username,
        "SMTP_PASSWORD": s.smtp_password,
        "EMAIL_FROM": s.email_from,
        "NOTIFICATIONS_ENABLED": s.notifications_enabled,
        "INVITE_ACCEPT_URL": s.invite_accept_url,
        "ALLOCATOR_MAX_ATTEMPTS": s.allocator_max_attempts,
        "RECONCILE_GRACE_MINUTES": s.reconcile_grace_minutes,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,
        "JSON_SORT_KEYS": False,
    }
