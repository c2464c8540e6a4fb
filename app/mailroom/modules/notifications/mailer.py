from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.mime.text import MIMEText
from typing import Any, Protocol

from app.mailroom.errors import NotificationFailure

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def send(self, to: str, subject: str, body: str, *, reply_to: str | None = None) -> None: ...


@dataclass(frozen=True)
class EmailNotifier:
    """Plain-text SMTP sender. Raises NotificationFailure on any delivery problem."""

    smtp_server: str
    smtp_port: int
    email_from: str
    use_tls: bool = True
    username: str = ""
    password: str = ""
    timeout: float = 15.0

    def send(self, to: str, subject: str, body: str, *, reply_to: str | None = None) -> None:
        if not to:
            raise NotificationFailure("Recipient has no email address.")

        msg = MIMEText(body, "plain")
        msg["Subject"] = subject
        msg["From"] = self.email_from
        msg["To"] = to
        if reply_to:
            msg["Reply-To"] = reply_to

        try:
            with smtplib.SMTP(self.smtp_server, int(self.smtp_port), timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                refused = server.send_message(msg)
        except smtplib.SMTPAuthenticationError as e:
            raise NotificationFailure(f"SMTP authentication failed: {e}") from e
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationFailure(f"SMTP error: {e}") from e

        if refused:
            raise NotificationFailure(f"SMTP server refused recipient(s): {', '.join(refused)}")
        logger.info("Sent email to %s with subject: %s", to, subject)


def notifier_from_config(config: dict[str, Any]) -> EmailNotifier | None:
    """None means notifications are disabled; registration then skips the notify step."""
    if not config.get("NOTIFICATIONS_ENABLED"):
        return None
    server = (config.get("SMTP_SERVER") or "").strip()
    email_from = (config.get("EMAIL_FROM") or "").strip()
    if not server or not email_from:
        logger.warning("Email notifications disabled: SMTP_SERVER or EMAIL_FROM not configured")
        return None
    return EmailNotifier(
        smtp_server=server,
        smtp_port=int(config.get("SMTP_PORT") or 587),
        email_from=email_from,
        use_tls=bool(config.get("SMTP_USE_TLS", True)),
        username=(config.get("SMTP_USERNAME") or "").strip(),
        password=(config.get("SMTP_PASSWORD") or "").strip(),
    )
