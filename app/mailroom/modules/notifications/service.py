from __future__ import annotations

from datetime import datetime
from typing import Any

from flask import Flask, current_app

from app.mailroom.modules.notifications.mailer import Notifier

DAY_ORDER = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def get_notifier(app: Flask | None = None) -> Notifier | None:
    app = app or current_app  # type: ignore[assignment]
    return app.extensions.get("package_notifier")


def _format_time(value: str | None) -> str:
    """'13:30' -> '1:30 PM'."""
    if not value:
        return ""
    hours, _, minutes = str(value).partition(":")
    try:
        hour = int(hours)
    except ValueError:
        return str(value)
    ampm = "PM" if hour >= 12 else "AM"
    display = 12 if hour % 12 == 0 else hour % 12
    return f"{display}:{minutes or '00'} {ampm}"


def format_mailroom_hours(hours: dict[str, Any] | None) -> str:
    if not hours or not isinstance(hours, dict):
        return ""
    lines = []
    for day in DAY_ORDER:
        periods = hours.get(day)
        if not periods or not isinstance(periods, list):
            lines.append(f"{day.title()}: Closed")
            continue
        spans = ", ".join(f"{_format_time(p.get('start'))} - {_format_time(p.get('end'))}" for p in periods)
        lines.append(f"{day.title()}: {spans}")
    return "\n".join(lines)


def build_package_message(
    *,
    first_name: str | None,
    number: int,
    provider: str,
    mailroom_hours: dict[str, Any] | None = None,
    additional_text: str | None = None,
) -> tuple[str, str]:
    """Returns (subject, body) for a new-package notification."""
    subject = f"New Package Notification (#{number})"
    body = f"Hello {first_name or 'Resident'},\n\nYou have a new package (#{number}) waiting for you from {provider}.\n"

    formatted_hours = format_mailroom_hours(mailroom_hours)
    if formatted_hours:
        body += f"\nMailroom Hours:\n{formatted_hours}\n"

    body += "\nPlease bring your ID to collect it from the mailroom.\n"
    if additional_text:
        body += f"\n{additional_text}\n"
    body += "\nThank you."
    return subject, body


def build_invitation_message(
    *,
    mailroom_name: str,
    role: str,
    token: str,
    expires_at: datetime,
    accept_url: str | None = None,
) -> tuple[str, str]:
    """Returns (subject, body) for a staff invitation."""
    subject = f"You're invited to join {mailroom_name}"
    body = f"Hello,\n\nYou have been invited to join the {mailroom_name} mailroom as {role}.\n"
    if accept_url:
        body += f"\nAccept the invitation here: {accept_url}?token={token}\n"
    else:
        body += f"\nYour invitation code: {token}\n"
    body += f"\nThis invitation expires on {expires_at:%Y-%m-%d}.\n\nThank you."
    return subject, body
