"""Booking email rendering with jinja2 templates."""

from __future__ import annotations

from datetime import timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from jinja2 import Environment, PackageLoader, select_autoescape
from pydantic import BaseModel

from .config import EmailConfig
from .errors import ConfigurationError
from .models import Booking

SUBJECTS = {
    "confirmation": "Your appointment is booked",
    "reminder_24h": "Reminder: your appointment tomorrow",
    "reminder_1h": "Your appointment starts soon",
}

_environment: Optional[Environment] = None


def get_environment() -> Environment:
    global _environment
    if _environment is None:
        _environment = Environment(
            loader=PackageLoader("hubflow", "templates"),
            autoescape=select_autoescape(),
            trim_blocks=True,
            lstrip_blocks=True,
        )
    return _environment


class RenderedEmail(BaseModel):
    email_type: str
    subject: str
    html: str


def booking_variables(booking: Booking, config: EmailConfig) -> dict[str, str]:
    """Template variables for a booking, with times in the configured zone."""
    start = booking.start_time
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    try:
        zone = ZoneInfo(config.timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigurationError(f"Unknown email timezone {config.timezone!r}") from exc
    local = start.astimezone(zone)
    return {
        "first_name": booking.first_name or config.default_first_name,
        "event_type": booking.event_type or config.default_event_type,
        "date": local.strftime("%A, %d %B %Y"),
        "time": local.strftime("%H:%M"),
        "meeting_link": booking.meeting_link or "",
    }


def render_email(email_type: str, booking: Booking, config: EmailConfig) -> RenderedEmail:
    """Render ``confirmation``, ``reminder_24h`` or ``reminder_1h`` for a booking."""
    if email_type not in SUBJECTS:
        raise ValueError(f"No template for email type {email_type}")
    template = get_environment().get_template(f"{email_type}.html")
    return RenderedEmail(
        email_type=email_type,
        subject=SUBJECTS[email_type],
        html=template.render(**booking_variables(booking, config)),
    )


def render_reminder(kind: str, booking: Booking, config: EmailConfig) -> RenderedEmail:
    return render_email(f"reminder_{kind}", booking, config)

