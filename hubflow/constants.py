"""Shared constants for hubflow."""

from __future__ import annotations

from datetime import timedelta

# Services that can hold a credential in the vault
SERVICE_ATTIO = "attio"
SERVICE_KLAVIYO = "klaviyo"
SERVICE_CALCOM = "calcom"
SERVICE_RESEND = "resend"

SERVICE_LABELS = {
    SERVICE_ATTIO: "Attio",
    SERVICE_KLAVIYO: "Klaviyo",
    SERVICE_CALCOM: "Cal.com",
    SERVICE_RESEND: "Resend",
}

# Workflow kinds, taken from ``trigger_config["provider"]``
KIND_CALCOM = "calcom"
KIND_LEAD_FORM = "lead_form"
KIND_ATTIO = "attio"
KIND_ACADEMY = "academy"

# Step categories. Only failures in CRITICAL_CATEGORIES fail a run.
CATEGORY_PARSE = "parse"
CATEGORY_CONTACT = "contact"
CATEGORY_BOOKING = "booking"
CATEGORY_EMAIL = "email"
CATEGORY_SUBSCRIPTION = "subscription"
CATEGORY_NOTIFICATION = "notification"

CRITICAL_CATEGORIES = frozenset({CATEGORY_CONTACT})

NO_EMAIL_REASON = "No email in payload"

# Reminder senders. Resend uses each owner's stored key, Gmail the shared OAuth app.
REMINDER_SENDER_RESEND = "resend"
REMINDER_SENDER_GMAIL = "gmail"

# Reminder kinds
REMINDER_24H = "24h"
REMINDER_1H = "1h"

DEFAULT_REMINDER_WINDOWS = {
    REMINDER_24H: (timedelta(hours=24), timedelta(hours=25)),
    REMINDER_1H: (timedelta(hours=1), timedelta(hours=2)),
}
DEFAULT_CLAIM_LEASE = timedelta(minutes=15)

# Webhook deliveries with the same event uid inside this window are ignored
DUPLICATE_WINDOW_SECONDS = 30.0

AUTH_TAG_LENGTH = 16
IV_LENGTH = 16
KEY_HINT_LENGTH = 4
KEY_HINT_MASK = "*" * 8
