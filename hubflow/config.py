from __future__ import annotations

import os
from typing import Optional

import yaml
from pydantic import BaseModel


class HttpConfig(BaseModel):
    """Settings shared by all integration clients."""

    timeout: float = 10.0
    max_retries: int = 2
    backoff_base: float = 1.5
    # Upper bound for one pipeline step, retries included
    step_timeout: float = 45.0


class ReminderConfig(BaseModel):
    """Lead-time windows for reminder selection, in minutes from ``now``."""

    window_24h_start: int = 24 * 60
    window_24h_end: int = 25 * 60
    window_1h_start: int = 60
    window_1h_end: int = 120
    claim_lease_minutes: int = 15


class SlackConfig(BaseModel):
    webhook_url: Optional[str] = None
    academy_webhook_url: Optional[str] = None


class EmailConfig(BaseModel):
    sender: str = "Hubflow <notifications@example.com>"
    # "resend" or "gmail"
    reminder_sender: str = "resend"
    timezone: str = "Europe/Berlin"
    default_first_name: str = "there"
    default_event_type: str = "Discovery Call"


class KlaviyoConfig(BaseModel):
    lead_list_id: Optional[str] = None
    revision: str = "2024-02-15"


class GmailConfig(BaseModel):
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    refresh_token: Optional[str] = None
    sender: Optional[str] = None


class HubflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    encryption_key: Optional[str] = None
    app_url: str = "http://localhost:3000"
    log_level: str = "INFO"
    no_show_status: str = "No-Show"
    booking_status_attribute: str = "booking_status"
    http: HttpConfig = HttpConfig()
    reminders: ReminderConfig = ReminderConfig()
    slack: SlackConfig = SlackConfig()
    email: EmailConfig = EmailConfig()
    klaviyo: KlaviyoConfig = KlaviyoConfig()
    gmail: GmailConfig = GmailConfig()


def load_config(path: Optional[str] = None) -> HubflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to HUBFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.

    Environment variables override values from the file.
    """

    config_path = path or os.getenv("HUBFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = HubflowConfig(**data)
    else:
        config = HubflowConfig()

    env_db_url = os.getenv("HUBFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    if os.getenv("HUBFLOW_ENCRYPTION_KEY"):
        config.encryption_key = os.getenv("HUBFLOW_ENCRYPTION_KEY")
    if os.getenv("HUBFLOW_APP_URL"):
        config.app_url = os.getenv("HUBFLOW_APP_URL")
    if os.getenv("HUBFLOW_LOG_LEVEL"):
        config.log_level = os.getenv("HUBFLOW_LOG_LEVEL")
    if os.getenv("SLACK_WEBHOOK_URL"):
        config.slack.webhook_url = os.getenv("SLACK_WEBHOOK_URL")
    if os.getenv("ACADEMY_SLACK_WEBHOOK_URL"):
        config.slack.academy_webhook_url = os.getenv("ACADEMY_SLACK_WEBHOOK_URL")
    if os.getenv("HUBFLOW_REMINDER_SENDER"):
        config.email.reminder_sender = os.getenv("HUBFLOW_REMINDER_SENDER")
    if os.getenv("KLAVIYO_LEAD_LIST_ID"):
        config.klaviyo.lead_list_id = os.getenv("KLAVIYO_LEAD_LIST_ID")
    for attr, env in (
        ("client_id", "GOOGLE_CLIENT_ID"),
        ("client_secret", "GOOGLE_CLIENT_SECRET"),
        ("refresh_token", "GOOGLE_REFRESH_TOKEN"),
    ):
        if os.getenv(env):
            setattr(config.gmail, attr, os.getenv(env))
    return config
