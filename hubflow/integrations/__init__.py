"""Clients for the third-party services workflows talk to."""

from .attio import AttioClient
from .base import IntegrationClient
from .gmail import AccessTokenCache, GmailClient
from .klaviyo import KlaviyoClient
from .registry import SERVICE_METADATA, create_client, test_integration_connection
from .resend import ResendClient
from .slack import SlackNotifier, format_execution_log, format_reminder_summary

__all__ = [
    "AccessTokenCache",
    "AttioClient",
    "GmailClient",
    "IntegrationClient",
    "KlaviyoClient",
    "ResendClient",
    "SERVICE_METADATA",
    "SlackNotifier",
    "create_client",
    "format_execution_log",
    "format_reminder_summary",
    "test_integration_connection",
]
