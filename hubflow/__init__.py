"""Hubflow: webhook-driven integration workflows with durable execution logs."""

from .dispatch import DuplicateFilter, WebhookDispatcher
from .engine import ExecutionEngine
from .models import Booking, Credential, EmailLog, ExecutionLog, StepLog, Workflow
from .persistence import get_repository
from .scheduler import ReminderScheduler
from .security import CredentialCipher, CredentialVault
from .workflows import WorkflowService

__version__ = "0.1.0"
__all__ = [
    "Booking",
    "Credential",
    "CredentialCipher",
    "CredentialVault",
    "DuplicateFilter",
    "EmailLog",
    "ExecutionEngine",
    "ExecutionLog",
    "ReminderScheduler",
    "StepLog",
    "WebhookDispatcher",
    "Workflow",
    "WorkflowService",
    "get_repository",
]
