"""Fixed step sequences for each workflow kind."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import httpx

from .config import HubflowConfig
from .constants import (
    CATEGORY_BOOKING,
    CATEGORY_CONTACT,
    CATEGORY_EMAIL,
    CATEGORY_NOTIFICATION,
    CATEGORY_SUBSCRIPTION,
    KIND_ACADEMY,
    KIND_ATTIO,
    KIND_CALCOM,
    KIND_LEAD_FORM,
    SERVICE_ATTIO,
    SERVICE_KLAVIYO,
    SERVICE_RESEND,
)
from .emails import render_email
from .errors import HubflowError, ProviderError
from .integrations.attio import AttioClient
from .integrations.klaviyo import KlaviyoClient
from .integrations.resend import ResendClient
from .integrations.slack import SlackNotifier
from .models import Booking, EmailLog, Workflow, utcnow
from .payloads import NormalizedEvent
from .persistence.repository import Repository

logger = logging.getLogger(__name__)

BOOKING_EVENTS = ("BOOKING_CREATED", "BOOKING_RESCHEDULED")
CANCEL_EVENTS = ("BOOKING_CANCELLED",)

STORE_BOOKING = "Store Booking"


class SkipStep(HubflowError):
    """Raised by a step handler when the step does not apply to this event."""


@dataclass
class StepContext:
    """Everything a step handler may use. ``api_key`` is set for service steps."""

    workflow: Workflow
    event: NormalizedEvent
    config: HubflowConfig
    repository: Repository
    outputs: dict[str, Any] = field(default_factory=dict)
    api_key: Optional[str] = None
    transport: Optional[httpx.AsyncBaseTransport] = None
    notifier: Optional[SlackNotifier] = None
    academy_notifier: Optional[SlackNotifier] = None

    def output_of(self, step: str, key: str) -> Any:
        value = self.outputs.get(step)
        return value.get(key) if isinstance(value, dict) else None


StepHandler = Callable[[StepContext], Awaitable[Any]]


@dataclass(frozen=True)
class StepSpec:
    name: str
    category: str
    handler: StepHandler
    service: Optional[str] = None
    needs_email: bool = False
    # (step name, output key) that must be present before this step runs
    requires_output: Optional[tuple[str, str]] = None


@dataclass(frozen=True)
class Pipeline:
    kind: str
    parse_step: str
    steps: tuple[StepSpec, ...]


# ----------------------------------------------------------------------
# Contact steps


async def upsert_attio_contact(ctx: StepContext) -> dict[str, Any]:
    contact = ctx.event.contact
    client = AttioClient(ctx.api_key, http=ctx.config.http, transport=ctx.transport)
    attributes: dict[str, Any] = {}
    if ctx.event.event in BOOKING_EVENTS:
        attributes["meeting_type"] = ctx.event.event_type
    record_id = await client.upsert_person(
        contact.email,
        name=contact.name or contact.display_name,
        phone=contact.phone,
        attributes=attributes,
    )
    return {"record_id": record_id}


async def upsert_klaviyo_profile(ctx: StepContext) -> dict[str, Any]:
    contact = ctx.event.contact
    client = KlaviyoClient(
        ctx.api_key,
        http=ctx.config.http,
        transport=ctx.transport,
        revision=ctx.config.klaviyo.revision,
    )
    properties: dict[str, Any] = {"source": ctx.event.provider}
    if ctx.event.start_time is not None:
        properties["booking_date"] = ctx.event.start_time.isoformat()
    if ctx.event.event_type:
        properties["event_type"] = ctx.event.event_type
    profile_id = await client.upsert_profile(
        contact.email,
        first_name=contact.first_name,
        last_name=contact.last_name,
        phone=contact.phone,
        properties=properties,
    )
    return {"profile_id": profile_id}


async def subscribe_klaviyo_list(ctx: StepContext) -> dict[str, Any]:
    list_id = ctx.config.klaviyo.lead_list_id
    if not list_id:
        raise SkipStep("No Klaviyo lead list configured")
    client = KlaviyoClient(
        ctx.api_key,
        http=ctx.config.http,
        transport=ctx.transport,
        revision=ctx.config.klaviyo.revision,
    )
    contact = ctx.event.contact
    await client.subscribe_to_list(
        list_id, contact.email, first_name=contact.first_name, last_name=contact.last_name
    )
    return {"list_id": list_id}


# ----------------------------------------------------------------------
# Booking steps


async def store_booking(ctx: StepContext) -> dict[str, Any]:
    event = ctx.event
    if event.event in CANCEL_EVENTS:
        existing = (
            await ctx.repository.get_booking_by_external_id(event.external_id)
            if event.external_id
            else None
        )
        if existing is None:
            raise SkipStep(f"No stored booking for {event.external_id or 'this event'}")
        await ctx.repository.update_booking_status(existing.id, "cancelled")
        return {"booking_id": existing.id, "cancelled": True}

    if event.event not in BOOKING_EVENTS:
        raise SkipStep(f"Event {event.event} does not create a booking")
    if event.start_time is None:
        raise SkipStep("Booking has no start time")

    if event.external_id:
        existing = await ctx.repository.get_booking_by_external_id(event.external_id)
        if existing is not None:
            return {"booking_id": existing.id, "created": False}

    booking = Booking(
        owner_id=ctx.workflow.owner_id,
        workflow_id=ctx.workflow.id,
        email=event.contact.email,
        first_name=event.contact.first_name,
        last_name=event.contact.last_name,
        phone=event.contact.phone,
        start_time=event.start_time,
        end_time=event.end_time,
        meeting_link=event.meeting_link,
        event_type=event.event_type,
        external_id=event.external_id,
    )
    await ctx.repository.create_booking(booking)
    logger.info(f"Stored booking {booking.id} for {booking.email} at {booking.start_time}")
    return {"booking_id": booking.id, "created": True}


async def send_confirmation_email(ctx: StepContext) -> dict[str, Any]:
    booking_id = ctx.output_of(STORE_BOOKING, "booking_id")
    booking = await ctx.repository.get_booking(booking_id)
    if booking is None or ctx.output_of(STORE_BOOKING, "cancelled"):
        raise SkipStep("No active booking to confirm")
    if booking.confirmation_sent_at is not None:
        raise SkipStep("Confirmation already sent")

    email = render_email("confirmation", booking, ctx.config.email)
    client = ResendClient(ctx.api_key, http=ctx.config.http, transport=ctx.transport)
    sender = ctx.config.email.sender
    try:
        message_id = await client.send_email(
            booking.email,
            email.subject,
            email.html,
            sender,
            idempotency_key=f"{booking.id}:confirmation",
        )
    except ProviderError as exc:
        await ctx.repository.create_email_log(
            EmailLog(
                owner_id=booking.owner_id,
                booking_id=booking.id,
                email_type="confirmation",
                recipient=booking.email,
                subject=email.subject,
                sender=sender,
                status="failed",
                error_message=str(exc),
            )
        )
        raise

    await ctx.repository.mark_confirmation_sent(booking.id, utcnow())
    await ctx.repository.create_email_log(
        EmailLog(
            owner_id=booking.owner_id,
            booking_id=booking.id,
            email_type="confirmation",
            recipient=booking.email,
            subject=email.subject,
            sender=sender,
            status="sent",
            provider_message_id=message_id,
        )
    )
    return {"message_id": message_id}


async def mark_booking_no_show(ctx: StepContext) -> dict[str, Any]:
    attribute = ctx.event.attributes.get("attribute")
    status = ctx.event.attributes.get("status")
    expected_attribute = ctx.config.booking_status_attribute
    if attribute and attribute != expected_attribute:
        raise SkipStep(f"Attribute {attribute} is not {expected_attribute}")
    if status != ctx.config.no_show_status:
        raise SkipStep(f"Status {status or 'unset'} is not {ctx.config.no_show_status}")

    booking = await ctx.repository.get_latest_booking_by_email(
        ctx.event.contact.email, ctx.workflow.owner_id
    )
    if booking is None:
        raise SkipStep(f"No booking found for {ctx.event.contact.email}")
    await ctx.repository.update_booking_status(booking.id, "no_show")
    logger.info(f"Marked booking {booking.id} as no_show")
    return {"booking_id": booking.id}


# ----------------------------------------------------------------------
# Notification steps


def _lead_message(event: NormalizedEvent) -> str:
    contact = event.contact
    return f"New lead: {contact.display_name} ({contact.email or 'no email'})"


def _attio_message(event: NormalizedEvent, outputs: dict[str, Any]) -> str:
    contact = event.contact
    status = event.attributes.get("status") or "n/a"
    found = "yes" if outputs.get("Mark Booking No-Show") else "no"
    return (
        f"Attio update: {contact.display_name} ({contact.email or 'no email'}), "
        f"status {status}, booking updated: {found}"
    )


def format_academy_message(event: NormalizedEvent) -> str:
    category = event.attributes.get("category", "other")
    course = event.attributes.get("course")
    user = event.contact.name or "Unknown"
    email = event.contact.email
    if category == "signup":
        return f":tada: New academy user: {user}" + (f" ({email})" if email else "")
    if category == "enroll":
        return f":books: Course enrollment: {user} -> {course or 'unknown course'}"
    if category == "complete":
        return f":trophy: Course completed: {user} finished \"{course or 'a course'}\""
    if category == "progress":
        return f":open_book: Progress: {user} - {course or 'lesson completed'}"
    if category == "login":
        return f":wave: Login: {user}"
    if category == "cancel":
        return f":warning: Cancellation: {user}" + (f" - {course}" if course else "")
    message = f":mega: Academy event: {event.event}"
    if event.contact.name:
        message += f" - {user}"
    if course:
        message += f" ({course})"
    return message


async def _post(notifier: Optional[SlackNotifier], text: str) -> dict[str, Any]:
    if notifier is None or not notifier.configured:
        raise SkipStep("Slack webhook not configured")
    await notifier.post({"text": text})
    return {"message": text}


async def send_lead_notification(ctx: StepContext) -> dict[str, Any]:
    return await _post(ctx.notifier, _lead_message(ctx.event))


async def send_attio_notification(ctx: StepContext) -> dict[str, Any]:
    return await _post(ctx.notifier, _attio_message(ctx.event, ctx.outputs))


async def send_academy_notification(ctx: StepContext) -> dict[str, Any]:
    return await _post(ctx.academy_notifier, format_academy_message(ctx.event))


# ----------------------------------------------------------------------

PIPELINES: dict[str, Pipeline] = {
    KIND_CALCOM: Pipeline(
        KIND_CALCOM,
        "Parse Cal.com Payload",
        (
            StepSpec(
                "Create/Update Attio Contact",
                CATEGORY_CONTACT,
                upsert_attio_contact,
                service=SERVICE_ATTIO,
                needs_email=True,
            ),
            StepSpec(
                "Create/Update Klaviyo Profile",
                CATEGORY_CONTACT,
                upsert_klaviyo_profile,
                service=SERVICE_KLAVIYO,
                needs_email=True,
            ),
            StepSpec(STORE_BOOKING, CATEGORY_BOOKING, store_booking, needs_email=True),
            StepSpec(
                "Send Confirmation Email",
                CATEGORY_EMAIL,
                send_confirmation_email,
                service=SERVICE_RESEND,
                needs_email=True,
                requires_output=(STORE_BOOKING, "booking_id"),
            ),
        ),
    ),
    KIND_LEAD_FORM: Pipeline(
        KIND_LEAD_FORM,
        "Parse Lead Payload",
        (
            StepSpec(
                "Create/Update Klaviyo Profile",
                CATEGORY_CONTACT,
                upsert_klaviyo_profile,
                service=SERVICE_KLAVIYO,
                needs_email=True,
            ),
            StepSpec(
                "Subscribe to Klaviyo List",
                CATEGORY_SUBSCRIPTION,
                subscribe_klaviyo_list,
                service=SERVICE_KLAVIYO,
                needs_email=True,
            ),
            StepSpec("Send Slack Notification", CATEGORY_NOTIFICATION, send_lead_notification),
        ),
    ),
    KIND_ATTIO: Pipeline(
        KIND_ATTIO,
        "Parse Attio Payload",
        (
            StepSpec(
                "Mark Booking No-Show", CATEGORY_BOOKING, mark_booking_no_show, needs_email=True
            ),
            StepSpec("Send Slack Notification", CATEGORY_NOTIFICATION, send_attio_notification),
        ),
    ),
    KIND_ACADEMY: Pipeline(
        KIND_ACADEMY,
        "Parse Academy Payload",
        (
            StepSpec(
                "Send Academy Slack Notification",
                CATEGORY_NOTIFICATION,
                send_academy_notification,
            ),
        ),
    ),
}


def get_pipeline(kind: Optional[str]) -> Pipeline:
    pipeline = PIPELINES.get(kind or "")
    if pipeline is None:
        raise ValueError(f"Unknown workflow kind: {kind!r}")
    return pipeline
