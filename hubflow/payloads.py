"""Inbound webhook payload parsers.

Each provider has its own pydantic shape and a parser turning it into a
``NormalizedEvent``. A payload that does not match its provider's shape
raises ``PayloadParseError``; a payload that matches but lacks a contact
email parses fine with ``contact.email`` set to ``None``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from .constants import KIND_ACADEMY, KIND_ATTIO, KIND_CALCOM, KIND_LEAD_FORM
from .errors import PayloadParseError


class Contact(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        return " ".join(p for p in (self.first_name, self.last_name) if p) or "Unknown"


class NormalizedEvent(BaseModel):
    """Provider independent view of an inbound event."""

    provider: str
    event: str
    contact: Contact = Field(default_factory=Contact)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    event_type: Optional[str] = None
    meeting_link: Optional[str] = None
    external_id: Optional[str] = None
    attributes: dict[str, Any] = Field(default_factory=dict)


class _Shape(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


def _split_name(name: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    if not name or not name.strip():
        return None, None
    parts = name.strip().split()
    return parts[0], " ".join(parts[1:]) or None


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


# ----------------------------------------------------------------------
# Cal.com


class CalcomAttendee(_Shape):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("phoneNumber", "phone")
    )


class CalcomMetadata(_Shape):
    video_call_url: Optional[str] = Field(default=None, alias="videoCallUrl")


class CalcomBooking(_Shape):
    uid: Optional[str] = None
    title: Optional[str] = None
    start_time: Optional[datetime] = Field(default=None, alias="startTime")
    end_time: Optional[datetime] = Field(default=None, alias="endTime")
    attendees: list[CalcomAttendee] = Field(default_factory=list)
    metadata: CalcomMetadata = Field(default_factory=CalcomMetadata)
    location: Optional[str] = None


class CalcomWebhook(_Shape):
    trigger_event: str = Field(alias="triggerEvent")
    payload: CalcomBooking


def parse_calcom(data: dict[str, Any]) -> NormalizedEvent:
    webhook = CalcomWebhook.model_validate(data)
    booking = webhook.payload
    attendee = booking.attendees[0] if booking.attendees else CalcomAttendee()
    first, last = _split_name(attendee.name)

    link = booking.metadata.video_call_url
    if not link and booking.location and booking.location.startswith("http"):
        link = booking.location

    return NormalizedEvent(
        provider=KIND_CALCOM,
        event=webhook.trigger_event,
        contact=Contact(
            email=_blank_to_none(attendee.email),
            name=_blank_to_none(attendee.name),
            first_name=first,
            last_name=last,
            phone=_blank_to_none(attendee.phone),
        ),
        start_time=booking.start_time,
        end_time=booking.end_time,
        event_type=booking.title,
        meeting_link=link,
        external_id=booking.uid,
        attributes={"location": booking.location} if booking.location else {},
    )


# ----------------------------------------------------------------------
# Lead form


class LeadFields(_Shape):
    first_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("firstName", "first_name")
    )
    last_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("lastName", "last_name")
    )
    email: Optional[str] = None
    phone: Optional[str] = None


class WebflowData(_Shape):
    data: LeadFields


class WebflowSubmission(_Shape):
    """Webflow form submissions wrap the fields in ``payload.data``."""

    trigger_type: Optional[str] = Field(default=None, alias="triggerType")
    payload: WebflowData


def parse_lead_form(data: dict[str, Any]) -> NormalizedEvent:
    if isinstance(data.get("payload"), dict):
        submission = WebflowSubmission.model_validate(data)
        fields = submission.payload.data
        event = submission.trigger_type or "form_submission"
    else:
        fields = LeadFields.model_validate(data)
        event = "form_submission"

    first, last = _blank_to_none(fields.first_name), _blank_to_none(fields.last_name)
    return NormalizedEvent(
        provider=KIND_LEAD_FORM,
        event=event,
        contact=Contact(
            email=_blank_to_none(fields.email),
            name=" ".join(p for p in (first, last) if p) or None,
            first_name=first,
            last_name=last,
            phone=_blank_to_none(fields.phone),
        ),
    )


# ----------------------------------------------------------------------
# Attio


class AttioTitle(_Shape):
    title: Optional[str] = None


class AttioValue(_Shape):
    option: Optional[AttioTitle] = None
    status: Optional[AttioTitle] = None

    @property
    def title(self) -> Optional[str]:
        for holder in (self.option, self.status):
            if holder is not None and holder.title:
                return holder.title
        return None


class AttioEmail(_Shape):
    email_address: Optional[str] = None


class AttioName(_Shape):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    full_name: Optional[str] = None


class AttioRecordValues(_Shape):
    email_addresses: list[AttioEmail] = Field(default_factory=list)
    name: list[AttioName] = Field(default_factory=list)


class AttioRecord(_Shape):
    values: AttioRecordValues = Field(default_factory=AttioRecordValues)


class AttioAttribute(_Shape):
    slug: Optional[str] = None


class AttioEvent(_Shape):
    event_type: Optional[str] = None
    attribute: AttioAttribute = Field(default_factory=AttioAttribute)
    new_value: list[AttioValue] = Field(default_factory=list)
    record: AttioRecord = Field(default_factory=AttioRecord)


class AttioWebhook(_Shape):
    event: AttioEvent


class AttioFlat(_Shape):
    """Flat shape some Attio automations send instead of the event envelope."""

    email: Optional[str] = None
    first_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("first_name", "firstName")
    )
    last_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("last_name", "lastName")
    )
    status: Optional[str] = None
    attribute: Optional[str] = None


def parse_attio(data: dict[str, Any]) -> NormalizedEvent:
    if "event" in data:
        event = AttioWebhook.model_validate(data).event
        emails = event.record.values.email_addresses
        names = event.record.values.name
        name = names[0] if names else AttioName()
        status = event.new_value[0].title if event.new_value else None
        return NormalizedEvent(
            provider=KIND_ATTIO,
            event=event.event_type or "record.updated",
            contact=Contact(
                email=_blank_to_none(emails[0].email_address) if emails else None,
                name=_blank_to_none(name.full_name),
                first_name=_blank_to_none(name.first_name),
                last_name=_blank_to_none(name.last_name),
            ),
            attributes={"attribute": event.attribute.slug, "status": status},
        )

    if "email" in data or isinstance(data.get("data"), dict):
        flat = AttioFlat.model_validate(data.get("data", data))
        return NormalizedEvent(
            provider=KIND_ATTIO,
            event="record.updated",
            contact=Contact(
                email=_blank_to_none(flat.email),
                first_name=_blank_to_none(flat.first_name),
                last_name=_blank_to_none(flat.last_name),
            ),
            attributes={"attribute": flat.attribute, "status": flat.status},
        )

    raise PayloadParseError(KIND_ATTIO, "expected an 'event' envelope or a flat record")


# ----------------------------------------------------------------------
# Academy

ACADEMY_CATEGORIES = (
    ("signup", ("signup", "register", "created")),
    ("enroll", ("enroll", "purchase", "bought")),
    ("complete", ("complete", "finished", "graduated")),
    ("progress", ("lesson", "progress")),
    ("login", ("login", "session")),
    ("cancel", ("cancel", "refund")),
)


def classify_academy_event(event: str) -> str:
    """Map a free-form academy event name to a coarse category."""
    lowered = event.lower()
    for category, needles in ACADEMY_CATEGORIES:
        if any(needle in lowered for needle in needles):
            return category
    return "other"


class AcademyUser(_Shape):
    name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("name", "full_name", "firstName")
    )
    email: Optional[str] = None


class AcademyCourse(_Shape):
    name: Optional[str] = Field(default=None, validation_alias=AliasChoices("name", "title"))


class AcademyWebhook(_Shape):
    event: str = Field(
        default="unknown", validation_alias=AliasChoices("event", "type", "eventType")
    )
    user: Union[AcademyUser, str, None] = Field(
        default=None, validation_alias=AliasChoices("user", "member", "student")
    )
    course: Union[AcademyCourse, str, None] = Field(
        default=None, validation_alias=AliasChoices("course", "product", "item")
    )


def parse_academy(data: dict[str, Any]) -> NormalizedEvent:
    webhook = AcademyWebhook.model_validate(data)
    if isinstance(webhook.user, AcademyUser):
        contact = Contact(email=_blank_to_none(webhook.user.email), name=webhook.user.name)
    else:
        contact = Contact(name=webhook.user)
    if isinstance(webhook.course, AcademyCourse):
        course = webhook.course.name
    else:
        course = webhook.course

    return NormalizedEvent(
        provider=KIND_ACADEMY,
        event=webhook.event,
        contact=contact,
        attributes={
            "category": classify_academy_event(webhook.event),
            "course": course or None,
        },
    )


# ----------------------------------------------------------------------

PARSERS: dict[str, Callable[[dict[str, Any]], NormalizedEvent]] = {
    KIND_CALCOM: parse_calcom,
    KIND_LEAD_FORM: parse_lead_form,
    KIND_ATTIO: parse_attio,
    KIND_ACADEMY: parse_academy,
}


def parse_payload(kind: str, data: Any) -> NormalizedEvent:
    """Parse ``data`` with the parser registered for ``kind``."""
    parser = PARSERS.get(kind)
    if parser is None:
        raise PayloadParseError(kind, "no parser for this workflow kind")
    if not isinstance(data, dict):
        raise PayloadParseError(kind, f"expected a JSON object, got {type(data).__name__}")
    try:
        return parser(data)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise PayloadParseError(kind, problems) from exc


def event_uid(data: Any) -> Optional[str]:
    """Delivery identifier used to drop duplicate webhook deliveries."""
    if not isinstance(data, dict):
        return None
    inner = data.get("payload")
    if isinstance(inner, dict) and inner.get("uid"):
        return str(inner["uid"])
    for key in ("uid", "id"):
        if data.get(key):
            return str(data[key])
    return None
