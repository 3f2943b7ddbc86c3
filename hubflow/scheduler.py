"""Reminder scheduler sending at most one reminder per booking and kind."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional, Union

import httpx

from .config import HubflowConfig, load_config
from .constants import (
    REMINDER_1H,
    REMINDER_24H,
    REMINDER_SENDER_GMAIL,
    REMINDER_SENDER_RESEND,
    SERVICE_RESEND,
)
from .emails import render_reminder
from .errors import ConfigurationError, MissingCredentialError, PersistenceError
from .integrations.gmail import GmailClient
from .integrations.resend import ResendClient
from .integrations.slack import SlackNotifier, format_reminder_summary
from .models import Booking, EmailLog, ReminderRunResult, utcnow
from .persistence.repository import Repository
from .security.vault import CredentialVault

logger = logging.getLogger(__name__)

REMINDER_KINDS = (REMINDER_24H, REMINDER_1H)


class ReminderScheduler:
    """Selects bookings entering a reminder window and emails them.

    Each booking is claimed with a conditional update before sending, so
    overlapping passes never both send. A failed send releases the claim; a
    send whose ``sent_at`` could not be recorded keeps the claim until the
    lease expires.
    """

    def __init__(
        self,
        repository: Repository,
        vault: CredentialVault,
        config: Optional[HubflowConfig] = None,
        notifier: Optional[SlackNotifier] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.repository = repository
        self.vault = vault
        self.config = config or load_config()
        self.transport = transport
        self._gmail: Optional[GmailClient] = None
        self.notifier = notifier or SlackNotifier(
            self.config.slack.webhook_url, http=self.config.http, transport=transport
        )

    def window(self, kind: str, now: datetime) -> tuple[datetime, datetime]:
        reminders = self.config.reminders
        start, end = {
            REMINDER_24H: (reminders.window_24h_start, reminders.window_24h_end),
            REMINDER_1H: (reminders.window_1h_start, reminders.window_1h_end),
        }[kind]
        return now + timedelta(minutes=start), now + timedelta(minutes=end)

    @property
    def lease(self) -> timedelta:
        return timedelta(minutes=self.config.reminders.claim_lease_minutes)

    async def dispatch_reminders(self, now: Optional[datetime] = None) -> ReminderRunResult:
        now = now or utcnow()
        result = ReminderRunResult()
        for kind in REMINDER_KINDS:
            window_start, window_end = self.window(kind, now)
            bookings = await self.repository.find_bookings_due(
                kind, window_start, window_end, now - self.lease
            )
            logger.info(f"Found {len(bookings)} bookings needing {kind} reminder")
            for booking in bookings:
                try:
                    await self._remind(kind, booking, now, result)
                except Exception as exc:
                    logger.exception(f"{kind} reminder for booking {booking.id} aborted")
                    result.counts(kind).failed += 1
                    result.errors.append(f"{kind} reminder for {booking.email}: {exc}")

        if result.total_sent or result.total_failed:
            summary = format_reminder_summary(result)
            await self.notifier.notify(summary["text"], summary["blocks"])
        logger.info(
            f"Reminder pass done: {result.total_sent} sent, {result.total_failed} failed"
        )
        return result

    async def _sender(self, booking: Booking) -> tuple[Union[ResendClient, GmailClient], str]:
        """Return the client and from-address used for a booking's reminders."""
        email = self.config.email
        if email.reminder_sender == REMINDER_SENDER_GMAIL:
            if self._gmail is None:
                self._gmail = GmailClient(
                    self.config.gmail, http=self.config.http, transport=self.transport
                )
            return self._gmail, self.config.gmail.sender or email.sender
        if email.reminder_sender != REMINDER_SENDER_RESEND:
            raise ConfigurationError(f"Unknown reminder sender {email.reminder_sender!r}")
        api_key = await self.vault.reveal_for_service(booking.owner_id, SERVICE_RESEND)
        client = ResendClient(api_key, http=self.config.http, transport=self.transport)
        return client, email.sender

    async def _remind(
        self, kind: str, booking: Booking, now: datetime, result: ReminderRunResult
    ) -> None:
        counts = result.counts(kind)
        try:
            client, sender = await self._sender(booking)
            email = render_reminder(kind, booking, self.config.email)
        except MissingCredentialError:
            counts.skipped += 1
            return
        except ConfigurationError as exc:
            counts.skipped += 1
            result.errors.append(f"{kind} reminder for {booking.email}: {exc}")
            return

        try:
            claimed = await self.repository.claim_reminder(
                booking.id, kind, now, now - self.lease
            )
        except PersistenceError as exc:
            counts.failed += 1
            result.errors.append(f"{kind} reminder for {booking.email}: {exc}")
            return
        if not claimed:
            counts.skipped += 1
            return

        try:
            message_id = await client.send_email(
                booking.email,
                email.subject,
                email.html,
                sender,
                idempotency_key=f"{booking.id}:{kind}",
            )
        except Exception as exc:
            logger.warning(f"{kind} reminder for booking {booking.id} failed: {exc}")
            counts.failed += 1
            result.errors.append(f"{kind} reminder for {booking.email}: {exc}")
            try:
                await self.repository.release_reminder_claim(booking.id, kind)
            except PersistenceError as release_exc:
                logger.warning(f"Claim on booking {booking.id} kept until lease expiry: {release_exc}")
            await self._record(
                booking, email.email_type, email.subject, sender, "failed", error=str(exc)
            )
            return

        try:
            await self.repository.mark_reminder_sent(booking.id, kind, utcnow())
        except PersistenceError as exc:
            # claim stays until the lease runs out
            logger.error(f"{kind} reminder sent to booking {booking.id} but not recorded: {exc}")
            result.errors.append(f"{kind} reminder for {booking.email} sent but not recorded: {exc}")
        counts.sent += 1
        logger.info(f"Sent {kind} reminder for booking {booking.id} ({message_id})")
        await self._record(
            booking, email.email_type, email.subject, sender, "sent", message_id=message_id
        )

    async def _record(
        self,
        booking: Booking,
        email_type: str,
        subject: str,
        sender: str,
        status: str,
        message_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        try:
            await self.repository.create_email_log(
                EmailLog(
                    owner_id=booking.owner_id,
                    booking_id=booking.id,
                    email_type=email_type,
                    recipient=booking.email,
                    subject=subject,
                    sender=sender,
                    status=status,
                    provider_message_id=message_id,
                    error_message=error,
                )
            )
        except PersistenceError as exc:
            logger.warning(f"Could not write email log for booking {booking.id}: {exc}")
