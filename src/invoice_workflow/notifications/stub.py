"""Stub notification collaborators for local development and testing.

Replace with a real transactional email adapter and PDF renderer in
production.
"""

from __future__ import annotations

import logging
import uuid

from invoice_workflow.notifications.base import (
    BookingFormData,
    EmailMessage,
    SendResult,
)

logger = logging.getLogger(__name__)


class StubEmailSender:
    """Email transport that logs and records messages instead of sending.

    Honours idempotency keys the way hosted providers do: a second message
    with a key already seen is acknowledged without being recorded again.
    """

    sender_name = "stub"

    def __init__(
        self,
        from_address: str = "noreply@localhost",
        fail_subjects: set[str] | None = None,
        fail_recipients: set[str] | None = None,
    ):
        """Initialize stub sender.

        Args:
            from_address: Sender address shown in the log.
            fail_subjects: Subjects containing any of these substrings are
                reported as failed, for exercising failure paths.
            fail_recipients: Messages addressed to any of these are reported
                as failed.
        """
        self.from_address = from_address
        self.outbox: list[EmailMessage] = []
        self.fail_subjects = set(fail_subjects or ())
        self.fail_recipients = set(fail_recipients or ())
        self._seen_keys: dict[str, str] = {}

    async def send(self, message: EmailMessage) -> SendResult:
        if message.idempotency_key in self._seen_keys:
            return SendResult(
                success=True, message_id=self._seen_keys[message.idempotency_key]
            )
        if any(s in message.subject for s in self.fail_subjects) or (
            self.fail_recipients.intersection(message.to)
        ):
            logger.warning("Stub send failure for %r", message.subject)
            return SendResult(success=False, error="stub transport failure")

        message_id = f"stub-{uuid.uuid4().hex[:12]}"
        self._seen_keys[message.idempotency_key] = message_id
        self.outbox.append(message)
        logger.info(
            "Email %s from %s to %s: %s",
            message_id,
            self.from_address,
            ", ".join(message.to),
            message.subject,
        )
        return SendResult(success=True, message_id=message_id)

    def sent_to(self, address: str) -> list[EmailMessage]:
        return [m for m in self.outbox if address in m.to]


class PlainTextBookingFormRenderer:
    """Renders the booking form as a plain-text document."""

    def render(self, data: BookingFormData) -> bytes:
        lines = [
            "BOOKING FORM",
            "",
            f"Name: {data.name}",
            f"Service description: {data.service_description}",
            f"Department: {data.department}",
            f"Month: {data.month}",
            f"Number of days: {data.number_of_days}",
            f"Rate per day: {data.service_rate_per_day:.2f}",
            f"Additional cost: {data.additional_cost:.2f}",
            f"Amount: {data.amount:.2f}",
            f"Booked by: {data.booked_by}",
            f"Approved by: {data.approver_name}",
            f"Approval date: {data.approval_date}",
        ]
        return "\n".join(lines).encode("utf-8")
