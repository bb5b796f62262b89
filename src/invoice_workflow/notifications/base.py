"""Protocols and types for notification collaborators.

The workflow engine talks to the email transport and the booking form
renderer only through these protocols. Transport adapters decide how the
idempotency key is honoured downstream (most providers accept it as a
request header).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Protocol


@dataclass(frozen=True)
class Attachment:
    """A file attached to an email."""

    filename: str
    content: bytes
    content_type: str = "application/pdf"


@dataclass(frozen=True)
class EmailMessage:
    """A rendered email ready for the transport."""

    to: tuple[str, ...]
    subject: str
    html: str
    idempotency_key: str
    attachments: tuple[Attachment, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class SendResult:
    """Result of handing a message to the transport."""

    success: bool
    message_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class BookingFormData:
    """Values printed on a contractor booking form."""

    name: str
    service_description: str
    amount: Decimal
    department: str
    number_of_days: int
    month: str
    service_rate_per_day: Decimal
    additional_cost: Decimal
    approver_name: str
    booked_by: str
    approval_date: str


class EmailSender(Protocol):
    """Protocol for transactional email transports."""

    sender_name: str

    async def send(self, message: EmailMessage) -> SendResult:
        """Send a message.

        Returns a SendResult; transports should report failures in the result
        rather than raise, but callers treat a raised exception the same way.
        """
        ...


class BookingFormRenderer(Protocol):
    """Protocol for booking form document generation."""

    def render(self, data: BookingFormData) -> bytes:
        """Render the booking form document and return its bytes."""
        ...
