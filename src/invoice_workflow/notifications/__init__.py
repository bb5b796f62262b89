"""Notification collaborators: email transport and booking form rendering."""

from functools import lru_cache

from invoice_workflow.config import get_settings
from invoice_workflow.notifications.base import (
    Attachment,
    BookingFormData,
    BookingFormRenderer,
    EmailMessage,
    EmailSender,
    SendResult,
)
from invoice_workflow.notifications.stub import PlainTextBookingFormRenderer, StubEmailSender


@lru_cache(maxsize=1)
def get_email_sender() -> EmailSender:
    """Process-wide email transport."""
    return StubEmailSender(from_address=get_settings().email_from)


@lru_cache(maxsize=1)
def get_booking_form_renderer() -> BookingFormRenderer:
    """Process-wide booking form renderer."""
    return PlainTextBookingFormRenderer()


__all__ = [
    "Attachment",
    "BookingFormData",
    "BookingFormRenderer",
    "EmailMessage",
    "EmailSender",
    "PlainTextBookingFormRenderer",
    "SendResult",
    "StubEmailSender",
    "get_booking_form_renderer",
    "get_email_sender",
]
