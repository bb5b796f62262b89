"""Contractor booking form endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path

from invoice_workflow.api.dependencies import CurrentActor, Dispatcher
from invoice_workflow.api.schemas import BookingFormTriggerResponse, ErrorResponse
from invoice_workflow.services.errors import SideEffectFailure

router = APIRouter(prefix="/freelancer-invoices", tags=["booking-forms"])


@router.post(
    "/{invoice_id}/booking-form/trigger",
    response_model=BookingFormTriggerResponse,
    responses={
        400: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
)
async def trigger_booking_form(
    dispatcher: Dispatcher,
    actor: CurrentActor,
    invoice_id: Annotated[UUID, Path()],
) -> BookingFormTriggerResponse:
    """Send (or resend) the booking form.

    Already-sent forms are skipped; a form another worker is still sending
    reports in_progress.
    """
    outcome = await dispatcher.trigger_booking_form(invoice_id, actor)
    if outcome.failed:
        raise SideEffectFailure(
            outcome.effect_key, outcome.error or "Booking form could not be sent"
        )
    return BookingFormTriggerResponse(
        skipped=outcome.skipped, status=outcome.status.value, error=outcome.error
    )
