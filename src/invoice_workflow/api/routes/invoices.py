"""Invoice workflow API endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, status

from invoice_workflow.api.dependencies import CurrentActor, DbSession, Workflow
from invoice_workflow.api.schemas import (
    BulkItemResponse,
    BulkStatusRequest,
    BulkStatusResponse,
    ErrorResponse,
    InvoiceCreate,
    InvoiceResponse,
    InvoiceUpdate,
    ManagerAssignRequest,
    NoteCreate,
    NoteResponse,
    SideEffectResponse,
    StatusChangeRequest,
    StepResponse,
    TimelineEventResponse,
    TransitionResponse,
    WorkflowStateResponse,
)
from invoice_workflow.models import Invoice
from invoice_workflow.services.state_machine import InvoiceStateMachine
from invoice_workflow.services.timeline_service import NoteService, TimelineService
from invoice_workflow.services.workflow_service import (
    NewInvoice,
    TransitionFields,
    TransitionResult,
    WorkflowService,
)

router = APIRouter(prefix="/invoices", tags=["invoices"])

_WRITE_ERRORS = {
    400: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
}


def _transition_response(result: TransitionResult) -> TransitionResponse:
    return TransitionResponse(
        state=WorkflowStateResponse.model_validate(result.state),
        steps=[StepResponse(from_status=f, to_status=t) for f, t in result.steps],
        side_effects=[
            SideEffectResponse(effect_key=o.effect_key, status=o.status.value, error=o.error)
            for o in result.side_effects
        ],
    )


async def _invoice_response(workflow: WorkflowService, invoice_id: UUID) -> InvoiceResponse:
    invoice: Invoice = await workflow.get_invoice(invoice_id)
    response = InvoiceResponse.model_validate(invoice)
    return response.model_copy(
        update={
            "next_statuses": InvoiceStateMachine.get_next_statuses(
                invoice.family, invoice.workflow.status
            )
        }
    )


# ============================================================================
# Invoice CRUD
# ============================================================================


@router.post(
    "",
    response_model=InvoiceResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_WRITE_ERRORS,
)
async def create_invoice(
    workflow: Workflow,
    actor: CurrentActor,
    payload: InvoiceCreate,
) -> InvoiceResponse:
    """Submit a new invoice, optionally sending it straight to a manager."""
    result = await workflow.create_invoice(
        actor,
        NewInvoice(
            family=payload.family,
            submitter_user_id=payload.submitter_user_id,
            manager_user_id=payload.manager_user_id,
            department_id=payload.department_id,
            program_id=payload.program_id,
            currency=payload.currency,
            service_description=payload.service_description,
            extracted=payload.extracted.model_dump(exclude_unset=True)
            if payload.extracted
            else {},
            contractor=payload.contractor.model_dump(exclude_unset=True)
            if payload.contractor
            else {},
        ),
    )
    return await _invoice_response(workflow, result.state.invoice_id)


@router.get(
    "/{invoice_id}",
    response_model=InvoiceResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_invoice(
    workflow: Workflow,
    actor: CurrentActor,
    invoice_id: Annotated[UUID, Path()],
) -> InvoiceResponse:
    """Get an invoice with its workflow state."""
    return await _invoice_response(workflow, invoice_id)


@router.patch(
    "/{invoice_id}",
    response_model=TransitionResponse,
    responses=_WRITE_ERRORS,
)
async def edit_invoice(
    workflow: Workflow,
    actor: CurrentActor,
    invoice_id: Annotated[UUID, Path()],
    payload: InvoiceUpdate,
) -> TransitionResponse:
    """Edit invoice data. Editing a rejected invoice resubmits it."""
    changes = payload.model_dump(exclude_unset=True, exclude={"expected_version"})
    result = await workflow.edit_invoice(
        invoice_id, actor, changes, expected_version=payload.expected_version
    )
    return _transition_response(result)


# ============================================================================
# Workflow
# ============================================================================


@router.post(
    "/bulk-status",
    response_model=BulkStatusResponse,
    responses={400: {"model": ErrorResponse}},
)
async def bulk_status(
    workflow: Workflow,
    actor: CurrentActor,
    payload: BulkStatusRequest,
) -> BulkStatusResponse:
    """Apply one transition to many invoices. Each succeeds or fails on its own."""
    results = await workflow.bulk_transition(
        payload.invoice_ids,
        actor,
        payload.to_status,
        TransitionFields(
            rejection_reason=payload.rejection_reason,
            payment_reference=payload.payment_reference,
            paid_date=payload.paid_date,
        ),
    )
    items = [BulkItemResponse.model_validate(r) for r in results]
    succeeded = sum(1 for r in results if r.ok)
    return BulkStatusResponse(
        results=items, succeeded=succeeded, failed=len(results) - succeeded
    )


@router.post(
    "/{invoice_id}/status",
    response_model=TransitionResponse,
    responses=_WRITE_ERRORS,
)
async def change_status(
    workflow: Workflow,
    actor: CurrentActor,
    invoice_id: Annotated[UUID, Path()],
    payload: StatusChangeRequest,
) -> TransitionResponse:
    """Request a status transition."""
    result = await workflow.transition(
        invoice_id,
        actor,
        payload.to_status,
        TransitionFields(
            rejection_reason=payload.rejection_reason,
            payment_reference=payload.payment_reference,
            paid_date=payload.paid_date,
            manager_confirmed=payload.manager_confirmed,
        ),
        expected_version=payload.expected_version,
    )
    return _transition_response(result)


@router.post(
    "/{invoice_id}/manager",
    response_model=TransitionResponse,
    responses=_WRITE_ERRORS,
)
async def assign_manager(
    workflow: Workflow,
    actor: CurrentActor,
    invoice_id: Annotated[UUID, Path()],
    payload: ManagerAssignRequest,
) -> TransitionResponse:
    """Assign the approving manager."""
    result = await workflow.assign_manager(
        invoice_id,
        actor,
        payload.manager_user_id,
        expected_version=payload.expected_version,
    )
    return _transition_response(result)


# ============================================================================
# Timeline and notes
# ============================================================================


@router.get(
    "/{invoice_id}/timeline",
    response_model=list[TimelineEventResponse],
    responses={404: {"model": ErrorResponse}},
)
async def get_timeline(
    db: DbSession,
    workflow: Workflow,
    actor: CurrentActor,
    invoice_id: Annotated[UUID, Path()],
) -> list[TimelineEventResponse]:
    """Get the invoice's audit trail in order."""
    await workflow.get_state(invoice_id)
    events = await TimelineService(db).list_events(invoice_id)
    return [TimelineEventResponse.model_validate(e) for e in events]


@router.get(
    "/{invoice_id}/notes",
    response_model=list[NoteResponse],
    responses={404: {"model": ErrorResponse}},
)
async def list_notes(
    db: DbSession,
    workflow: Workflow,
    actor: CurrentActor,
    invoice_id: Annotated[UUID, Path()],
) -> list[NoteResponse]:
    """List notes on an invoice."""
    await workflow.get_state(invoice_id)
    notes = await NoteService(db).list_notes(invoice_id)
    return [NoteResponse.model_validate(n) for n in notes]


@router.post(
    "/{invoice_id}/notes",
    response_model=NoteResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def add_note(
    db: DbSession,
    actor: CurrentActor,
    invoice_id: Annotated[UUID, Path()],
    payload: NoteCreate,
) -> NoteResponse:
    """Add a note to an invoice."""
    note = await NoteService(db).add_note(invoice_id, actor, payload.content)
    return NoteResponse.model_validate(note)
