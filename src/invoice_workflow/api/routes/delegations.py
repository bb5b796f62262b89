"""Approval delegation admin endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Response, status

from invoice_workflow.api.dependencies import CurrentActor, DbSession
from invoice_workflow.api.schemas import DelegationCreate, DelegationResponse, ErrorResponse
from invoice_workflow.services.delegation_resolver import DelegationRequest, DelegationService
from invoice_workflow.services.errors import ForbiddenError
from invoice_workflow.services.transition_guard import Actor

router = APIRouter(prefix="/admin/approval-delegations", tags=["delegations"])


def _require_admin(actor: Actor) -> None:
    if not actor.is_admin:
        raise ForbiddenError(None, None, "Only admin can manage approval delegations")


@router.get(
    "",
    response_model=list[DelegationResponse],
    responses={403: {"model": ErrorResponse}},
)
async def list_delegations(db: DbSession, actor: CurrentActor) -> list[DelegationResponse]:
    """List all approval delegations."""
    _require_admin(actor)
    delegations = await DelegationService(db).list_delegations()
    return [DelegationResponse.model_validate(d) for d in delegations]


@router.post(
    "",
    response_model=DelegationResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
async def create_delegation(
    db: DbSession,
    actor: CurrentActor,
    payload: DelegationCreate,
) -> DelegationResponse:
    """Create a delegation. Overlapping ranges for one manager are refused."""
    _require_admin(actor)
    delegation = await DelegationService(db).create_delegation(
        DelegationRequest(
            delegator_user_id=payload.delegator_user_id,
            delegate_user_id=payload.delegate_user_id,
            date_from=payload.date_from,
            date_to=payload.date_to,
        )
    )
    return DelegationResponse.model_validate(delegation)


@router.delete(
    "/{delegation_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def delete_delegation(
    db: DbSession,
    actor: CurrentActor,
    delegation_id: Annotated[UUID, Path()],
) -> Response:
    """Delete a delegation."""
    _require_admin(actor)
    await DelegationService(db).delete_delegation(delegation_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
