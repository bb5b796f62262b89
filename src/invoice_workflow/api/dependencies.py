"""FastAPI dependencies for dependency injection."""

from collections.abc import AsyncGenerator
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from invoice_workflow.config import Settings, get_settings
from invoice_workflow.database import init_db
from invoice_workflow.notifications import (
    BookingFormRenderer,
    EmailSender,
    get_booking_form_renderer,
    get_email_sender,
)
from invoice_workflow.services.actor_service import load_actor
from invoice_workflow.services.dispatcher import SideEffectDispatcher
from invoice_workflow.services.errors import NotFoundError
from invoice_workflow.services.transition_guard import Actor
from invoice_workflow.services.workflow_service import WorkflowService


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    _, factory = init_db()
    async with factory() as session:
        try:
            yield session
        finally:
            await session.close()


DbSession = Annotated[AsyncSession, Depends(get_db_session)]


async def get_current_actor(
    db: DbSession,
    x_user_id: Annotated[str | None, Header()] = None,
) -> Actor:
    """Resolve the acting user from the X-User-ID header."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-ID header is required",
        )
    try:
        user_id = UUID(x_user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid X-User-ID format",
        )
    try:
        return await load_actor(db, user_id)
    except NotFoundError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown or inactive user",
        )


def get_sender() -> EmailSender:
    return get_email_sender()


def get_renderer() -> BookingFormRenderer:
    return get_booking_form_renderer()


def get_app_settings() -> Settings:
    return get_settings()


def get_dispatcher(
    db: DbSession,
    sender: Annotated[EmailSender, Depends(get_sender)],
    renderer: Annotated[BookingFormRenderer, Depends(get_renderer)],
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> SideEffectDispatcher:
    return SideEffectDispatcher(db, sender, renderer, settings)


Dispatcher = Annotated[SideEffectDispatcher, Depends(get_dispatcher)]


def get_workflow_service(db: DbSession, dispatcher: Dispatcher) -> WorkflowService:
    return WorkflowService(db, dispatcher)


# Type aliases for cleaner dependency injection
CurrentActor = Annotated[Actor, Depends(get_current_actor)]
Workflow = Annotated[WorkflowService, Depends(get_workflow_service)]
