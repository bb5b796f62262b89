"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from invoice_workflow.api.routes import (
    booking_forms_router,
    delegations_router,
    health_router,
    invoices_router,
)
from invoice_workflow.config import configure_logging, settings
from invoice_workflow.database import create_all, dispose_db, init_db
from invoice_workflow.models import ImmutableRecordError
from invoice_workflow.services.errors import (
    ConflictError,
    DelegationError,
    DelegationOverlapError,
    ForbiddenError,
    InvalidTransitionError,
    MissingPreconditionError,
    MissingRequiredFieldError,
    NotFoundError,
    SideEffectFailure,
    ValidationError,
    WorkflowError,
)

logger = logging.getLogger(__name__)

# Most specific first
ERROR_STATUS: tuple[tuple[type[WorkflowError], int], ...] = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (DelegationOverlapError, status.HTTP_409_CONFLICT),
    (ForbiddenError, status.HTTP_403_FORBIDDEN),
    (MissingPreconditionError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (MissingRequiredFieldError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidTransitionError, status.HTTP_400_BAD_REQUEST),
    (DelegationError, status.HTTP_400_BAD_REQUEST),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (SideEffectFailure, status.HTTP_502_BAD_GATEWAY),
)


def status_for(exc: WorkflowError) -> int:
    for error_cls, code in ERROR_STATUS:
        if isinstance(exc, error_cls):
            return code
    return status.HTTP_400_BAD_REQUEST


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    configure_logging()
    init_db()
    if settings.database_url.startswith("sqlite"):
        await create_all()
    yield
    # Shutdown
    await dispose_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Invoice Workflow API",
        description="Invoice lifecycle and approval workflow engine",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.app_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(WorkflowError)
    async def workflow_exception_handler(
        request: Request, exc: WorkflowError
    ) -> JSONResponse:
        """Render workflow errors with their machine-readable code."""
        return JSONResponse(
            status_code=status_for(exc),
            content={
                "detail": exc.message,
                "code": exc.code,
                "context": exc.context,
            },
        )

    @app.exception_handler(ImmutableRecordError)
    async def immutable_exception_handler(
        request: Request, exc: ImmutableRecordError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": str(exc), "code": "immutable_record"},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "internal_error",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(invoices_router, prefix="/api/v1")
    app.include_router(booking_forms_router, prefix="/api/v1")
    app.include_router(delegations_router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
