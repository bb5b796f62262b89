"""API routes."""

from invoice_workflow.api.routes.booking_forms import router as booking_forms_router
from invoice_workflow.api.routes.delegations import router as delegations_router
from invoice_workflow.api.routes.health import router as health_router
from invoice_workflow.api.routes.invoices import router as invoices_router

__all__ = [
    "booking_forms_router",
    "delegations_router",
    "health_router",
    "invoices_router",
]
