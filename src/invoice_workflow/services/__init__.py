"""Invoice workflow services."""

from invoice_workflow.services.delegation_resolver import (
    DelegationResolver,
    DelegationService,
    resolve_effective_approver,
)
from invoice_workflow.services.dispatcher import SideEffectDispatcher, SideEffectOutcome
from invoice_workflow.services.errors import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    MissingPreconditionError,
    MissingRequiredFieldError,
    NotFoundError,
    TransitionError,
    WorkflowError,
)
from invoice_workflow.services.state_machine import (
    InvoiceFamily,
    InvoiceStateMachine,
    InvoiceStatus,
    Role,
)
from invoice_workflow.services.transition_guard import Actor, evaluate_transition
from invoice_workflow.services.workflow_service import (
    TransitionFields,
    TransitionResult,
    WorkflowService,
)

__all__ = [
    "Actor",
    "ConflictError",
    "DelegationResolver",
    "DelegationService",
    "ForbiddenError",
    "InvalidTransitionError",
    "InvoiceFamily",
    "InvoiceStateMachine",
    "InvoiceStatus",
    "MissingPreconditionError",
    "MissingRequiredFieldError",
    "NotFoundError",
    "Role",
    "SideEffectDispatcher",
    "SideEffectOutcome",
    "TransitionError",
    "TransitionFields",
    "TransitionResult",
    "WorkflowError",
    "WorkflowService",
    "evaluate_transition",
    "resolve_effective_approver",
]
