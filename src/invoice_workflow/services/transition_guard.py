"""Transition guard: a pure decision over actor, invoice and requested status.

The guard never touches the store. Everything it needs (effective approver,
extracted-field flags, request fields) is resolved by the caller and passed
in, so every family/role combination runs through the same function.

Rules, in order:
1. The target must be an edge of the family's graph.
2. Manager-stage decisions need the effective approver (or an admin).
3. Nobody but an admin approves their own invoice.
4. Guest invoices flagged for review need bank details confirmed.
5. Rejection needs a reason.
6. Payment needs a reference and a paid date.
7. Remaining edges are checked against their allowed actors.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import Enum
from uuid import UUID

from invoice_workflow.services.errors import (
    ForbiddenError,
    InvalidTransitionError,
    MissingPreconditionError,
    MissingRequiredFieldError,
    TransitionError,
)
from invoice_workflow.services.state_machine import (
    Edge,
    InvoiceFamily,
    InvoiceStateMachine,
    InvoiceStatus,
    Role,
)


class DenyReason(str, Enum):
    """Structured reasons a transition is refused."""

    FORBIDDEN_ROLE = "forbidden_role"
    SELF_APPROVAL = "self_approval"
    MISSING_PRECONDITION = "missing_precondition"
    INVALID_TRANSITION = "invalid_transition"
    MISSING_REQUIRED_FIELD = "missing_required_field"


@dataclass(frozen=True)
class Actor:
    """The identity performing an action. Passed explicitly everywhere."""

    user_id: UUID | None
    role: Role
    is_operations_room: bool = False

    @classmethod
    def system(cls) -> Actor:
        """Actor for engine-initiated transitions."""
        return cls(user_id=None, role=Role.SYSTEM)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


@dataclass(frozen=True)
class InvoiceSnapshot:
    """The parts of an invoice and its workflow the guard reads."""

    invoice_id: UUID
    family: str
    submitter_user_id: UUID
    manager_user_id: UUID | None
    status: str


@dataclass(frozen=True)
class GuardInputs:
    """Request fields and pre-condition flags."""

    rejection_reason: str | None = None
    payment_reference: str | None = None
    paid_date: date | None = None
    manager_confirmed_bank_details: bool = False
    needs_review: bool = False


@dataclass(frozen=True)
class GuardDecision:
    """Outcome of evaluating a transition."""

    allowed: bool
    reason: DenyReason | None = None
    message: str = ""
    edge: Edge | None = None

    @classmethod
    def allow(cls, edge: Edge) -> GuardDecision:
        return cls(allowed=True, edge=edge)

    @classmethod
    def deny(cls, reason: DenyReason, message: str) -> GuardDecision:
        return cls(allowed=False, reason=reason, message=message)

    def to_error(self, from_status: str, to_status: str) -> TransitionError:
        """Build the exception matching this denial."""
        if self.allowed or self.reason is None:
            raise ValueError("Cannot build an error from an allowed decision")
        error_cls = _ERRORS[self.reason]
        return error_cls(from_status, to_status, self.message, code=self.reason.value)


_ERRORS: dict[DenyReason, type[TransitionError]] = {
    DenyReason.INVALID_TRANSITION: InvalidTransitionError,
    DenyReason.FORBIDDEN_ROLE: ForbiddenError,
    DenyReason.SELF_APPROVAL: ForbiddenError,
    DenyReason.MISSING_PRECONDITION: MissingPreconditionError,
    DenyReason.MISSING_REQUIRED_FIELD: MissingRequiredFieldError,
}


def _status(value: str | InvoiceStatus) -> str:
    return value.value if isinstance(value, InvoiceStatus) else value


def _blank(value: str | None) -> bool:
    return value is None or not value.strip()


def actor_may_take(
    edge: Edge,
    actor: Actor,
    invoice: InvoiceSnapshot,
    effective_approver: UUID | None,
) -> bool:
    """Check whether the actor is one of the edge's permitted actors."""
    if actor.role in edge.roles:
        return True
    if actor.user_id is None:
        return False
    if edge.effective_approver and actor.user_id == effective_approver:
        return True
    if edge.submitter and actor.user_id == invoice.submitter_user_id:
        return True
    if (
        edge.operations_room
        and actor.is_operations_room
        and invoice.family == InvoiceFamily.CONTRACTOR.value
    ):
        return True
    return False


def evaluate_transition(
    actor: Actor,
    invoice: InvoiceSnapshot,
    to_status: str | InvoiceStatus,
    inputs: GuardInputs | None = None,
    effective_approver: UUID | None = None,
) -> GuardDecision:
    """Decide whether actor may move invoice to to_status."""
    inputs = inputs or GuardInputs()
    target = _status(to_status)
    current = _status(invoice.status)

    edge = InvoiceStateMachine.get_edge(invoice.family, current, target)
    if edge is None:
        return GuardDecision.deny(
            DenyReason.INVALID_TRANSITION,
            f"A {invoice.family} invoice cannot move from '{current}' to '{target}'",
        )

    approver = effective_approver or invoice.manager_user_id
    if edge.effective_approver:
        if not actor_may_take(edge, actor, invoice, approver):
            return GuardDecision.deny(
                DenyReason.FORBIDDEN_ROLE,
                "Only the assigned manager, their active delegate, or an admin "
                "can decide on this invoice",
            )

    if (
        edge.approval
        and not actor.is_admin
        and actor.user_id is not None
        and actor.user_id == invoice.submitter_user_id
    ):
        return GuardDecision.deny(
            DenyReason.SELF_APPROVAL,
            "You cannot approve your own invoice",
        )

    if (
        target == InvoiceStatus.APPROVED_BY_MANAGER.value
        and invoice.family == InvoiceFamily.GUEST.value
        and inputs.needs_review
        and not inputs.manager_confirmed_bank_details
    ):
        return GuardDecision.deny(
            DenyReason.MISSING_PRECONDITION,
            "Bank details must be confirmed before approval",
        )

    if target == InvoiceStatus.REJECTED.value and _blank(inputs.rejection_reason):
        return GuardDecision.deny(
            DenyReason.MISSING_REQUIRED_FIELD,
            "A rejection reason is required",
        )

    if target == InvoiceStatus.PAID.value:
        if _blank(inputs.payment_reference) or inputs.paid_date is None:
            return GuardDecision.deny(
                DenyReason.MISSING_REQUIRED_FIELD,
                "Payment reference and paid date are required",
            )

    if target == InvoiceStatus.PENDING_MANAGER.value and invoice.manager_user_id is None:
        return GuardDecision.deny(
            DenyReason.MISSING_REQUIRED_FIELD,
            "A manager must be assigned before the invoice can go to the manager",
        )

    if not actor_may_take(edge, actor, invoice, approver):
        return GuardDecision.deny(
            DenyReason.FORBIDDEN_ROLE,
            _forbidden_message(edge),
        )

    return GuardDecision.allow(edge)


def _forbidden_message(edge: Edge) -> str:
    target = edge.to_status
    if target == InvoiceStatus.PAID:
        return "Only admin or finance can mark an invoice as paid"
    if target == InvoiceStatus.ARCHIVED:
        return "Only admin can archive invoices"
    if target == InvoiceStatus.READY_FOR_PAYMENT and edge.operations_room:
        return "Only admin or the Operations Room can approve at this stage"
    if edge.submitter:
        return "Only the submitter or an admin can resubmit this invoice"
    return "You are not allowed to perform this transition"
