"""Invoice status state machine with per-family transition tables."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from invoice_workflow.services.errors import InvalidTransitionError


class InvoiceStatus(str, Enum):
    """Invoice workflow status values."""

    SUBMITTED = "submitted"
    PENDING_MANAGER = "pending_manager"
    APPROVED_BY_MANAGER = "approved_by_manager"
    PENDING_ADMIN = "pending_admin"
    REJECTED = "rejected"
    READY_FOR_PAYMENT = "ready_for_payment"
    PAID = "paid"
    ARCHIVED = "archived"


class InvoiceFamily(str, Enum):
    """Invoice families. Each has a fixed transition graph."""

    GUEST = "guest"
    CONTRACTOR = "contractor"
    OTHER = "other"


class Role(str, Enum):
    """Actor roles. SYSTEM is used for engine-initiated transitions."""

    ADMIN = "admin"
    MANAGER = "manager"
    FINANCE = "finance"
    OPERATIONS = "operations"
    SUBMITTER = "submitter"
    VIEWER = "viewer"
    SYSTEM = "system"


@dataclass(frozen=True)
class Edge:
    """A permitted transition and who may take it.

    Attributes:
        roles: Roles that may take the edge outright.
        effective_approver: The effective approver (manager or delegate) may act.
        submitter: The invoice submitter may act (resubmission).
        operations_room: Operations-Room members may act on contractor invoices.
        approval: Self-approval rule applies to this edge.
    """

    from_status: InvoiceStatus
    to_status: InvoiceStatus
    roles: frozenset[Role]
    effective_approver: bool = False
    submitter: bool = False
    operations_room: bool = False
    approval: bool = False


_ADMIN = frozenset({Role.ADMIN})
_ADMIN_OR_SYSTEM = frozenset({Role.ADMIN, Role.SYSTEM})

_S = InvoiceStatus

# Guest and contractor invoices share one graph.
_MANAGED_EDGES: tuple[Edge, ...] = (
    Edge(_S.SUBMITTED, _S.PENDING_MANAGER, _ADMIN_OR_SYSTEM),
    Edge(_S.PENDING_MANAGER, _S.APPROVED_BY_MANAGER, _ADMIN,
         effective_approver=True, approval=True),
    Edge(_S.PENDING_MANAGER, _S.REJECTED, _ADMIN,
         effective_approver=True, approval=True),
    Edge(_S.REJECTED, _S.PENDING_MANAGER, _ADMIN, submitter=True),
    Edge(_S.APPROVED_BY_MANAGER, _S.PENDING_ADMIN, _ADMIN_OR_SYSTEM),
    Edge(_S.APPROVED_BY_MANAGER, _S.READY_FOR_PAYMENT, _ADMIN,
         operations_room=True, approval=True),
    Edge(_S.PENDING_ADMIN, _S.READY_FOR_PAYMENT, _ADMIN,
         operations_room=True, approval=True),
    Edge(_S.APPROVED_BY_MANAGER, _S.REJECTED, _ADMIN),
    Edge(_S.PENDING_ADMIN, _S.REJECTED, _ADMIN),
    Edge(_S.READY_FOR_PAYMENT, _S.PAID, frozenset({Role.ADMIN, Role.FINANCE}),
         approval=True),
    Edge(_S.READY_FOR_PAYMENT, _S.ARCHIVED, _ADMIN),
    Edge(_S.PAID, _S.ARCHIVED, _ADMIN),
)

# "Other" invoices skip the manager and admission stages.
_OTHER_EDGES: tuple[Edge, ...] = (
    Edge(_S.SUBMITTED, _S.READY_FOR_PAYMENT, frozenset({Role.SYSTEM})),
    Edge(_S.READY_FOR_PAYMENT, _S.PAID, frozenset({Role.ADMIN, Role.FINANCE}),
         approval=True),
    Edge(_S.READY_FOR_PAYMENT, _S.ARCHIVED, _ADMIN),
    Edge(_S.PAID, _S.ARCHIVED, _ADMIN),
)


def _index(edges: tuple[Edge, ...]) -> dict[tuple[str, str], Edge]:
    return {(e.from_status.value, e.to_status.value): e for e in edges}


class InvoiceStateMachine:
    """State machine for invoice status transitions.

    Guest/contractor:
    - submitted → pending_manager (system, on manager assignment)
    - pending_manager → approved_by_manager | rejected
    - rejected → pending_manager (resubmit)
    - approved_by_manager → pending_admin (re-label)
    - approved_by_manager | pending_admin → ready_for_payment | rejected
    - ready_for_payment → paid
    - ready_for_payment | paid → archived

    Other:
    - submitted → ready_for_payment (system, at creation)
    - ready_for_payment → paid → archived
    """

    EDGES: dict[str, dict[tuple[str, str], Edge]] = {
        InvoiceFamily.GUEST.value: _index(_MANAGED_EDGES),
        InvoiceFamily.CONTRACTOR.value: _index(_MANAGED_EDGES),
        InvoiceFamily.OTHER.value: _index(_OTHER_EDGES),
    }

    # Admission stage: admin or Operations Room may act on either status
    ADMISSION_STAGE = {
        InvoiceStatus.APPROVED_BY_MANAGER,
        InvoiceStatus.PENDING_ADMIN,
    }

    # Statuses that carry paid_date / payment_reference
    PAYMENT_RECORDED = {
        InvoiceStatus.PAID,
        InvoiceStatus.ARCHIVED,
    }

    # Statuses in which a booking form may be (re)triggered
    BOOKING_FORM_ELIGIBLE = {
        InvoiceStatus.APPROVED_BY_MANAGER,
        InvoiceStatus.PENDING_ADMIN,
        InvoiceStatus.READY_FOR_PAYMENT,
        InvoiceStatus.PAID,
        InvoiceStatus.ARCHIVED,
    }

    @classmethod
    def get_edge(cls, family: str, from_status: str, to_status: str) -> Edge | None:
        """Return the edge for a transition, or None if not in the graph."""
        return cls.EDGES.get(_value(family), {}).get(
            (_value(from_status), _value(to_status))
        )

    @classmethod
    def can_transition(cls, family: str, from_status: str, to_status: str) -> bool:
        """Check if a transition exists for this family."""
        return cls.get_edge(family, from_status, to_status) is not None

    @classmethod
    def validate_transition(cls, family: str, from_status: str, to_status: str) -> Edge:
        """Return the edge, raising InvalidTransitionError if there is none."""
        edge = cls.get_edge(family, from_status, to_status)
        if edge is None:
            raise InvalidTransitionError(
                _value(from_status),
                _value(to_status),
                f"Cannot move a {_value(family)} invoice from "
                f"'{_value(from_status)}' to '{_value(to_status)}'",
            )
        return edge

    @classmethod
    def get_next_statuses(cls, family: str, current_status: str) -> list[str]:
        """Get list of valid next statuses from current status."""
        current = _value(current_status)
        return [
            to for (frm, to) in cls.EDGES.get(_value(family), {}) if frm == current
        ]

    @classmethod
    def is_resubmission(cls, from_status: str, to_status: str) -> bool:
        """Check if this transition re-opens a rejected invoice."""
        return (
            _value(from_status) == InvoiceStatus.REJECTED.value
            and _value(to_status) == InvoiceStatus.PENDING_MANAGER.value
        )

    @classmethod
    def records_payment(cls, status: str) -> bool:
        """Check if paid_date/payment_reference may be set in this status."""
        return _value(status) in {s.value for s in cls.PAYMENT_RECORDED}

    @classmethod
    def visits_manager_stage(cls, family: str) -> bool:
        """Check if invoices of this family pass through pending_manager."""
        return _value(family) != InvoiceFamily.OTHER.value


def _value(v: str | Enum) -> str:
    return v.value if isinstance(v, Enum) else v
