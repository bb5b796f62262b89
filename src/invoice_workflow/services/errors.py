"""Workflow error taxonomy.

Guard denials and conflicts are detected before any write and raised to the
caller untouched. SideEffectFailure is only ever reported, never raised out
of a committed transition.
"""

from __future__ import annotations

from typing import Any


class WorkflowError(Exception):
    """Base class for all workflow errors."""

    code = "workflow_error"

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)


class NotFoundError(WorkflowError):
    """Raised when an invoice, user, or delegation does not exist."""

    code = "not_found"


class TransitionError(WorkflowError):
    """A requested status transition was refused."""

    code = "transition_error"

    def __init__(
        self,
        from_status: str | None,
        to_status: str | None,
        message: str,
        code: str | None = None,
    ):
        self.from_status = from_status
        self.to_status = to_status
        if code is not None:
            self.code = code
        super().__init__(
            message,
            context={"from_status": from_status, "to_status": to_status},
        )


class InvalidTransitionError(TransitionError):
    """No such edge for this invoice family and current status."""

    code = "invalid_transition"


class ForbiddenError(TransitionError):
    """The actor may not perform this transition (role, delegation, self-approval)."""

    code = "forbidden_role"


class MissingPreconditionError(TransitionError):
    """A pre-condition such as bank details confirmation is not met."""

    code = "missing_precondition"


class MissingRequiredFieldError(TransitionError):
    """A field required by the target status is absent."""

    code = "missing_required_field"


class ConflictError(TransitionError):
    """The ledger row changed since it was read (version mismatch)."""

    code = "conflict"

    def __init__(
        self,
        from_status: str | None,
        to_status: str | None,
        expected_version: int,
        actual_version: int | None = None,
    ):
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            from_status,
            to_status,
            "This invoice was just updated. Refresh and try again.",
        )
        self.context.update(
            expected_version=expected_version, actual_version=actual_version
        )


class SideEffectFailure(WorkflowError):
    """An email or generated document failed after the transition committed."""

    code = "side_effect_failure"

    def __init__(self, effect_key: str, message: str):
        self.effect_key = effect_key
        super().__init__(message, context={"effect_key": effect_key})


class DelegationError(WorkflowError):
    """Invalid approval delegation."""

    code = "invalid_delegation"


class DelegationOverlapError(DelegationError):
    """A delegation overlaps an existing one for the same delegator."""

    code = "delegation_overlap"


class ValidationError(WorkflowError):
    """Invalid input outside the transition guard (notes, edits)."""

    code = "validation_error"
