"""ORM models for the invoice workflow engine."""

from invoice_workflow.models.audit import (
    EmailStageSetting,
    ImmutableRecordError,
    InvoiceNote,
    SideEffectDispatch,
    TimelineEvent,
)
from invoice_workflow.models.base import Base, TimestampMixin, utcnow
from invoice_workflow.models.identity import Delegation, OperationsRoomMember, UserProfile
from invoice_workflow.models.invoice import (
    ContractorFields,
    ExtractedFields,
    Invoice,
    InvoiceWorkflow,
)

__all__ = [
    "Base",
    "ContractorFields",
    "Delegation",
    "EmailStageSetting",
    "ExtractedFields",
    "ImmutableRecordError",
    "Invoice",
    "InvoiceNote",
    "InvoiceWorkflow",
    "OperationsRoomMember",
    "SideEffectDispatch",
    "TimelineEvent",
    "TimestampMixin",
    "UserProfile",
    "utcnow",
]
