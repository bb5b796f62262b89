"""Pydantic schemas for API request/response models."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from invoice_workflow.services.workflow_service import MAX_BULK


# ============================================================================
# Errors
# ============================================================================


class ErrorResponse(BaseModel):
    """Schema for error responses."""

    detail: str
    code: str | None = None
    context: dict[str, Any] | None = None


# ============================================================================
# Invoice schemas
# ============================================================================


class ExtractedFieldsInput(BaseModel):
    """Fields produced by extraction, supplied at upload."""

    beneficiary_name: str | None = None
    account_number: str | None = None
    sort_code: str | None = None
    invoice_number: str | None = None
    gross_amount: Decimal | None = None
    extracted_currency: str | None = Field(default=None, max_length=3)
    needs_review: bool = False


class ContractorFieldsInput(BaseModel):
    """Contractor booking details."""

    contractor_name: str | None = None
    company_name: str | None = None
    service_days_count: int = Field(default=0, ge=0)
    service_rate_per_day: Decimal = Field(default=Decimal("0"), ge=0)
    additional_cost: Decimal = Field(default=Decimal("0"), ge=0)
    service_month: str | None = None
    booked_by: str | None = None


class InvoiceCreate(BaseModel):
    """Schema for submitting a new invoice."""

    family: str
    submitter_user_id: UUID | None = None
    manager_user_id: UUID | None = None
    department_id: UUID | None = None
    program_id: UUID | None = None
    currency: str = Field(default="GBP", min_length=3, max_length=3)
    service_description: str | None = None
    extracted: ExtractedFieldsInput | None = None
    contractor: ContractorFieldsInput | None = None


class InvoiceUpdate(BaseModel):
    """Schema for editing invoice data. Only fields sent are changed."""

    department_id: UUID | None = None
    program_id: UUID | None = None
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    service_description: str | None = None
    beneficiary_name: str | None = None
    account_number: str | None = None
    sort_code: str | None = None
    invoice_number: str | None = None
    gross_amount: Decimal | None = None
    extracted_currency: str | None = Field(default=None, max_length=3)
    contractor_name: str | None = None
    company_name: str | None = None
    service_days_count: int | None = Field(default=None, ge=0)
    service_rate_per_day: Decimal | None = Field(default=None, ge=0)
    additional_cost: Decimal | None = Field(default=None, ge=0)
    service_month: str | None = None
    booked_by: str | None = None
    expected_version: int | None = None


class ExtractedFieldsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    beneficiary_name: str | None = None
    account_number: str | None = None
    sort_code: str | None = None
    invoice_number: str | None = None
    gross_amount: Decimal | None = None
    extracted_currency: str | None = None
    needs_review: bool
    manager_confirmed: bool


class ContractorFieldsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    contractor_name: str | None = None
    company_name: str | None = None
    service_days_count: int
    service_rate_per_day: Decimal
    additional_cost: Decimal
    service_month: str | None = None
    booked_by: str | None = None


class WorkflowStateResponse(BaseModel):
    """Schema for the status ledger row."""

    model_config = ConfigDict(from_attributes=True)

    invoice_id: UUID
    status: str
    manager_user_id: UUID | None = None
    rejection_reason: str | None = None
    paid_date: date | None = None
    payment_reference: str | None = None
    pending_manager_since: date | None = None
    version: int
    updated_at: datetime


class InvoiceResponse(BaseModel):
    """Schema for invoice response."""

    model_config = ConfigDict(from_attributes=True)

    invoice_id: UUID
    family: str
    submitter_user_id: UUID
    department_id: UUID | None = None
    program_id: UUID | None = None
    currency: str
    service_description: str | None = None
    created_at: datetime
    workflow: WorkflowStateResponse
    extracted_fields: ExtractedFieldsResponse | None = None
    contractor_fields: ContractorFieldsResponse | None = None
    next_statuses: list[str] = Field(default_factory=list)


# ============================================================================
# Transition schemas
# ============================================================================


class StatusChangeRequest(BaseModel):
    """Schema for requesting a status transition."""

    to_status: str
    rejection_reason: str | None = None
    manager_confirmed: bool = False
    payment_reference: str | None = None
    paid_date: date | None = None
    expected_version: int | None = None


class ManagerAssignRequest(BaseModel):
    manager_user_id: UUID
    expected_version: int | None = None


class StepResponse(BaseModel):
    from_status: str
    to_status: str


class SideEffectResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    effect_key: str
    status: str
    error: str | None = None


class TransitionResponse(BaseModel):
    """Schema for the committed result of a write."""

    state: WorkflowStateResponse
    steps: list[StepResponse]
    side_effects: list[SideEffectResponse]


class BulkStatusRequest(BaseModel):
    """Schema for applying one transition to many invoices."""

    invoice_ids: list[UUID] = Field(min_length=1, max_length=MAX_BULK)
    to_status: str
    rejection_reason: str | None = None
    payment_reference: str | None = None
    paid_date: date | None = None


class BulkItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    invoice_id: UUID
    ok: bool
    status: str | None = None
    code: str | None = None
    message: str | None = None


class BulkStatusResponse(BaseModel):
    results: list[BulkItemResponse]
    succeeded: int
    failed: int


# ============================================================================
# Timeline and notes
# ============================================================================


class TimelineEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    timeline_event_id: int
    event_type: str
    from_status: str | None = None
    to_status: str | None = None
    actor_user_id: UUID | None = None
    payload: dict[str, Any]
    created_at: datetime


class NoteCreate(BaseModel):
    content: str = Field(min_length=1, max_length=5000)


class NoteResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    note_id: int
    invoice_id: UUID
    author_user_id: UUID
    content: str
    created_at: datetime


# ============================================================================
# Booking form
# ============================================================================


class BookingFormTriggerResponse(BaseModel):
    """Schema for a manual booking form trigger."""

    skipped: bool
    status: str
    error: str | None = None


# ============================================================================
# Delegations
# ============================================================================


class DelegationCreate(BaseModel):
    delegator_user_id: UUID
    delegate_user_id: UUID
    date_from: date
    date_to: date


class DelegationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    delegation_id: UUID
    delegator_user_id: UUID
    delegate_user_id: UUID
    date_from: date
    date_to: date
    created_at: datetime
