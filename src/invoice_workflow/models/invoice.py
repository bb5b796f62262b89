"""Invoice, workflow ledger and invoice detail models."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from invoice_workflow.models.base import Base, TimestampMixin, utcnow


class Invoice(Base, TimestampMixin):
    """Invoice header. Immutable except through recorded data edits."""

    __tablename__ = "invoice"

    invoice_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    family: Mapped[str] = mapped_column(String, nullable=False)
    submitter_user_id: Mapped[UUID] = mapped_column(
        ForeignKey("user_profile.user_id"),
        nullable=False,
    )
    department_id: Mapped[UUID | None] = mapped_column(nullable=True)
    program_id: Mapped[UUID | None] = mapped_column(nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="GBP")
    service_description: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "family IN ('guest', 'contractor', 'other')",
            name="invoice_family_check",
        ),
    )

    # Relationships
    workflow: Mapped[InvoiceWorkflow] = relationship(
        back_populates="invoice", uselist=False, lazy="selectin"
    )
    extracted_fields: Mapped[ExtractedFields | None] = relationship(
        back_populates="invoice", uselist=False, lazy="selectin"
    )
    contractor_fields: Mapped[ContractorFields | None] = relationship(
        back_populates="invoice", uselist=False, lazy="selectin"
    )


class InvoiceWorkflow(Base):
    """Status ledger row. One per invoice, written only by the workflow service."""

    __tablename__ = "invoice_workflow"

    invoice_id: Mapped[UUID] = mapped_column(
        ForeignKey("invoice.invoice_id", ondelete="CASCADE"),
        primary_key=True,
    )
    status: Mapped[str] = mapped_column(String, nullable=False, default="submitted")
    manager_user_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("user_profile.user_id"),
        nullable=True,
    )
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    paid_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    payment_reference: Mapped[str | None] = mapped_column(String, nullable=True)
    pending_manager_since: Mapped[date | None] = mapped_column(Date, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('submitted', 'pending_manager', 'approved_by_manager', "
            "'pending_admin', 'rejected', 'ready_for_payment', 'paid', 'archived')",
            name="invoice_workflow_status_check",
        ),
        CheckConstraint(
            "(status = 'rejected') = (rejection_reason IS NOT NULL)",
            name="invoice_workflow_rejection_reason_check",
        ),
        CheckConstraint(
            "status IN ('paid', 'archived') OR "
            "(paid_date IS NULL AND payment_reference IS NULL)",
            name="invoice_workflow_payment_fields_check",
        ),
        CheckConstraint("version >= 1", name="invoice_workflow_version_check"),
    )

    invoice: Mapped[Invoice] = relationship(back_populates="workflow")


class ExtractedFields(Base):
    """Beneficiary and bank details produced by the extraction collaborator."""

    __tablename__ = "invoice_extracted_fields"

    invoice_id: Mapped[UUID] = mapped_column(
        ForeignKey("invoice.invoice_id", ondelete="CASCADE"),
        primary_key=True,
    )
    beneficiary_name: Mapped[str | None] = mapped_column(String, nullable=True)
    account_number: Mapped[str | None] = mapped_column(String, nullable=True)
    sort_code: Mapped[str | None] = mapped_column(String, nullable=True)
    invoice_number: Mapped[str | None] = mapped_column(String, nullable=True)
    gross_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    extracted_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    needs_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    manager_confirmed: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    invoice: Mapped[Invoice] = relationship(back_populates="extracted_fields")


class ContractorFields(Base):
    """Contractor booking details used to build the booking form."""

    __tablename__ = "contractor_invoice_fields"

    invoice_id: Mapped[UUID] = mapped_column(
        ForeignKey("invoice.invoice_id", ondelete="CASCADE"),
        primary_key=True,
    )
    contractor_name: Mapped[str | None] = mapped_column(String, nullable=True)
    company_name: Mapped[str | None] = mapped_column(String, nullable=True)
    service_days_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    service_rate_per_day: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0")
    )
    additional_cost: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0")
    )
    service_month: Mapped[str | None] = mapped_column(String, nullable=True)
    booked_by: Mapped[str | None] = mapped_column(String, nullable=True)

    invoice: Mapped[Invoice] = relationship(back_populates="contractor_fields")
