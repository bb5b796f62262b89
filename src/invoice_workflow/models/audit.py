"""Append-only timeline, notes, and side-effect dispatch records."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column

from invoice_workflow.models.base import Base, TimestampMixin, utcnow


class ImmutableRecordError(Exception):
    """Raised when an append-only record is updated or deleted."""


class TimelineEvent(Base, TimestampMixin):
    """Audit trail entry. Insertion order is causal order."""

    __tablename__ = "timeline_event"

    timeline_event_id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True
    )
    invoice_id: Mapped[UUID] = mapped_column(
        ForeignKey("invoice.invoice_id", ondelete="CASCADE"),
        nullable=False,
    )
    event_type: Mapped[str] = mapped_column(String, nullable=False)
    from_status: Mapped[str | None] = mapped_column(String, nullable=True)
    to_status: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_user_id: Mapped[UUID | None] = mapped_column(nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("ix_timeline_event_invoice", "invoice_id", "timeline_event_id"),
    )


class InvoiceNote(Base, TimestampMixin):
    """Free-text annotation on an invoice."""

    __tablename__ = "invoice_note"

    note_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    invoice_id: Mapped[UUID] = mapped_column(
        ForeignKey("invoice.invoice_id", ondelete="CASCADE"),
        nullable=False,
    )
    author_user_id: Mapped[UUID] = mapped_column(
        ForeignKey("user_profile.user_id"),
        nullable=False,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (Index("ix_invoice_note_invoice", "invoice_id", "note_id"),)


class SideEffectDispatch(Base, TimestampMixin):
    """Idempotency record for a side effect of an invoice transition.

    The row for effect_key "booking_form" doubles as the booking form dispatch
    record; its email_a/email_b stamps mark which of the two emails went out.
    """

    __tablename__ = "side_effect_dispatch"

    dispatch_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    invoice_id: Mapped[UUID] = mapped_column(
        ForeignKey("invoice.invoice_id", ondelete="CASCADE"),
        nullable=False,
    )
    effect_key: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    email_a_sent_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    email_b_sent_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    errors: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "invoice_id", "effect_key", name="side_effect_dispatch_key_unique"
        ),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed')",
            name="side_effect_dispatch_status_check",
        ),
    )

    @property
    def idempotency_key(self) -> str:
        return f"{self.invoice_id}:{self.effect_key}"


class EmailStageSetting(Base):
    """Admin toggle for a notification stage. Missing rows mean enabled."""

    __tablename__ = "email_stage_setting"

    stage_key: Mapped[str] = mapped_column(String, primary_key=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


def _reject_mutation(mapper: Any, connection: Any, target: Any) -> None:
    raise ImmutableRecordError(
        f"{type(target).__name__} records are append-only"
    )


for _model in (TimelineEvent, InvoiceNote):
    event.listen(_model, "before_update", _reject_mutation)
    event.listen(_model, "before_delete", _reject_mutation)
