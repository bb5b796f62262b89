"""Append-only timeline and notes for invoices."""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from invoice_workflow.models import Invoice, InvoiceNote, TimelineEvent
from invoice_workflow.services.errors import NotFoundError, ValidationError
from invoice_workflow.services.transition_guard import Actor


class TimelineEventType:
    """Timeline event type names."""

    INVOICE_CREATED = "invoice_created"
    STATUS_CHANGE = "status_change"
    INVOICE_UPDATED = "invoice_updated"
    MANAGER_ASSIGNED = "manager_assigned"
    NOTE_ADDED = "note_added"
    BOOKING_FORM_SENT = "booking_form_sent"


class TimelineService:
    """Appends and lists timeline events.

    append() only stages the event on the session; it is committed together
    with whatever ledger write it describes.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    def append(
        self,
        invoice_id: UUID,
        event_type: str,
        actor_user_id: UUID | None,
        from_status: str | None = None,
        to_status: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> TimelineEvent:
        event = TimelineEvent(
            invoice_id=invoice_id,
            event_type=event_type,
            actor_user_id=actor_user_id,
            from_status=from_status,
            to_status=to_status,
            payload=payload or {},
        )
        self.session.add(event)
        return event

    async def list_events(self, invoice_id: UUID) -> list[TimelineEvent]:
        """Events for an invoice in insertion order."""
        result = await self.session.execute(
            select(TimelineEvent)
            .where(TimelineEvent.invoice_id == invoice_id)
            .order_by(TimelineEvent.timeline_event_id)
        )
        return list(result.scalars().all())


class NoteService:
    """Free-text notes on invoices. Notes are never edited or deleted."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.timeline = TimelineService(session)

    async def add_note(self, invoice_id: UUID, actor: Actor, content: str) -> InvoiceNote:
        text = (content or "").strip()
        if not text:
            raise ValidationError("Note content is required")
        if actor.user_id is None:
            raise ValidationError("Notes need a user author")
        if await self.session.get(Invoice, invoice_id) is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")

        note = InvoiceNote(
            invoice_id=invoice_id,
            author_user_id=actor.user_id,
            content=text,
        )
        self.session.add(note)
        await self.session.flush()
        self.timeline.append(
            invoice_id,
            TimelineEventType.NOTE_ADDED,
            actor.user_id,
            payload={"note_id": note.note_id},
        )
        await self.session.commit()
        return note

    async def list_notes(self, invoice_id: UUID) -> list[InvoiceNote]:
        result = await self.session.execute(
            select(InvoiceNote)
            .where(InvoiceNote.invoice_id == invoice_id)
            .order_by(InvoiceNote.note_id)
        )
        return list(result.scalars().all())
