"""Tests for the append-only timeline and notes."""

from uuid import uuid4

import pytest

from invoice_workflow.models import ImmutableRecordError
from invoice_workflow.services.errors import NotFoundError, ValidationError
from invoice_workflow.services.timeline_service import NoteService, TimelineService


class TestTimeline:
    async def test_events_in_order(self, session, workflow, create_invoice, actors):
        invoice_id = await create_invoice()
        await workflow.transition(invoice_id, actors["manager"], "approved_by_manager")

        events = await TimelineService(session).list_events(invoice_id)

        assert [e.event_type for e in events] == [
            "invoice_created",
            "manager_assigned",
            "status_change",
            "status_change",
        ]
        assert [(e.from_status, e.to_status) for e in events[2:]] == [
            ("submitted", "pending_manager"),
            ("pending_manager", "approved_by_manager"),
        ]
        assert events[-1].payload["version"] == 4

    async def test_events_cannot_be_updated(self, session, create_invoice):
        invoice_id = await create_invoice()
        [event, *_] = await TimelineService(session).list_events(invoice_id)

        event.event_type = "tampered"
        with pytest.raises(ImmutableRecordError):
            await session.commit()

    async def test_events_cannot_be_deleted(self, session, create_invoice):
        invoice_id = await create_invoice()
        [event, *_] = await TimelineService(session).list_events(invoice_id)

        await session.delete(event)
        with pytest.raises(ImmutableRecordError):
            await session.commit()


class TestNotes:
    async def test_add_and_list(self, session, create_invoice, actors, users):
        invoice_id = await create_invoice()
        service = NoteService(session)

        first = await service.add_note(invoice_id, actors["manager"], "  Checked rates  ")
        await service.add_note(invoice_id, actors["admin"], "Chasing bank details")

        notes = await service.list_notes(invoice_id)
        assert [n.content for n in notes] == ["Checked rates", "Chasing bank details"]
        assert notes[0].author_user_id == users["manager"].user_id

        events = await TimelineService(session).list_events(invoice_id)
        assert events[-2].event_type == "note_added"
        assert events[-2].payload == {"note_id": first.note_id}

    async def test_empty_note_refused(self, session, create_invoice, actors):
        invoice_id = await create_invoice()
        with pytest.raises(ValidationError):
            await NoteService(session).add_note(invoice_id, actors["manager"], "   ")

    async def test_unknown_invoice(self, session, actors):
        with pytest.raises(NotFoundError):
            await NoteService(session).add_note(uuid4(), actors["manager"], "Hello")

    async def test_notes_cannot_be_edited(self, session, create_invoice, actors):
        invoice_id = await create_invoice()
        note = await NoteService(session).add_note(invoice_id, actors["manager"], "Original")

        note.content = "Rewritten"
        with pytest.raises(ImmutableRecordError):
            await session.commit()
