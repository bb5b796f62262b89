"""Tests for the workflow engine."""

from datetime import date, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select, update

from invoice_workflow.models import (
    Delegation,
    ExtractedFields,
    InvoiceWorkflow,
    SideEffectDispatch,
    TimelineEvent,
)
from invoice_workflow.services import workflow_service
from invoice_workflow.services.errors import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    MissingPreconditionError,
    MissingRequiredFieldError,
    NotFoundError,
    ValidationError,
)
from invoice_workflow.services.transition_guard import (
    DenyReason,
    GuardDecision,
    evaluate_transition,
)
from invoice_workflow.services.workflow_service import (
    MAX_BULK,
    NewInvoice,
    TransitionFields,
    WorkflowService,
)

from .conftest import TODAY, fixed_clock

PAYMENT = TransitionFields(payment_reference="BACS-0042", paid_date=date(2024, 5, 14))
REJECT = TransitionFields(rejection_reason="Bank details do not match")


async def events_for(session, invoice_id):
    result = await session.execute(
        select(TimelineEvent)
        .where(TimelineEvent.invoice_id == invoice_id)
        .order_by(TimelineEvent.timeline_event_id)
    )
    return list(result.scalars().all())


async def approve_to_ready(workflow, actors, invoice_id):
    await workflow.transition(invoice_id, actors["manager"], "approved_by_manager")
    return await workflow.transition(invoice_id, actors["admin"], "ready_for_payment")


class TestCreateInvoice:
    async def test_create_with_manager_goes_to_pending_manager(
        self, session, workflow, create_invoice, users, sender
    ):
        invoice_id = await create_invoice()

        state = await workflow.get_state(invoice_id)
        assert state.status == "pending_manager"
        assert state.manager_user_id == users["manager"].user_id
        assert state.pending_manager_since == TODAY
        assert state.version == 3

        events = await events_for(session, invoice_id)
        assert [e.event_type for e in events] == [
            "invoice_created",
            "manager_assigned",
            "status_change",
        ]
        assert events[-1].actor_user_id is None
        assert events[-1].payload["system"] is True

        assigned = sender.sent_to("manager@invoices.test")
        assert len(assigned) == 1
        assert "awaiting your approval" in assigned[0].subject

    async def test_create_without_manager_stays_submitted(self, workflow, create_invoice):
        invoice_id = await create_invoice(manager=None)
        state = await workflow.get_state(invoice_id)
        assert state.status == "submitted"
        assert state.version == 1

    async def test_viewer_cannot_submit(self, workflow, actors):
        with pytest.raises(ForbiddenError):
            await workflow.create_invoice(actors["viewer"], NewInvoice(family="guest"))

    async def test_unknown_family(self, workflow, actors):
        with pytest.raises(ValidationError):
            await workflow.create_invoice(actors["submitter"], NewInvoice(family="salary"))

    async def test_submitting_for_someone_else_needs_admin(self, workflow, actors, users):
        with pytest.raises(ForbiddenError):
            await workflow.create_invoice(
                actors["submitter"],
                NewInvoice(family="guest", submitter_user_id=users["other_submitter"].user_id),
            )


class TestAssignManager:
    async def test_assign_moves_submitted_invoice(self, workflow, create_invoice, actors, users):
        invoice_id = await create_invoice(manager=None)

        result = await workflow.assign_manager(
            invoice_id, actors["submitter"], users["backup"].user_id
        )

        assert result.steps == [("submitted", "pending_manager")]
        assert result.state.manager_user_id == users["backup"].user_id

    async def test_assignee_must_be_manager(self, workflow, create_invoice, actors, users):
        invoice_id = await create_invoice(manager=None)
        with pytest.raises(ValidationError):
            await workflow.assign_manager(invoice_id, actors["admin"], users["viewer"].user_id)

    async def test_other_family_has_no_manager(self, workflow, create_invoice, actors, users):
        invoice_id = await create_invoice(family="other", manager=None)
        with pytest.raises(ValidationError):
            await workflow.assign_manager(invoice_id, actors["admin"], users["manager"].user_id)


class TestNeedsReviewScenario:
    async def test_confirmation_unlocks_approval(self, session, workflow, create_invoice, actors):
        invoice_id = await create_invoice(extracted={"needs_review": True})

        with pytest.raises(MissingPreconditionError) as exc_info:
            await workflow.transition(invoice_id, actors["manager"], "approved_by_manager")
        assert exc_info.value.code == "missing_precondition"
        assert (await workflow.get_state(invoice_id)).status == "pending_manager"

        result = await workflow.transition(
            invoice_id,
            actors["manager"],
            "approved_by_manager",
            TransitionFields(manager_confirmed=True),
        )

        assert result.state.status == "approved_by_manager"
        extracted = await session.get(ExtractedFields, invoice_id, populate_existing=True)
        assert extracted.manager_confirmed is True


class TestOtherFamilyScenario:
    async def test_created_ready_for_payment(self, session, workflow, actors, sender):
        result = await workflow.create_invoice(
            actors["submitter"], NewInvoice(family="other", extracted={"invoice_number": "O-7"})
        )
        invoice_id = result.state.invoice_id

        assert result.state.status == "ready_for_payment"
        assert result.state.version == 2
        assert result.steps == [("submitted", "ready_for_payment")]
        events = await events_for(session, invoice_id)
        assert [e.event_type for e in events] == ["invoice_created", "status_change"]
        assert events[1].actor_user_id is None
        assert events[1].payload["system"] is True
        assert len(sender.sent_to("finance@invoices.test")) == 1

    async def test_no_manual_release(self, workflow, create_invoice, actors):
        invoice_id = await create_invoice(family="other", manager=None)

        with pytest.raises(InvalidTransitionError):
            await workflow.transition(invoice_id, actors["admin"], "pending_manager")
        with pytest.raises(InvalidTransitionError):
            await workflow.transition(invoice_id, actors["finance"], "ready_for_payment")

        state = await workflow.get_state(invoice_id)
        assert state.status == "ready_for_payment"
        assert state.version == 2


class TestPaymentScenario:
    async def test_paid_requires_reference(self, workflow, create_invoice, actors, sender):
        invoice_id = await create_invoice()
        await approve_to_ready(workflow, actors, invoice_id)

        with pytest.raises(MissingRequiredFieldError):
            await workflow.transition(
                invoice_id,
                actors["admin"],
                "paid",
                TransitionFields(paid_date=date(2024, 5, 14)),
            )

        result = await workflow.transition(invoice_id, actors["admin"], "paid", PAYMENT)

        assert result.state.status == "paid"
        assert result.state.payment_reference == "BACS-0042"
        assert result.state.paid_date == date(2024, 5, 14)
        assert [o.status.value for o in result.side_effects] == ["sent"]
        paid = [m for m in sender.sent_to("submitter@invoices.test") if "paid" in m.subject]
        assert len(paid) == 1
        assert "admin@invoices.test" in paid[0].to

    async def test_archive_keeps_payment_fields(self, workflow, create_invoice, actors):
        invoice_id = await create_invoice()
        await approve_to_ready(workflow, actors, invoice_id)
        await workflow.transition(invoice_id, actors["finance"], "paid", PAYMENT)

        result = await workflow.transition(invoice_id, actors["admin"], "archived")

        assert result.state.status == "archived"
        assert result.state.payment_reference == "BACS-0042"


class TestRejectionAndResubmission:
    async def test_reject_sets_reason(self, workflow, create_invoice, actors, sender):
        invoice_id = await create_invoice()

        result = await workflow.transition(invoice_id, actors["manager"], "rejected", REJECT)

        assert result.state.rejection_reason == "Bank details do not match"
        assert result.state.pending_manager_since is None
        rejected = sender.sent_to("submitter@invoices.test")
        assert any("Bank details do not match" in m.html for m in rejected)

    async def test_edit_rejected_invoice_resubmits(
        self, session, workflow, create_invoice, actors
    ):
        invoice_id = await create_invoice()
        await workflow.transition(invoice_id, actors["manager"], "rejected", REJECT)
        before = len(await events_for(session, invoice_id))

        result = await workflow.edit_invoice(
            invoice_id,
            actors["submitter"],
            {
                "beneficiary_name": "Sam Submitter",
                "sort_code": "12-34-56",
                "service_description": "Guest appearance, corrected",
            },
        )

        assert result.state.status == "pending_manager"
        assert result.state.rejection_reason is None
        assert result.steps == [("rejected", "pending_manager")]

        new_events = (await events_for(session, invoice_id))[before:]
        assert [e.event_type for e in new_events] == ["invoice_updated", "status_change"]
        assert set(new_events[0].payload["changes"]) == {
            "beneficiary_name",
            "sort_code",
            "service_description",
        }
        assert new_events[0].payload["changes"]["sort_code"] == {
            "from": None,
            "to": "12-34-56",
        }

    async def test_edit_without_changes_is_noop(self, session, workflow, create_invoice, actors):
        invoice_id = await create_invoice()
        before = await workflow.get_state(invoice_id)

        result = await workflow.edit_invoice(
            invoice_id, actors["submitter"], {"invoice_number": "INV-001"}
        )

        assert result.state.version == before.version
        assert result.steps == []

    async def test_edit_without_resubmission_bumps_version(
        self, session, workflow, create_invoice, actors
    ):
        invoice_id = await create_invoice()
        before = await workflow.get_state(invoice_id)

        result = await workflow.edit_invoice(
            invoice_id, actors["submitter"], {"gross_amount": Decimal("120.50")}
        )

        assert result.state.status == "pending_manager"
        assert result.state.version == before.version + 1
        events = await events_for(session, invoice_id)
        assert events[-1].event_type == "invoice_updated"
        assert events[-1].payload["changes"]["gross_amount"]["to"] == "120.50"

    async def test_stranger_cannot_edit(self, workflow, create_invoice, actors):
        invoice_id = await create_invoice()
        with pytest.raises(ForbiddenError):
            await workflow.edit_invoice(
                invoice_id, actors["other_submitter"], {"sort_code": "00-00-00"}
            )

    async def test_paid_invoice_is_locked(self, workflow, create_invoice, actors):
        invoice_id = await create_invoice()
        await approve_to_ready(workflow, actors, invoice_id)
        await workflow.transition(invoice_id, actors["admin"], "paid", PAYMENT)

        with pytest.raises(ValidationError):
            await workflow.edit_invoice(invoice_id, actors["admin"], {"sort_code": "1"})

    async def test_unknown_field_refused(self, workflow, create_invoice, actors):
        invoice_id = await create_invoice()
        with pytest.raises(ValidationError):
            await workflow.edit_invoice(invoice_id, actors["submitter"], {"status": "paid"})


class TestSelfApproval:
    async def test_finance_cannot_mark_own_invoice_paid(self, session, workflow, actors):
        result = await workflow.create_invoice(actors["finance"], NewInvoice(family="other"))
        invoice_id = result.state.invoice_id

        with pytest.raises(ForbiddenError) as exc_info:
            await workflow.transition(invoice_id, actors["finance"], "paid", PAYMENT)

        assert exc_info.value.code == "self_approval"
        assert len(await events_for(session, invoice_id)) == 2
        assert (await workflow.get_state(invoice_id)).status == "ready_for_payment"


class TestConcurrency:
    async def test_expected_version_mismatch(self, workflow, create_invoice, actors):
        invoice_id = await create_invoice()

        with pytest.raises(ConflictError) as exc_info:
            await workflow.transition(
                invoice_id, actors["manager"], "approved_by_manager", expected_version=1
            )

        assert exc_info.value.message == "This invoice was just updated. Refresh and try again."
        assert exc_info.value.context["actual_version"] == 3

    async def test_stale_read_loses(self, session, workflow, create_invoice, actors):
        invoice_id = await create_invoice()
        loaded = await workflow._load(invoice_id)

        # Another writer commits after our read
        await session.execute(
            update(InvoiceWorkflow)
            .where(InvoiceWorkflow.invoice_id == invoice_id)
            .values(version=InvoiceWorkflow.version + 1)
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        with pytest.raises(ConflictError) as exc_info:
            await workflow._record_transition(
                loaded, actors["manager"], "approved_by_manager", TransitionFields()
            )

        assert exc_info.value.expected_version == 3
        assert exc_info.value.actual_version == 4
        state = await workflow.get_state(invoice_id)
        assert state.status == "pending_manager"

    async def test_racing_sessions_one_wins(
        self, session, session_factory, workflow, create_invoice, actors, sender
    ):
        invoice_id = await create_invoice()

        async with session_factory() as rival_session:
            rival = WorkflowService(rival_session, clock=fixed_clock)
            read = rival._load

            async def read_then_lose_race(target_id):
                loaded = await read(target_id)
                # The manager's approval commits between our read and write
                await workflow.transition(target_id, actors["manager"], "approved_by_manager")
                return loaded

            rival._load = read_then_lose_race
            with pytest.raises(ConflictError) as exc_info:
                await rival.transition(invoice_id, actors["admin"], "rejected", REJECT)

        assert exc_info.value.code == "conflict"
        assert exc_info.value.expected_version == 3
        assert exc_info.value.actual_version == 4

        state = await workflow.get_state(invoice_id)
        assert state.status == "approved_by_manager"
        assert state.version == 4
        assert state.rejection_reason is None
        decisions = [
            e for e in await events_for(session, invoice_id)
            if e.from_status == "pending_manager"
        ]
        assert [e.to_status for e in decisions] == ["approved_by_manager"]
        assert not any("rejected" in m.subject for m in sender.outbox)

    async def test_second_identical_request_is_invalid(self, workflow, create_invoice, actors):
        invoice_id = await create_invoice()
        first = await workflow.transition(invoice_id, actors["manager"], "approved_by_manager")

        with pytest.raises(InvalidTransitionError):
            await workflow.transition(invoice_id, actors["manager"], "approved_by_manager")

        assert (await workflow.get_state(invoice_id)).version == first.state.version


class TestContractorApproval:
    CONTRACTOR = {
        "contractor_name": "Jo Bloggs",
        "company_name": "Bloggs Ltd",
        "service_days_count": 3,
        "service_rate_per_day": Decimal("250.00"),
        "additional_cost": Decimal("50.00"),
        "service_month": "May",
        "booked_by": "Olu Operations",
    }

    async def test_approval_chains_to_pending_admin(
        self, session, workflow, create_invoice, actors, sender
    ):
        invoice_id = await create_invoice(family="contractor", contractor=self.CONTRACTOR)

        result = await workflow.transition(invoice_id, actors["manager"], "approved_by_manager")

        assert result.state.status == "pending_admin"
        assert result.steps == [
            ("pending_manager", "approved_by_manager"),
            ("approved_by_manager", "pending_admin"),
        ]
        statuses = {o.effect_key: o.status.value for o in result.side_effects}
        assert statuses["booking_form"] == "sent"

        approver_mail = [
            m for m in sender.sent_to("manager@invoices.test") if "Booking form" in m.subject
        ]
        ops_mail = sender.sent_to("operations@invoices.test")
        assert len(approver_mail) == 1
        assert len(ops_mail) == 1
        assert "Bloggs Ltd Jo Bloggs" in ops_mail[0].subject
        assert b"Amount: 800.00" in ops_mail[0].attachments[0].content

        record = await session.scalar(
            select(SideEffectDispatch).where(
                SideEffectDispatch.invoice_id == invoice_id,
                SideEffectDispatch.effect_key == "booking_form",
            )
        )
        assert record.status == "completed"
        assert record.email_a_sent_at is not None
        assert record.email_b_sent_at is not None

        events = await events_for(session, invoice_id)
        assert events[-1].event_type == "booking_form_sent"

    async def test_approval_and_relabel_commit_together(
        self, session, workflow, create_invoice, actors
    ):
        invoice_id = await create_invoice(family="contractor", contractor=self.CONTRACTOR)

        result = await workflow.transition(invoice_id, actors["manager"], "approved_by_manager")

        assert result.state.version == 5
        changes = [
            e for e in await events_for(session, invoice_id) if e.event_type == "status_change"
        ]
        assert [e.payload["version"] for e in changes[-2:]] == [4, 5]

    async def test_refused_relabel_keeps_approval_and_effects(
        self, workflow, create_invoice, actors, sender, monkeypatch
    ):
        invoice_id = await create_invoice(family="contractor", contractor=self.CONTRACTOR)

        def refuse_relabel(actor, invoice, to_status, inputs=None, effective_approver=None):
            if to_status == "pending_admin":
                return GuardDecision.deny(DenyReason.INVALID_TRANSITION, "re-label refused")
            return evaluate_transition(actor, invoice, to_status, inputs, effective_approver)

        monkeypatch.setattr(workflow_service, "evaluate_transition", refuse_relabel)

        result = await workflow.transition(invoice_id, actors["manager"], "approved_by_manager")

        assert result.state.status == "approved_by_manager"
        assert result.state.version == 4
        assert result.steps == [("pending_manager", "approved_by_manager")]
        statuses = {o.effect_key: o.status.value for o in result.side_effects}
        assert statuses == {"manager_approved:v4": "sent", "booking_form": "sent"}
        assert any(
            "approved by manager" in m.subject
            for m in sender.sent_to("submitter@invoices.test")
        )
        assert len(sender.sent_to("operations@invoices.test")) == 1

    async def test_ops_room_member_admits_contractor(
        self, workflow, create_invoice, actors
    ):
        invoice_id = await create_invoice(family="contractor", contractor=self.CONTRACTOR)
        await workflow.transition(invoice_id, actors["manager"], "approved_by_manager")

        result = await workflow.transition(invoice_id, actors["ops_member"], "ready_for_payment")

        assert result.state.status == "ready_for_payment"


class TestDelegatedApproval:
    async def test_delegate_approves_in_range(
        self, session, workflow, create_invoice, actors, users
    ):
        session.add(
            Delegation(
                delegator_user_id=users["manager"].user_id,
                delegate_user_id=users["backup"].user_id,
                date_from=TODAY - timedelta(days=1),
                date_to=TODAY + timedelta(days=1),
            )
        )
        await session.commit()
        invoice_id = await create_invoice()

        with pytest.raises(ForbiddenError):
            await workflow.transition(invoice_id, actors["manager"], "approved_by_manager")

        result = await workflow.transition(invoice_id, actors["backup"], "approved_by_manager")

        assert result.state.status == "approved_by_manager"
        events = await events_for(session, invoice_id)
        assert events[-1].actor_user_id == users["backup"].user_id
        assert events[-1].payload["on_behalf_of"] == str(users["manager"].user_id)

    async def test_delegate_outside_range_forbidden(
        self, session, workflow, create_invoice, actors, users
    ):
        session.add(
            Delegation(
                delegator_user_id=users["manager"].user_id,
                delegate_user_id=users["backup"].user_id,
                date_from=TODAY + timedelta(days=5),
                date_to=TODAY + timedelta(days=9),
            )
        )
        await session.commit()
        invoice_id = await create_invoice()

        with pytest.raises(ForbiddenError):
            await workflow.transition(invoice_id, actors["backup"], "approved_by_manager")


class TestSideEffectIsolation:
    async def test_failed_email_does_not_roll_back(
        self, workflow, create_invoice, actors, sender
    ):
        invoice_id = await create_invoice()
        sender.fail_subjects.add("approved by manager")

        result = await workflow.transition(invoice_id, actors["manager"], "approved_by_manager")

        assert result.state.status == "approved_by_manager"
        assert [o.effect_key for o in result.side_effect_failures] == [
            f"manager_approved:v{result.state.version}"
        ]
        assert (await workflow.get_state(invoice_id)).status == "approved_by_manager"


class TestBulkTransition:
    async def test_items_succeed_or_fail_independently(
        self, workflow, create_invoice, actors
    ):
        first = await create_invoice()
        second = await create_invoice()
        other = await create_invoice(family="other", manager=None)
        missing = uuid4()

        results = await workflow.bulk_transition(
            [first, second, other, missing, first], actors["admin"], "rejected", REJECT
        )

        by_id = {r.invoice_id: r for r in results}
        assert len(results) == 4
        assert by_id[first].ok and by_id[first].status == "rejected"
        assert by_id[second].ok
        assert by_id[other].code == "invalid_transition"
        assert by_id[missing].code == "not_found"

    async def test_limit(self, workflow, actors):
        with pytest.raises(ValidationError):
            await workflow.bulk_transition(
                [uuid4() for _ in range(MAX_BULK + 1)], actors["admin"], "archived"
            )


class TestReads:
    async def test_missing_invoice(self, workflow):
        with pytest.raises(NotFoundError):
            await workflow.get_state(uuid4())
