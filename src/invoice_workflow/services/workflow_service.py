"""Workflow engine - the only writer of the invoice status ledger."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from invoice_workflow.models import (
    ContractorFields,
    ExtractedFields,
    Invoice,
    InvoiceWorkflow,
    UserProfile,
    utcnow,
)
from invoice_workflow.services.delegation_resolver import DelegationResolver
from invoice_workflow.services.dispatcher import (
    DispatchContext,
    SideEffectDispatcher,
    SideEffectOutcome,
)
from invoice_workflow.services.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
    WorkflowError,
)
from invoice_workflow.services.state_machine import (
    InvoiceFamily,
    InvoiceStateMachine,
    InvoiceStatus,
    Role,
)
from invoice_workflow.services.timeline_service import TimelineEventType, TimelineService
from invoice_workflow.services.transition_guard import (
    Actor,
    GuardInputs,
    InvoiceSnapshot,
    evaluate_transition,
)

logger = logging.getLogger(__name__)

MAX_BULK = 50

INVOICE_EDITABLE = ("department_id", "program_id", "currency", "service_description")
EXTRACTED_EDITABLE = (
    "beneficiary_name",
    "account_number",
    "sort_code",
    "invoice_number",
    "gross_amount",
    "extracted_currency",
)
CONTRACTOR_EDITABLE = (
    "contractor_name",
    "company_name",
    "service_days_count",
    "service_rate_per_day",
    "additional_cost",
    "service_month",
    "booked_by",
)

# Statuses in which the submitter may still edit invoice data
_SUBMITTER_EDITABLE = {
    InvoiceStatus.SUBMITTED.value,
    InvoiceStatus.PENDING_MANAGER.value,
    InvoiceStatus.REJECTED.value,
}
_LOCKED = {InvoiceStatus.PAID.value, InvoiceStatus.ARCHIVED.value}


@dataclass(frozen=True)
class TransitionFields:
    """Request fields that accompany a transition."""

    rejection_reason: str | None = None
    payment_reference: str | None = None
    paid_date: date | None = None
    manager_confirmed: bool = False


@dataclass(frozen=True)
class NewInvoice:
    """Input for creating an invoice."""

    family: str
    submitter_user_id: UUID | None = None
    manager_user_id: UUID | None = None
    department_id: UUID | None = None
    program_id: UUID | None = None
    currency: str = "GBP"
    service_description: str | None = None
    extracted: dict[str, Any] = field(default_factory=dict)
    contractor: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class WorkflowState:
    """Read model of an invoice's ledger row."""

    invoice_id: UUID
    family: str
    submitter_user_id: UUID
    status: str
    manager_user_id: UUID | None
    rejection_reason: str | None
    paid_date: date | None
    payment_reference: str | None
    pending_manager_since: date | None
    version: int
    updated_at: datetime

    @classmethod
    def from_models(cls, invoice: Invoice, workflow: InvoiceWorkflow) -> WorkflowState:
        return cls(
            invoice_id=invoice.invoice_id,
            family=invoice.family,
            submitter_user_id=invoice.submitter_user_id,
            status=workflow.status,
            manager_user_id=workflow.manager_user_id,
            rejection_reason=workflow.rejection_reason,
            paid_date=workflow.paid_date,
            payment_reference=workflow.payment_reference,
            pending_manager_since=workflow.pending_manager_since,
            version=workflow.version,
            updated_at=workflow.updated_at,
        )


@dataclass
class TransitionResult:
    """Committed outcome of an engine operation.

    steps lists every (from, to) written, including engine-initiated ones.
    """

    state: WorkflowState
    steps: list[tuple[str, str]] = field(default_factory=list)
    side_effects: list[SideEffectOutcome] = field(default_factory=list)

    @property
    def side_effect_failures(self) -> list[SideEffectOutcome]:
        return [o for o in self.side_effects if o.failed]


@dataclass(frozen=True)
class BulkItemResult:
    """Per-invoice result of a bulk transition."""

    invoice_id: UUID
    ok: bool
    status: str | None = None
    code: str | None = None
    message: str | None = None


@dataclass
class _Loaded:
    invoice: Invoice
    workflow: InvoiceWorkflow
    extracted: ExtractedFields | None

    def snapshot(self) -> InvoiceSnapshot:
        return InvoiceSnapshot(
            invoice_id=self.invoice.invoice_id,
            family=self.invoice.family,
            submitter_user_id=self.invoice.submitter_user_id,
            manager_user_id=self.workflow.manager_user_id,
            status=self.workflow.status,
        )


class WorkflowService:
    """Applies guarded status transitions to the ledger.

    Every write goes through one compare-and-swap on (version, status), is
    recorded on the timeline in the same commit, and only then hands its
    side effects to the dispatcher.
    """

    def __init__(
        self,
        session: AsyncSession,
        dispatcher: SideEffectDispatcher | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.dispatcher = dispatcher
        self.clock = clock
        self.timeline = TimelineService(session)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_state(self, invoice_id: UUID) -> WorkflowState:
        loaded = await self._load(invoice_id)
        return WorkflowState.from_models(loaded.invoice, loaded.workflow)

    async def get_invoice(self, invoice_id: UUID) -> Invoice:
        """Load an invoice with its workflow and detail rows."""
        result = await self.session.execute(
            select(Invoice)
            .where(Invoice.invoice_id == invoice_id)
            .options(
                selectinload(Invoice.workflow),
                selectinload(Invoice.extracted_fields),
                selectinload(Invoice.contractor_fields),
            )
            .execution_options(populate_existing=True)
        )
        invoice = result.scalar_one_or_none()
        if invoice is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        return invoice

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def transition(
        self,
        invoice_id: UUID,
        actor: Actor,
        to_status: str | InvoiceStatus,
        fields: TransitionFields | None = None,
        expected_version: int | None = None,
    ) -> TransitionResult:
        """Move an invoice to to_status on behalf of actor.

        Raises the matching TransitionError subclass before any write if the
        guard refuses, ConflictError if the ledger changed since it was read.
        Side-effect failures are reported on the result, never raised.

        A contractor approval is re-labelled to pending_admin in the same
        commit. If the re-label is refused the approval still commits alone.
        """
        fields = fields or TransitionFields()
        target = to_status.value if isinstance(to_status, InvoiceStatus) else to_status

        loaded = await self._load(invoice_id)
        self._check_version(loaded.workflow, target, expected_version)

        contexts = [await self._record_transition(loaded, actor, target, fields)]

        if (
            loaded.invoice.family == InvoiceFamily.CONTRACTOR.value
            and target == InvoiceStatus.APPROVED_BY_MANAGER.value
        ):
            try:
                contexts.append(
                    await self._record_transition(
                        loaded,
                        Actor.system(),
                        InvoiceStatus.PENDING_ADMIN.value,
                        TransitionFields(),
                    )
                )
            except ConflictError:
                # The approval was rolled back with it
                raise
            except WorkflowError:
                logger.exception(
                    "Re-label of invoice %s to pending_admin refused", invoice_id
                )

        await self.session.commit()
        for ctx in contexts:
            self._log_transition(ctx)
        return await self._finish(invoice_id, contexts)

    async def bulk_transition(
        self,
        invoice_ids: list[UUID],
        actor: Actor,
        to_status: str | InvoiceStatus,
        fields: TransitionFields | None = None,
    ) -> list[BulkItemResult]:
        """Apply the same transition to many invoices independently."""
        unique = list(dict.fromkeys(invoice_ids))
        if not unique:
            raise ValidationError("No invoices given")
        if len(unique) > MAX_BULK:
            raise ValidationError(
                f"Bulk updates are limited to {MAX_BULK} invoices",
                context={"count": len(unique), "max": MAX_BULK},
            )

        results: list[BulkItemResult] = []
        for invoice_id in unique:
            try:
                outcome = await self.transition(invoice_id, actor, to_status, fields)
            except WorkflowError as e:
                await self.session.rollback()
                results.append(
                    BulkItemResult(invoice_id, ok=False, code=e.code, message=e.message)
                )
                continue
            results.append(
                BulkItemResult(invoice_id, ok=True, status=outcome.state.status)
            )

        failed = sum(1 for r in results if not r.ok)
        if failed:
            logger.info("Bulk %s: %d of %d failed", to_status, failed, len(results))
        return results

    # ------------------------------------------------------------------
    # Creation and assignment
    # ------------------------------------------------------------------

    async def create_invoice(self, actor: Actor, data: NewInvoice) -> TransitionResult:
        """Create an invoice in submitted, optionally sending it to a manager.

        Invoices of the other family have no manager or admission stage and
        move to ready_for_payment as a system transition in the same commit.
        """
        try:
            family = InvoiceFamily(data.family).value
        except ValueError:
            raise ValidationError(f"Unknown invoice family '{data.family}'") from None

        if actor.role in (Role.VIEWER, Role.SYSTEM) or actor.user_id is None:
            raise ForbiddenError(None, None, "You are not allowed to submit invoices")
        submitter_id = data.submitter_user_id or actor.user_id
        if submitter_id != actor.user_id and not actor.is_admin:
            raise ForbiddenError(None, None, "Only admin can submit on behalf of others")
        if await self.session.get(UserProfile, submitter_id) is None:
            raise NotFoundError(f"User {submitter_id} not found")
        if data.contractor and family != InvoiceFamily.CONTRACTOR.value:
            raise ValidationError("Contractor fields only apply to contractor invoices")
        self._check_keys(data.extracted, EXTRACTED_EDITABLE + ("needs_review",))
        self._check_keys(data.contractor, CONTRACTOR_EDITABLE)

        invoice = Invoice(
            family=family,
            submitter_user_id=submitter_id,
            department_id=data.department_id,
            program_id=data.program_id,
            currency=data.currency,
            service_description=data.service_description,
        )
        self.session.add(invoice)
        await self.session.flush()

        self.session.add(
            InvoiceWorkflow(
                invoice_id=invoice.invoice_id,
                status=InvoiceStatus.SUBMITTED.value,
                version=1,
                updated_at=self.clock(),
            )
        )
        self.session.add(ExtractedFields(invoice_id=invoice.invoice_id, **data.extracted))
        if family == InvoiceFamily.CONTRACTOR.value:
            self.session.add(
                ContractorFields(invoice_id=invoice.invoice_id, **data.contractor)
            )
        self.timeline.append(
            invoice.invoice_id,
            TimelineEventType.INVOICE_CREATED,
            actor.user_id,
            to_status=InvoiceStatus.SUBMITTED.value,
            payload={"family": family},
        )

        contexts: list[DispatchContext] = []
        if not InvoiceStateMachine.visits_manager_stage(family):
            await self.session.flush()
            loaded = await self._load(invoice.invoice_id)
            contexts.append(
                await self._record_transition(
                    loaded,
                    Actor.system(),
                    InvoiceStatus.READY_FOR_PAYMENT.value,
                    TransitionFields(),
                )
            )
        invoice_id = invoice.invoice_id
        await self.session.commit()
        logger.info("Invoice %s created (%s)", invoice_id, family)
        for ctx in contexts:
            self._log_transition(ctx)

        if data.manager_user_id is not None and InvoiceStateMachine.visits_manager_stage(
            family
        ):
            return await self.assign_manager(invoice_id, actor, data.manager_user_id)
        return await self._finish(invoice_id, contexts)

    async def assign_manager(
        self,
        invoice_id: UUID,
        actor: Actor,
        manager_user_id: UUID,
        expected_version: int | None = None,
    ) -> TransitionResult:
        """Assign or reassign the approving manager.

        A submitted invoice then moves to pending_manager as a system
        transition in the same commit.
        """
        loaded = await self._load(invoice_id)
        workflow = loaded.workflow
        status = workflow.status

        if not InvoiceStateMachine.visits_manager_stage(loaded.invoice.family):
            raise ValidationError("This invoice family has no manager stage")
        if not (actor.is_admin or actor.user_id == loaded.invoice.submitter_user_id):
            raise ForbiddenError(
                status, None, "Only the submitter or an admin can assign the manager"
            )
        if status not in _SUBMITTER_EDITABLE:
            raise ValidationError(
                "The manager can only be changed before approval",
                context={"status": status},
            )
        self._check_version(workflow, status, expected_version)

        manager = await self.session.get(UserProfile, manager_user_id)
        if manager is None or not manager.is_active:
            raise NotFoundError(f"Active user {manager_user_id} not found")
        if manager.role not in (Role.MANAGER.value, Role.ADMIN.value):
            raise ValidationError("The assigned user must be a manager or admin")
        if manager_user_id == loaded.invoice.submitter_user_id and manager.role != Role.ADMIN.value:
            raise ValidationError("The submitter cannot be the approving manager")

        previous = workflow.manager_user_id
        await self._compare_and_swap(
            loaded, status, {"manager_user_id": manager_user_id}
        )
        self.timeline.append(
            invoice_id,
            TimelineEventType.MANAGER_ASSIGNED,
            actor.user_id,
            payload={
                "from": str(previous) if previous else None,
                "to": str(manager_user_id),
            },
        )

        contexts: list[DispatchContext] = []
        if status == InvoiceStatus.SUBMITTED.value:
            loaded = await self._load(invoice_id)
            contexts.append(
                await self._record_transition(
                    loaded,
                    Actor.system(),
                    InvoiceStatus.PENDING_MANAGER.value,
                    TransitionFields(),
                )
            )
        await self.session.commit()
        for ctx in contexts:
            self._log_transition(ctx)
        return await self._finish(invoice_id, contexts)

    # ------------------------------------------------------------------
    # Data edits
    # ------------------------------------------------------------------

    async def edit_invoice(
        self,
        invoice_id: UUID,
        actor: Actor,
        changes: dict[str, Any],
        expected_version: int | None = None,
    ) -> TransitionResult:
        """Edit invoice data, re-opening a rejected invoice.

        Records one invoice_updated event with a {field: {from, to}} diff. A
        rejected invoice moves to pending_manager in the same commit, through
        the same guard; if the guard refuses, nothing is written.
        """
        self._check_keys(changes, INVOICE_EDITABLE + EXTRACTED_EDITABLE + CONTRACTOR_EDITABLE)
        loaded = await self._load(invoice_id)
        invoice, workflow = loaded.invoice, loaded.workflow
        status = workflow.status

        if status in _LOCKED:
            raise ValidationError("Paid or archived invoices cannot be edited")
        if not actor.is_admin:
            if actor.user_id != invoice.submitter_user_id:
                raise ForbiddenError(status, None, "Only the submitter or an admin can edit")
            if status not in _SUBMITTER_EDITABLE:
                raise ForbiddenError(status, None, "This invoice can no longer be edited")
        self._check_version(workflow, status, expected_version)

        contractor = None
        if any(k in CONTRACTOR_EDITABLE for k in changes):
            if invoice.family != InvoiceFamily.CONTRACTOR.value:
                raise ValidationError("Contractor fields only apply to contractor invoices")
            contractor = await self.session.get(ContractorFields, invoice_id)
            if contractor is None:
                contractor = ContractorFields(invoice_id=invoice_id)
                self.session.add(contractor)
        extracted = loaded.extracted
        if extracted is None and any(k in EXTRACTED_EDITABLE for k in changes):
            extracted = ExtractedFields(invoice_id=invoice_id)
            self.session.add(extracted)

        diff: dict[str, dict[str, Any]] = {}
        for key, value in changes.items():
            if key in INVOICE_EDITABLE:
                target: Any = invoice
            elif key in EXTRACTED_EDITABLE:
                target = extracted
            else:
                target = contractor
            old = getattr(target, key)
            if old == value or _jsonable(old) == _jsonable(value):
                continue
            diff[key] = {"from": _jsonable(old), "to": _jsonable(value)}
            setattr(target, key, value)

        if not diff:
            return await self._finish(invoice_id, [])

        resubmit = status == InvoiceStatus.REJECTED.value
        if resubmit:
            try:
                ctx = await self._record_transition(
                    loaded,
                    actor,
                    InvoiceStatus.PENDING_MANAGER.value,
                    TransitionFields(),
                    event_first=(TimelineEventType.INVOICE_UPDATED, {"changes": diff}),
                )
            except WorkflowError:
                await self.session.rollback()
                raise
            contexts = [ctx]
        else:
            await self._compare_and_swap(loaded, status, {})
            self.timeline.append(
                invoice_id,
                TimelineEventType.INVOICE_UPDATED,
                actor.user_id,
                payload={"changes": diff},
            )
            contexts = []

        await self.session.commit()
        logger.info("Invoice %s edited: %s", invoice_id, ", ".join(sorted(diff)))
        for ctx in contexts:
            self._log_transition(ctx)
        return await self._finish(invoice_id, contexts)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load(self, invoice_id: UUID) -> _Loaded:
        """Read the invoice, its ledger row and extracted fields fresh."""
        invoice = await self.session.get(Invoice, invoice_id, populate_existing=True)
        if invoice is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        result = await self.session.execute(
            select(InvoiceWorkflow)
            .where(InvoiceWorkflow.invoice_id == invoice_id)
            .execution_options(populate_existing=True)
        )
        workflow = result.scalar_one_or_none()
        if workflow is None:
            raise NotFoundError(f"Workflow for invoice {invoice_id} not found")
        extracted = await self.session.get(ExtractedFields, invoice_id)
        return _Loaded(invoice=invoice, workflow=workflow, extracted=extracted)

    def _check_version(
        self,
        workflow: InvoiceWorkflow,
        to_status: str | None,
        expected_version: int | None,
    ) -> None:
        if expected_version is not None and workflow.version != expected_version:
            raise ConflictError(
                workflow.status, to_status, expected_version, workflow.version
            )

    async def _record_transition(
        self,
        loaded: _Loaded,
        actor: Actor,
        to_status: str,
        fields: TransitionFields,
        event_first: tuple[str, dict[str, Any]] | None = None,
    ) -> DispatchContext:
        """Guard, compare-and-swap and stage the timeline. Does not commit."""
        workflow = loaded.workflow
        from_status = workflow.status
        extracted = loaded.extracted

        effective_approver = None
        if workflow.manager_user_id is not None:
            effective_approver = await DelegationResolver(self.session).effective_approver(
                workflow.manager_user_id, self.clock().date()
            )

        decision = evaluate_transition(
            actor,
            loaded.snapshot(),
            to_status,
            GuardInputs(
                rejection_reason=fields.rejection_reason,
                payment_reference=fields.payment_reference,
                paid_date=fields.paid_date,
                manager_confirmed_bank_details=fields.manager_confirmed
                or bool(extracted and extracted.manager_confirmed),
                needs_review=bool(extracted and extracted.needs_review),
            ),
            effective_approver=effective_approver,
        )
        if not decision.allowed:
            logger.info(
                "Transition %s -> %s on %s denied for %s: %s",
                from_status,
                to_status,
                workflow.invoice_id,
                actor.user_id,
                decision.reason.value if decision.reason else None,
            )
            raise decision.to_error(from_status, to_status)

        values = self._transition_values(from_status, to_status, fields)
        version = await self._compare_and_swap(loaded, from_status, values, to_status)

        if fields.manager_confirmed and extracted is not None:
            extracted.manager_confirmed = True

        if event_first is not None:
            event_type, event_payload = event_first
            self.timeline.append(
                workflow.invoice_id, event_type, actor.user_id, payload=event_payload
            )

        payload: dict[str, Any] = {"version": version}
        if values.get("rejection_reason"):
            payload["rejection_reason"] = values["rejection_reason"]
        if to_status == InvoiceStatus.PAID.value:
            payload["payment_reference"] = values["payment_reference"]
            payload["paid_date"] = values["paid_date"].isoformat()
        if (
            effective_approver is not None
            and effective_approver != workflow.manager_user_id
            and actor.user_id == effective_approver
        ):
            payload["on_behalf_of"] = str(workflow.manager_user_id)
        if actor.role == Role.SYSTEM:
            payload["system"] = True

        self.timeline.append(
            workflow.invoice_id,
            TimelineEventType.STATUS_CHANGE,
            actor.user_id,
            from_status=from_status,
            to_status=to_status,
            payload=payload,
        )

        return DispatchContext(
            invoice_id=workflow.invoice_id,
            family=loaded.invoice.family,
            from_status=from_status,
            to_status=to_status,
            version=version,
            actor=actor,
            occurred_at=self.clock(),
            rejection_reason=values.get("rejection_reason"),
            payment_reference=values.get("payment_reference"),
        )

    def _transition_values(
        self, from_status: str, to_status: str, fields: TransitionFields
    ) -> dict[str, Any]:
        """Ledger columns written alongside the new status."""
        values: dict[str, Any] = {"status": to_status}

        if to_status == InvoiceStatus.REJECTED.value:
            values["rejection_reason"] = (fields.rejection_reason or "").strip()
        else:
            values["rejection_reason"] = None

        if to_status == InvoiceStatus.PAID.value:
            values["paid_date"] = fields.paid_date
            values["payment_reference"] = (fields.payment_reference or "").strip()
        elif not InvoiceStateMachine.records_payment(to_status):
            values["paid_date"] = None
            values["payment_reference"] = None

        if to_status == InvoiceStatus.PENDING_MANAGER.value:
            values["pending_manager_since"] = self.clock().date()
        elif from_status == InvoiceStatus.PENDING_MANAGER.value:
            values["pending_manager_since"] = None

        return values

    async def _compare_and_swap(
        self,
        loaded: _Loaded,
        seen_status: str,
        values: dict[str, Any],
        to_status: str | None = None,
    ) -> int:
        """Write values if the row is unchanged since it was read.

        Returns the new version and refreshes loaded.workflow. On conflict
        the session is rolled back, which expires every loaded object.
        """
        invoice_id = loaded.workflow.invoice_id
        seen_version = loaded.workflow.version
        result = await self.session.execute(
            update(InvoiceWorkflow)
            .where(
                InvoiceWorkflow.invoice_id == invoice_id,
                InvoiceWorkflow.version == seen_version,
                InvoiceWorkflow.status == seen_status,
            )
            .values(version=seen_version + 1, updated_at=self.clock(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.session.rollback()
            current = await self.session.scalar(
                select(InvoiceWorkflow.version).where(
                    InvoiceWorkflow.invoice_id == invoice_id
                )
            )
            logger.info(
                "Invoice %s changed under a writer (v%d, now v%s)",
                invoice_id,
                seen_version,
                current,
            )
            raise ConflictError(seen_status, to_status, seen_version, current)

        refreshed = await self.session.execute(
            select(InvoiceWorkflow)
            .where(InvoiceWorkflow.invoice_id == invoice_id)
            .execution_options(populate_existing=True)
        )
        loaded.workflow = refreshed.scalar_one()
        return seen_version + 1

    async def _finish(
        self, invoice_id: UUID, contexts: list[DispatchContext]
    ) -> TransitionResult:
        """Dispatch side effects of committed transitions and build the result."""
        outcomes: list[SideEffectOutcome] = []
        if self.dispatcher is not None:
            for ctx in contexts:
                outcomes.extend(await self.dispatcher.dispatch(ctx))
        state = await self.get_state(invoice_id)
        return TransitionResult(
            state=state,
            steps=[(c.from_status, c.to_status) for c in contexts],
            side_effects=outcomes,
        )

    def _log_transition(self, ctx: DispatchContext) -> None:
        logger.info(
            "Invoice %s: %s -> %s (v%d) by %s",
            ctx.invoice_id,
            ctx.from_status,
            ctx.to_status,
            ctx.version,
            ctx.actor.user_id or "system",
        )

    @staticmethod
    def _check_keys(data: dict[str, Any], allowed: tuple[str, ...]) -> None:
        unknown = sorted(set(data) - set(allowed))
        if unknown:
            raise ValidationError(
                f"Unknown or read-only fields: {', '.join(unknown)}",
                context={"fields": unknown},
            )


def _jsonable(value: Any) -> Any:
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value
