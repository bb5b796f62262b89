"""Side-effect dispatcher for committed invoice transitions.

Provides:
- A declarative table of effects per (family, from-status, to-status)
- At-least-once delivery de-duplicated by (invoice_id, effect_key)
- Recipient resolution from roles at send time
- Error isolation (a failing effect never affects the ledger or other effects)

The dispatcher runs strictly after the transition has committed. It records
its own progress in side_effect_dispatch so a retry, or a manual re-trigger
of the booking form, can tell "already sent" from "failed, send again".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Callable, Union
from uuid import UUID

from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from invoice_workflow.config import Settings, get_settings
from invoice_workflow.models import (
    ContractorFields,
    EmailStageSetting,
    ExtractedFields,
    Invoice,
    InvoiceWorkflow,
    OperationsRoomMember,
    SideEffectDispatch,
    TimelineEvent,
    UserProfile,
    utcnow,
)
from invoice_workflow.notifications import templates
from invoice_workflow.notifications.base import (
    Attachment,
    BookingFormData,
    BookingFormRenderer,
    EmailMessage,
    EmailSender,
    SendResult,
)
from invoice_workflow.services.delegation_resolver import DelegationResolver
from invoice_workflow.services.errors import (
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from invoice_workflow.services.state_machine import (
    InvoiceFamily,
    InvoiceStateMachine,
    InvoiceStatus,
)
from invoice_workflow.services.timeline_service import TimelineEventType, TimelineService
from invoice_workflow.services.transition_guard import Actor

logger = logging.getLogger(__name__)


class RecipientRole(str, Enum):
    """Roles a notification can be addressed to."""

    SUBMITTER = "submitter"
    MANAGER = "manager"
    ADMIN = "admin"
    FINANCE = "finance"
    OPERATIONS_ROOM = "operations_room"


@dataclass(frozen=True)
class Notify:
    """Send a templated notification to role-resolved recipients."""

    template_key: str
    recipients: tuple[RecipientRole, ...]

    def effect_key(self, version: int) -> str:
        # One send per ledger write: a second rejection is a new notification.
        return f"{self.template_key}:v{version}"


@dataclass(frozen=True)
class GenerateAndSendBookingForm:
    """Generate the booking form and send it to the approver and operations."""

    def effect_key(self, version: int) -> str:
        return BOOKING_FORM_EFFECT_KEY


Effect = Union[Notify, GenerateAndSendBookingForm]

BOOKING_FORM_EFFECT_KEY = "booking_form"

# A pending claim older than this is treated as abandoned
CLAIM_LEASE = timedelta(minutes=10)


@dataclass(frozen=True)
class EffectRule:
    """Effects fired when a transition matches. None matches anything."""

    families: frozenset[str] | None
    from_statuses: frozenset[str] | None
    to_status: str
    effects: tuple[Effect, ...]

    def matches(self, family: str, from_status: str, to_status: str) -> bool:
        return (
            self.to_status == to_status
            and (self.families is None or family in self.families)
            and (self.from_statuses is None or from_status in self.from_statuses)
        )


_S = InvoiceStatus
_R = RecipientRole
_MANAGED = frozenset({InvoiceFamily.GUEST.value, InvoiceFamily.CONTRACTOR.value})

EFFECT_TABLE: tuple[EffectRule, ...] = (
    EffectRule(
        _MANAGED, frozenset({_S.SUBMITTED.value}), _S.PENDING_MANAGER.value,
        (Notify("manager_assigned", (_R.MANAGER,)),),
    ),
    EffectRule(
        _MANAGED, frozenset({_S.REJECTED.value}), _S.PENDING_MANAGER.value,
        (Notify("resubmitted", (_R.MANAGER,)),),
    ),
    EffectRule(
        _MANAGED, frozenset({_S.PENDING_MANAGER.value}), _S.APPROVED_BY_MANAGER.value,
        (Notify("manager_approved", (_R.SUBMITTER, _R.ADMIN, _R.OPERATIONS_ROOM)),),
    ),
    EffectRule(
        frozenset({InvoiceFamily.CONTRACTOR.value}),
        frozenset({_S.PENDING_MANAGER.value}),
        _S.APPROVED_BY_MANAGER.value,
        (GenerateAndSendBookingForm(),),
    ),
    EffectRule(
        None, None, _S.REJECTED.value,
        (Notify("manager_rejected", (_R.SUBMITTER,)),),
    ),
    EffectRule(
        None, None, _S.READY_FOR_PAYMENT.value,
        (Notify("ready_for_payment", (_R.SUBMITTER, _R.FINANCE)),),
    ),
    EffectRule(
        None, frozenset({_S.READY_FOR_PAYMENT.value}), _S.PAID.value,
        (Notify("paid", (_R.SUBMITTER, _R.ADMIN)),),
    ),
)


def effects_for(family: str, from_status: str, to_status: str) -> list[Effect]:
    """All effects for a transition, in table order."""
    effects: list[Effect] = []
    for rule in EFFECT_TABLE:
        if rule.matches(family, from_status, to_status):
            effects.extend(rule.effects)
    return effects


@dataclass(frozen=True)
class DispatchContext:
    """Plain values describing the committed transition."""

    invoice_id: UUID
    family: str
    from_status: str
    to_status: str
    version: int
    actor: Actor
    occurred_at: datetime
    rejection_reason: str | None = None
    payment_reference: str | None = None


class OutcomeStatus(str, Enum):
    SENT = "sent"
    SKIPPED = "skipped"
    IN_PROGRESS = "in_progress"
    FAILED = "failed"
    DISABLED = "disabled"
    NO_RECIPIENTS = "no_recipients"


@dataclass(frozen=True)
class SideEffectOutcome:
    """What happened to one effect."""

    effect_key: str
    status: OutcomeStatus
    error: str | None = None

    @property
    def skipped(self) -> bool:
        return self.status == OutcomeStatus.SKIPPED

    @property
    def failed(self) -> bool:
        return self.status == OutcomeStatus.FAILED


class RecipientResolver:
    """Resolves recipient roles to email addresses at send time."""

    def __init__(self, session: AsyncSession, today: Callable[[], date]):
        self.session = session
        self.today = today

    async def resolve(
        self, roles: tuple[RecipientRole, ...], invoice_id: UUID
    ) -> list[str]:
        invoice = await self.session.get(Invoice, invoice_id)
        workflow = await self.session.get(InvoiceWorkflow, invoice_id)
        if invoice is None or workflow is None:
            return []

        user_ids: list[UUID] = []
        for role in roles:
            user_ids.extend(await self._user_ids_for(role, invoice, workflow))

        if not user_ids:
            return []
        result = await self.session.execute(
            select(UserProfile).where(
                UserProfile.user_id.in_(set(user_ids)),
                UserProfile.is_active.is_(True),
                UserProfile.wants_update_emails.is_(True),
            )
        )
        by_id = {p.user_id: p.email for p in result.scalars().all()}

        emails: list[str] = []
        for user_id in user_ids:
            email = by_id.get(user_id)
            if email and email not in emails:
                emails.append(email)
        return emails

    async def _user_ids_for(
        self, role: RecipientRole, invoice: Invoice, workflow: InvoiceWorkflow
    ) -> list[UUID]:
        if role == RecipientRole.SUBMITTER:
            return [invoice.submitter_user_id]
        if role == RecipientRole.MANAGER:
            if workflow.manager_user_id is None:
                return []
            approver = await DelegationResolver(self.session).effective_approver(
                workflow.manager_user_id, self.today()
            )
            return [approver] if approver == workflow.manager_user_id else [
                approver,
                workflow.manager_user_id,
            ]
        if role == RecipientRole.OPERATIONS_ROOM:
            result = await self.session.execute(select(OperationsRoomMember.user_id))
            return list(result.scalars().all())

        result = await self.session.execute(
            select(UserProfile.user_id).where(UserProfile.role == role.value)
        )
        return list(result.scalars().all())


class SideEffectDispatcher:
    """Executes the effects of committed transitions.

    dispatch() never raises: every failure is logged and reported as a
    SideEffectOutcome so the caller can surface a resend affordance.
    """

    def __init__(
        self,
        session: AsyncSession,
        email_sender: EmailSender,
        renderer: BookingFormRenderer,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.email_sender = email_sender
        self.renderer = renderer
        self.settings = settings or get_settings()
        self.clock = clock
        self.recipients = RecipientResolver(session, lambda: self.clock().date())

    async def dispatch(self, ctx: DispatchContext) -> list[SideEffectOutcome]:
        """Run every effect the table lists for this transition."""
        outcomes: list[SideEffectOutcome] = []
        for effect in effects_for(ctx.family, ctx.from_status, ctx.to_status):
            effect_key = effect.effect_key(ctx.version)
            try:
                if isinstance(effect, Notify):
                    outcome = await self._notify(effect, ctx)
                else:
                    outcome = await self._send_booking_form(
                        ctx.invoice_id, ctx.actor.user_id, ctx.occurred_at
                    )
            except Exception as e:
                logger.exception(
                    "Side effect %s failed for invoice %s", effect_key, ctx.invoice_id
                )
                await self.session.rollback()
                outcome = SideEffectOutcome(effect_key, OutcomeStatus.FAILED, str(e))
            outcomes.append(outcome)
        return outcomes

    async def trigger_booking_form(self, invoice_id: UUID, actor: Actor) -> SideEffectOutcome:
        """Manually (re)trigger the booking form for an approved contractor invoice.

        Returns a skipped outcome when both emails already went out, and
        in_progress while another dispatcher holds a live claim.
        """
        if not actor.is_admin:
            raise ForbiddenError(None, None, "Only admin can trigger the booking form")

        invoice = await self.session.get(Invoice, invoice_id)
        if invoice is None or invoice.family != InvoiceFamily.CONTRACTOR.value:
            raise NotFoundError(f"Contractor invoice {invoice_id} not found")
        workflow = await self.session.get(InvoiceWorkflow, invoice_id)
        eligible = {s.value for s in InvoiceStateMachine.BOOKING_FORM_ELIGIBLE}
        if workflow is None or workflow.status not in eligible:
            raise ValidationError(
                "Invoice must be approved before the booking form can be sent",
                context={"status": workflow.status if workflow else None},
            )

        approver_id = await self._approving_user(invoice_id) or workflow.manager_user_id
        try:
            return await self._send_booking_form(
                invoice_id, approver_id or actor.user_id, self.clock()
            )
        except Exception as e:
            logger.exception("Manual booking form trigger failed for %s", invoice_id)
            await self.session.rollback()
            return SideEffectOutcome(BOOKING_FORM_EFFECT_KEY, OutcomeStatus.FAILED, str(e))

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def _notify(self, effect: Notify, ctx: DispatchContext) -> SideEffectOutcome:
        effect_key = effect.effect_key(ctx.version)
        if not await self.stage_enabled(effect.template_key):
            return SideEffectOutcome(effect_key, OutcomeStatus.DISABLED)

        to = await self.recipients.resolve(effect.recipients, ctx.invoice_id)
        if not to:
            return SideEffectOutcome(effect_key, OutcomeStatus.NO_RECIPIENTS)

        record, held = await self._claim(ctx.invoice_id, effect_key)
        if record is None:
            return SideEffectOutcome(effect_key, held)

        extracted = await self.session.get(ExtractedFields, ctx.invoice_id)
        subject, body = templates.render(
            effect.template_key,
            invoice_number=extracted.invoice_number if extracted else None,
            link=self._link(ctx.invoice_id),
            reason=ctx.rejection_reason or "",
            payment_reference=ctx.payment_reference or "",
        )
        result = await self._send(
            EmailMessage(
                to=tuple(to),
                subject=subject,
                html=body,
                idempotency_key=f"{ctx.invoice_id}:{effect_key}",
            )
        )
        if result.success:
            await self._finish(record, "completed")
            return SideEffectOutcome(effect_key, OutcomeStatus.SENT)
        await self._finish(record, "failed", result.error)
        return SideEffectOutcome(effect_key, OutcomeStatus.FAILED, result.error)

    async def stage_enabled(self, stage_key: str) -> bool:
        setting = await self.session.get(EmailStageSetting, stage_key)
        return setting is None or setting.enabled

    # ------------------------------------------------------------------
    # Booking form
    # ------------------------------------------------------------------

    async def _send_booking_form(
        self,
        invoice_id: UUID,
        approver_id: UUID | None,
        approved_at: datetime,
    ) -> SideEffectOutcome:
        record, held = await self._claim(invoice_id, BOOKING_FORM_EFFECT_KEY)
        if record is None:
            return SideEffectOutcome(BOOKING_FORM_EFFECT_KEY, held)

        approver = await self.session.get(UserProfile, approver_id) if approver_id else None
        approver_name = approver.full_name if approver else "Approver"
        try:
            data = await self._booking_form_data(invoice_id, approver_name, approved_at)
            document = self.renderer.render(data)
        except Exception as e:
            logger.exception("Booking form generation failed for %s", invoice_id)
            await self._finish(record, "failed", f"generation: {e}")
            return SideEffectOutcome(BOOKING_FORM_EFFECT_KEY, OutcomeStatus.FAILED, str(e))

        attachment = Attachment(filename=f"booking-form-{invoice_id}.pdf", content=document)
        key = f"{invoice_id}:{BOOKING_FORM_EFFECT_KEY}"
        errors: list[str] = []

        if record.email_a_sent_at is None:
            if approver is None or not approver.email:
                errors.append("Email A: approver has no email address")
            else:
                subject, body = templates.render(
                    "booking_form_approver", name=data.name
                )
                result = await self._send(
                    EmailMessage(
                        to=(approver.email,),
                        subject=subject,
                        html=body,
                        idempotency_key=f"{key}:a",
                        attachments=(attachment,),
                    )
                )
                if result.success:
                    record.email_a_sent_at = self.clock()
                else:
                    errors.append(f"Email A: {result.error}")

        if record.email_b_sent_at is None:
            subject, body = templates.render(
                "booking_form_operations", name=data.name, approver_name=approver_name
            )
            result = await self._send(
                EmailMessage(
                    to=(self.settings.operations_email,),
                    subject=subject,
                    html=body,
                    idempotency_key=f"{key}:b",
                    attachments=(attachment,),
                )
            )
            if result.success:
                record.email_b_sent_at = self.clock()
            else:
                errors.append(f"Email B: {result.error}")

        if errors:
            await self._finish(record, "failed", "; ".join(errors))
            return SideEffectOutcome(
                BOOKING_FORM_EFFECT_KEY, OutcomeStatus.FAILED, "; ".join(errors)
            )

        TimelineService(self.session).append(
            invoice_id,
            TimelineEventType.BOOKING_FORM_SENT,
            approver_id,
            payload={"approver_name": approver_name},
        )
        await self._finish(record, "completed")
        return SideEffectOutcome(BOOKING_FORM_EFFECT_KEY, OutcomeStatus.SENT)

    async def _booking_form_data(
        self, invoice_id: UUID, approver_name: str, approved_at: datetime
    ) -> BookingFormData:
        invoice = await self.session.get(Invoice, invoice_id)
        fields = await self.session.get(ContractorFields, invoice_id)
        if invoice is None or fields is None:
            raise ValueError("Could not load contractor invoice data")

        contractor = fields.contractor_name or "-"
        company = fields.company_name or "-"
        if company != "-":
            name = f"{company} {contractor if contractor != '-' else ''}".strip()
        else:
            name = contractor

        days = fields.service_days_count or 0
        rate = fields.service_rate_per_day or Decimal("0")
        additional = fields.additional_cost or Decimal("0")

        month = fields.service_month or "-"
        if month != "-" and not any(ch.isdigit() for ch in month):
            month = f"{month} {approved_at.year}"

        return BookingFormData(
            name=name,
            service_description=invoice.service_description or "-",
            amount=rate * days + additional,
            department=str(invoice.department_id) if invoice.department_id else "-",
            number_of_days=days,
            month=month,
            service_rate_per_day=rate,
            additional_cost=additional,
            approver_name=approver_name,
            booked_by=fields.booked_by or "-",
            approval_date=approved_at.strftime("%d/%m/%Y"),
        )

    async def _approving_user(self, invoice_id: UUID) -> UUID | None:
        """The actor of the most recent manager approval, if any."""
        result = await self.session.execute(
            select(TimelineEvent.actor_user_id)
            .where(
                TimelineEvent.invoice_id == invoice_id,
                TimelineEvent.event_type == TimelineEventType.STATUS_CHANGE,
                TimelineEvent.to_status == InvoiceStatus.APPROVED_BY_MANAGER.value,
            )
            .order_by(TimelineEvent.timeline_event_id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Idempotency records
    # ------------------------------------------------------------------

    async def _claim(
        self, invoice_id: UUID, effect_key: str
    ) -> tuple[SideEffectDispatch | None, OutcomeStatus]:
        """Claim the right to run an effect.

        Returns the claimed record, or None with SKIPPED when the effect
        already completed and IN_PROGRESS while another dispatcher holds a
        live claim. A failed record, or a pending one past CLAIM_LEASE, is
        re-claimed so a retry can finish it.
        """
        existing = (
            await self.session.execute(
                select(SideEffectDispatch)
                .where(
                    SideEffectDispatch.invoice_id == invoice_id,
                    SideEffectDispatch.effect_key == effect_key,
                )
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()

        if existing is not None:
            if existing.status == "completed":
                return None, OutcomeStatus.SKIPPED
            now = self.clock()
            previous = existing.status
            if previous == "pending":
                reclaimable = and_(
                    SideEffectDispatch.status == "pending",
                    SideEffectDispatch.updated_at < now - CLAIM_LEASE,
                )
            else:
                reclaimable = SideEffectDispatch.status == "failed"
            result = await self.session.execute(
                update(SideEffectDispatch)
                .where(SideEffectDispatch.dispatch_id == existing.dispatch_id, reclaimable)
                .values(status="pending", updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await self.session.rollback()
                return None, OutcomeStatus.IN_PROGRESS
            await self.session.commit()
            await self.session.refresh(existing)
            if previous == "pending":
                logger.warning(
                    "Re-claimed abandoned side effect %s", existing.idempotency_key
                )
            return existing, OutcomeStatus.SENT

        record = SideEffectDispatch(
            invoice_id=invoice_id,
            effect_key=effect_key,
            status="pending",
            updated_at=self.clock(),
        )
        self.session.add(record)
        try:
            await self.session.commit()
        except IntegrityError:
            # Another dispatcher claimed it first
            await self.session.rollback()
            return None, OutcomeStatus.IN_PROGRESS
        return record, OutcomeStatus.SENT

    async def _finish(
        self, record: SideEffectDispatch, status: str, errors: str | None = None
    ) -> None:
        record.status = status
        record.errors = errors
        await self.session.commit()
        if status == "failed":
            logger.error(
                "Side effect %s failed: %s", record.idempotency_key, errors
            )

    async def _send(self, message: EmailMessage) -> SendResult:
        try:
            return await self.email_sender.send(message)
        except Exception as e:
            logger.exception("Email transport error for %s", message.idempotency_key)
            return SendResult(success=False, error=str(e))

    def _link(self, invoice_id: UUID) -> str:
        return f"{self.settings.app_url}/invoices/{invoice_id}"
