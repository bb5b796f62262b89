"""SLA reminders for invoices waiting on a manager.

Read-only over the ledger: reminders never change status.
"""

from __future__ import annotations

import html
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from invoice_workflow.config import Settings, get_settings
from invoice_workflow.models import Delegation, ExtractedFields, InvoiceWorkflow, UserProfile
from invoice_workflow.notifications import templates
from invoice_workflow.notifications.base import EmailMessage, EmailSender
from invoice_workflow.services.delegation_resolver import resolve_effective_approver
from invoice_workflow.services.state_machine import InvoiceStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OverdueInvoice:
    invoice_id: UUID
    invoice_number: str | None
    pending_since: date


@dataclass
class ApproverReminder:
    """Overdue invoices waiting on one effective approver."""

    approver_user_id: UUID
    invoices: list[OverdueInvoice] = field(default_factory=list)


@dataclass(frozen=True)
class ReminderReport:
    approvers: int
    sent: int
    failed: int
    skipped: int


class ReminderService:
    """Finds overdue pending_manager invoices and reminds their approvers."""

    def __init__(
        self,
        session: AsyncSession,
        email_sender: EmailSender,
        settings: Settings | None = None,
    ):
        self.session = session
        self.email_sender = email_sender
        self.settings = settings or get_settings()

    async def find_overdue(
        self, today: date, sla_days: int | None = None
    ) -> list[ApproverReminder]:
        """Group overdue invoices by effective approver on today."""
        days = self.settings.manager_sla_days if sla_days is None else sla_days
        cutoff = today - timedelta(days=days)

        result = await self.session.execute(
            select(
                InvoiceWorkflow.invoice_id,
                InvoiceWorkflow.manager_user_id,
                InvoiceWorkflow.pending_manager_since,
                ExtractedFields.invoice_number,
            )
            .outerjoin(
                ExtractedFields,
                ExtractedFields.invoice_id == InvoiceWorkflow.invoice_id,
            )
            .where(
                InvoiceWorkflow.status == InvoiceStatus.PENDING_MANAGER.value,
                InvoiceWorkflow.manager_user_id.is_not(None),
                InvoiceWorkflow.pending_manager_since <= cutoff,
            )
            .order_by(InvoiceWorkflow.pending_manager_since)
        )
        rows = result.all()
        if not rows:
            return []

        managers = {row.manager_user_id for row in rows}
        delegations = (
            await self.session.execute(
                select(Delegation).where(Delegation.delegator_user_id.in_(managers))
            )
        ).scalars().all()

        grouped: dict[UUID, ApproverReminder] = {}
        for row in rows:
            approver = resolve_effective_approver(row.manager_user_id, today, delegations)
            reminder = grouped.setdefault(approver, ApproverReminder(approver))
            reminder.invoices.append(
                OverdueInvoice(row.invoice_id, row.invoice_number, row.pending_manager_since)
            )
        return list(grouped.values())

    async def send_sla_reminders(
        self, today: date, sla_days: int | None = None
    ) -> ReminderReport:
        """Send one reminder per approver with overdue invoices."""
        days = self.settings.manager_sla_days if sla_days is None else sla_days
        reminders = await self.find_overdue(today, days)
        sent = failed = skipped = 0

        for reminder in reminders:
            profile = await self.session.get(UserProfile, reminder.approver_user_id)
            if profile is None or not profile.is_active or not profile.wants_update_emails:
                skipped += 1
                continue

            items = "".join(
                f'<li><a href="{self.settings.app_url}/invoices/{inv.invoice_id}">'
                f"{html.escape(inv.invoice_number or str(inv.invoice_id))}</a> "
                f"(since {inv.pending_since.isoformat()})</li>"
                for inv in reminder.invoices
            )
            subject, body = templates.render(
                "sla_reminder",
                count=len(reminder.invoices),
                sla_days=days,
                items=items,
            )
            message = EmailMessage(
                to=(profile.email,),
                subject=subject,
                html=body,
                idempotency_key=f"sla_reminder:{reminder.approver_user_id}:{today.isoformat()}",
            )
            try:
                result = await self.email_sender.send(message)
            except Exception:
                logger.exception("SLA reminder to %s failed", profile.email)
                failed += 1
                continue
            if result.success:
                sent += 1
            else:
                logger.error("SLA reminder to %s failed: %s", profile.email, result.error)
                failed += 1

        logger.info(
            "SLA reminders for %s: %d sent, %d failed, %d skipped",
            today,
            sent,
            failed,
            skipped,
        )
        return ReminderReport(
            approvers=len(reminders), sent=sent, failed=failed, skipped=skipped
        )
