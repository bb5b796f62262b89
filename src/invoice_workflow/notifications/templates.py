"""Email templates for workflow notifications."""

from __future__ import annotations

import html
from dataclasses import dataclass
from typing import Any

APP_NAME = "Invoice Approval Workflow"


@dataclass(frozen=True)
class EmailTemplate:
    subject: str
    body: str


TEMPLATES: dict[str, EmailTemplate] = {
    "manager_assigned": EmailTemplate(
        subject="[{app}] Invoice awaiting your approval",
        body="<p>An invoice{number} has been assigned to you for approval.</p>"
        '<p><a href="{link}">Review invoice</a></p>',
    ),
    "manager_approved": EmailTemplate(
        subject="[{app}] Invoice approved by manager",
        body="<p>An invoice{number} has been approved by the manager and is "
        "pending admin review.</p>"
        '<p><a href="{link}">View invoice</a></p>',
    ),
    "manager_rejected": EmailTemplate(
        subject="[{app}] Invoice rejected",
        body="<p>Your invoice{number} has been rejected.</p>"
        "<p><strong>Reason:</strong> {reason}</p>"
        '<p><a href="{link}">Resubmit invoice</a></p>',
    ),
    "resubmitted": EmailTemplate(
        subject="[{app}] Invoice resubmitted",
        body="<p>An invoice{number} has been corrected and resubmitted for "
        "your approval.</p>"
        '<p><a href="{link}">Review invoice</a></p>',
    ),
    "ready_for_payment": EmailTemplate(
        subject="[{app}] Invoice ready for payment",
        body="<p>An invoice{number} has been marked ready for payment.</p>"
        '<p><a href="{link}">View invoice</a></p>',
    ),
    "paid": EmailTemplate(
        subject="[{app}] Invoice paid",
        body="<p>Invoice{number} has been marked as paid (ref: {payment_reference}).</p>"
        '<p><a href="{link}">View invoice</a></p>',
    ),
    "sla_reminder": EmailTemplate(
        subject="[{app}] {count} invoice(s) awaiting your approval",
        body="<p>The following invoices have been pending your approval for "
        "more than {sla_days} days:</p><ul>{items}</ul>",
    ),
    "booking_form_approver": EmailTemplate(
        subject="[{app}] Booking form: {name}",
        body="<p>You approved the contractor invoice for {name}. "
        "The booking form is attached.</p>",
    ),
    "booking_form_operations": EmailTemplate(
        subject="[{app}] Booking form: {name}",
        body="<p>{approver_name} approved the contractor invoice for {name}. "
        "The booking form is attached.</p>",
    ),
}


def render(template_key: str, **context: Any) -> tuple[str, str]:
    """Render a template to (subject, html). Context values are HTML-escaped."""
    template = TEMPLATES[template_key]
    invoice_number = context.pop("invoice_number", None)
    safe = {
        key: value if key == "items" else html.escape(str(value))
        for key, value in context.items()
    }
    safe.setdefault("app", APP_NAME)
    safe["number"] = f" (#{html.escape(invoice_number)})" if invoice_number else ""
    return template.subject.format(**safe), template.body.format(**safe)
