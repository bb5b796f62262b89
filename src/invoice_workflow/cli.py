"""Invoice workflow command line interface.

Usage:
    python -m invoice_workflow.cli serve
    python -m invoice_workflow.cli init-db
    python -m invoice_workflow.cli sla-reminders [--date 2024-05-01] [--sla-days 5]
    python -m invoice_workflow.cli trigger-booking-form --invoice-id X --actor-id Y
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import date
from typing import Callable
from uuid import UUID

from invoice_workflow.config import configure_logging, get_settings
from invoice_workflow.database import create_all, dispose_db, get_session
from invoice_workflow.notifications import get_booking_form_renderer, get_email_sender
from invoice_workflow.services.actor_service import load_actor
from invoice_workflow.services.dispatcher import OutcomeStatus, SideEffectDispatcher
from invoice_workflow.services.errors import WorkflowError
from invoice_workflow.services.reminder_service import ReminderService


def parse_uuid(s: str) -> UUID:
    """Parse UUID string."""
    return UUID(s)


class WorkflowCli:
    """Invoice workflow command line interface."""

    def __init__(self) -> None:
        self.parser = self._build_parser()

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="python -m invoice_workflow.cli",
            description="Invoice workflow operational tools",
        )
        parser.add_argument("--log-level", help="Override LOG_LEVEL")
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        subparsers.add_parser("serve", help="Run the HTTP API")
        subparsers.add_parser("init-db", help="Create database tables")

        reminders = subparsers.add_parser(
            "sla-reminders",
            help="Remind approvers about invoices pending past the SLA",
        )
        reminders.add_argument(
            "--date",
            type=date.fromisoformat,
            default=None,
            help="Reference date (default: today)",
        )
        reminders.add_argument(
            "--sla-days",
            type=int,
            default=None,
            help="Days before an invoice is overdue (default: MANAGER_SLA_DAYS)",
        )

        trigger = subparsers.add_parser(
            "trigger-booking-form",
            help="Send the booking form for an approved contractor invoice",
        )
        trigger.add_argument(
            "--invoice-id", type=parse_uuid, required=True, help="Invoice UUID"
        )
        trigger.add_argument(
            "--actor-id", type=parse_uuid, required=True, help="Admin user UUID"
        )

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)
        configure_logging(parsed.log_level)

        if not parsed.command:
            self.parser.print_help()
            return 1

        handlers: dict[str, Callable[[argparse.Namespace], int]] = {
            "serve": self._cmd_serve,
            "init-db": self._cmd_init_db,
            "sla-reminders": self._cmd_sla_reminders,
            "trigger-booking-form": self._cmd_trigger_booking_form,
        }
        handler = handlers.get(parsed.command)
        if handler:
            return handler(parsed)

        print(f"Unknown command: {parsed.command}", file=sys.stderr)
        return 1

    def _cmd_serve(self, args: argparse.Namespace) -> int:
        from invoice_workflow.__main__ import main as serve

        serve()
        return 0

    def _cmd_init_db(self, args: argparse.Namespace) -> int:
        async def _run() -> None:
            try:
                await create_all()
            finally:
                await dispose_db()

        asyncio.run(_run())
        print("Database tables created")
        return 0

    def _cmd_sla_reminders(self, args: argparse.Namespace) -> int:
        today = args.date or date.today()

        async def _run() -> int:
            try:
                async with get_session() as session:
                    service = ReminderService(session, get_email_sender(), get_settings())
                    report = await service.send_sla_reminders(today, args.sla_days)
            finally:
                await dispose_db()
            print(
                f"SLA reminders for {today}: {report.approvers} approver(s), "
                f"{report.sent} sent, {report.failed} failed, {report.skipped} skipped"
            )
            return 1 if report.failed else 0

        return asyncio.run(_run())

    def _cmd_trigger_booking_form(self, args: argparse.Namespace) -> int:
        async def _run() -> int:
            try:
                async with get_session() as session:
                    actor = await load_actor(session, args.actor_id)
                    dispatcher = SideEffectDispatcher(
                        session,
                        get_email_sender(),
                        get_booking_form_renderer(),
                        get_settings(),
                    )
                    outcome = await dispatcher.trigger_booking_form(args.invoice_id, actor)
            except WorkflowError as e:
                print(f"ERROR [{e.code}]: {e.message}", file=sys.stderr)
                return 1
            finally:
                await dispose_db()

            if outcome.failed:
                print(f"Booking form failed: {outcome.error}", file=sys.stderr)
                return 1
            if outcome.status == OutcomeStatus.IN_PROGRESS:
                print("Booking form is being sent by another worker")
            elif outcome.skipped:
                print("Booking form already sent")
            else:
                print("Booking form sent")
            return 0

        return asyncio.run(_run())


def main() -> int:
    """CLI entry point."""
    cli = WorkflowCli()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
