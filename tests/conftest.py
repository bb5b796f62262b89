"""Pytest fixtures for invoice workflow tests."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import AsyncGenerator, Awaitable, Callable
from uuid import UUID, uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from invoice_workflow.config import Settings
from invoice_workflow.models import Base, OperationsRoomMember, UserProfile
from invoice_workflow.notifications import PlainTextBookingFormRenderer, StubEmailSender
from invoice_workflow.services.actor_service import load_actor
from invoice_workflow.services.dispatcher import SideEffectDispatcher
from invoice_workflow.services.transition_guard import Actor
from invoice_workflow.services.workflow_service import NewInvoice, WorkflowService

# Use in-memory SQLite for tests (with async support)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

FIXED_NOW = datetime(2024, 5, 15, 10, 0, tzinfo=timezone.utc)
TODAY = FIXED_NOW.date()

TEST_SETTINGS = Settings(
    database_url=TEST_DATABASE_URL,
    host="127.0.0.1",
    port=8000,
    debug=False,
    log_level="DEBUG",
    app_url="https://invoices.test",
    email_from="Invoices <noreply@invoices.test>",
    operations_email="operations@invoices.test",
    manager_sla_days=5,
)


def fixed_clock() -> datetime:
    return FIXED_NOW


@pytest.fixture
async def engine():
    """Create a fresh in-memory database per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
async def users(session: AsyncSession) -> dict[str, UserProfile]:
    """Create one user per role, plus a backup manager and an ops-room member."""
    specs = [
        ("admin", "Ada Admin", "admin"),
        ("manager", "Max Manager", "manager"),
        ("backup", "Bea Backup", "manager"),
        ("finance", "Fin Finance", "finance"),
        ("operations", "Olu Operations", "operations"),
        ("ops_member", "Oren Member", "submitter"),
        ("submitter", "Sam Submitter", "submitter"),
        ("other_submitter", "Sol Submitter", "submitter"),
        ("viewer", "Vic Viewer", "viewer"),
    ]
    profiles = {}
    for key, name, role in specs:
        profile = UserProfile(
            user_id=uuid4(),
            full_name=name,
            email=f"{key}@invoices.test",
            role=role,
        )
        session.add(profile)
        profiles[key] = profile
    await session.flush()
    session.add(OperationsRoomMember(user_id=profiles["ops_member"].user_id))
    await session.commit()
    return profiles


@pytest.fixture
async def actors(session: AsyncSession, users: dict[str, UserProfile]) -> dict[str, Actor]:
    return {key: await load_actor(session, profile.user_id) for key, profile in users.items()}


@pytest.fixture
def sender() -> StubEmailSender:
    return StubEmailSender()


@pytest.fixture
def dispatcher(session: AsyncSession, sender: StubEmailSender) -> SideEffectDispatcher:
    return SideEffectDispatcher(
        session,
        sender,
        PlainTextBookingFormRenderer(),
        TEST_SETTINGS,
        clock=fixed_clock,
    )


@pytest.fixture
def workflow(session: AsyncSession, dispatcher: SideEffectDispatcher) -> WorkflowService:
    return WorkflowService(session, dispatcher, clock=fixed_clock)


CreateInvoice = Callable[..., Awaitable[UUID]]


@pytest.fixture
def create_invoice(
    workflow: WorkflowService,
    actors: dict[str, Actor],
    users: dict[str, UserProfile],
) -> CreateInvoice:
    """Factory: submit an invoice as the submitter, assigned to the manager."""

    async def _create(
        family: str = "guest",
        submitter: str = "submitter",
        manager: str | None = "manager",
        extracted: dict | None = None,
        contractor: dict | None = None,
    ) -> UUID:
        result = await workflow.create_invoice(
            actors[submitter],
            NewInvoice(
                family=family,
                manager_user_id=users[manager].user_id if manager else None,
                service_description="Studio guest appearance",
                extracted=extracted or {"invoice_number": "INV-001"},
                contractor=contractor or {},
            ),
        )
        return result.state.invoice_id

    return _create
