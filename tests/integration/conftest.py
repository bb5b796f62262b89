"""Integration test fixtures: the FastAPI app over the test database."""

from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from invoice_workflow.api.app import create_app
from invoice_workflow.api.dependencies import (
    get_app_settings,
    get_db_session,
    get_renderer,
    get_sender,
)
from invoice_workflow.models import UserProfile
from invoice_workflow.notifications import PlainTextBookingFormRenderer

from ..conftest import TEST_SETTINGS


def as_user(user: UserProfile) -> dict[str, str]:
    """Request headers identifying the acting user."""
    return {"X-User-ID": str(user.user_id)}


@pytest.fixture
async def client(session_factory, sender, users) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against an app wired to the test database and stub sender."""
    app = create_app()

    async def override_db_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    app.dependency_overrides[get_sender] = lambda: sender
    app.dependency_overrides[get_renderer] = PlainTextBookingFormRenderer
    app.dependency_overrides[get_app_settings] = lambda: TEST_SETTINGS

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac
