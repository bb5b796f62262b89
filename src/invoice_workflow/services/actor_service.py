"""Load the acting user's identity from the store."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from invoice_workflow.models import OperationsRoomMember, UserProfile
from invoice_workflow.services.errors import NotFoundError
from invoice_workflow.services.state_machine import Role
from invoice_workflow.services.transition_guard import Actor


async def load_actor(session: AsyncSession, user_id: UUID) -> Actor:
    """Build an Actor for an active user.

    Operations-Room status comes from membership, or from holding the
    operations role.
    """
    profile = await session.get(UserProfile, user_id)
    if profile is None or not profile.is_active:
        raise NotFoundError(f"Active user {user_id} not found")

    member = await session.execute(
        select(OperationsRoomMember.member_id).where(
            OperationsRoomMember.user_id == user_id
        )
    )
    role = Role(profile.role)
    return Actor(
        user_id=profile.user_id,
        role=role,
        is_operations_room=member.first() is not None or role == Role.OPERATIONS,
    )
