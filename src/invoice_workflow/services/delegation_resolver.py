"""Delegation resolver: who may approve on behalf of a manager on a given day."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from invoice_workflow.models import Delegation, UserProfile
from invoice_workflow.services.errors import (
    DelegationError,
    DelegationOverlapError,
    NotFoundError,
)

logger = logging.getLogger(__name__)


class DelegationLike(Protocol):
    delegator_user_id: UUID
    delegate_user_id: UUID
    date_from: date
    date_to: date
    created_at: datetime


def active_delegations(
    manager_id: UUID,
    on_date: date,
    delegations: Iterable[DelegationLike],
) -> list[DelegationLike]:
    """Delegations of manager_id covering on_date, newest first."""
    active = [
        d
        for d in delegations
        if d.delegator_user_id == manager_id and d.date_from <= on_date <= d.date_to
    ]
    active.sort(key=lambda d: d.created_at, reverse=True)
    return active


def resolve_effective_approver(
    manager_id: UUID,
    on_date: date,
    delegations: Iterable[DelegationLike],
) -> UUID:
    """Return the delegate active for on_date, or manager_id unchanged.

    Always returns a user. Overlapping delegations should have been refused at
    creation; if they exist anyway the most recently created one wins.
    """
    active = active_delegations(manager_id, on_date, delegations)
    if not active:
        return manager_id
    if len(active) > 1:
        logger.warning(
            "Overlapping delegations for manager %s on %s: %d active, using newest (%s)",
            manager_id,
            on_date,
            len(active),
            active[0].delegate_user_id,
        )
    return active[0].delegate_user_id


def ranges_overlap(a_from: date, a_to: date, b_from: date, b_to: date) -> bool:
    """Inclusive date range overlap."""
    return a_from <= b_to and b_from <= a_to


class DelegationResolver:
    """Loads delegations from the store and resolves effective approvers."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def delegations_for(self, manager_id: UUID) -> list[Delegation]:
        result = await self.session.execute(
            select(Delegation).where(Delegation.delegator_user_id == manager_id)
        )
        return list(result.scalars().all())

    async def effective_approver(self, manager_id: UUID, on_date: date) -> UUID:
        """Return the effective approver for manager_id on on_date."""
        delegations = await self.delegations_for(manager_id)
        return resolve_effective_approver(manager_id, on_date, delegations)


@dataclass(frozen=True)
class DelegationRequest:
    """Input for creating a delegation."""

    delegator_user_id: UUID
    delegate_user_id: UUID
    date_from: date
    date_to: date


class DelegationService:
    """Admin management of approval delegations.

    Overlap is refused here so the resolver never has to choose.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_delegations(self) -> list[Delegation]:
        result = await self.session.execute(
            select(Delegation).order_by(Delegation.date_from.desc())
        )
        return list(result.scalars().all())

    async def create_delegation(self, request: DelegationRequest) -> Delegation:
        """Validate and persist a new delegation."""
        if request.delegator_user_id == request.delegate_user_id:
            raise DelegationError("Delegator and delegate cannot be the same user")
        if request.date_to < request.date_from:
            raise DelegationError("date_to must be on or after date_from")

        for user_id in (request.delegator_user_id, request.delegate_user_id):
            if await self.session.get(UserProfile, user_id) is None:
                raise NotFoundError(f"User {user_id} not found")

        existing = await DelegationResolver(self.session).delegations_for(
            request.delegator_user_id
        )
        clashes = [
            d
            for d in existing
            if ranges_overlap(d.date_from, d.date_to, request.date_from, request.date_to)
        ]
        if clashes:
            raise DelegationOverlapError(
                "Delegation overlaps an existing delegation for this manager",
                context={
                    "conflicting_delegation_ids": [
                        str(d.delegation_id) for d in clashes
                    ]
                },
            )

        delegation = Delegation(
            delegator_user_id=request.delegator_user_id,
            delegate_user_id=request.delegate_user_id,
            date_from=request.date_from,
            date_to=request.date_to,
        )
        self.session.add(delegation)
        await self.session.commit()
        logger.info(
            "Delegation %s created: %s -> %s (%s..%s)",
            delegation.delegation_id,
            request.delegator_user_id,
            request.delegate_user_id,
            request.date_from,
            request.date_to,
        )
        return delegation

    async def delete_delegation(self, delegation_id: UUID) -> None:
        delegation = await self.session.get(Delegation, delegation_id)
        if delegation is None:
            raise NotFoundError(f"Delegation {delegation_id} not found")
        await self.session.delete(delegation)
        await self.session.commit()
