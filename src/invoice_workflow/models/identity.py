"""User profile, Operations Room and approval delegation models."""

from __future__ import annotations

from datetime import date
from uuid import UUID, uuid4

from sqlalchemy import Boolean, CheckConstraint, Date, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from invoice_workflow.models.base import Base, TimestampMixin


class UserProfile(Base, TimestampMixin):
    """Application user with a single role."""

    __tablename__ = "user_profile"

    user_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    full_name: Mapped[str] = mapped_column(String, nullable=False)
    email: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    role: Mapped[str] = mapped_column(String, nullable=False, default="submitter")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    wants_update_emails: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True
    )

    __table_args__ = (
        CheckConstraint(
            "role IN ('admin', 'manager', 'finance', 'operations', 'submitter', 'viewer')",
            name="user_profile_role_check",
        ),
    )


class OperationsRoomMember(Base, TimestampMixin):
    """Membership in the Operations Room approval group."""

    __tablename__ = "operations_room_member"

    member_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        ForeignKey("user_profile.user_id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )


class Delegation(Base, TimestampMixin):
    """Approval delegation from a manager to a backup approver for a date range."""

    __tablename__ = "approval_delegation"

    delegation_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    delegator_user_id: Mapped[UUID] = mapped_column(
        ForeignKey("user_profile.user_id", ondelete="CASCADE"),
        nullable=False,
    )
    delegate_user_id: Mapped[UUID] = mapped_column(
        ForeignKey("user_profile.user_id", ondelete="CASCADE"),
        nullable=False,
    )
    date_from: Mapped[date] = mapped_column(Date, nullable=False)
    date_to: Mapped[date] = mapped_column(Date, nullable=False)

    __table_args__ = (
        CheckConstraint("date_to >= date_from", name="approval_delegation_dates_check"),
        CheckConstraint(
            "delegator_user_id <> delegate_user_id",
            name="approval_delegation_distinct_users_check",
        ),
        Index("ix_approval_delegation_delegator", "delegator_user_id"),
    )
