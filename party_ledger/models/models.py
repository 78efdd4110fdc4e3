"""SQLAlchemy ORM Models for Party Ledger."""

from datetime import datetime
from enum import Enum as PyEnum
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, UUIDMixin


# =============================================================================
# ENUMS
# =============================================================================


class VoteStatus(str, PyEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"  # Window closed with no responses (when configured)

    @property
    def is_terminal(self) -> bool:
        return self is not VoteStatus.PENDING


class ResponseType(str, PyEnum):
    AGREE = "agree"
    DISAGREE = "disagree"


# =============================================================================
# PLAYERS
# =============================================================================


class Player(Base):
    """A party guest with a running point total."""

    __tablename__ = "players"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    points: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    # Incremented by the database in the same UPDATE as points; orders row images
    version: Mapped[int] = mapped_column(
        Integer, default=1, server_default="1", nullable=False
    )

    __table_args__ = (
        CheckConstraint("points >= 0", name="points_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<Player {self.id} points={self.points}>"


# =============================================================================
# NOMINATION VOTES
# =============================================================================


class Vote(Base, UUIDMixin, TimestampMixin):
    """A peer nomination to award the target player one point."""

    __tablename__ = "votes"

    target_id: Mapped[str] = mapped_column(
        ForeignKey("players.id"), nullable=False
    )
    created_by_id: Mapped[str] = mapped_column(
        ForeignKey("players.id"), nullable=False
    )
    reason: Mapped[str] = mapped_column(Text, default="", nullable=False)
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    status: Mapped[VoteStatus] = mapped_column(
        Enum(VoteStatus, name="vote_status", values_callable=lambda x: [e.value for e in x]),
        default=VoteStatus.PENDING,
        nullable=False,
    )
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    resolved_by_id: Mapped[str | None] = mapped_column(
        ForeignKey("players.id"), nullable=True,
        comment="Null when resolved by the expiry sweep",
    )

    __table_args__ = (
        Index("ix_votes_status_expires_at", "status", "expires_at"),
    )


class VoteResponse(Base, UUIDMixin, TimestampMixin):
    """A single voter's answer to a nomination. Immutable once written."""

    __tablename__ = "vote_responses"

    vote_id: Mapped[UUID] = mapped_column(
        ForeignKey("votes.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(
        ForeignKey("players.id"), nullable=False
    )
    response: Mapped[ResponseType] = mapped_column(
        Enum(ResponseType, name="vote_response_type", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )

    __table_args__ = (
        # One response per voter per vote
        UniqueConstraint("vote_id", "user_id", name="uq_vote_responses_voter"),
    )
