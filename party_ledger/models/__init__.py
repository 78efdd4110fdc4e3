"""SQLAlchemy ORM Models for Party Ledger."""

from .base import Base, TimestampMixin, UUIDMixin
from .models import (
    # Enums
    ResponseType,
    VoteStatus,
    # Tables
    Player,
    Vote,
    VoteResponse,
)

__all__ = [
    # Base
    "Base",
    "UUIDMixin",
    "TimestampMixin",
    # Enums
    "VoteStatus",
    "ResponseType",
    # Tables
    "Player",
    "Vote",
    "VoteResponse",
]
