"""Business logic services for Party Ledger."""

from .milestones import (
    DEFAULT_MILESTONES,
    MilestoneEvent,
    MilestoneFeed,
    detect_crossing,
    milestone_action,
)
from .notifications import NotificationChannel, SlackChannel, WhatsAppChannel
from .realtime import ChangeFeed, ChangeKind, PostgresChangeListener, RowChange, Subscription
from .session import PartySession
from .store import (
    ConstraintViolationError,
    PartyStore,
    PlayerRecord,
    ResponseRecord,
    StoreError,
    VoteRecord,
)
from .votes import (
    DuplicateResponseError,
    NominationEngine,
    NominationNotice,
    PlayerNotFoundError,
    ResolutionSummary,
    SelfNominationError,
    VoteError,
    VoteNotFoundError,
    VoteTally,
    VotingClosedError,
    resolve_outcome,
)
from .watcher import PointsWatcher

__all__ = [
    # Milestones
    "DEFAULT_MILESTONES",
    "MilestoneEvent",
    "MilestoneFeed",
    "detect_crossing",
    "milestone_action",
    "PointsWatcher",
    # Notifications
    "NotificationChannel",
    "SlackChannel",
    "WhatsAppChannel",
    # Realtime
    "ChangeFeed",
    "ChangeKind",
    "RowChange",
    "Subscription",
    "PostgresChangeListener",
    # Store
    "PartyStore",
    "PlayerRecord",
    "VoteRecord",
    "ResponseRecord",
    "StoreError",
    "ConstraintViolationError",
    # Votes
    "NominationEngine",
    "NominationNotice",
    "ResolutionSummary",
    "VoteTally",
    "resolve_outcome",
    "VoteError",
    "VoteNotFoundError",
    "PlayerNotFoundError",
    "SelfNominationError",
    "DuplicateResponseError",
    "VotingClosedError",
    # Session
    "PartySession",
]
