"""
Nomination Engine: peer votes that award a bonus point.

State machine (one-way):
    PENDING -> APPROVED | REJECTED | EXPIRED

Guarantees:
1. A vote leaves PENDING exactly once (conditional update on status)
2. An approval increments the target's points exactly once, in the same
   transaction as the winning status update
3. At most one response per voter per vote (unique constraint)
4. Resolution is driven by the sweep's `expires_at <= now` check, never by
   an in-process timer tied to a vote
"""

import asyncio
import logging
from collections import deque
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Literal
from uuid import UUID

from ..core.config import ResolutionRule
from ..models import ResponseType, VoteStatus
from .realtime import ChangeFeed, ChangeKind, RowChange, Subscription
from .store import (
    ConstraintViolationError,
    PartyStore,
    ResponseRecord,
    StoreError,
    VoteRecord,
)


logger = logging.getLogger(__name__)

DEFAULT_VOTING_WINDOW = timedelta(minutes=5)

# Decisive thresholds for the strict rule
STRICT_QUORUM = 4


# =============================================================================
# EXCEPTIONS
# =============================================================================


class VoteError(Exception):
    """Base exception for nomination operations."""
    pass


class VoteNotFoundError(VoteError):
    """Vote does not exist."""
    pass


class PlayerNotFoundError(VoteError):
    """Referenced player does not exist."""
    pass


class SelfNominationError(VoteError):
    """Self-nomination is disabled by policy."""
    pass


class DuplicateResponseError(VoteError):
    """This voter already answered this vote."""
    pass


class VotingClosedError(VoteError):
    """The vote is resolved or its window has passed."""
    pass


# =============================================================================
# RESOLUTION RULE
# =============================================================================


@dataclass(frozen=True)
class VoteTally:
    agree: int = 0
    disagree: int = 0

    @property
    def total(self) -> int:
        return self.agree + self.disagree

    @classmethod
    def from_responses(cls, responses: Iterable[ResponseRecord]) -> "VoteTally":
        agree = disagree = 0
        for r in responses:
            if r.response == ResponseType.AGREE:
                agree += 1
            else:
                disagree += 1
        return cls(agree=agree, disagree=disagree)


def resolve_outcome(
    tally: VoteTally,
    rule: ResolutionRule = ResolutionRule.SIMPLE_MAJORITY,
    no_response_outcome: Literal["approved", "expired"] = "approved",
) -> VoteStatus:
    """
    Decide the terminal status for an expired vote.

    No responses: passive approval (or EXPIRED when configured).
    SIMPLE_MAJORITY: approved iff agree > disagree; ties are rejected.
    STRICT_QUORUM: 4+ agrees with fewer than 4 disagrees approves, 4+
    disagrees outnumbering agrees rejects, anything else falls back to
    simple majority.
    """
    if tally.total == 0:
        return VoteStatus(no_response_outcome)

    if rule == ResolutionRule.STRICT_QUORUM:
        if tally.agree >= STRICT_QUORUM and tally.disagree < STRICT_QUORUM:
            return VoteStatus.APPROVED
        if tally.disagree >= STRICT_QUORUM and tally.disagree > tally.agree:
            return VoteStatus.REJECTED

    return VoteStatus.APPROVED if tally.agree > tally.disagree else VoteStatus.REJECTED


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass(frozen=True)
class NominationNotice:
    """A new nomination enriched with display names, for the popup queue."""
    vote_id: UUID
    target_id: str
    target_name: str
    created_by_id: str
    created_by_name: str
    reason: str
    expires_at: datetime
    status: VoteStatus


@dataclass
class ResolutionSummary:
    """Result of one sweep over expired votes."""
    processed: int = 0
    approved: int = 0
    rejected: int = 0
    expired: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def record(self, status: VoteStatus) -> None:
        self.processed += 1
        if status == VoteStatus.APPROVED:
            self.approved += 1
        elif status == VoteStatus.REJECTED:
            self.rejected += 1
        else:
            self.expired += 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# NOMINATION ENGINE
# =============================================================================


class NominationEngine:
    """Creates nominations, collects responses and resolves outcomes."""

    def __init__(
        self,
        store: PartyStore,
        feed: ChangeFeed | None = None,
        voting_window: timedelta = DEFAULT_VOTING_WINDOW,
        rule: ResolutionRule = ResolutionRule.SIMPLE_MAJORITY,
        no_response_outcome: Literal["approved", "expired"] = "approved",
        allow_self_nomination: bool = True,
        suppress_own_nominations: bool = True,
        viewer_id: str | None = None,
        award_points: int = 1,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._feed = feed
        self._voting_window = voting_window
        self._rule = rule
        self._no_response_outcome = no_response_outcome
        self._allow_self_nomination = allow_self_nomination
        self._suppress_own = suppress_own_nominations
        self._viewer_id = viewer_id
        self._award_points = award_points
        self._clock = clock

        self._notifications: deque[NominationNotice] = deque()
        self._subscription: Subscription | None = None
        self._consume_task: asyncio.Task | None = None

    # =========================================================================
    # COMMANDS
    # =========================================================================

    async def create_nomination(
        self,
        target_id: str,
        created_by_id: str,
        reason: str = "",
    ) -> VoteRecord:
        """Insert a PENDING vote that expires one voting window from now."""
        if target_id == created_by_id and not self._allow_self_nomination:
            raise SelfNominationError("Players cannot nominate themselves")

        players = await self._store.get_players([target_id, created_by_id])
        for player_id in (target_id, created_by_id):
            if player_id not in players:
                raise PlayerNotFoundError(f"Player {player_id} not found")

        created_at = self._clock()
        vote = await self._store.create_vote(
            target_id=target_id,
            created_by_id=created_by_id,
            reason=reason.strip(),
            created_at=created_at,
            expires_at=created_at + self._voting_window,
        )
        logger.info(f"Nomination {vote.id}: {created_by_id} nominated {target_id}")
        return vote

    async def record_response(
        self,
        vote_id: UUID,
        user_id: str,
        response: ResponseType,
    ) -> ResponseRecord:
        """Record one voter's answer while the vote is open."""
        vote = await self._get_vote_or_raise(vote_id)

        if vote.status.is_terminal:
            raise VotingClosedError(f"Vote {vote_id} is already {vote.status.value}")
        if self._clock() >= vote.expires_at:
            raise VotingClosedError(f"Voting window for {vote_id} has closed")

        if await self._store.get_player(user_id) is None:
            raise PlayerNotFoundError(f"Player {user_id} not found")

        try:
            record = await self._store.create_response(vote_id, user_id, ResponseType(response))
        except ConstraintViolationError as e:
            logger.info(f"Duplicate response from {user_id} on vote {vote_id} rejected")
            raise DuplicateResponseError(
                f"{user_id} has already responded to vote {vote_id}"
            ) from e

        logger.info(f"Vote {vote_id}: {user_id} responded {record.response.value}")
        return record

    async def tally(self, vote_id: UUID) -> VoteTally:
        return VoteTally.from_responses(await self._store.list_responses(vote_id))

    async def accept_nomination(self, vote_id: UUID, resolved_by_id: str | None = None) -> bool:
        """Manually approve a pending vote and award the point."""
        return await self._manual_resolve(vote_id, VoteStatus.APPROVED, resolved_by_id)

    async def decline_nomination(self, vote_id: UUID, resolved_by_id: str | None = None) -> bool:
        """Manually reject a pending vote."""
        return await self._manual_resolve(vote_id, VoteStatus.REJECTED, resolved_by_id)

    async def _manual_resolve(
        self,
        vote_id: UUID,
        status: VoteStatus,
        resolved_by_id: str | None,
    ) -> bool:
        # Fetch failures propagate so the caller can offer a retry
        vote = await self._get_vote_or_raise(vote_id)
        if vote.status.is_terminal:
            logger.info(f"Vote {vote_id} already {vote.status.value}, ignoring manual {status.value}")
            return False

        if resolved_by_id is not None and await self._store.get_player(resolved_by_id) is None:
            raise PlayerNotFoundError(f"Player {resolved_by_id} not found")

        result = await self._store.transition_vote(
            vote_id,
            status,
            resolved_at=self._clock(),
            resolved_by_id=resolved_by_id,
            award_points=self._award_points if status == VoteStatus.APPROVED else 0,
        )
        if not result.applied:
            logger.info(f"Vote {vote_id} was resolved concurrently, manual {status.value} skipped")
            return False

        logger.info(f"Vote {vote_id} manually {status.value} by {resolved_by_id}")
        return True

    async def resolve_vote(self, vote: VoteRecord, now: datetime | None = None) -> VoteStatus | None:
        """
        Resolve a single expired vote.

        Returns the terminal status this call applied, or None when the vote
        was not pending, not yet expired, or another resolver won the race.
        """
        now = now or self._clock()
        if vote.status.is_terminal or vote.expires_at > now:
            return None

        tally = await self.tally(vote.id)
        status = resolve_outcome(tally, self._rule, self._no_response_outcome)

        result = await self._store.transition_vote(
            vote.id,
            status,
            resolved_at=now,
            resolved_by_id=None,
            award_points=self._award_points if status == VoteStatus.APPROVED else 0,
        )
        if not result.applied:
            return None

        logger.info(
            f"Vote {vote.id} resolved {status.value} "
            f"(agree={tally.agree}, disagree={tally.disagree})"
        )
        return status

    async def resolve_expired_votes(self, now: datetime | None = None) -> ResolutionSummary:
        """Sweep every pending vote whose window has passed."""
        now = now or self._clock()
        summary = ResolutionSummary()

        try:
            expired = await self._store.list_votes(status=VoteStatus.PENDING, expires_before=now)
        except StoreError as e:
            logger.error(f"Could not load expired votes: {e}")
            summary.errors.append(str(e))
            return summary

        for vote in expired:
            try:
                status = await self.resolve_vote(vote, now)
            except StoreError as e:
                logger.error(f"Failed to resolve vote {vote.id}: {e}")
                summary.errors.append(f"Vote {vote.id}: {e}")
                continue

            if status is None:
                summary.skipped += 1
            else:
                summary.record(status)

        if expired:
            logger.info(
                f"Resolved {summary.processed} votes: {summary.approved} approved, "
                f"{summary.rejected} rejected, {summary.expired} expired, {summary.skipped} skipped"
            )
        return summary

    async def list_nominations(
        self,
        status: VoteStatus | None = None,
        limit: int | None = 50,
    ) -> list[VoteRecord]:
        return await self._store.list_votes(status=status, limit=limit)

    async def get_nomination(self, vote_id: UUID) -> VoteRecord:
        return await self._get_vote_or_raise(vote_id)

    async def _get_vote_or_raise(self, vote_id: UUID) -> VoteRecord:
        vote = await self._store.get_vote(vote_id)
        if vote is None:
            raise VoteNotFoundError(f"Vote {vote_id} not found")
        return vote

    # =========================================================================
    # REALTIME FAN-OUT
    # =========================================================================

    @property
    def realtime_active(self) -> bool:
        return self._subscription is not None

    def start_realtime(self) -> None:
        if self._subscription is not None:
            logger.info("Vote realtime subscription already active")
            return
        if self._feed is None:
            logger.warning("No change feed configured, nomination popups disabled")
            return
        self._subscription = self._feed.subscribe("votes")
        self._consume_task = asyncio.create_task(self._consume_loop(self._subscription))
        logger.info("Vote realtime subscription started")

    async def stop_realtime(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        if self._consume_task is not None:
            self._consume_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._consume_task
            self._consume_task = None

    async def _consume_loop(self, subscription: Subscription) -> None:
        async for change in subscription:
            try:
                await self.handle_change(change)
            except Exception:
                logger.exception("Failed to handle vote change")

    async def handle_change(self, change: RowChange) -> NominationNotice | None:
        """Queue a popup for newly inserted pending nominations."""
        if change.kind != ChangeKind.INSERT or change.new is None:
            return None

        vote = VoteRecord.from_row(change.new)
        if vote.status != VoteStatus.PENDING:
            return None
        if self._suppress_own and self._viewer_id and vote.created_by_id == self._viewer_id:
            return None

        try:
            names = await self._store.get_players([vote.target_id, vote.created_by_id])
        except StoreError as e:
            logger.warning(f"Could not load names for nomination {vote.id}: {e}")
            names = {}

        notice = NominationNotice(
            vote_id=vote.id,
            target_id=vote.target_id,
            target_name=names[vote.target_id].name if vote.target_id in names else vote.target_id,
            created_by_id=vote.created_by_id,
            created_by_name=(
                names[vote.created_by_id].name if vote.created_by_id in names else vote.created_by_id
            ),
            reason=vote.reason,
            expires_at=vote.expires_at,
            status=vote.status,
        )
        self._notifications.append(notice)
        return notice

    def next_notification(self) -> NominationNotice | None:
        """Take the oldest unshown nomination popup, or None."""
        return self._notifications.popleft() if self._notifications else None

    @property
    def pending_notifications(self) -> int:
        return len(self._notifications)
