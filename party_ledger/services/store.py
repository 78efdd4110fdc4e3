"""
Party Store: the persistence contract both engines are written against.

Every method opens its own short transaction. Contended columns are never
written with read-modify-write:
- players.points only changes through UPDATE ... SET points = points + :delta
- votes.status only leaves PENDING through UPDATE ... WHERE status = 'pending',
  and the caller learns from the row count whether it won

After a successful commit the affected rows are published to the
ChangeFeed, which is what the local realtime subscriptions observe.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.database import session_scope
from ..models import Player, ResponseType, Vote, VoteResponse, VoteStatus
from .realtime import ChangeFeed, ChangeKind, RowChange


logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================


class StoreError(Exception):
    """Transient backend failure (network, read or write)."""
    pass


class ConstraintViolationError(StoreError):
    """A write was refused by a database constraint."""
    pass


# =============================================================================
# RECORDS
# =============================================================================


def as_utc(value: datetime | str | None) -> datetime | None:
    """Normalize a stored or serialized timestamp to an aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class PlayerRecord:
    """Immutable view of a players row."""
    id: str
    name: str
    points: int
    updated_at: datetime | None = None
    version: int = 0

    @classmethod
    def from_model(cls, player: Player) -> "PlayerRecord":
        return cls(
            id=player.id,
            name=player.name,
            points=player.points,
            updated_at=as_utc(player.updated_at),
            version=player.version or 0,
        )

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "PlayerRecord":
        return cls(
            id=str(row["id"]),
            name=row.get("name") or "",
            points=int(row.get("points") or 0),
            updated_at=as_utc(row.get("updated_at")),
            version=int(row.get("version") or 0),
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "points": self.points,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "version": self.version,
        }


@dataclass(frozen=True)
class VoteRecord:
    """Immutable view of a votes row."""
    id: UUID
    target_id: str
    created_by_id: str
    reason: str
    created_at: datetime
    expires_at: datetime
    status: VoteStatus
    resolved_at: datetime | None = None
    resolved_by_id: str | None = None

    @classmethod
    def from_model(cls, vote: Vote) -> "VoteRecord":
        return cls(
            id=vote.id,
            target_id=vote.target_id,
            created_by_id=vote.created_by_id,
            reason=vote.reason,
            created_at=as_utc(vote.created_at),
            expires_at=as_utc(vote.expires_at),
            status=VoteStatus(vote.status),
            resolved_at=as_utc(vote.resolved_at),
            resolved_by_id=vote.resolved_by_id,
        )

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "VoteRecord":
        return cls(
            id=UUID(str(row["id"])),
            target_id=str(row["target_id"]),
            created_by_id=str(row["created_by_id"]),
            reason=row.get("reason") or "",
            created_at=as_utc(row["created_at"]),
            expires_at=as_utc(row["expires_at"]),
            status=VoteStatus(row.get("status") or VoteStatus.PENDING.value),
            resolved_at=as_utc(row.get("resolved_at")),
            resolved_by_id=row.get("resolved_by_id"),
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "target_id": self.target_id,
            "created_by_id": self.created_by_id,
            "reason": self.reason,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "status": self.status.value,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolved_by_id": self.resolved_by_id,
        }


@dataclass(frozen=True)
class ResponseRecord:
    """Immutable view of a vote_responses row."""
    id: UUID
    vote_id: UUID
    user_id: str
    response: ResponseType

    @classmethod
    def from_model(cls, row: VoteResponse) -> "ResponseRecord":
        return cls(
            id=row.id,
            vote_id=row.vote_id,
            user_id=row.user_id,
            response=ResponseType(row.response),
        )


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of a conditional vote status update."""
    applied: bool
    vote: VoteRecord | None = None
    target: PlayerRecord | None = None


# =============================================================================
# STORE
# =============================================================================


class PartyStore:
    """Async SQLAlchemy implementation of the backend contract."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        feed: ChangeFeed | None = None,
    ):
        self._session_factory = session_factory
        self._feed = feed

    @property
    def feed(self) -> ChangeFeed | None:
        return self._feed

    @asynccontextmanager
    async def _transaction(
        self,
        changes: list[RowChange] | None = None,
    ) -> AsyncGenerator[AsyncSession, None]:
        """Run one transaction; publish collected changes only after commit."""
        try:
            async with session_scope(self._session_factory) as session:
                yield session
        except IntegrityError as e:
            raise ConstraintViolationError(str(e.orig)) from e
        except SQLAlchemyError as e:
            logger.error(f"Database error, transaction rolled back: {e}")
            raise StoreError(str(e)) from e

        if changes and self._feed is not None:
            for change in changes:
                self._feed.publish(change)

    # =========================================================================
    # PLAYERS
    # =========================================================================

    async def list_players(self) -> list[PlayerRecord]:
        """Full snapshot of the player table."""
        async with self._transaction() as session:
            result = await session.execute(select(Player).order_by(Player.id))
            return [PlayerRecord.from_model(p) for p in result.scalars().all()]

    async def list_ranked_players(self) -> list[tuple[int, PlayerRecord]]:
        """Players ordered by points, highest first, with 1-based rank."""
        async with self._transaction() as session:
            result = await session.execute(
                select(Player).order_by(Player.points.desc(), Player.name.asc())
            )
            players = result.scalars().all()
        return [(index + 1, PlayerRecord.from_model(p)) for index, p in enumerate(players)]

    async def get_player(self, player_id: str) -> PlayerRecord | None:
        async with self._transaction() as session:
            player = await session.get(Player, player_id)
            return PlayerRecord.from_model(player) if player else None

    async def get_players(self, player_ids: Iterable[str]) -> dict[str, PlayerRecord]:
        ids = {pid for pid in player_ids if pid}
        if not ids:
            return {}
        async with self._transaction() as session:
            result = await session.execute(select(Player).where(Player.id.in_(ids)))
            return {p.id: PlayerRecord.from_model(p) for p in result.scalars().all()}

    async def create_player(self, player_id: str, name: str, points: int = 0) -> PlayerRecord:
        changes: list[RowChange] = []
        async with self._transaction(changes) as session:
            player = Player(
                id=player_id,
                name=name,
                points=points,
                updated_at=datetime.now(timezone.utc),
                version=1,
            )
            session.add(player)
            await session.flush()
            record = PlayerRecord.from_model(player)
            changes.append(RowChange("players", ChangeKind.INSERT, new=record.to_row()))
        return record

    async def increment_points(self, player_id: str, delta: int = 1) -> PlayerRecord | None:
        """Atomically add delta to a player's points. None if the player is missing."""
        changes: list[RowChange] = []
        async with self._transaction(changes) as session:
            record = await self._increment(session, player_id, delta)
            if record is not None:
                changes.append(RowChange("players", ChangeKind.UPDATE, new=record.to_row()))
        return record

    async def _increment(
        self,
        session: AsyncSession,
        player_id: str,
        delta: int,
    ) -> PlayerRecord | None:
        result = await session.execute(
            update(Player)
            .where(Player.id == player_id)
            .values(
                points=Player.points + delta,
                updated_at=datetime.now(timezone.utc),
                version=Player.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None

        refreshed = await session.execute(
            select(Player)
            .where(Player.id == player_id)
            .execution_options(populate_existing=True)
        )
        return PlayerRecord.from_model(refreshed.scalar_one())

    # =========================================================================
    # VOTES
    # =========================================================================

    async def create_vote(
        self,
        target_id: str,
        created_by_id: str,
        reason: str,
        created_at: datetime,
        expires_at: datetime,
    ) -> VoteRecord:
        changes: list[RowChange] = []
        async with self._transaction(changes) as session:
            vote = Vote(
                target_id=target_id,
                created_by_id=created_by_id,
                reason=reason,
                created_at=created_at,
                expires_at=expires_at,
                status=VoteStatus.PENDING,
            )
            session.add(vote)
            await session.flush()
            record = VoteRecord.from_model(vote)
            changes.append(RowChange("votes", ChangeKind.INSERT, new=record.to_row()))
        return record

    async def get_vote(self, vote_id: UUID) -> VoteRecord | None:
        async with self._transaction() as session:
            vote = await session.get(Vote, vote_id)
            return VoteRecord.from_model(vote) if vote else None

    async def list_votes(
        self,
        status: VoteStatus | None = None,
        expires_before: datetime | None = None,
        limit: int | None = None,
    ) -> list[VoteRecord]:
        """Votes filtered by status and/or expires_at <= expires_before."""
        query = select(Vote).order_by(Vote.created_at.desc())
        if status is not None:
            query = query.where(Vote.status == status)
        if expires_before is not None:
            query = query.where(Vote.expires_at <= expires_before)
        if limit is not None:
            query = query.limit(limit)

        async with self._transaction() as session:
            result = await session.execute(query)
            return [VoteRecord.from_model(v) for v in result.scalars().all()]

    async def transition_vote(
        self,
        vote_id: UUID,
        status: VoteStatus,
        resolved_at: datetime,
        resolved_by_id: str | None = None,
        award_points: int = 0,
    ) -> TransitionResult:
        """
        Move a vote out of PENDING if, and only if, it is still PENDING.

        The status update and the optional point award commit together, so
        only the caller that wins the conditional update ever awards points.
        """
        if not status.is_terminal:
            raise ValueError("A vote can only transition to a terminal status")

        changes: list[RowChange] = []
        async with self._transaction(changes) as session:
            result = await session.execute(
                update(Vote)
                .where(Vote.id == vote_id, Vote.status == VoteStatus.PENDING)
                .values(
                    status=status,
                    resolved_at=resolved_at,
                    resolved_by_id=resolved_by_id,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return TransitionResult(applied=False)

            refreshed = await session.execute(
                select(Vote)
                .where(Vote.id == vote_id)
                .execution_options(populate_existing=True)
            )
            vote = VoteRecord.from_model(refreshed.scalar_one())
            changes.append(RowChange("votes", ChangeKind.UPDATE, new=vote.to_row()))

            target = None
            if award_points:
                target = await self._increment(session, vote.target_id, award_points)
                if target is None:
                    logger.warning(f"Vote {vote_id} approved but target {vote.target_id} is missing")
                else:
                    changes.append(RowChange("players", ChangeKind.UPDATE, new=target.to_row()))

        return TransitionResult(applied=True, vote=vote, target=target)

    # =========================================================================
    # RESPONSES
    # =========================================================================

    async def create_response(
        self,
        vote_id: UUID,
        user_id: str,
        response: ResponseType,
    ) -> ResponseRecord:
        """Insert a response; the unique (vote_id, user_id) constraint rejects repeats."""
        async with self._transaction() as session:
            row = VoteResponse(vote_id=vote_id, user_id=user_id, response=response)
            session.add(row)
            await session.flush()
            return ResponseRecord.from_model(row)

    async def list_responses(self, vote_id: UUID) -> list[ResponseRecord]:
        async with self._transaction() as session:
            result = await session.execute(
                select(VoteResponse)
                .where(VoteResponse.vote_id == vote_id)
                .order_by(VoteResponse.created_at.asc())
            )
            return [ResponseRecord.from_model(r) for r in result.scalars().all()]
