"""
Milestones: pure crossing detection and the in-process event feed.

Detection is a pure function of (previous, current) so the realtime path
and the polling path share exactly the same rule.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Mapping
from uuid import UUID, uuid4


DEFAULT_MILESTONES: tuple[int, ...] = (1, 3, 5, 7, 10, 12, 15, 17, 20, 25, 30)

GENERIC_MILESTONE_ACTION = "Milestone reached!"

DEFAULT_MILESTONE_ACTIONS: dict[int, str] = {
    1: "Take a sip!",
    3: "Take two sips!",
    5: "Finish your drink!",
    7: "Sing the chorus of a song chosen by the group!",
    10: "Take a shot!",
    12: "Wear the party hat for the next round!",
    15: "Do your best impression of another player!",
    17: "Swap drinks with the player on your left!",
    20: "Down your drink!",
    25: "Give a toast to the whole party!",
    30: "Legendary status: everyone drinks for you!",
}


def milestone_action(points: int, actions: Mapping[int, str] | None = None) -> str:
    """Forfeit text for a point total. Defined for every integer."""
    table = DEFAULT_MILESTONE_ACTIONS if actions is None else actions
    return table.get(points, GENERIC_MILESTONE_ACTION)


def detect_crossing(
    previous: int | None,
    current: int,
    milestones: Iterable[int],
) -> int | None:
    """
    Return the milestone crossed by moving from previous to current, if any.

    A crossing needs a known previous value that differs from the current
    one. An unknown previous value is a baseline, not a crossing.
    """
    if previous is None or previous == current:
        return None
    if current in milestones:
        return current
    return None


@dataclass(frozen=True)
class MilestoneEvent:
    """A milestone crossing, ready for popups and chat channels."""
    id: UUID
    player_id: str
    player_name: str
    points: int
    action: str
    created_at: datetime

    @classmethod
    def create(
        cls,
        player_id: str,
        player_name: str,
        points: int,
        actions: Mapping[int, str] | None = None,
    ) -> "MilestoneEvent":
        return cls(
            id=uuid4(),
            player_id=player_id,
            player_name=player_name,
            points=points,
            action=milestone_action(points, actions),
            created_at=datetime.now(timezone.utc),
        )


@dataclass
class MilestoneFeed:
    """Pending popup queue plus a bounded, most-recent-first history."""
    history_size: int = 50
    _pending: deque = field(default_factory=deque)
    _history: deque = field(init=False)

    def __post_init__(self) -> None:
        self._history = deque(maxlen=self.history_size)

    def push(self, event: MilestoneEvent) -> None:
        self._pending.append(event)
        self._history.appendleft(event)

    def pop(self) -> MilestoneEvent | None:
        """Take the oldest undisplayed event, or None when empty."""
        return self._pending.popleft() if self._pending else None

    def drain(self) -> list[MilestoneEvent]:
        events = list(self._pending)
        self._pending.clear()
        return events

    def history(self) -> list[MilestoneEvent]:
        return list(self._history)

    @property
    def pending_count(self) -> int:
        return len(self._pending)
