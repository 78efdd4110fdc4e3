"""FastAPI dependencies for the running party session."""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from ..services.session import PartySession
from ..services.votes import NominationEngine
from ..services.watcher import PointsWatcher


def get_party(request: Request) -> PartySession:
    """The session owned by the application lifespan."""
    party = getattr(request.app.state, "party", None)
    if party is None or not party.started:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Party session is not running",
        )
    return party


def get_votes(party: Annotated[PartySession, Depends(get_party)]) -> NominationEngine:
    return party.votes


def get_watcher(party: Annotated[PartySession, Depends(get_party)]) -> PointsWatcher:
    return party.watcher


PartyDep = Annotated[PartySession, Depends(get_party)]
VotesDep = Annotated[NominationEngine, Depends(get_votes)]
WatcherDep = Annotated[PointsWatcher, Depends(get_watcher)]
