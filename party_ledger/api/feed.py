"""API routes for the popup queues and activity feed."""

from fastapi import APIRouter, Response, status

from ..core.dependencies import VotesDep, WatcherDep
from ..schemas import MilestoneEventResponse, NominationNoticeResponse

router = APIRouter(prefix="/feed", tags=["feed"])


@router.get(
    "/milestones/next",
    response_model=MilestoneEventResponse,
    responses={204: {"description": "No milestone waiting"}},
)
async def next_milestone(watcher: WatcherDep):
    """Pop the oldest undisplayed milestone popup."""
    event = watcher.events.pop()
    if event is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return MilestoneEventResponse.model_validate(event)


@router.get("/milestones/history", response_model=list[MilestoneEventResponse])
async def milestone_history(watcher: WatcherDep):
    """Recent milestones, most recent first."""
    return [MilestoneEventResponse.model_validate(e) for e in watcher.events.history()]


@router.get(
    "/nominations/next",
    response_model=NominationNoticeResponse,
    responses={204: {"description": "No nomination waiting"}},
)
async def next_nomination(votes: VotesDep):
    """Pop the oldest unshown nomination popup."""
    notice = votes.next_notification()
    if notice is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return NominationNoticeResponse.model_validate(notice)
