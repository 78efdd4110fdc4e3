"""
Nomination API Routes: peer votes for a bonus point.

1. POST /nominations - Nominate a player
2. POST /nominations/{id}/responses - Agree or disagree (once per voter)
3. POST /nominations/{id}/accept | /decline - Manual override
4. POST /nominations/resolve-expired - Run the expiry sweep now
"""

from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from ..core.dependencies import VotesDep
from ..models import VoteStatus
from ..schemas import (
    ManualResolutionResponse,
    NominationCreate,
    NominationResponse,
    ResolutionSummaryResponse,
    ResolveRequest,
    ResponseCreate,
    VoteResponseResponse,
)
from ..services.store import StoreError
from ..services.votes import (
    DuplicateResponseError,
    NominationEngine,
    PlayerNotFoundError,
    SelfNominationError,
    VoteNotFoundError,
    VotingClosedError,
)

router = APIRouter(prefix="/nominations", tags=["nominations"])


@router.post("", response_model=NominationResponse, status_code=status.HTTP_201_CREATED)
async def create_nomination(data: NominationCreate, votes: VotesDep):
    """Nominate a player; the vote stays open for one voting window."""
    try:
        vote = await votes.create_nomination(data.target_id, data.created_by_id, data.reason)
    except PlayerNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except SelfNominationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except StoreError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    return NominationResponse.model_validate(vote)


@router.get("", response_model=list[NominationResponse])
async def list_nominations(
    votes: VotesDep,
    vote_status: VoteStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
):
    """Recent nominations, newest first."""
    try:
        records = await votes.list_nominations(status=vote_status, limit=limit)
    except StoreError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return [NominationResponse.model_validate(v) for v in records]


@router.post("/resolve-expired", response_model=ResolutionSummaryResponse)
async def resolve_expired(votes: VotesDep):
    """Resolve every pending nomination whose window has passed."""
    summary = await votes.resolve_expired_votes()
    return ResolutionSummaryResponse.model_validate(summary)


@router.post(
    "/{vote_id}/responses",
    response_model=VoteResponseResponse,
    status_code=status.HTTP_201_CREATED,
)
async def record_response(vote_id: UUID, data: ResponseCreate, votes: VotesDep):
    """Agree or disagree with a nomination. One response per voter."""
    try:
        record = await votes.record_response(vote_id, data.user_id, data.response)
    except (VoteNotFoundError, PlayerNotFoundError) as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except DuplicateResponseError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except VotingClosedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except StoreError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    return VoteResponseResponse.model_validate(record)


@router.post("/{vote_id}/accept", response_model=ManualResolutionResponse)
async def accept_nomination(vote_id: UUID, data: ResolveRequest, votes: VotesDep):
    """Approve a pending nomination now and award the point."""
    return await _manual_resolution(votes, vote_id, data, accept=True)


@router.post("/{vote_id}/decline", response_model=ManualResolutionResponse)
async def decline_nomination(vote_id: UUID, data: ResolveRequest, votes: VotesDep):
    """Reject a pending nomination now."""
    return await _manual_resolution(votes, vote_id, data, accept=False)


async def _manual_resolution(votes: NominationEngine, vote_id: UUID, data: ResolveRequest, accept: bool):
    try:
        if accept:
            applied = await votes.accept_nomination(vote_id, data.resolved_by_id)
        else:
            applied = await votes.decline_nomination(vote_id, data.resolved_by_id)
        vote = await votes.get_nomination(vote_id)
    except (VoteNotFoundError, PlayerNotFoundError) as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except StoreError as e:
        # Surface fetch failures so the client can offer a retry
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    return ManualResolutionResponse(vote_id=vote_id, applied=applied, status=vote.status)
