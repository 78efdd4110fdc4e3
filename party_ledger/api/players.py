"""API routes for players and their points."""

from fastapi import APIRouter, HTTPException, status

from ..core.dependencies import PartyDep
from ..schemas import PlayerCreate, PlayerResponse, PointsAdjust, RankedPlayerResponse
from ..services.store import ConstraintViolationError, StoreError

router = APIRouter(prefix="/players", tags=["players"])


@router.get("", response_model=list[RankedPlayerResponse])
async def list_players(party: PartyDep):
    """Leaderboard: players ranked by points, highest first."""
    try:
        ranked = await party.store.list_ranked_players()
    except StoreError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    return [
        RankedPlayerResponse(
            rank=rank,
            id=player.id,
            name=player.name,
            points=player.points,
            updated_at=player.updated_at,
        )
        for rank, player in ranked
    ]


@router.post("", response_model=PlayerResponse, status_code=status.HTTP_201_CREATED)
async def create_player(data: PlayerCreate, party: PartyDep):
    """Add a player to the party."""
    try:
        player = await party.store.create_player(data.id, data.name, data.points)
    except ConstraintViolationError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Player {data.id} already exists",
        )
    except StoreError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    return PlayerResponse.model_validate(player)


@router.post("/{player_id}/points", response_model=PlayerResponse)
async def adjust_points(player_id: str, data: PointsAdjust, party: PartyDep):
    """Manual admin increment of a player's points."""
    try:
        player = await party.store.increment_points(player_id, data.delta)
    except ConstraintViolationError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Points cannot go below zero",
        )
    except StoreError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    if player is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Player {player_id} not found",
        )
    return PlayerResponse.model_validate(player)
