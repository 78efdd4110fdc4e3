"""Player schemas."""

from datetime import datetime

from pydantic import Field

from .base import PartyBaseModel


class PlayerCreate(PartyBaseModel):
    id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=255)
    points: int = Field(default=0, ge=0)


class PointsAdjust(PartyBaseModel):
    """Manual admin adjustment of a player's points."""
    delta: int = Field(default=1, description="Points to add; negative to correct")


class PlayerResponse(PartyBaseModel):
    id: str
    name: str
    points: int
    updated_at: datetime | None = None


class RankedPlayerResponse(PlayerResponse):
    rank: int
