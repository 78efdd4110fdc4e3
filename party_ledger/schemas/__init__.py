"""Pydantic schemas for the Party Ledger API."""

from .base import ErrorResponse, PartyBaseModel
from .feed import MilestoneEventResponse, NominationNoticeResponse
from .players import PlayerCreate, PlayerResponse, PointsAdjust, RankedPlayerResponse
from .votes import (
    ManualResolutionResponse,
    NominationCreate,
    NominationResponse,
    ResolutionSummaryResponse,
    ResolveRequest,
    ResponseCreate,
    VoteResponseResponse,
)

__all__ = [
    "PartyBaseModel",
    "ErrorResponse",
    # Players
    "PlayerCreate",
    "PlayerResponse",
    "PointsAdjust",
    "RankedPlayerResponse",
    # Votes
    "NominationCreate",
    "NominationResponse",
    "ResponseCreate",
    "VoteResponseResponse",
    "ResolveRequest",
    "ManualResolutionResponse",
    "ResolutionSummaryResponse",
    # Feed
    "MilestoneEventResponse",
    "NominationNoticeResponse",
]
