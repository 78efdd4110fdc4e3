"""Schemas for the popup queues and activity feed."""

from datetime import datetime
from uuid import UUID

from ..models import VoteStatus
from .base import PartyBaseModel


class MilestoneEventResponse(PartyBaseModel):
    id: UUID
    player_id: str
    player_name: str
    points: int
    action: str
    created_at: datetime


class NominationNoticeResponse(PartyBaseModel):
    vote_id: UUID
    target_id: str
    target_name: str
    created_by_id: str
    created_by_name: str
    reason: str
    expires_at: datetime
    status: VoteStatus
