"""Nomination and vote schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import Field

from ..models import ResponseType, VoteStatus
from .base import PartyBaseModel


class NominationCreate(PartyBaseModel):
    target_id: str = Field(..., min_length=1)
    created_by_id: str = Field(..., min_length=1)
    reason: str = Field(default="", max_length=500)


class ResponseCreate(PartyBaseModel):
    user_id: str = Field(..., min_length=1)
    response: ResponseType


class ResolveRequest(PartyBaseModel):
    resolved_by_id: str | None = None


class NominationResponse(PartyBaseModel):
    id: UUID
    target_id: str
    created_by_id: str
    reason: str
    created_at: datetime
    expires_at: datetime
    status: VoteStatus
    resolved_at: datetime | None = None
    resolved_by_id: str | None = None


class VoteResponseResponse(PartyBaseModel):
    id: UUID
    vote_id: UUID
    user_id: str
    response: ResponseType


class ManualResolutionResponse(PartyBaseModel):
    vote_id: UUID
    applied: bool
    status: VoteStatus


class ResolutionSummaryResponse(PartyBaseModel):
    processed: int
    approved: int
    rejected: int
    expired: int
    skipped: int
    errors: list[str] = []
