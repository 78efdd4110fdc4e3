"""Base schemas and common types for the Party Ledger API."""

from typing import Any

from pydantic import BaseModel, ConfigDict


class PartyBaseModel(BaseModel):
    """Base model with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,  # Build straight from records and ORM rows
        populate_by_name=True,
        use_enum_values=True,
    )


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    message: str
    details: list[dict[str, Any]] = []
