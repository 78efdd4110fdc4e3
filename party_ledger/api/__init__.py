"""API routes for Party Ledger."""

from fastapi import APIRouter

from .feed import router as feed_router
from .nominations import router as nominations_router
from .players import router as players_router

# Main API router
api_router = APIRouter()

api_router.include_router(players_router)
api_router.include_router(nominations_router)
api_router.include_router(feed_router)

__all__ = ["api_router"]
