"""Core application utilities."""

from .config import ResolutionRule, Settings, get_settings
from .database import (
    close_db,
    create_engine,
    create_session_factory,
    init_db,
    session_scope,
)

__all__ = [
    # Config
    "Settings",
    "ResolutionRule",
    "get_settings",
    # Database
    "create_engine",
    "create_session_factory",
    "session_scope",
    "init_db",
    "close_db",
]
