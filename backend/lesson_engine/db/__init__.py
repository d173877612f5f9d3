"""Database utilities for the lesson delivery engine."""

from .base import Base
from .session import dispose_engine, get_engine, get_session_factory, session_scope

__all__ = [
    "Base",
    "dispose_engine",
    "get_engine",
    "get_session_factory",
    "session_scope",
]
