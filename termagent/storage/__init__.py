"""Session persistence over SQLAlchemy async + aiosqlite."""

from termagent.storage.database import Database
from termagent.storage.sessions import SessionStore, SessionSummary

__all__ = ["Database", "SessionStore", "SessionSummary"]
