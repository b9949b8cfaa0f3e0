"""Session store -- save, list and resume conversations."""

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import select

from termagent.errors import SessionNotFound
from termagent.runtime.models import Conversation
from termagent.storage.database import Database
from termagent.storage.models import StoredSession

logger = logging.getLogger(__name__)

LAST = "last"


@dataclass(frozen=True)
class SessionSummary:
    id: str
    cwd: str
    turn_count: int
    updated_at: datetime
    last_used_at: datetime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStore:
    """Persists each Conversation as one JSON row keyed by session id."""

    def __init__(self, database: Database, clock: Callable[[], datetime] = _utcnow) -> None:
        self._db = database
        self._clock = clock

    async def save(self, conversation: Conversation) -> None:
        payload = conversation.model_dump_json()
        async with self._db.session() as session:
            row = await session.get(StoredSession, conversation.session_id)
            if row is None:
                row = StoredSession(
                    id=conversation.session_id,
                    cwd=conversation.cwd,
                    created_at=conversation.created_at,
                )
                session.add(row)
            row.turn_count = len(conversation.turns)
            row.updated_at = conversation.updated_at
            row.last_used_at = self._clock()
            row.payload = payload
            await session.commit()
        logger.debug("Saved session %s (%d turns)", conversation.session_id, len(conversation.turns))

    async def list(self) -> list[SessionSummary]:
        """All sessions, most recently saved first."""
        async with self._db.session() as session:
            result = await session.execute(
                select(
                    StoredSession.id,
                    StoredSession.cwd,
                    StoredSession.turn_count,
                    StoredSession.updated_at,
                    StoredSession.last_used_at,
                )
                .order_by(StoredSession.last_used_at.desc(), StoredSession.id)
            )
            return [
                SessionSummary(
                    id=r.id,
                    cwd=r.cwd,
                    turn_count=r.turn_count,
                    updated_at=r.updated_at,
                    last_used_at=r.last_used_at,
                )
                for r in result
            ]

    async def resume(self, ref: str, cwd: str | None = None) -> Conversation:
        """Load a session by id, or ``"last"`` for the most recent one.

        ``"last"`` prefers sessions started in ``cwd`` (default: the current
        directory) and falls back to the most recent session anywhere.
        """
        async with self._db.session() as session:
            if ref == LAST:
                row = await self._latest(session, cwd or os.getcwd())
            else:
                row = await session.get(StoredSession, ref)
        if row is None:
            raise SessionNotFound(
                "No saved sessions" if ref == LAST else f"No saved session with id {ref}"
            )
        logger.info("Resuming session %s", row.id)
        return Conversation.model_validate_json(row.payload)

    @staticmethod
    async def _latest(session, cwd: str) -> StoredSession | None:
        newest = select(StoredSession).order_by(StoredSession.last_used_at.desc(), StoredSession.id).limit(1)
        row = (await session.execute(newest.where(StoredSession.cwd == cwd))).scalar_one_or_none()
        if row is None:
            row = (await session.execute(newest)).scalar_one_or_none()
        return row
