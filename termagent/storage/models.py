"""SQLAlchemy ORM models for persisted sessions."""

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class StoredSession(Base):
    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    cwd: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    turn_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # stamped on every save; "last" and list() order by it
    last_used_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    # Conversation.model_dump_json(), stored verbatim
    payload: Mapped[str] = mapped_column(Text, nullable=False)
