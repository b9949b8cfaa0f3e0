"""Conversation data model.

Pydantic models so a Conversation round-trips through JSON unchanged for
the session store.
"""

from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from termagent.runtime.tokens import TokenEstimator

Role = Literal["user", "assistant", "tool", "summary"]
Risk = Literal["low", "medium", "high"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SafetyMetadata(BaseModel):
    """Model-declared risk assessment attached to a risk-bearing call."""

    model_config = ConfigDict(frozen=True)

    risk: Risk
    mutation: bool = False
    privesc: bool = False
    why: str = ""

    @property
    def gated(self) -> bool:
        return self.mutation or self.privesc or self.risk != "low"


class ToolCall(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    safety: SafetyMetadata | None = None


class Turn(BaseModel):
    """One entry in the transcript. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_call_id: str | None = None
    tool_name: str | None = None
    is_error: bool = False

    @property
    def cost(self) -> int:
        return TokenEstimator.turn_cost(self.role, self.content, self.tool_calls)

    @classmethod
    def user(cls, content: str) -> "Turn":
        return cls(role="user", content=content)

    @classmethod
    def summary(cls, content: str) -> "Turn":
        return cls(role="summary", content=content)

    @classmethod
    def tool_result(cls, call: ToolCall, content: str, is_error: bool = False) -> "Turn":
        return cls(
            role="tool",
            content=content,
            tool_call_id=call.id,
            tool_name=call.name,
            is_error=is_error,
        )


class Conversation(BaseModel):
    """Ordered turns plus the identity needed to resume them later."""

    session_id: str = Field(default_factory=lambda: uuid4().hex)
    cwd: str = Field(default_factory=os.getcwd)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    turns: list[Turn] = Field(default_factory=list)
    compaction_count: int = 0

    def append(self, turn: Turn) -> None:
        self.turns.append(turn)
        self.updated_at = utcnow()

    def replace_prefix(self, count: int, summary: Turn) -> None:
        """Replace the first ``count`` turns with a single summary turn."""
        self.turns = [summary, *self.turns[count:]]
        self.compaction_count += 1
        self.updated_at = utcnow()

    @property
    def total_cost(self) -> int:
        return TokenEstimator.conversation_cost(self.turns)


class ModelResponse(BaseModel):
    """What a model transport returns for one request."""

    text: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    usage: dict[str, int] = Field(default_factory=dict)
    stop_reason: str = ""
