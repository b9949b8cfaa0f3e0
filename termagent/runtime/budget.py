"""Context budget: soft-threshold compaction and the hard send ceiling.

Two thresholds per model profile:
  hard ceiling   = context window - max output tokens; a request whose
                   estimate exceeds it is never sent.
  soft threshold = context_soft_ratio x hard ceiling; reaching it triggers
                   compaction of the oldest turns into one summary turn.

Compaction keeps the most recent ``keep_recent_turns`` verbatim, snaps the
cut to a user-turn boundary, and only applies a summary that is strictly
cheaper than the turns it replaces.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from termagent.config import Settings
from termagent.errors import BudgetExceeded
from termagent.runtime.models import Conversation, Turn
from termagent.runtime.tokens import TokenEstimator

if TYPE_CHECKING:
    from termagent.runtime.transport import ModelTransport

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_WINDOW = 8192

_CONTEXT_WINDOWS: list[tuple[str, int]] = [
    ("gpt-4.1", 1_047_576),
    ("gpt-4o", 128_000),
    ("gpt-5", 400_000),
    ("claude", 200_000),
    ("gemini", 1_048_576),
]

SUMMARY_HEADER = "[Summary of earlier conversation]"

CHECKPOINT_SYSTEM_PROMPT = """\
You are a conversation summarizer. Output ONLY a structured summary.
Keep it short. Prioritize precision over completeness.

## Goal
[1-2 sentences]

## Progress
- [Completed items and current work]

## Critical Context
- [File paths, commands, error messages, hosts, variable names]

## Next Steps
1. [Ordered list]
"""

# Section patterns for validation (case-insensitive, flexible)
_SECTION_PATTERNS = [
    re.compile(r"##\s*goals?\b", re.IGNORECASE),
    re.compile(r"##\s*progress\b", re.IGNORECASE),
    re.compile(r"##\s*critical\s*context\b", re.IGNORECASE),
]


def context_window_for(model: str) -> int:
    name = model.lower()
    for prefix, window in _CONTEXT_WINDOWS:
        if name.startswith(prefix) or f"/{prefix}" in name:
            return window
    return DEFAULT_CONTEXT_WINDOW


@dataclass(frozen=True)
class ModelProfile:
    name: str
    context_window: int
    max_output_tokens: int

    @property
    def hard_ceiling(self) -> int:
        return self.context_window - self.max_output_tokens

    @classmethod
    def from_settings(cls, settings: Settings) -> "ModelProfile":
        window = settings.context_window or context_window_for(settings.model)
        max_output = min(settings.max_tokens, window // 2)
        return cls(name=settings.model, context_window=window, max_output_tokens=max_output)


@dataclass
class BudgetState:
    estimate: int
    soft_threshold: int
    hard_ceiling: int
    compaction_count: int

    def to_dict(self) -> dict[str, int]:
        return {
            "estimate": self.estimate,
            "soft_threshold": self.soft_threshold,
            "hard_ceiling": self.hard_ceiling,
            "compaction_count": self.compaction_count,
        }


@dataclass
class CompactionResult:
    removed_turns: int
    tokens_before: int
    tokens_after: int


# ------------------------------------------------------------------
# Summarizers
# ------------------------------------------------------------------


class Summarizer(Protocol):
    async def summarize(self, turns: list[Turn], max_chars: int) -> str: ...


def serialize_turns(turns: list[Turn]) -> str:
    """Render turns as readable text for a summarizer."""
    lines = []
    for turn in turns:
        if turn.role == "tool":
            flag = " (error)" if turn.is_error else ""
            lines.append(f"**Tool {turn.tool_name}{flag}:** {turn.content}")
            continue
        text = turn.content
        if turn.tool_calls:
            calls = ", ".join(call.name for call in turn.tool_calls)
            text = f"{text}\n[called: {calls}]".strip()
        lines.append(f"**{turn.role.capitalize()}:** {text}")
    return "\n\n".join(lines)


class ExtractiveSummarizer:
    """Deterministic summary: one clipped line per turn, newest last.

    A prior summary turn is carried forward whole; the character cap then
    drops the oldest lines first.
    """

    def __init__(self, line_chars: int = 160) -> None:
        self._line_chars = line_chars

    def _line(self, turn: Turn) -> str:
        if turn.role == "summary":
            return turn.content.removeprefix(SUMMARY_HEADER).strip()
        text = " ".join(turn.content.split())
        if turn.tool_calls:
            calls = ", ".join(call.name for call in turn.tool_calls)
            text = f"{text} [called: {calls}]".strip()
        if len(text) > self._line_chars:
            text = text[: self._line_chars] + "..."
        if turn.role == "tool":
            label = f"tool {turn.tool_name}" + (" error" if turn.is_error else "")
        else:
            label = turn.role
        return f"- {label}: {text}"

    async def summarize(self, turns: list[Turn], max_chars: int) -> str:
        lines = [self._line(turn) for turn in turns]
        text = "\n".join(lines)
        if len(text) > max_chars:
            # Keep the most recent lines; they matter most for what follows.
            text = text[-max_chars:]
            newline = text.find("\n")
            if 0 <= newline < len(text) - 1:
                text = text[newline + 1 :]
        return text


class ModelSummarizer:
    """Asks the model for a structured checkpoint; falls back to extractive."""

    def __init__(self, transport: "ModelTransport", fallback: Summarizer | None = None) -> None:
        self._transport = transport
        self._fallback = fallback or ExtractiveSummarizer()

    async def summarize(self, turns: list[Turn], max_chars: int) -> str:
        start = time.monotonic()
        try:
            request = Conversation(turns=[Turn.user(serialize_turns(turns))])
            response = await self._transport.send(request, [], CHECKPOINT_SYSTEM_PROMPT)
            text = response.text.strip()
            if not self._validate(text, max_chars):
                raise ValueError("Summary failed validation")
            if TokenEstimator.text_tokens(text) >= TokenEstimator.conversation_cost(turns):
                raise ValueError("Summary is not cheaper than the turns it replaces")
        except Exception as e:
            logger.warning("Model summary failed: %s - falling back to extractive", e)
            return await self._fallback.summarize(turns, max_chars)
        logger.info("Model summary: %d chars in %d ms", len(text), int((time.monotonic() - start) * 1000))
        return text

    @staticmethod
    def _validate(summary: str, max_chars: int) -> bool:
        """Basic format + length check."""
        if len(summary) < 100:
            logger.warning("Summary too short (%d chars)", len(summary))
            return False
        if len(summary) > max_chars:
            logger.warning("Summary too long (%d > %d chars)", len(summary), max_chars)
            return False
        found = sum(1 for pat in _SECTION_PATTERNS if pat.search(summary))
        if found < 2:
            logger.warning("Summary missing sections (%d/3)", found)
            return False
        return True


# ------------------------------------------------------------------
# Budget manager
# ------------------------------------------------------------------


class ContextBudgetManager:
    def __init__(
        self,
        profile: ModelProfile,
        settings: Settings,
        summarizer: Summarizer | None = None,
    ) -> None:
        self.profile = profile
        self._keep_recent = max(1, settings.keep_recent_turns)
        self._summary_max_chars = settings.summary_max_chars
        self.hard_ceiling = profile.hard_ceiling
        self.soft_threshold = int(self.hard_ceiling * settings.context_soft_ratio)
        self.summarizer: Summarizer = summarizer or ExtractiveSummarizer()

    def state(self, conversation: Conversation, overhead: int = 0) -> BudgetState:
        return BudgetState(
            estimate=conversation.total_cost + overhead,
            soft_threshold=self.soft_threshold,
            hard_ceiling=self.hard_ceiling,
            compaction_count=conversation.compaction_count,
        )

    async def after_append(self, conversation: Conversation, overhead: int = 0) -> CompactionResult | None:
        """Compact once the running estimate reaches the soft threshold."""
        if conversation.total_cost + overhead < self.soft_threshold:
            return None
        return await self.compact(conversation)

    async def check_send(
        self,
        conversation: Conversation,
        pending: Turn | None = None,
        overhead: int = 0,
    ) -> CompactionResult | None:
        """Make room for a request, or refuse it.

        Raises BudgetExceeded, leaving the conversation untouched apart from
        any compaction already applied, when the projected request is still
        above the hard ceiling.
        """
        extra = overhead + (pending.cost if pending is not None else 0)
        result = None
        if conversation.total_cost + extra >= self.soft_threshold:
            result = await self.compact(conversation)
        projected = conversation.total_cost + extra
        if projected > self.hard_ceiling:
            logger.warning(
                "Refusing send for %s: %d tokens > ceiling %d",
                conversation.session_id, projected, self.hard_ceiling,
            )
            raise BudgetExceeded(projected, self.hard_ceiling)
        return result

    def find_cut_point(self, turns: list[Turn]) -> int:
        """Index of the first turn to keep verbatim, or 0 for no compaction.

        Snaps forward to a user turn so the kept history starts cleanly,
        or backward if no user turn follows the candidate.
        """
        candidate = len(turns) - self._keep_recent
        if candidate <= 0:
            return 0
        cut = 0
        for j in range(candidate, len(turns)):
            if turns[j].role == "user":
                cut = j
                break
        else:
            for j in range(candidate - 1, 0, -1):
                if turns[j].role == "user":
                    cut = j
                    break
        if cut == 1 and turns[0].role == "summary":
            return 0
        return cut

    async def compact(self, conversation: Conversation) -> CompactionResult | None:
        """Replace the oldest turns by one summary turn if that is cheaper."""
        cut = self.find_cut_point(conversation.turns)
        if cut <= 0:
            logger.info("Nothing to compact in %s", conversation.session_id)
            return None

        prefix = conversation.turns[:cut]
        prefix_cost = TokenEstimator.conversation_cost(prefix)
        before = conversation.total_cost

        body = await self.summarizer.summarize(prefix, self._summary_max_chars)
        summary = Turn.summary(f"{SUMMARY_HEADER}\n{body}")
        while summary.cost >= prefix_cost and body:
            body = body[(len(body) + 1) // 2 :]
            summary = Turn.summary(f"{SUMMARY_HEADER}\n{body}")
        if summary.cost >= prefix_cost:
            logger.warning(
                "Compaction aborted for %s: no summary cheaper than %d tokens",
                conversation.session_id, prefix_cost,
            )
            return None

        conversation.replace_prefix(cut, summary)
        result = CompactionResult(removed_turns=cut, tokens_before=before, tokens_after=conversation.total_cost)
        logger.info(
            "Compacted conversation %s: %d turns -> summary, %d -> %d tokens (compaction #%d)",
            conversation.session_id,
            cut,
            result.tokens_before,
            result.tokens_after,
            conversation.compaction_count,
        )
        return result

    def describe(self, conversation: Conversation) -> dict[str, Any]:
        return {"model": self.profile.name, **self.state(conversation).to_dict()}
