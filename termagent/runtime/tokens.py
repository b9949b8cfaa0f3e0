"""Deterministic token estimation.

Roughly four UTF-8 bytes per token plus a fixed per-turn framing overhead.
Not a tokenizer: the point is a stable, monotonic estimate that never
depends on provider feedback, so budget decisions are reproducible.
"""

from __future__ import annotations

import json
import math
from typing import Any, Iterable

BYTES_PER_TOKEN = 4
TURN_OVERHEAD = 4


class TokenEstimator:
    @staticmethod
    def text_tokens(text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text.encode("utf-8")) / BYTES_PER_TOKEN)

    @classmethod
    def turn_cost(
        cls,
        role: str,
        content: str,
        tool_calls: Iterable[Any] = (),
    ) -> int:
        """Cost of one turn: role, content, tool-call names and JSON arguments."""
        parts = [role, content]
        for call in tool_calls:
            parts.append(call.name)
            parts.append(json.dumps(call.arguments, sort_keys=True, ensure_ascii=False))
        return cls.text_tokens("".join(parts)) + TURN_OVERHEAD

    @classmethod
    def conversation_cost(cls, turns: Iterable[Any]) -> int:
        return sum(t.cost for t in turns)
