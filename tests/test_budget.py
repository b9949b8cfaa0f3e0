"""Tests for token estimation and the context budget (compaction, refusal)."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from termagent.errors import BudgetExceeded
from termagent.runtime.budget import (
    SUMMARY_HEADER,
    ContextBudgetManager,
    ExtractiveSummarizer,
    ModelProfile,
    ModelSummarizer,
    context_window_for,
)
from termagent.runtime.models import Conversation, ModelResponse, ToolCall, Turn
from termagent.runtime.tokens import TURN_OVERHEAD, TokenEstimator


def _assistant(content: str, calls: list[ToolCall] | None = None) -> Turn:
    return Turn(role="assistant", content=content, tool_calls=calls or [])


def _conversation(pairs: int, size: int = 400) -> Conversation:
    conv = Conversation(session_id="budget-test", cwd="/tmp")
    for i in range(pairs):
        conv.append(Turn.user(f"{i}" + "x" * (size - 1)))
        conv.append(_assistant(f"{i}" + "y" * (size - 1)))
    return conv


def _make_manager(make_settings, summarizer=None, **overrides) -> ContextBudgetManager:
    values = {"context_window": 2000, "max_tokens": 500}
    values.update(overrides)
    settings = make_settings(**values)
    return ContextBudgetManager(ModelProfile.from_settings(settings), settings, summarizer)


class TestTokenEstimator:
    @pytest.mark.parametrize("text,tokens", [("", 0), ("abcd", 1), ("abcde", 2), ("éééé", 2)])
    def test_text_tokens(self, text, tokens):
        assert TokenEstimator.text_tokens(text) == tokens

    def test_monotonic_in_content(self):
        costs = [TokenEstimator.text_tokens("z" * n) for n in range(0, 200)]
        assert costs == sorted(costs)

    def test_turn_cost_counts_tool_calls(self):
        call = ToolCall(id="c", name="run_shell", arguments={"command": "ls -la"})
        plain = _assistant("listing")
        with_call = _assistant("listing", [call])
        assert plain.cost == TokenEstimator.text_tokens("assistantlisting") + TURN_OVERHEAD
        assert with_call.cost > plain.cost

    def test_conversation_cost_is_sum(self):
        conv = _conversation(3)
        assert conv.total_cost == sum(t.cost for t in conv.turns)


class TestModelProfile:
    @pytest.mark.parametrize(
        "model,window",
        [
            ("gpt-4.1-mini", 1_047_576),
            ("gpt-4o-2024-08-06", 128_000),
            ("gpt-5", 400_000),
            ("claude-sonnet-4-5", 200_000),
            ("openrouter/gemini-2.5-pro", 1_048_576),
            ("llama3", 8192),
        ],
    )
    def test_context_window_for(self, model, window):
        assert context_window_for(model) == window

    def test_from_settings_default_window(self, make_settings):
        profile = ModelProfile.from_settings(make_settings(model="claude-opus", max_tokens=4096))
        assert profile.context_window == 200_000
        assert profile.hard_ceiling == 200_000 - 4096

    def test_output_reserve_capped_at_half_window(self, make_settings):
        profile = ModelProfile.from_settings(make_settings(context_window=6000, max_tokens=4096))
        assert profile.max_output_tokens == 3000
        assert profile.hard_ceiling == 3000

    def test_thresholds(self, make_settings):
        manager = _make_manager(make_settings)
        assert manager.hard_ceiling == 1500
        assert manager.soft_threshold == 1200


class TestFindCutPoint:
    @staticmethod
    def _turns(roles: str) -> list[Turn]:
        mapping = {"u": "user", "a": "assistant", "t": "tool", "s": "summary"}
        return [Turn(role=mapping[r], content=r) for r in roles]

    @pytest.mark.parametrize(
        "roles,expected",
        [
            ("uauaua", 4),  # candidate is already a user turn
            ("uaauaau", 6),  # snapped forward to the next user turn
            ("uauttt", 2),  # no user turn after, snapped backward
            ("uatata", 0),  # only user turn is the first one
            ("ua", 0),  # shorter than keep_recent
            ("sua", 0),  # would only re-summarize the summary
        ],
    )
    def test_cut_point(self, make_settings, roles, expected):
        manager = _make_manager(make_settings, keep_recent_turns=2)
        assert manager.find_cut_point(self._turns(roles)) == expected


class TestCompaction:
    @pytest.mark.asyncio
    async def test_compaction_reduces_cost_and_keeps_recent(self, make_settings):
        manager = _make_manager(make_settings, keep_recent_turns=4)
        conv = _conversation(5)
        recent = conv.turns[-4:]
        before = conv.total_cost

        result = await manager.compact(conv)

        assert result is not None
        assert result.removed_turns == 6
        assert result.tokens_before == before
        assert result.tokens_after == conv.total_cost < before
        assert conv.turns[0].role == "summary"
        assert conv.turns[0].content.startswith(SUMMARY_HEADER)
        assert conv.turns[1:] == recent
        assert conv.compaction_count == 1

    @pytest.mark.asyncio
    async def test_repeated_compaction_never_grows(self, make_settings):
        manager = _make_manager(make_settings, keep_recent_turns=2)
        conv = _conversation(3)
        for i in range(4):
            conv.append(Turn.user(f"follow-up {i} " + "q" * 300))
            conv.append(_assistant("ok " + "r" * 300))
            result = await manager.compact(conv)
            if result is not None:
                assert result.tokens_after < result.tokens_before
        assert conv.compaction_count >= 1
        assert conv.turns[0].role == "summary"

    @pytest.mark.asyncio
    async def test_aborts_when_summary_not_cheaper(self, make_settings):
        manager = _make_manager(make_settings, keep_recent_turns=2)
        conv = Conversation(session_id="tiny", cwd="/tmp")
        for turn in (Turn.user("hi"), _assistant("yo"), Turn.user("next"), _assistant("ok")):
            conv.append(turn)
        snapshot = list(conv.turns)

        assert await manager.compact(conv) is None
        assert conv.turns == snapshot
        assert conv.compaction_count == 0

    @pytest.mark.asyncio
    async def test_oversized_summary_is_shrunk(self, make_settings):
        verbose = MagicMock()
        verbose.summarize = AsyncMock(return_value="w" * 50_000)
        manager = _make_manager(make_settings, summarizer=verbose, keep_recent_turns=2)
        conv = _conversation(4)
        prefix_cost = TokenEstimator.conversation_cost(conv.turns[:6])

        result = await manager.compact(conv)

        assert result is not None
        assert conv.turns[0].cost < prefix_cost

    @pytest.mark.asyncio
    async def test_after_append_below_soft_threshold(self, make_settings):
        manager = _make_manager(make_settings)
        conv = _conversation(2)
        assert await manager.after_append(conv) is None
        assert conv.compaction_count == 0

    @pytest.mark.asyncio
    async def test_after_append_at_soft_threshold(self, make_settings):
        manager = _make_manager(make_settings)
        conv = _conversation(6)
        assert conv.total_cost >= manager.soft_threshold
        assert await manager.after_append(conv) is not None


class TestCheckSend:
    @pytest.mark.asyncio
    async def test_pending_turn_crossing_soft_threshold_compacts(self, make_settings):
        manager = _make_manager(make_settings)
        conv = _conversation(5)
        # Just under the soft threshold on its own.
        assert manager.soft_threshold * 0.85 < conv.total_cost < manager.soft_threshold

        result = await manager.check_send(conv, pending=Turn.user("y" * 400), overhead=50)

        assert result is not None
        assert conv.compaction_count == 1
        assert conv.total_cost + 50 < manager.hard_ceiling

    @pytest.mark.asyncio
    async def test_small_request_untouched(self, make_settings):
        manager = _make_manager(make_settings)
        conv = _conversation(1)
        assert await manager.check_send(conv, pending=Turn.user("hello")) is None

    @pytest.mark.asyncio
    async def test_refuses_with_remedies(self, make_settings):
        manager = _make_manager(make_settings)
        conv = _conversation(1)
        snapshot = list(conv.turns)
        huge = Turn.user("z" * 8000)

        with pytest.raises(BudgetExceeded) as exc_info:
            await manager.check_send(conv, pending=huge)

        err = exc_info.value
        assert err.ceiling == 1500
        assert err.projected == conv.total_cost + huge.cost
        assert err.remedies == ["compact", "new_session"]
        assert conv.turns == snapshot

    def test_state_and_describe(self, make_settings):
        manager = _make_manager(make_settings)
        conv = _conversation(1)
        state = manager.state(conv, overhead=10)
        assert state.estimate == conv.total_cost + 10
        described = manager.describe(conv)
        assert described["hard_ceiling"] == 1500
        assert described["soft_threshold"] == 1200
        assert described["compaction_count"] == 0


class TestSummarizers:
    @pytest.mark.asyncio
    async def test_extractive_clips_long_turns(self):
        text = await ExtractiveSummarizer(line_chars=30).summarize(
            [Turn.user("a" * 100), _assistant("done", [ToolCall(id="c", name="run_shell")])],
            max_chars=1000,
        )
        lines = text.splitlines()
        assert lines[0] == "- user: " + "a" * 30 + "..."
        assert lines[1] == "- assistant: done [called: run_shell]"

    @pytest.mark.asyncio
    async def test_extractive_keeps_newest_lines_under_cap(self):
        turns = [Turn.user(f"message number {i}") for i in range(20)]
        text = await ExtractiveSummarizer().summarize(turns, max_chars=100)
        assert len(text) <= 100
        assert text.endswith("message number 19")
        assert "message number 0\n" not in text

    @pytest.mark.asyncio
    async def test_extractive_carries_prior_summary(self):
        prior = Turn.summary(f"{SUMMARY_HEADER}\n- user: set up nginx")
        text = await ExtractiveSummarizer().summarize([prior, Turn.user("now restart it")], max_chars=1000)
        assert text.startswith("- user: set up nginx")

    @pytest.mark.asyncio
    async def test_model_summary_used_when_valid(self):
        summary = (
            "## Goal\nFix the failing build on the staging host.\n\n"
            "## Progress\n- Ran make, found a missing header\n\n"
            "## Critical Context\n- /src/main.c line 12 includes foo.h\n\n"
            "## Next Steps\n1. Install libfoo-dev"
        )
        transport = MagicMock()
        transport.send = AsyncMock(return_value=ModelResponse(text=summary))
        turns = [Turn.user("x" * 2000), _assistant("y" * 2000)]

        assert await ModelSummarizer(transport).summarize(turns, 4000) == summary
        conversation, tools, system_prompt = transport.send.call_args.args
        assert tools == []
        assert "summarizer" in system_prompt

    @pytest.mark.asyncio
    async def test_model_summary_falls_back_when_invalid(self):
        transport = MagicMock()
        transport.send = AsyncMock(return_value=ModelResponse(text="too short"))
        turns = [Turn.user("deploy the app")]
        assert await ModelSummarizer(transport).summarize(turns, 4000) == "- user: deploy the app"

    @pytest.mark.asyncio
    async def test_model_summary_falls_back_on_transport_error(self):
        transport = MagicMock()
        transport.send = AsyncMock(side_effect=RuntimeError("offline"))
        fallback = MagicMock()
        fallback.summarize = AsyncMock(return_value="fallback text")
        result = await ModelSummarizer(transport, fallback).summarize([Turn.user("x")], 4000)
        assert result == "fallback text"
