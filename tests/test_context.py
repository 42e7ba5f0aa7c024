"""Tests for token budgeting, history compression and the rolling window."""

from __future__ import annotations

import pytest

from specpilot.context.budget import ContextBudgetManager
from specpilot.context.compressor import CompressionStrategy, HistoryCompressor, sequence_tokens
from specpilot.context.window import RollingWindow
from specpilot.models.base import ConversationMessage
from specpilot.utils.tokens import estimate_tokens


def _conversation(count: int, size: int = 400) -> list[ConversationMessage]:
    messages = []
    for index in range(count):
        role = "user" if index % 2 == 0 else "assistant"
        body = f"{index:03d} " + "x" * (size - 4)
        messages.append(ConversationMessage(role=role, content=body, timestamp=1000.0 + index))
    return messages


class TestAllocate:
    def test_conversation_gets_the_remainder(self):
        manager = ContextBudgetManager(max_tokens=1000, reserve_for_response=200)
        allocation = manager.allocate("s" * 400)
        assert allocation.system_prompt == 104
        assert allocation.examples == 0
        assert allocation.conversation == 696
        assert allocation.reserved_response == 200
        assert allocation.used == allocation.total == 1000
        assert allocation.compression_ratio == 1.0

    def test_oversized_system_prompt_clamps_conversation(self, caplog):
        manager = ContextBudgetManager(max_tokens=1000, reserve_for_response=200)
        with caplog.at_level("WARNING"):
            allocation = manager.allocate("s" * 4000, examples=["example " * 50])
        assert allocation.conversation == 0
        assert allocation.used <= allocation.total
        assert "exceeds available budget" in caplog.text

    def test_compression_ratio_reflects_history(self):
        manager = ContextBudgetManager(max_tokens=1000, reserve_for_response=200)
        history = _conversation(20)
        allocation = manager.allocate("s" * 400, history=history)
        assert allocation.compression_ratio == pytest.approx(696 / sequence_tokens(history))

    def test_per_call_overrides(self):
        manager = ContextBudgetManager(max_tokens=1000, reserve_for_response=200)
        allocation = manager.allocate("", max_tokens=500, reserve_for_response=100)
        assert allocation.total == 500
        assert allocation.conversation == 400


class TestBuildContext:
    def test_history_fits_allocation(self):
        manager = ContextBudgetManager(
            max_tokens=1500,
            reserve_for_response=300,
            compressor=HistoryCompressor(pin_recent=3),
        )
        history = _conversation(30)
        built = manager.build_context("You are helpful.", history)

        assert built.messages[0]["role"] == "system"
        assert built.messages[-1]["content"] == history[-1].content
        assert sequence_tokens(built.history) <= built.allocation.conversation
        assert built.compression is not None and built.compression.removed > 0

    def test_trim_to_fit(self):
        text = "One sentence. " * 50
        trimmed = ContextBudgetManager.trim_to_fit(text, 20)
        assert estimate_tokens(trimmed) <= 20
        assert trimmed.endswith(".")


class TestCompressor:
    def test_fitting_history_is_untouched(self):
        compressor = HistoryCompressor()
        history = _conversation(4, size=40)
        result = compressor.compress(history, 10_000)
        assert result.messages == history
        assert result.removed == 0

    @pytest.mark.parametrize("strategy", list(CompressionStrategy))
    def test_output_within_target_and_pinned_kept(self, strategy):
        compressor = HistoryCompressor(pin_recent=5)
        history = _conversation(30)
        result = compressor.compress(history, 600, strategy=strategy)

        assert result.compressed_tokens <= 600
        assert result.messages[-5:] == history[-5:]
        timestamps = [m.timestamp for m in result.messages]
        assert timestamps == sorted(timestamps)

    def test_pinned_over_target_keeps_newest_that_fit(self):
        compressor = HistoryCompressor(pin_recent=5)
        history = _conversation(10)
        result = compressor.compress(history, 300, strategy=CompressionStrategy.IMPORTANCE)
        assert result.messages == history[-2:]

    def test_summary_digest(self):
        compressor = HistoryCompressor(pin_recent=1)
        history = [
            ConversationMessage(role="user", content="Let's talk about billing and the database"),
            ConversationMessage(role="assistant", content="I implemented invoices " + "y" * 400),
            ConversationMessage(role="user", content="Now the frontend " + "z" * 400),
            ConversationMessage(role="user", content="Latest question?"),
        ]
        result = compressor.compress(history, 60, strategy=CompressionStrategy.SUMMARY)

        digest = result.messages[0]
        assert digest.role == "system"
        assert digest.content.startswith("[Summary:")
        assert "database" in digest.content
        assert result.messages[-1] == history[-1]
        assert result.compressed_tokens <= 60

    def test_deduplicate_exact_and_near(self):
        compressor = HistoryCompressor()
        messages = [
            ConversationMessage(role="user", content="Hello, world!"),
            ConversationMessage(role="user", content="hello   world"),
            ConversationMessage(
                role="user", content="the quick brown fox jumps over the lazy dog"
            ),
            ConversationMessage(
                role="user", content="the quick brown fox jumps over the lazy dog today"
            ),
            ConversationMessage(role="user", content="something else entirely"),
        ]
        unique = compressor.deduplicate(messages)
        assert [m.content for m in unique] == [
            "Hello, world!",
            "the quick brown fox jumps over the lazy dog",
            "something else entirely",
        ]

    def test_importance_prefers_errors_and_query_matches(self):
        compressor = HistoryCompressor(clock=lambda: 1000.0)
        messages = [
            ConversationMessage(role="user", content="We hit an error in the payment database", timestamp=1000.0),
            ConversationMessage(role="assistant", content="ok", timestamp=1000.0),
        ]
        scores = compressor.score_importance(messages, query="payment database")
        assert scores[0] > scores[1]
        assert all(0.0 <= s <= 1.0 for s in scores)

    def test_average_ratio_tracks_history(self):
        compressor = HistoryCompressor(pin_recent=2)
        assert compressor.average_ratio() == 1.0
        compressor.compress(_conversation(20), 400)
        assert compressor.average_ratio() < 1.0
        assert len(compressor.history) == 1


class TestRollingWindow:
    def test_keeps_system_head_and_newest_run(self):
        history = [ConversationMessage(role="system", content="s" * 40)]
        history += [
            ConversationMessage(role="user", content=f"{i}" + "m" * 39) for i in range(10)
        ]
        selected = RollingWindow().select(history, 60)
        assert selected[0] == history[0]
        assert selected[1:] == history[-3:]

    def test_empty_budget(self):
        assert RollingWindow().select(_conversation(3), 0) == []

    def test_rejects_bad_fill_ratio(self):
        with pytest.raises(ValueError):
            RollingWindow(fill_ratio=0)

    def test_rolling_strategy_keeps_system_head_and_contiguous_tail(self):
        system = ConversationMessage(role="system", content="Project brief", timestamp=999.0)
        history = [system] + _conversation(20)
        compressor = HistoryCompressor(strategy=CompressionStrategy.ROLLING, pin_recent=2)

        result = compressor.compress(history, 700)

        assert result.strategy is CompressionStrategy.ROLLING
        assert result.compressed_tokens <= 700
        assert result.removed > 0
        assert result.messages[0] == system
        tail = result.messages[1:]
        assert tail == history[-len(tail):]
        assert len(tail) >= 2
