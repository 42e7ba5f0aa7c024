"""Conversation history compression.

Five strategies trade fidelity for size:

- SUMMARY collapses older turns into one synthetic system digest.
- IMPORTANCE scores each turn and greedily keeps the best within budget.
- DEDUP drops exact and near-duplicate turns.
- ROLLING keeps a leading system message and the newest run of turns.
- HYBRID runs DEDUP, then IMPORTANCE.

The most recent ``pin_recent`` messages are pinned and never evicted
while they fit the target on their own. Every strategy returns a
chronologically ordered sequence whose estimated cost stays within the
target.
"""

from __future__ import annotations

import logging
import math
import re
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum

from specpilot.context.window import RollingWindow
from specpilot.models.base import ConversationMessage
from specpilot.utils.tokens import estimate_message_tokens, truncate_to_tokens

logger = logging.getLogger(__name__)


class CompressionStrategy(StrEnum):
    SUMMARY = "summary"
    IMPORTANCE = "importance"
    DEDUP = "dedup"
    ROLLING = "rolling"
    HYBRID = "hybrid"


@dataclass
class CompressionResult:
    """Outcome of one compress() call."""

    messages: list[ConversationMessage]
    original_tokens: int
    compressed_tokens: int
    strategy: CompressionStrategy
    removed: int = 0

    @property
    def ratio(self) -> float:
        if self.original_tokens <= 0:
            return 1.0
        return self.compressed_tokens / self.original_tokens


def sequence_tokens(messages: list[ConversationMessage]) -> int:
    """Estimated cost of a message sequence, envelopes included."""
    return sum(estimate_message_tokens(m.content) for m in messages)


class HistoryCompressor:
    """Compresses conversation history to a token target."""

    DEDUP_SIMILARITY = 0.85
    HISTORY_LIMIT = 100
    RATIO_WINDOW = 20

    _TOPIC_KEYWORDS = (
        "requirements", "design", "implementation", "testing",
        "deployment", "database", "api", "authentication", "authorization",
        "frontend", "backend", "error", "bug", "feature", "refactor",
    )
    _MENTION_RE = re.compile(r"\b(?:about|regarding|for)\s+(\w+)", re.IGNORECASE)
    _ACTION_RE = re.compile(
        r"\b(?:created?|updated?|deleted?|implemented|fixed|generated)\s+(\w+)",
        re.IGNORECASE,
    )
    _PUNCT_RE = re.compile(r"[^\w\s]")
    _SPACE_RE = re.compile(r"\s+")
    _MAX_DIGEST_ITEMS = 5

    def __init__(
        self,
        strategy: CompressionStrategy | str = CompressionStrategy.HYBRID,
        pin_recent: int = 5,
        clock: Callable[[], float] = time.time,
    ):
        self._strategy = CompressionStrategy(strategy)
        self._pin_recent = max(0, pin_recent)
        self._clock = clock
        self._history: deque[CompressionResult] = deque(maxlen=self.HISTORY_LIMIT)
        self._window = RollingWindow()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def compress(
        self,
        history: list[ConversationMessage],
        target_tokens: int,
        strategy: CompressionStrategy | str | None = None,
        query: str = "",
        pin_recent: int | None = None,
    ) -> CompressionResult:
        """Shrink ``history`` to at most ``target_tokens`` estimated tokens."""
        chosen = CompressionStrategy(strategy) if strategy else self._strategy
        pin = self._pin_recent if pin_recent is None else max(0, pin_recent)
        target = max(0, target_tokens)
        original_tokens = sequence_tokens(history)

        if original_tokens <= target:
            kept = list(history)
        else:
            kept = self._compress_over_budget(history, target, chosen, query, pin)

        result = CompressionResult(
            messages=kept,
            original_tokens=original_tokens,
            compressed_tokens=sequence_tokens(kept),
            strategy=chosen,
            removed=max(0, len(history) - len(kept)),
        )
        self._history.append(result)
        if result.removed:
            logger.info(
                "Context compressed: %d -> %d tokens (%s, %d messages dropped)",
                result.original_tokens,
                result.compressed_tokens,
                chosen.value,
                result.removed,
            )
        return result

    def summarize(self, messages: list[ConversationMessage]) -> str:
        """Digest messages grouped by role into one line of text."""
        if not messages:
            return ""
        by_role: dict[str, list[ConversationMessage]] = {}
        for message in messages:
            by_role.setdefault(message.role, []).append(message)

        parts: list[str] = []
        if by_role.get("system"):
            parts.append(f"System instructions: {len(by_role['system'])} messages")
        if by_role.get("user"):
            topics = self._extract_topics(by_role["user"])
            parts.append(f"User discussed: {', '.join(topics) or 'general questions'}")
        if by_role.get("assistant"):
            replies = by_role["assistant"]
            actions = self._extract_actions(replies) or [f"{len(replies)} replies"]
            parts.append(f"Assistant performed: {', '.join(actions)}")
        return ". ".join(parts)

    def score_importance(
        self, messages: list[ConversationMessage], query: str = "",
    ) -> list[float]:
        """Score each message in [0, 1]; higher means more worth keeping."""
        now = self._clock()
        scores = []
        for message in messages:
            content = message.content
            lowered = content.lower()
            score = 0.5
            age_hours = max(0.0, now - message.timestamp) / 3600.0
            score += math.exp(-age_hours / 24.0) * 0.2
            score += min(len(content) / 1000.0, 0.2)
            if message.role == "system":
                score += 0.2
            elif message.role == "user":
                score += 0.1
            if query:
                score += self._relevance(lowered, query) * 0.3
            if "?" in content or "？" in content:
                score += 0.1
            if "error" in lowered or "exception" in lowered or "warning" in lowered:
                score += 0.15
            if "```" in content or "{" in content:
                score += 0.1
            scores.append(min(score, 1.0))
        return scores

    def deduplicate(
        self,
        messages: list[ConversationMessage],
        seen: list[set[str]] | None = None,
    ) -> list[ConversationMessage]:
        """Drop later messages that repeat an earlier one.

        ``seen`` may carry word sets of messages that must win any tie
        (pinned messages), so their earlier copies are dropped instead.
        """
        seen_words: list[set[str]] = list(seen or [])
        seen_signatures: set[str] = set()
        unique: list[ConversationMessage] = []
        for message in messages:
            signature = self.signature(message.content)
            words = set(signature.split())
            if signature in seen_signatures or any(
                self._jaccard(words, other) > self.DEDUP_SIMILARITY for other in seen_words
            ):
                continue
            seen_signatures.add(signature)
            seen_words.append(words)
            unique.append(message)
        return unique

    def average_ratio(self) -> float:
        """Mean compressed/original ratio over the most recent compressions."""
        recent = list(self._history)[-self.RATIO_WINDOW:]
        if not recent:
            return 1.0
        return sum(r.ratio for r in recent) / len(recent)

    @property
    def history(self) -> list[CompressionResult]:
        return list(self._history)

    @classmethod
    def signature(cls, content: str) -> str:
        """Lowercased, whitespace-collapsed, punctuation-stripped form."""
        collapsed = cls._SPACE_RE.sub(" ", content.lower())
        return cls._PUNCT_RE.sub("", collapsed).strip()

    # ------------------------------------------------------------------
    # Strategy internals
    # ------------------------------------------------------------------

    def _compress_over_budget(
        self,
        history: list[ConversationMessage],
        target: int,
        strategy: CompressionStrategy,
        query: str,
        pin: int,
    ) -> list[ConversationMessage]:
        split = max(0, len(history) - pin)
        older, pinned = history[:split], history[split:]

        pinned_tokens = sequence_tokens(pinned)
        if pinned_tokens > target:
            logger.warning(
                "Pinned messages (%d tokens) exceed target %d; keeping newest that fit",
                pinned_tokens,
                target,
            )
            return self._newest_within(pinned, target)

        budget = target - pinned_tokens
        if strategy is CompressionStrategy.ROLLING:
            kept = self._window.select(older, budget)
        elif strategy is CompressionStrategy.SUMMARY:
            kept = self._summary_within(older, budget)
        elif strategy is CompressionStrategy.IMPORTANCE:
            kept = self._importance_within(older, budget, query)
        else:
            pinned_words = [set(self.signature(m.content).split()) for m in pinned]
            deduped = self.deduplicate(older, seen=pinned_words)
            if strategy is CompressionStrategy.DEDUP:
                kept = self._newest_within(deduped, budget)
            else:
                kept = self._importance_within(deduped, budget, query)
        return kept + list(pinned)

    def _summary_within(
        self, older: list[ConversationMessage], budget: int,
    ) -> list[ConversationMessage]:
        digest = self.summarize(older)
        if not digest:
            return []
        content = f"[Summary: {digest}]"
        available = budget - estimate_message_tokens("")
        if available <= 0:
            return []
        if estimate_message_tokens(content) > budget:
            content = truncate_to_tokens(content, available)
            if not content:
                return []
        newest = older[-1].timestamp if older else self._clock()
        return [ConversationMessage(role="system", content=content, timestamp=newest)]

    def _importance_within(
        self, messages: list[ConversationMessage], budget: int, query: str,
    ) -> list[ConversationMessage]:
        scores = self.score_importance(messages, query)
        # Highest score first; newer wins ties.
        order = sorted(range(len(messages)), key=lambda i: (-scores[i], -i))
        chosen: list[int] = []
        used = 0
        for index in order:
            cost = estimate_message_tokens(messages[index].content)
            if used + cost <= budget:
                chosen.append(index)
                used += cost
        return [messages[i] for i in sorted(chosen)]

    @staticmethod
    def _newest_within(
        messages: list[ConversationMessage], budget: int,
    ) -> list[ConversationMessage]:
        kept: list[ConversationMessage] = []
        used = 0
        for message in reversed(messages):
            cost = estimate_message_tokens(message.content)
            if used + cost > budget:
                break
            kept.append(message)
            used += cost
        kept.reverse()
        return kept

    def _extract_topics(self, messages: list[ConversationMessage]) -> list[str]:
        topics: dict[str, None] = {}
        for message in messages:
            lowered = message.content.lower()
            for keyword in self._TOPIC_KEYWORDS:
                if keyword in lowered:
                    topics.setdefault(keyword)
            for match in self._MENTION_RE.finditer(lowered):
                topics.setdefault(match.group(1))
        return list(topics)[: self._MAX_DIGEST_ITEMS]

    def _extract_actions(self, messages: list[ConversationMessage]) -> list[str]:
        actions: dict[str, None] = {}
        for message in messages:
            for match in self._ACTION_RE.finditer(message.content.lower()):
                actions.setdefault(match.group(1))
        return list(actions)[: self._MAX_DIGEST_ITEMS]

    @staticmethod
    def _relevance(lowered_text: str, query: str) -> float:
        words = [w for w in query.lower().split() if len(w) > 2]
        if not words:
            return 0.0
        return sum(1 for w in words if w in lowered_text) / len(words)

    @staticmethod
    def _jaccard(a: set[str], b: set[str]) -> float:
        union = a | b
        if not union:
            return 1.0
        return len(a & b) / len(union)
