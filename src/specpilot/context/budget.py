"""Token budget allocation for LLM calls.

The budget splits a model's context window into system prompt,
few-shot examples, conversation history and a reserve for the
response. All counts come from the heuristic estimator in
``specpilot.utils.tokens`` and are approximations.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from specpilot.context.compressor import (
    CompressionResult,
    CompressionStrategy,
    HistoryCompressor,
    sequence_tokens,
)
from specpilot.models.base import ConversationMessage
from specpilot.utils.tokens import (
    MESSAGE_ENVELOPE_TOKENS,
    estimate_message_tokens,
    truncate_to_tokens,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenAllocation:
    """Per-call split of the context window. Parts never exceed ``total``."""

    system_prompt: int
    examples: int
    conversation: int
    reserved_response: int
    total: int
    compression_ratio: float = 1.0

    @property
    def used(self) -> int:
        return self.system_prompt + self.examples + self.conversation + self.reserved_response


@dataclass
class BuiltContext:
    """Messages ready to send plus the accounting that produced them."""

    messages: list[dict]
    allocation: TokenAllocation
    compression: CompressionResult | None = None
    history: list[ConversationMessage] = field(default_factory=list)


def _render_examples(examples: Sequence[str | dict]) -> str:
    rendered = []
    for example in examples:
        if isinstance(example, str):
            rendered.append(example)
        else:
            rendered.append(json.dumps(example, ensure_ascii=False))
    return "\n\n".join(rendered)


class ContextBudgetManager:
    """Allocates token budgets and fits history into them."""

    def __init__(
        self,
        max_tokens: int = 32000,
        reserve_for_response: int = 2000,
        compressor: HistoryCompressor | None = None,
    ):
        if max_tokens <= 0:
            raise ValueError(f"max_tokens must be positive, got {max_tokens}")
        self._max_tokens = max_tokens
        self._reserve = max(0, min(reserve_for_response, max_tokens))
        self._compressor = compressor or HistoryCompressor()

    @property
    def compressor(self) -> HistoryCompressor:
        return self._compressor

    def available_tokens(self) -> int:
        return self._max_tokens - self._reserve

    def allocate(
        self,
        system_prompt: str,
        examples: Sequence[str | dict] = (),
        history: Sequence[ConversationMessage] = (),
        max_tokens: int | None = None,
        reserve_for_response: int | None = None,
    ) -> TokenAllocation:
        """Split the window. Conversation gets whatever the fixed parts leave."""
        total = self._max_tokens if max_tokens is None else max_tokens
        reserve = self._reserve if reserve_for_response is None else reserve_for_response
        reserve = max(0, min(reserve, total))
        available = total - reserve

        system_tokens = estimate_message_tokens(system_prompt) if system_prompt else 0
        examples_text = _render_examples(examples)
        example_tokens = estimate_message_tokens(examples_text) if examples_text else 0

        if system_tokens > available:
            logger.warning(
                "System prompt (%d tokens) exceeds available budget %d; it will be trimmed",
                system_tokens,
                available,
            )
            system_tokens = available
        if system_tokens + example_tokens > available:
            logger.warning(
                "Examples (%d tokens) do not fit beside the system prompt; trimming to %d",
                example_tokens,
                available - system_tokens,
            )
            example_tokens = available - system_tokens

        conversation = max(0, available - system_tokens - example_tokens)
        history_tokens = sequence_tokens(list(history))
        ratio = 1.0
        if history_tokens > conversation:
            ratio = conversation / history_tokens

        return TokenAllocation(
            system_prompt=system_tokens,
            examples=example_tokens,
            conversation=conversation,
            reserved_response=reserve,
            total=total,
            compression_ratio=ratio,
        )

    def fit_history(
        self,
        history: list[ConversationMessage],
        allocation: TokenAllocation,
        strategy: CompressionStrategy | str | None = None,
        query: str = "",
    ) -> CompressionResult:
        """Compress history into the allocation's conversation share."""
        return self._compressor.compress(
            history, allocation.conversation, strategy=strategy, query=query,
        )

    def compress(
        self,
        history: list[ConversationMessage],
        target_tokens: int,
        strategy: CompressionStrategy | str | None = None,
        query: str = "",
    ) -> list[ConversationMessage]:
        return self._compressor.compress(
            history, target_tokens, strategy=strategy, query=query,
        ).messages

    @staticmethod
    def trim_to_fit(text: str, max_tokens: int) -> str:
        """Truncate a single string, preferring a sentence boundary."""
        return truncate_to_tokens(text, max_tokens)

    def build_context(
        self,
        system_prompt: str,
        history: list[ConversationMessage],
        examples: Sequence[str | dict] = (),
        strategy: CompressionStrategy | str | None = None,
        query: str = "",
        max_tokens: int | None = None,
    ) -> BuiltContext:
        """Allocate, trim fixed parts, compress history, and assemble messages."""
        allocation = self.allocate(system_prompt, examples, history, max_tokens=max_tokens)

        messages: list[dict] = []
        if system_prompt and allocation.system_prompt > 0:
            content = self.trim_to_fit(
                system_prompt, allocation.system_prompt - MESSAGE_ENVELOPE_TOKENS,
            )
            messages.append({"role": "system", "content": content})
        examples_text = _render_examples(examples)
        if examples_text and allocation.examples > MESSAGE_ENVELOPE_TOKENS:
            content = self.trim_to_fit(
                examples_text, allocation.examples - MESSAGE_ENVELOPE_TOKENS,
            )
            messages.append({"role": "system", "content": content})

        compression = self.fit_history(history, allocation, strategy=strategy, query=query)
        messages.extend(m.to_prompt() for m in compression.messages)
        return BuiltContext(
            messages=messages,
            allocation=allocation,
            compression=compression,
            history=compression.messages,
        )
