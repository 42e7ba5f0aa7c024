"""Rolling-window selection of recent conversation turns."""

from __future__ import annotations

import logging

from specpilot.models.base import ConversationMessage
from specpilot.utils.tokens import estimate_message_tokens

logger = logging.getLogger(__name__)


class RollingWindow:
    """Keeps the newest contiguous run of messages that fits a budget.

    A leading system message is always retained when it fits. Selection
    stops once the window is ``fill_ratio`` full.
    """

    def __init__(self, fill_ratio: float = 0.9):
        if not 0 < fill_ratio <= 1:
            raise ValueError(f"fill_ratio must be in (0, 1], got {fill_ratio}")
        self._fill_ratio = fill_ratio

    def select(
        self, history: list[ConversationMessage], budget: int,
    ) -> list[ConversationMessage]:
        if not history or budget <= 0:
            return []

        head: list[ConversationMessage] = []
        body = history
        used = 0
        if history[0].role == "system":
            cost = estimate_message_tokens(history[0].content)
            if cost <= budget:
                head = [history[0]]
                used = cost
            body = history[1:]

        selected: list[ConversationMessage] = []
        for message in reversed(body):
            cost = estimate_message_tokens(message.content)
            if used + cost > budget:
                break
            selected.append(message)
            used += cost
            if used >= budget * self._fill_ratio:
                break
        selected.reverse()

        logger.debug(
            "Rolling window kept %d/%d messages (%d tokens of %d)",
            len(head) + len(selected), len(history), used, budget,
        )
        return head + selected
