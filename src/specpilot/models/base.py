"""Abstract model interface.

All model providers implement this interface, providing a unified
API for chat completions and health checks. Conversation messages are
defined here because every layer above the provider passes them around.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

VALID_ROLES = frozenset({"system", "user", "assistant"})


@dataclass(frozen=True)
class ConversationMessage:
    """One immutable turn of a conversation."""

    role: str
    content: str
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self):
        if self.role not in VALID_ROLES:
            raise ValueError(f"Unknown message role: {self.role!r}")

    def to_prompt(self) -> dict:
        """The shape sent to the provider (no timestamp)."""
        return {"role": self.role, "content": self.content}

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: dict) -> ConversationMessage:
        return cls(
            role=str(data["role"]),
            content=str(data.get("content", "")),
            timestamp=float(data.get("timestamp") or time.time()),
        )


@dataclass
class TokenUsage:
    """Token usage statistics for a model response."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


@dataclass
class ModelResponse:
    """Structured response from a model completion."""

    text: str
    raw: str | dict = ""
    usage: TokenUsage = field(default_factory=TokenUsage)
    model: str = ""
    latency_ms: int = 0


class ModelProvider(ABC):
    """Abstract base class for all model providers."""

    @abstractmethod
    async def complete(
        self,
        messages: list[dict],
        temperature: float | None = None,
        max_tokens: int | None = None,
        response_format: dict | None = None,
    ) -> ModelResponse:
        """Send a completion request and return structured response."""
        ...

    async def health_check(self) -> bool:
        """Check if the provider is reachable."""
        return True

    async def close(self) -> None:
        """Release transport resources."""
        return None

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider/model identifier, also used as the breaker name."""
        ...
