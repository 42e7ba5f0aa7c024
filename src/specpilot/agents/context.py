"""Shared plumbing every stage agent calls the model through.

A call runs the same pipeline whichever agent makes it: fit the history
into the context budget, consult the response cache, invoke the
provider under the resilient invoker, validate the reply (repairing it
in-conversation when needed), cache the success, and charge the token
usage to the session.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from pydantic import BaseModel

from specpilot.cache.response_cache import ResponseCache, cache_key
from specpilot.config import Config
from specpilot.context.budget import ContextBudgetManager
from specpilot.context.compressor import HistoryCompressor
from specpilot.events.bus import Event, EventBus
from specpilot.events.types import CACHE_HIT, MODEL_INVOCATION, STRUCTURED_OUTPUT_REPAIRED
from specpilot.models.base import ConversationMessage, ModelProvider
from specpilot.models.structured_output import generate_structured
from specpilot.reliability.invoker import ResilientInvoker
from specpilot.reliability.pool import Priority
from specpilot.utils.latency import LatencyStats
from specpilot.workflow.state import SessionState

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class AgentContext:
    """Collaborators injected into every agent ``run``."""

    def __init__(
        self,
        provider: ModelProvider,
        invoker: ResilientInvoker,
        cache: ResponseCache,
        budget: ContextBudgetManager,
        config: Config | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], float] = time.monotonic,
        latency: LatencyStats | None = None,
    ):
        self.provider = provider
        self.invoker = invoker
        self.cache = cache
        self.budget = budget
        self.config = config or Config()
        self.event_bus = event_bus
        self.clock = clock
        self.latency = latency or LatencyStats()

    @property
    def compressor(self) -> HistoryCompressor:
        return self.budget.compressor

    async def call_structured(
        self,
        agent_type: str,
        system_prompt: str,
        user_message: str,
        schema: type[M],
        history: list[ConversationMessage] | None = None,
        state: SessionState | None = None,
        temperature: float | None = None,
        priority: Priority = Priority.NORMAL,
    ) -> M:
        """Ask for JSON and return it validated against ``schema``."""
        history = list(history or [])
        key = self._key(agent_type, system_prompt, user_message, history)
        cached = self._cached(key, agent_type, state)
        if cached is not None:
            return schema.model_validate(cached)

        messages = self._messages(system_prompt, user_message, history)
        attempts = {"count": 0}

        async def provider_call(conversation: list[dict]) -> str:
            attempts["count"] += 1
            return await self._invoke(agent_type, conversation, state, temperature, priority)

        started = self.clock()
        data, _ = await generate_structured(
            provider_call,
            messages,
            schema,
            max_retries=self.config.router.structured_output_retries,
        )
        if attempts["count"] > 1:
            self._emit(STRUCTURED_OUTPUT_REPAIRED, state, {
                "agent": agent_type, "schema": schema.__name__, "calls": attempts["count"],
            })
        self._store(key, data.model_dump(), agent_type, self.clock() - started)
        return data

    async def call_text(
        self,
        agent_type: str,
        system_prompt: str,
        user_message: str,
        history: list[ConversationMessage] | None = None,
        state: SessionState | None = None,
        temperature: float | None = None,
        priority: Priority = Priority.NORMAL,
    ) -> str:
        """Ask for free text (no validation)."""
        history = list(history or [])
        key = self._key(agent_type, system_prompt, user_message, history)
        cached = self._cached(key, agent_type, state)
        if cached is not None:
            return str(cached)

        messages = self._messages(system_prompt, user_message, history)
        started = self.clock()
        text = await self._invoke(agent_type, messages, state, temperature, priority)
        self._store(key, text, agent_type, self.clock() - started)
        return text

    # ------------------------------------------------------------------
    # Pipeline steps
    # ------------------------------------------------------------------

    def _messages(
        self, system_prompt: str, user_message: str, history: list[ConversationMessage],
    ) -> list[dict]:
        turns = [*history, ConversationMessage(role="user", content=user_message)]
        built = self.budget.build_context(
            system_prompt,
            turns,
            strategy=self.config.context.strategy,
            query=user_message,
        )
        return built.messages

    def _key(
        self,
        agent_type: str,
        system_prompt: str,
        user_message: str,
        history: list[ConversationMessage],
    ) -> str:
        return cache_key(
            agent_type,
            system_prompt,
            user_message,
            history=[m.to_prompt() for m in history],
            prefix_chars=self.config.cache.prompt_prefix_chars,
        )

    def _cached(self, key: str, agent_type: str, state: SessionState | None):
        if not self.config.cache.enabled:
            return None
        entry = self.cache.get(key)
        if entry is None:
            return None
        self._emit(CACHE_HIT, state, {"agent": agent_type, "reuse": entry.metadata.reuse_count})
        return entry.value

    def _store(self, key: str, value, agent_type: str, cost_seconds: float) -> None:
        if self.config.cache.enabled:
            self.cache.set(key, value, agent_type, tags=(agent_type,), cost_seconds=cost_seconds)

    async def _invoke(
        self,
        agent_type: str,
        messages: list[dict],
        state: SessionState | None,
        temperature: float | None,
        priority: Priority,
    ) -> str:
        response = await self.invoker.execute(
            lambda: self.provider.complete(messages, temperature=temperature),
            priority=priority,
        )
        self.latency.record(agent_type, response.latency_ms)
        if state is not None:
            state.add_tokens(response.usage.total_tokens)
        self._emit(MODEL_INVOCATION, state, {
            "agent": agent_type,
            "model": response.model,
            "latency_ms": response.latency_ms,
            "total_tokens": response.usage.total_tokens,
        })
        logger.debug(
            "%s call: %d tokens in %dms", agent_type, response.usage.total_tokens,
            response.latency_ms,
        )
        return response.text

    def _emit(self, event_type: str, state: SessionState | None, data: dict) -> None:
        if self.event_bus is not None:
            session_id = state.session_id if state is not None else ""
            self.event_bus.emit(Event(event_type=event_type, session_id=session_id, data=data))
