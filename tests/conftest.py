"""Shared test fixtures for SpecPilot."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path

import pytest

from specpilot.agents.context import AgentContext
from specpilot.cache.response_cache import ResponseCache
from specpilot.config import (
    CacheConfig,
    Config,
    MemoryConfig,
    RetryConfig,
    RouterConfig,
    ServerConfig,
)
from specpilot.context.budget import ContextBudgetManager
from specpilot.events.bus import EventBus
from specpilot.models.base import ModelProvider, ModelResponse, TokenUsage
from specpilot.reliability.circuit_breaker import CircuitBreaker
from specpilot.reliability.invoker import ResilientInvoker
from specpilot.reliability.pool import ConcurrencyPool
from specpilot.reliability.retry import RetryPolicy
from specpilot.state.session_store import InMemorySessionStore
from specpilot.workflow.router import StageRouter


class ScriptedProvider(ModelProvider):
    """Replays canned replies in order and records every request.

    A script item may be a string (the reply text), a dict (sent as
    JSON), an exception instance (raised), or a callable taking the
    message list and returning one of those.
    """

    def __init__(self, script: list | None = None, name: str = "fake:scripted"):
        self.script = list(script or [])
        self.calls: list[list[dict]] = []
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def push(self, *items) -> None:
        self.script.extend(items)

    async def complete(
        self,
        messages: list[dict],
        temperature: float | None = None,
        max_tokens: int | None = None,
        response_format: dict | None = None,
    ) -> ModelResponse:
        self.calls.append(list(messages))
        if not self.script:
            raise AssertionError(f"ScriptedProvider exhausted after {len(self.calls)} calls")
        item = self.script.pop(0)
        if callable(item) and not isinstance(item, BaseException):
            item = item(messages)
        if isinstance(item, BaseException):
            raise item
        text = json.dumps(item) if isinstance(item, (dict, list)) else str(item)
        return ModelResponse(
            text=text,
            usage=TokenUsage(input_tokens=10, output_tokens=5, total_tokens=15),
            model="scripted",
            latency_ms=1,
        )


async def no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Provide a test configuration with temp paths and no backoff."""
    return Config(
        server=ServerConfig(host="127.0.0.1", port=9999),
        memory=MemoryConfig(database_path=str(tmp_path / "test_specpilot.db")),
        retry=RetryConfig(max_retries=2, base_delay_seconds=0.0, jitter_ratio=0.0),
        cache=CacheConfig(enabled=False),
        router=RouterConfig(max_questions=5, structured_output_retries=1),
    )


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def make_ctx(config: Config, event_bus: EventBus) -> Callable[..., AgentContext]:
    def _make(provider: ModelProvider, **overrides) -> AgentContext:
        cfg = overrides.pop("config", config)
        pool = ConcurrencyPool(max_concurrent=4, max_queue_size=20, task_timeout_seconds=5.0)
        invoker = ResilientInvoker(
            pool,
            CircuitBreaker("test", threshold=50),
            RetryPolicy.from_config(cfg.retry),
            sleep=no_sleep,
        )
        return AgentContext(
            provider=provider,
            invoker=invoker,
            cache=overrides.pop("cache", ResponseCache()),
            budget=overrides.pop("budget", ContextBudgetManager(max_tokens=8000)),
            config=cfg,
            event_bus=event_bus,
        )

    return _make


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def make_router(config, event_bus, store, make_ctx):
    def _make(provider: ModelProvider, **kwargs) -> StageRouter:
        return StageRouter(
            kwargs.pop("store", store),
            make_ctx(provider),
            config=kwargs.pop("router_config", config.router),
            event_bus=event_bus,
            **kwargs,
        )

    return _make


class FakeClock:
    """Manually advanced clock for TTL and cool-down tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
