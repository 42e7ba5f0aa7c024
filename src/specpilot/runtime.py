"""Runtime lifecycle: wires up all SpecPilot components.

Breakers, the pool, the cache and the rate limiter are built exactly
once here and injected everywhere else; nothing in the package keeps
process-global reliability state.
"""

from __future__ import annotations

import logging

from specpilot.agents.context import AgentContext
from specpilot.cache.response_cache import ResponseCache
from specpilot.config import Config
from specpilot.context.budget import ContextBudgetManager
from specpilot.context.compressor import CompressionStrategy, HistoryCompressor
from specpilot.events.bus import Event, EventBus
from specpilot.events.types import CIRCUIT_STATE_CHANGED, SESSION_CREATED, SESSION_DELETED
from specpilot.models.base import ModelProvider
from specpilot.models.openai_provider import OpenAICompatibleProvider
from specpilot.reliability.circuit_breaker import BreakerRegistry, CircuitState
from specpilot.reliability.invoker import ResilientInvoker
from specpilot.reliability.pool import ConcurrencyPool
from specpilot.reliability.rate_limiter import SlidingWindowRateLimiter
from specpilot.reliability.retry import RetryPolicy
from specpilot.state.memory import Database
from specpilot.state.session_store import InMemorySessionStore, SessionStore, SqliteSessionStore
from specpilot.utils.latency import LatencyStats
from specpilot.workflow.router import StageRouter
from specpilot.workflow.state import SessionState

logger = logging.getLogger(__name__)


class Runtime:
    """Holds all SpecPilot components for one process."""

    def __init__(
        self,
        config: Config,
        event_bus: EventBus,
        provider: ModelProvider,
        breakers: BreakerRegistry,
        pool: ConcurrencyPool,
        invoker: ResilientInvoker,
        cache: ResponseCache,
        budget: ContextBudgetManager,
        rate_limiter: SlidingWindowRateLimiter,
        store: SessionStore,
        router: StageRouter,
        database: Database | None = None,
        latency: LatencyStats | None = None,
    ):
        self.config = config
        self.event_bus = event_bus
        self.provider = provider
        self.breakers = breakers
        self.pool = pool
        self.invoker = invoker
        self.cache = cache
        self.budget = budget
        self.rate_limiter = rate_limiter
        self.store = store
        self.router = router
        self.database = database
        self.latency = latency or LatencyStats()

    async def create_session(self) -> SessionState:
        state = await self.store.create_session()
        self.event_bus.emit(Event(event_type=SESSION_CREATED, session_id=state.session_id))
        return state

    async def delete_session(self, session_id: str) -> bool:
        deleted = await self.store.delete_session(session_id)
        if deleted:
            self.event_bus.emit(Event(event_type=SESSION_DELETED, session_id=session_id))
            self.event_bus.unsubscribe_session(session_id)
            self.rate_limiter.reset(session_id)
        return deleted

    def stats(self) -> dict:
        return {
            "pool": self.pool.stats().to_dict(),
            "breakers": self.breakers.all_stats(),
            "cache": self.cache.stats(),
            "rate_limit": self.rate_limiter.stats(),
            "compression_ratio": self.budget.compressor.average_ratio(),
            "latency": self.latency.to_dict(),
        }

    async def shutdown(self) -> None:
        """Graceful cleanup."""
        await self.pool.drain()
        await self.event_bus.drain(timeout=5.0)
        await self.provider.close()


async def build_runtime(
    config: Config,
    provider: ModelProvider | None = None,
    store: SessionStore | None = None,
    persist: bool = True,
) -> Runtime:
    """Build every component from ``config``.

    ``provider`` and ``store`` may be supplied (tests, embedding). With
    ``persist`` false and no store given, sessions live in memory.
    """
    event_bus = EventBus()

    def on_breaker_change(name: str, old: CircuitState, new: CircuitState) -> None:
        event_bus.emit(Event(
            event_type=CIRCUIT_STATE_CHANGED,
            session_id="",
            data={"breaker": name, "from": old.value, "to": new.value},
        ))

    provider = provider or OpenAICompatibleProvider(config.model)
    breakers = BreakerRegistry(
        threshold=config.breaker.threshold,
        timeout_seconds=config.breaker.timeout_seconds,
        half_open_attempts=config.breaker.half_open_attempts,
        on_state_change=on_breaker_change,
    )
    pool = ConcurrencyPool.from_config(config.pool)
    invoker = ResilientInvoker(
        pool, breakers.get(provider.name), RetryPolicy.from_config(config.retry),
    )
    cache = ResponseCache(
        max_size=config.cache.max_size,
        default_ttl_seconds=config.cache.default_ttl_seconds,
    )
    budget = ContextBudgetManager(
        max_tokens=config.model.context_window,
        reserve_for_response=config.context.reserve_for_response,
        compressor=HistoryCompressor(
            strategy=CompressionStrategy(config.context.strategy),
            pin_recent=config.context.pin_recent,
        ),
    )

    database = None
    if store is None:
        if persist:
            database = Database(config.database_path)
            await database.initialize()
            store = SqliteSessionStore(database)
            logger.info("Session store: %s", config.database_path)
        else:
            store = InMemorySessionStore()

    latency = LatencyStats()
    ctx = AgentContext(
        provider=provider,
        invoker=invoker,
        cache=cache,
        budget=budget,
        config=config,
        event_bus=event_bus,
        latency=latency,
    )
    router = StageRouter(store, ctx, config=config.router, event_bus=event_bus)
    return Runtime(
        config=config,
        event_bus=event_bus,
        provider=provider,
        breakers=breakers,
        pool=pool,
        invoker=invoker,
        cache=cache,
        budget=budget,
        rate_limiter=SlidingWindowRateLimiter.from_config(config.rate_limit),
        store=store,
        router=router,
        database=database,
        latency=latency,
    )
