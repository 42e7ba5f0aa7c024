"""Configuration loader for SpecPilot.

Loads from specpilot.toml with sensible defaults when file is absent.
Configuration is loaded once at startup and passed via dependency injection.
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""


@dataclass(frozen=True)
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 9100


@dataclass(frozen=True)
class ModelConfig:
    """Configuration for the LLM provider."""

    provider: str = "openai_compatible"
    base_url: str = "https://api.deepseek.com/v1"
    model: str = "deepseek-chat"
    api_key: str = ""
    max_tokens: int = 4096
    temperature: float = 0.7
    context_window: int = 32000
    request_timeout_seconds: float = 60.0

    def __repr__(self) -> str:
        key_display = f"***{self.api_key[-4:]}" if self.api_key else ""
        return (
            f"ModelConfig(provider={self.provider!r}, model={self.model!r}, "
            f"base_url={self.base_url!r}, api_key={key_display!r})"
        )


@dataclass(frozen=True)
class PoolConfig:
    max_concurrent: int = 5
    max_queue_size: int = 50
    task_timeout_seconds: float = 30.0


@dataclass(frozen=True)
class BreakerConfig:
    threshold: int = 5
    timeout_seconds: float = 60.0
    half_open_attempts: int = 3


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 10.0
    jitter_ratio: float = 0.3


@dataclass(frozen=True)
class CacheConfig:
    enabled: bool = True
    max_size: int = 500
    default_ttl_seconds: float = 600.0
    prompt_prefix_chars: int = 500


@dataclass(frozen=True)
class ContextConfig:
    reserve_for_response: int = 2000
    pin_recent: int = 5
    strategy: str = "hybrid"  # summary | importance | dedup | rolling | hybrid


@dataclass(frozen=True)
class RouterConfig:
    max_questions: int = 5
    forced_completeness: int = 80
    structured_output_retries: int = 2


@dataclass(frozen=True)
class RateLimitConfig:
    max_requests: int = 30
    window_seconds: float = 60.0


@dataclass(frozen=True)
class MemoryConfig:
    database_path: str = "~/.specpilot/specpilot.db"


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(frozen=True)
class Config:
    """Top-level SpecPilot configuration."""

    server: ServerConfig = field(default_factory=ServerConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    pool: PoolConfig = field(default_factory=PoolConfig)
    breaker: BreakerConfig = field(default_factory=BreakerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    router: RouterConfig = field(default_factory=RouterConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def database_path(self) -> Path:
        return Path(self.memory.database_path).expanduser()


_VALID_STRATEGIES = frozenset({"summary", "importance", "dedup", "rolling", "hybrid"})


def _section(raw: dict, name: str) -> dict:
    data = raw.get(name, {})
    if not isinstance(data, dict):
        raise ConfigError(f"[{name}] must be a table, got {type(data).__name__}")
    return data


def _positive_int(data: dict, key: str, default: int, section: str) -> int:
    value = data.get(key, default)
    try:
        number = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"[{section}].{key} must be an integer: {value!r}") from e
    if number <= 0:
        raise ConfigError(f"[{section}].{key} must be positive: {number}")
    return number


def _non_negative_float(data: dict, key: str, default: float, section: str) -> float:
    value = data.get(key, default)
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"[{section}].{key} must be a number: {value!r}") from e
    if number < 0:
        raise ConfigError(f"[{section}].{key} must not be negative: {number}")
    return number


def load_config(path: Path | None = None) -> Config:
    """Load configuration from a TOML file.

    If path is None, searches for specpilot.toml in current directory
    then ~/.specpilot/. Returns default config if no file is found.
    """
    if path is None:
        candidates = [
            Path.cwd() / "specpilot.toml",
            Path.home() / ".specpilot" / "specpilot.toml",
        ]
        for candidate in candidates:
            if candidate.exists():
                path = candidate
                break

    if path is None or not path.exists():
        return Config()

    try:
        with open(path, "rb") as f:
            raw = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e

    server_data = _section(raw, "server")
    server = ServerConfig(
        host=server_data.get("host", "127.0.0.1"),
        port=_positive_int(server_data, "port", 9100, "server"),
    )

    model_data = _section(raw, "model")
    model = ModelConfig(
        provider=model_data.get("provider", "openai_compatible"),
        base_url=model_data.get("base_url", "https://api.deepseek.com/v1"),
        model=model_data.get("model", "deepseek-chat"),
        api_key=model_data.get("api_key", ""),
        max_tokens=_positive_int(model_data, "max_tokens", 4096, "model"),
        temperature=_non_negative_float(model_data, "temperature", 0.7, "model"),
        context_window=_positive_int(model_data, "context_window", 32000, "model"),
        request_timeout_seconds=_non_negative_float(
            model_data, "request_timeout_seconds", 60.0, "model"
        ),
    )

    pool_data = _section(raw, "pool")
    pool = PoolConfig(
        max_concurrent=_positive_int(pool_data, "max_concurrent", 5, "pool"),
        max_queue_size=_positive_int(pool_data, "max_queue_size", 50, "pool"),
        task_timeout_seconds=_non_negative_float(
            pool_data, "task_timeout_seconds", 30.0, "pool"
        ),
    )

    breaker_data = _section(raw, "breaker")
    breaker = BreakerConfig(
        threshold=_positive_int(breaker_data, "threshold", 5, "breaker"),
        timeout_seconds=_non_negative_float(breaker_data, "timeout_seconds", 60.0, "breaker"),
        half_open_attempts=_positive_int(breaker_data, "half_open_attempts", 3, "breaker"),
    )

    retry_data = _section(raw, "retry")
    retry = RetryConfig(
        max_retries=int(retry_data.get("max_retries", 3)),
        base_delay_seconds=_non_negative_float(retry_data, "base_delay_seconds", 1.0, "retry"),
        max_delay_seconds=_non_negative_float(retry_data, "max_delay_seconds", 10.0, "retry"),
        jitter_ratio=_non_negative_float(retry_data, "jitter_ratio", 0.3, "retry"),
    )
    if retry.max_retries < 0:
        raise ConfigError(f"[retry].max_retries must not be negative: {retry.max_retries}")

    cache_data = _section(raw, "cache")
    cache = CacheConfig(
        enabled=bool(cache_data.get("enabled", True)),
        max_size=_positive_int(cache_data, "max_size", 500, "cache"),
        default_ttl_seconds=_non_negative_float(
            cache_data, "default_ttl_seconds", 600.0, "cache"
        ),
        prompt_prefix_chars=_positive_int(cache_data, "prompt_prefix_chars", 500, "cache"),
    )

    context_data = _section(raw, "context")
    strategy = str(context_data.get("strategy", "hybrid")).strip().lower()
    if strategy not in _VALID_STRATEGIES:
        raise ConfigError(
            f"[context].strategy must be one of {sorted(_VALID_STRATEGIES)}: {strategy!r}"
        )
    context = ContextConfig(
        reserve_for_response=_positive_int(
            context_data, "reserve_for_response", 2000, "context"
        ),
        pin_recent=int(context_data.get("pin_recent", 5)),
        strategy=strategy,
    )

    router_data = _section(raw, "router")
    router = RouterConfig(
        max_questions=_positive_int(router_data, "max_questions", 5, "router"),
        forced_completeness=int(router_data.get("forced_completeness", 80)),
        structured_output_retries=int(router_data.get("structured_output_retries", 2)),
    )

    limit_data = _section(raw, "rate_limit")
    rate_limit = RateLimitConfig(
        max_requests=_positive_int(limit_data, "max_requests", 30, "rate_limit"),
        window_seconds=_non_negative_float(limit_data, "window_seconds", 60.0, "rate_limit"),
    )

    mem_data = _section(raw, "memory")
    memory = MemoryConfig(
        database_path=mem_data.get("database_path", "~/.specpilot/specpilot.db"),
    )

    log_data = _section(raw, "logging")
    logging_cfg = LoggingConfig(level=str(log_data.get("level", "INFO")).upper())

    return Config(
        server=server,
        model=model,
        pool=pool,
        breaker=breaker,
        retry=retry,
        cache=cache,
        context=context,
        router=router,
        rate_limit=rate_limit,
        memory=memory,
        logging=logging_cfg,
    )
