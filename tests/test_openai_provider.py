"""Tests for the OpenAI-compatible provider against a mock transport."""

from __future__ import annotations

import json

import httpx
import pytest

from conftest import no_sleep
from specpilot.config import ModelConfig
from specpilot.exceptions import AuthError, RequestRejectedError, ThrottleError, TransientError
from specpilot.models.openai_provider import OpenAICompatibleProvider
from specpilot.reliability.circuit_breaker import CircuitBreaker
from specpilot.reliability.invoker import ResilientInvoker
from specpilot.reliability.pool import ConcurrencyPool
from specpilot.reliability.retry import RetryPolicy


def _provider(handler, **config) -> OpenAICompatibleProvider:
    model_config = ModelConfig(base_url="http://model.test/v1", model="test-model", **config)
    client = httpx.AsyncClient(
        base_url=model_config.base_url,
        transport=httpx.MockTransport(handler),
    )
    return OpenAICompatibleProvider(model_config, client=client)


def _completion(text: str, usage: dict | None = None) -> dict:
    body = {
        "model": "test-model-0301",
        "choices": [{"message": {"role": "assistant", "content": text}}],
    }
    if usage is not None:
        body["usage"] = usage
    return body


class TestComplete:
    async def test_success(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["payload"] = json.loads(request.content)
            return httpx.Response(200, json=_completion(
                "hello", {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15},
            ))

        provider = _provider(handler)
        result = await provider.complete(
            [{"role": "user", "content": "hi"}], temperature=0.1,
        )
        assert result.text == "hello"
        assert result.model == "test-model-0301"
        assert result.usage.total_tokens == 15
        assert seen["url"] == "http://model.test/v1/chat/completions"
        assert seen["payload"]["temperature"] == 0.1
        assert seen["payload"]["max_tokens"] == 4096
        assert "response_format" not in seen["payload"]
        await provider.close()

    async def test_total_tokens_derived_when_missing(self):
        def handler(request):
            return httpx.Response(200, json=_completion(
                "x", {"prompt_tokens": 4, "completion_tokens": 6},
            ))

        result = await _provider(handler).complete([{"role": "user", "content": "q"}])
        assert result.usage.total_tokens == 10

    async def test_response_format_forwarded(self):
        seen = {}

        def handler(request):
            seen["payload"] = json.loads(request.content)
            return httpx.Response(200, json=_completion("{}"))

        await _provider(handler).complete(
            [{"role": "user", "content": "q"}], response_format={"type": "json_object"},
        )
        assert seen["payload"]["response_format"] == {"type": "json_object"}

    async def test_empty_choices_is_transient(self):
        def handler(request):
            return httpx.Response(200, json={"choices": []})

        with pytest.raises(TransientError, match="choices"):
            await _provider(handler).complete([{"role": "user", "content": "q"}])

    def test_name(self):
        provider = _provider(lambda request: httpx.Response(200))
        assert provider.name == "openai_compatible:test-model"


class TestErrorMapping:
    @pytest.mark.parametrize("status", [401, 403])
    async def test_auth(self, status):
        def handler(request):
            return httpx.Response(status, text="invalid key")

        with pytest.raises(AuthError, match=str(status)):
            await _provider(handler).complete([{"role": "user", "content": "q"}])

    async def test_throttle_carries_retry_after(self):
        def handler(request):
            return httpx.Response(429, headers={"Retry-After": "7"}, text="slow down")

        with pytest.raises(ThrottleError) as exc_info:
            await _provider(handler).complete([{"role": "user", "content": "q"}])
        assert exc_info.value.retry_after == 7.0

    async def test_server_error_is_transient(self):
        def handler(request):
            return httpx.Response(503, text="overloaded")

        with pytest.raises(TransientError, match="503"):
            await _provider(handler).complete([{"role": "user", "content": "q"}])

    async def test_connect_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientError, match="Cannot connect"):
            await _provider(handler).complete([{"role": "user", "content": "q"}])

    async def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        with pytest.raises(TransientError, match="timed out"):
            await _provider(handler).complete([{"role": "user", "content": "q"}])

    @pytest.mark.parametrize("status", [400, 404, 409, 413, 415, 422])
    async def test_other_client_errors_are_rejected(self, status):
        def handler(request):
            return httpx.Response(status, text="refused")

        with pytest.raises(RequestRejectedError) as exc_info:
            await _provider(handler).complete([{"role": "user", "content": "q"}])
        assert exc_info.value.status_code == status

    @pytest.mark.parametrize("status", [409, 413])
    async def test_client_error_not_retried_by_invoker(self, status, clock):
        calls = {"count": 0}

        def handler(request):
            calls["count"] += 1
            return httpx.Response(status, text="refused")

        provider = _provider(handler)
        pool = ConcurrencyPool(max_concurrent=2, max_queue_size=10, task_timeout_seconds=5.0)
        invoker = ResilientInvoker(
            pool,
            CircuitBreaker("llm", threshold=10, clock=clock),
            RetryPolicy(max_retries=3, base_delay_seconds=0.0, jitter_ratio=0.0),
            sleep=no_sleep,
        )

        with pytest.raises(RequestRejectedError):
            await invoker.execute(
                lambda: provider.complete([{"role": "user", "content": "q"}])
            )
        assert calls["count"] == 1


class TestHealthCheck:
    async def test_reachable(self):
        provider = _provider(lambda request: httpx.Response(200, json={"data": []}))
        assert await provider.health_check() is True

    async def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("down", request=request)

        assert await _provider(handler).health_check() is False
