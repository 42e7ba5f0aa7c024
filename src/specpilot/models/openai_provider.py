"""OpenAI-compatible model provider.

Connects to any OpenAI-compatible chat completions endpoint:
DeepSeek, OpenAI, vLLM, llama.cpp server, Ollama's /v1 bridge, etc.
Transport and HTTP failures are mapped onto the SpecPilot error
taxonomy so the retry classifier never has to inspect httpx types.
"""

from __future__ import annotations

import logging
import time

import httpx

from specpilot.config import ModelConfig
from specpilot.exceptions import AuthError, RequestRejectedError, ThrottleError, TransientError
from specpilot.models.base import ModelProvider, ModelResponse, TokenUsage
from specpilot.utils.latency import timed_block

logger = logging.getLogger(__name__)


def _retry_after_header(response: httpx.Response) -> float | None:
    raw = response.headers.get("retry-after", "").strip()
    try:
        return float(raw) if raw else None
    except ValueError:
        return None


class OpenAICompatibleProvider(ModelProvider):
    """Provider for OpenAI-compatible API endpoints."""

    def __init__(
        self,
        config: ModelConfig,
        client: httpx.AsyncClient | None = None,
    ):
        self._config = config
        headers: dict[str, str] = {}
        api_key = config.api_key.strip()
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url,
            timeout=httpx.Timeout(config.request_timeout_seconds),
            headers=headers,
        )
        self._model = config.model
        self._max_tokens = config.max_tokens
        self._temperature = config.temperature

    @property
    def name(self) -> str:
        return f"{self._config.provider}:{self._model}"

    @staticmethod
    async def _http_error_body(response: httpx.Response, limit: int = 200) -> str:
        try:
            body = await response.aread()
        except httpx.HTTPError:
            return "<response body unavailable>"
        return body.decode("utf-8", errors="replace")[:limit] if body else ""

    async def complete(
        self,
        messages: list[dict],
        temperature: float | None = None,
        max_tokens: int | None = None,
        response_format: dict | None = None,
    ) -> ModelResponse:
        payload: dict = {
            "model": self._model,
            "messages": messages,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": temperature if temperature is not None else self._temperature,
        }
        if response_format:
            payload["response_format"] = response_format

        start = time.monotonic()
        try:
            with timed_block(logger, event="provider_complete", fields={"model": self._model}):
                response = await self._client.post("/chat/completions", json=payload)
                response.raise_for_status()
        except httpx.ConnectError as e:
            raise TransientError(
                f"Cannot connect to model server at {self._client.base_url}: {e}"
            ) from e
        except httpx.TimeoutException as e:
            raise TransientError(f"Model request timed out ({self._model}): {e}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            body_text = await self._http_error_body(e.response)
            message = f"Model server returned HTTP {status}: {body_text}"
            if status in (401, 403):
                raise AuthError(message) from e
            if status == 429:
                raise ThrottleError(message, retry_after=_retry_after_header(e.response)) from e
            if status >= 500:
                raise TransientError(message) from e
            raise RequestRejectedError(message, status_code=status) from e
        except httpx.TransportError as e:
            raise TransientError(f"Transport error talking to {self._model}: {e}") from e
        latency = int((time.monotonic() - start) * 1000)

        data = response.json()
        choices = data.get("choices")
        if not choices or not isinstance(choices, list):
            raise TransientError(
                f"Malformed response from {self._model}: missing or empty 'choices'"
            )
        message = choices[0].get("message") or {}
        text = message.get("content") or ""

        usage_data = data.get("usage") or {}
        usage = TokenUsage(
            input_tokens=int(usage_data.get("prompt_tokens", 0) or 0),
            output_tokens=int(usage_data.get("completion_tokens", 0) or 0),
            total_tokens=int(usage_data.get("total_tokens", 0) or 0),
        )
        if not usage.total_tokens:
            usage.total_tokens = usage.input_tokens + usage.output_tokens

        return ModelResponse(
            text=text,
            raw=data,
            usage=usage,
            model=str(data.get("model") or self._model),
            latency_ms=latency,
        )

    async def health_check(self) -> bool:
        try:
            response = await self._client.get("/models", timeout=5.0)
        except httpx.HTTPError:
            return False
        return response.status_code == 200

    async def close(self) -> None:
        await self._client.aclose()
