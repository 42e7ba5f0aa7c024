"""SpecPilot exception hierarchy.

Provides a structured exception tree so catch blocks can be specific
and callers can distinguish between different failure modes.
"""

from __future__ import annotations


class SpecPilotError(Exception):
    """Base for all SpecPilot exceptions."""


class InvocationError(SpecPilotError):
    """Outbound model call failures after the invoker gave up."""


class TransientError(InvocationError):
    """Network, timeout, or 5xx failures. Retried with exponential backoff."""


class ThrottleError(InvocationError):
    """Provider rate limit or quota exhaustion (429)."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class AuthError(InvocationError):
    """Invalid or missing credentials (401/403). Never retried."""


class RequestRejectedError(InvocationError):
    """The provider refused the request itself (4xx other than 401/403/429). Never retried."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class CircuitOpenError(InvocationError):
    """The named breaker is open; no call was attempted."""

    def __init__(self, name: str, retry_after: float = 0.0):
        super().__init__(
            f"Circuit breaker '{name}' is OPEN; retry in {retry_after:.1f}s"
        )
        self.name = name
        self.retry_after = retry_after


class QueueFullError(InvocationError):
    """The concurrency pool queue is at capacity."""


class ValidationError(SpecPilotError):
    """Model output did not match the expected shape."""


class SchemaValidationError(ValidationError):
    """Structured output failed schema validation after all repair attempts."""

    def __init__(self, message: str, errors: list[str] | None = None):
        self.errors = list(errors or [])
        detail = "; ".join(self.errors)
        super().__init__(f"{message}: {detail}" if detail else message)


class StateError(SpecPilotError):
    """Persistence and session state failures."""
