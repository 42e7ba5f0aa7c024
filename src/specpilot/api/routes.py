"""API route handlers for SpecPilot."""

from __future__ import annotations

import logging
import math

from fastapi import APIRouter, HTTPException, Request, Response

from specpilot import __version__
from specpilot.api.schemas import (
    HealthResponse,
    MessageRequest,
    SessionCreateResponse,
    SessionResponse,
    TurnResponse,
)
from specpilot.exceptions import (
    AuthError,
    CircuitOpenError,
    InvocationError,
    QueueFullError,
    RequestRejectedError,
    StateError,
    ThrottleError,
    ValidationError,
)
from specpilot.reliability.rate_limiter import SlidingWindowRateLimiter
from specpilot.runtime import Runtime

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_runtime(request: Request) -> Runtime:
    """Get the runtime from the app state."""
    return request.app.state.runtime


def _enforce_rate_limit(runtime: Runtime, key: str, response: Response) -> None:
    result = runtime.rate_limiter.check(key)
    headers = SlidingWindowRateLimiter.headers(result)
    if not result.allowed:
        raise HTTPException(status_code=429, detail="Too many requests", headers=headers)
    response.headers.update(headers)


def _turn_error(error: Exception) -> HTTPException:
    if isinstance(error, CircuitOpenError):
        return HTTPException(
            status_code=503,
            detail=str(error),
            headers={"Retry-After": str(max(1, math.ceil(error.retry_after)))},
        )
    if isinstance(error, QueueFullError):
        return HTTPException(status_code=503, detail=str(error))
    if isinstance(error, ThrottleError):
        headers = {}
        if error.retry_after:
            headers["Retry-After"] = str(max(1, math.ceil(error.retry_after)))
        return HTTPException(status_code=503, detail=str(error), headers=headers or None)
    if isinstance(error, AuthError):
        return HTTPException(status_code=502, detail="Model provider rejected credentials")
    if isinstance(error, RequestRejectedError):
        return HTTPException(
            status_code=502, detail=f"Model provider rejected the request ({error.status_code})",
        )
    return HTTPException(status_code=502, detail=str(error))


# --- Sessions ---


@router.post("/sessions", response_model=SessionCreateResponse, status_code=201)
async def create_session(request: Request):
    """Start a new requirements session."""
    runtime = _get_runtime(request)
    state = await runtime.create_session()
    return SessionCreateResponse(session_id=state.session_id, stage=state.current_stage.name)


@router.post("/sessions/{session_id}/messages", response_model=TurnResponse)
async def post_message(
    request: Request, response: Response, session_id: str, body: MessageRequest,
):
    """Send one user turn through the stage router."""
    runtime = _get_runtime(request)
    _enforce_rate_limit(runtime, session_id, response)
    if not await runtime.store.session_exists(session_id):
        raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")
    try:
        result = await runtime.router.advance(session_id, body.message)
    except (InvocationError, ValidationError) as e:
        logger.warning("Turn for %s failed: %s", session_id, e)
        raise _turn_error(e) from e
    except StateError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return TurnResponse(**result.to_dict())


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(request: Request, session_id: str):
    """Current state and transcript of a session."""
    runtime = _get_runtime(request)
    state = await runtime.store.get_session(session_id)
    if state is None:
        raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")
    data = state.to_dict()
    return SessionResponse(
        session_id=state.session_id,
        stage=state.current_stage.name,
        completeness=state.completeness,
        profile=data["profile"],
        summary={stage.name: value for stage, value in state.summary.items()},
        messages=data["messages"],
        asked_questions=data["asked_questions"],
        final_spec=state.final_spec,
        stop=state.stop,
        metadata=data["metadata"],
    )


@router.delete("/sessions/{session_id}", status_code=204)
async def delete_session(request: Request, session_id: str):
    """Delete a session and its transcript."""
    runtime = _get_runtime(request)
    if not await runtime.delete_session(session_id):
        raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")
    return Response(status_code=204)


# --- System ---


@router.get("/health", response_model=HealthResponse)
async def health(request: Request, probe: bool = False):
    """Liveness, optionally probing the model provider."""
    runtime = _get_runtime(request)
    reachable = await runtime.provider.health_check() if probe else None
    return HealthResponse(
        status="ok",
        version=__version__,
        provider=runtime.provider.name,
        provider_reachable=reachable,
    )


@router.get("/stats")
async def stats(request: Request):
    """Pool, breaker, cache and limiter statistics."""
    return _get_runtime(request).stats()
