"""Structured output extraction and validation.

Model replies are free text that should contain one JSON value. The
value is located, decoded, and checked against a pydantic model. The
result is a tagged outcome: ``Ok`` carrying the typed model, or
``SchemaError`` carrying per-field messages. Callers branch on the tag
and never touch an untyped dict.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from specpilot.exceptions import SchemaValidationError

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

_JSON_FENCE_RE = re.compile(r"```json\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)
_ANY_FENCE_RE = re.compile(r"```[\w-]*\s*(.*?)\s*```", re.DOTALL)

FEEDBACK_HEADER = "VALIDATION FEEDBACK:"


@dataclass(frozen=True)
class Ok(Generic[M]):
    data: M

    @property
    def valid(self) -> bool:
        return True


@dataclass(frozen=True)
class SchemaError:
    errors: list[str] = field(default_factory=list)
    raw: str = ""

    @property
    def valid(self) -> bool:
        return False


ValidationOutcome = Ok | SchemaError


def _balanced_span(text: str, start: int) -> int | None:
    """Return the end index of the JSON structure opening at ``start``."""
    closers = {"{": "}", "[": "]"}
    stack = [closers[text[start]]]
    in_string = False
    escaped = False
    for index in range(start + 1, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in closers:
            stack.append(closers[char])
        elif char in "}]":
            if char != stack[-1]:
                return None
            stack.pop()
            if not stack:
                return index + 1
    return None


def _first_balanced(text: str) -> str | None:
    for start, char in enumerate(text):
        if char not in "{[":
            continue
        end = _balanced_span(text, start)
        if end is None:
            continue
        candidate = text[start:end]
        try:
            json.loads(candidate)
        except json.JSONDecodeError:
            continue
        return candidate
    return None


def extract_json(text: str) -> str | None:
    """Locate the JSON payload in a model reply.

    Tries a ```json fence, then any fence, then the first complete
    balanced object or array in the surrounding prose.
    """
    if not text:
        return None
    for pattern in (_JSON_FENCE_RE, _ANY_FENCE_RE):
        match = pattern.search(text)
        if match:
            inner = match.group(1).strip()
            if inner.startswith(("{", "[")):
                found = _first_balanced(inner)
                if found is not None:
                    return found
    stripped = text.strip()
    try:
        json.loads(stripped)
    except json.JSONDecodeError:
        return _first_balanced(text)
    return stripped


def _format_errors(error: PydanticValidationError) -> list[str]:
    messages = []
    for item in error.errors():
        path = ".".join(str(part) for part in item.get("loc", ())) or "<root>"
        messages.append(f"{path}: {item.get('msg', 'invalid value')}")
    return messages


def validate(raw_text: str, schema: type[M]) -> Ok[M] | SchemaError:
    """Extract JSON from ``raw_text`` and check it against ``schema``."""
    payload = extract_json(raw_text)
    if payload is None:
        return SchemaError(errors=["<root>: no JSON value found in response"], raw=raw_text)
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        return SchemaError(errors=[f"<root>: invalid JSON ({e.msg})"], raw=raw_text)
    try:
        return Ok(schema.model_validate(data))
    except PydanticValidationError as e:
        return SchemaError(errors=_format_errors(e), raw=raw_text)


def feedback_prompt(prompt: str, errors: list[str]) -> str:
    """Fold validation errors back into the prompt for a repair attempt."""
    lines = [prompt, ""] if prompt else []
    lines += [FEEDBACK_HEADER, "Your previous response failed validation:"]
    lines.extend(f"- {error}" for error in errors)
    lines.append("Respond again with ONLY valid JSON matching the required schema.")
    return "\n".join(lines)


async def parse_and_validate(
    raw_text: str,
    schema: type[M],
    retry: Callable[[str], Awaitable[str]] | None = None,
    max_retries: int = 3,
    prompt: str = "",
) -> M:
    """Validate, optionally re-asking the model with feedback.

    ``retry`` receives the feedback prompt and returns fresh raw text.
    It is called at most ``max_retries`` times. These repair attempts are
    separate from the invoker's transport retries.
    """
    outcome = validate(raw_text, schema)
    attempts = 0
    while isinstance(outcome, SchemaError) and retry is not None and attempts < max_retries:
        attempts += 1
        logger.warning(
            "Structured output invalid for %s (repair %d/%d): %s",
            schema.__name__, attempts, max_retries, "; ".join(outcome.errors),
        )
        raw_text = await retry(feedback_prompt(prompt, outcome.errors))
        outcome = validate(raw_text, schema)

    if isinstance(outcome, Ok):
        return outcome.data
    raise SchemaValidationError(
        f"{schema.__name__} validation failed after {attempts + 1} attempts",
        outcome.errors,
    )


async def generate_structured(
    provider_call: Callable[[list[dict]], Awaitable[str]],
    messages: list[dict],
    schema: type[M],
    max_retries: int = 2,
) -> tuple[M, str]:
    """Call the model and validate its reply, repairing in-conversation.

    Each repair appends the rejected reply and a feedback turn to the
    message list, so the model sees what it got wrong. Returns the
    validated model and the raw text that passed.
    """
    conversation = list(messages)
    raw_text = await provider_call(conversation)
    last_raw = raw_text

    async def repair(feedback: str) -> str:
        nonlocal last_raw
        conversation.append({"role": "assistant", "content": last_raw})
        conversation.append({"role": "user", "content": feedback})
        last_raw = await provider_call(conversation)
        return last_raw

    data = await parse_and_validate(raw_text, schema, retry=repair, max_retries=max_retries)
    return data, last_raw
