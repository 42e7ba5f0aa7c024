"""Profile extraction.

During requirement collection the user's message goes through cheap
keyword rules and then the model; the model's findings win over the
rules, and both win over what the profile already held. In the later
stages the message is a selection among offered options and is
recorded without a model call.
"""

from __future__ import annotations

import json
import logging
import re

from specpilot.agents import prompts
from specpilot.agents.context import AgentContext
from specpilot.agents.schemas import ExtractorOutput
from specpilot.workflow.state import SessionState, Stage, missing_fields

logger = logging.getLogger(__name__)

HISTORY_TURNS = 5

_GOAL_RE = re.compile(
    r"\b(?:i want to|i'd like to|we want to|we need|i need|build|make|create)\b",
    re.IGNORECASE,
)

# Audience patterns, first match wins.
_AUDIENCE_PATTERNS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"\bdevelopers?\b|\bengineers?\b", re.IGNORECASE), "developers"),
    (re.compile(r"\bstudents?\b|\blearners?\b", re.IGNORECASE), "students and learners"),
    (re.compile(r"\bteams?\b|\bcompan(?:y|ies)\b|\benterprise", re.IGNORECASE), "teams"),
    (re.compile(r"\beveryone\b|\bgeneral public\b|\bconsumers?\b", re.IGNORECASE), "general public"),
]

_FLAG_PATTERNS: list[tuple[re.Pattern, str, bool]] = [
    (re.compile(r"\bno (?:login|accounts?|sign[- ]?in)\b", re.IGNORECASE), "needs_auth", False),
    (re.compile(r"\blog ?in\b|\bsign[- ]?(?:in|up)\b|\baccounts?\b", re.IGNORECASE), "needs_auth", True),
    (re.compile(r"\bsingle[- ]user\b|\bjust me\b", re.IGNORECASE), "needs_multi_user", False),
    (
        re.compile(r"\bmulti[- ]?user\b|\bcollaborat\w*|\bshared?\b", re.IGNORECASE),
        "needs_multi_user",
        True,
    ),
    (re.compile(r"\bno (?:storage|database)\b|\bstateless\b", re.IGNORECASE), "needs_data_storage", False),
    (
        re.compile(r"\bsave\b|\bstore\b|\bdatabase\b|\bhistory\b|\bpersist", re.IGNORECASE),
        "needs_data_storage",
        True,
    ),
]


def rule_extract(user_input: str, profile: dict) -> dict:
    """Keyword-level extraction; never overrides a set field with a guess."""
    found: dict = {}
    text = user_input.strip()
    if not text:
        return found

    if not profile.get("product_goal") and _GOAL_RE.search(text):
        found["product_goal"] = text

    if not profile.get("target_users"):
        for pattern, audience in _AUDIENCE_PATTERNS:
            if pattern.search(text):
                found["target_users"] = audience
                break

    for pattern, name, value in _FLAG_PATTERNS:
        if name in found or profile.get(name) is not None:
            continue
        if pattern.search(text):
            found[name] = value
    return found


def _match_option(selection: str, candidates: list[dict], fields: tuple[str, ...]) -> dict | None:
    wanted = selection.strip().lower()
    suffix = prompts.RECOMMENDED_SUFFIX.lower()
    if wanted.endswith(suffix):
        wanted = wanted[: -len(suffix)].rstrip()
    for candidate in candidates:
        for name in fields:
            value = candidate.get(name)
            if isinstance(value, str) and value.strip().lower() == wanted:
                return candidate
    return None


def _parse_stack(selection: str) -> dict | None:
    try:
        value = json.loads(selection)
    except json.JSONDecodeError:
        return None
    if isinstance(value, dict) and (value.get("frontend") or value.get("backend")):
        return value
    return None


def record_selection(state: SessionState) -> dict:
    """Record the user's pick for the stage whose options are on screen."""
    selection = state.user_input.strip()
    stage = state.current_stage
    current = dict(state.summary.get(stage, {}))

    if stage is Stage.RISK_ANALYSIS:
        solution = _match_option(selection, current.get("solutions", []), ("id", "name"))
        chosen = solution["id"] if solution else selection
        current["selected_approach"] = chosen
        logger.info("Risk approach selected for %s: %s", state.session_id, chosen)
        return {
            "summary": {stage: current},
            "profile": {"selected_risks": {"approach": chosen, "risks": current.get("risks", [])}},
            "missing_fields": [],
        }

    if stage is Stage.TECH_STACK:
        stack = _parse_stack(selection)
        if stack is None:
            option = _match_option(selection, current.get("options", []), ("id", "label"))
            stack = option["stack"] if option else {"choice": selection}
        current["tech_stack"] = stack
        logger.info("Tech stack selected for %s: %s", state.session_id, stack)
        return {
            "summary": {stage: current},
            "profile": {"selected_tech_stack": stack},
            "missing_fields": [],
        }

    if stage is Stage.MVP_BOUNDARY:
        current["confirmation"] = selection
        return {
            "summary": {stage: current},
            "profile": {
                "mvp_boundary": {
                    "features": current.get("mvp_features", []),
                    "confirmation": selection,
                },
            },
            "missing_fields": [],
        }

    current["feedback"] = selection
    return {"summary": {stage: current}, "missing_fields": []}


def _context_message(state: SessionState) -> str:
    return (
        "Collected so far:\n"
        f"{json.dumps(state.profile, ensure_ascii=False, indent=2, default=str)}\n\n"
        f"New user input: {state.user_input}\n\n"
        "Extract only new information. Keep existing fields unless the user corrected them."
    )


async def run(state: SessionState, ctx: AgentContext) -> dict:
    if state.current_stage > Stage.REQUIREMENT_COLLECTION and state.current_stage in state.summary:
        return record_selection(state)

    rules = rule_extract(state.user_input, state.profile)
    history = state.messages[:-1][-HISTORY_TURNS:]
    result = await ctx.call_structured(
        "extractor",
        prompts.EXTRACTOR,
        _context_message(state),
        ExtractorOutput,
        history=history,
        state=state,
        temperature=0.1,
    )
    from_model = result.extracted.model_dump(exclude_none=True)
    profile = {**state.profile, **rules, **from_model}
    logger.info(
        "Extracted for %s: rules=%s model=%s",
        state.session_id, sorted(rules), sorted(from_model),
    )
    return {
        "profile": profile,
        "missing_fields": missing_fields(profile),
        "next_question": result.next_question,
    }
