"""Clarifying questions while requirements are incomplete."""

from __future__ import annotations

import json
import logging

from specpilot.agents import prompts
from specpilot.agents.context import AgentContext
from specpilot.agents.schemas import AskerOutput
from specpilot.workflow.state import Option, SessionState

logger = logging.getLogger(__name__)


async def run(state: SessionState, ctx: AgentContext) -> dict:
    message = (
        "Requirement profile:\n"
        f"{json.dumps(state.profile, ensure_ascii=False, indent=2, default=str)}\n\n"
        f"Missing: {', '.join(state.missing_fields) or 'nothing critical'}\n"
        f"Already asked: {json.dumps(state.asked_questions, ensure_ascii=False)}\n"
        f"Suggested next question: {state.next_question or 'none'}"
    )
    result = await ctx.call_structured(
        "asker",
        prompts.ASKER,
        message,
        AskerOutput,
        history=state.recent_messages(),
        state=state,
        temperature=0.7,
    )
    logger.info("Asking %s: %s", state.session_id, result.question)
    return {
        "response": result.question,
        "options": [Option(id=o.id, label=o.label, value=o.value) for o in result.options],
        "asked_questions": [result.question],
        "next_question": result.question,
        "need_more_info": True,
    }
