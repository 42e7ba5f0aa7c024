"""Final development specification."""

from __future__ import annotations

import json
import logging

from specpilot.agents import prompts
from specpilot.agents.context import AgentContext
from specpilot.reliability.pool import Priority
from specpilot.workflow.state import SessionState, Stage

logger = logging.getLogger(__name__)


async def run(state: SessionState, ctx: AgentContext) -> dict:
    material = {
        "profile": state.profile,
        "summary": {stage.name.lower(): data for stage, data in sorted(state.summary.items())},
    }
    text = await ctx.call_text(
        "spec_generator",
        prompts.SPEC_GENERATOR,
        json.dumps(material, ensure_ascii=False, indent=2, default=str),
        state=state,
        temperature=0.4,
        priority=Priority.HIGH,
    )
    text = text.strip()
    logger.info("Specification generated for %s (%d chars)", state.session_id, len(text))
    return {
        "current_stage": Stage.COMPLETED,
        "final_spec": text,
        "response": text,
        "options": [],
        "need_more_info": False,
        "stop": True,
    }
