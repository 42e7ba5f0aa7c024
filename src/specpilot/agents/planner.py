"""Completeness gate for requirement collection.

The checklist decides whether the conversation may leave requirement
collection. The model's assessment supplies the reported completeness
and its recommendation; its own ``can_proceed`` is advisory and only
logged when it disagrees.
"""

from __future__ import annotations

import json
import logging

from specpilot.agents import prompts
from specpilot.agents.context import AgentContext
from specpilot.agents.schemas import PlannerOutput
from specpilot.workflow.state import SessionState, checklist, checklist_score, missing_fields

logger = logging.getLogger(__name__)


async def run(state: SessionState, ctx: AgentContext) -> dict:
    status = checklist(state.profile)
    can_proceed = all(status.values())
    message = (
        "Requirement profile:\n"
        f"{json.dumps(state.profile, ensure_ascii=False, indent=2, default=str)}\n\n"
        f"Checklist: {json.dumps(status)}"
    )
    assessment = await ctx.call_structured(
        "planner", prompts.PLANNER, message, PlannerOutput, state=state, temperature=0.1,
    )

    completeness = assessment.completeness
    if completeness is None:
        completeness = checklist_score(state.profile)
    if assessment.can_proceed != can_proceed:
        logger.info(
            "Planner for %s suggests can_proceed=%s; checklist says %s",
            state.session_id, assessment.can_proceed, can_proceed,
        )
    return {
        "completeness": completeness,
        "need_more_info": not can_proceed,
        "missing_fields": missing_fields(state.profile),
        "metadata": {"planner_recommendation": assessment.recommendation},
    }
