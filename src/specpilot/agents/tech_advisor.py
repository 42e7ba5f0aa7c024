"""Technology stack recommendation."""

from __future__ import annotations

import json
import logging

from specpilot.agents import prompts
from specpilot.agents.context import AgentContext
from specpilot.agents.schemas import TechStackOutput
from specpilot.workflow.state import Option, SessionState, Stage

logger = logging.getLogger(__name__)


async def run(state: SessionState, ctx: AgentContext) -> dict:
    message = (
        "Requirement profile:\n"
        f"{json.dumps(state.profile, ensure_ascii=False, indent=2, default=str)}\n\n"
        "Risk analysis:\n"
        f"{json.dumps(state.summary.get(Stage.RISK_ANALYSIS, {}), ensure_ascii=False, indent=2)}"
    )
    result = await ctx.call_structured(
        "tech_advisor", prompts.TECH_ADVISOR, message, TechStackOutput,
        state=state, temperature=0.3,
    )

    options = []
    lines = []
    if result.recommended_category:
        lines.append(f"Recommended category: {result.recommended_category}")
    for option in result.options:
        stack = option.stack.model_dump(exclude_none=True)
        label = option.label + prompts.RECOMMENDED_SUFFIX if option.recommended else option.label
        options.append(Option(id=option.id, label=label, value=json.dumps(stack)))
        lines.append(f"- {label}: " + ", ".join(f"{k}={v}" for k, v in stack.items()))
    if result.reasoning:
        lines.extend(["", result.reasoning])
    lines.extend(["", "Which stack should we build on?"])

    logger.info("Tech options for %s: %d", state.session_id, len(options))
    return {
        "current_stage": Stage.TECH_STACK,
        "summary": {
            Stage.TECH_STACK: {
                "recommended_category": result.recommended_category,
                "reasoning": result.reasoning,
                "options": [o.model_dump(exclude_none=True) for o in result.options],
            },
        },
        "response": "\n".join(lines),
        "options": options,
        "need_more_info": True,
    }
