"""Risk analysis and candidate solution approaches."""

from __future__ import annotations

import json
import logging

from specpilot.agents import prompts
from specpilot.agents.context import AgentContext
from specpilot.agents.schemas import RiskAnalysisOutput
from specpilot.workflow.state import Option, SessionState, Stage

logger = logging.getLogger(__name__)


def _reply(result: RiskAnalysisOutput) -> str:
    lines = ["Key risks:"]
    lines.extend(
        f"- [{risk.severity}] {risk.category}: {risk.description}" for risk in result.risks
    )
    lines.append("")
    lines.append("Possible approaches:")
    for solution in result.solutions:
        marker = prompts.RECOMMENDED_SUFFIX if solution.id == result.recommended_solution else ""
        lines.append(f"- {solution.name}{marker}: {solution.description}")
    if result.reasoning:
        lines.extend(["", result.reasoning])
    lines.extend(["", "Which approach would you like to take?"])
    return "\n".join(lines)


async def run(state: SessionState, ctx: AgentContext) -> dict:
    message = (
        "Requirement profile:\n"
        f"{json.dumps(state.profile, ensure_ascii=False, indent=2, default=str)}"
    )
    result = await ctx.call_structured(
        "risk_analyst", prompts.RISK_ANALYST, message, RiskAnalysisOutput,
        state=state, temperature=0.3,
    )
    logger.info(
        "Risk analysis for %s: %d risks, %d solutions",
        state.session_id, len(result.risks), len(result.solutions),
    )
    return {
        "current_stage": Stage.RISK_ANALYSIS,
        "summary": {
            Stage.RISK_ANALYSIS: {
                "risks": [risk.model_dump() for risk in result.risks],
                "solutions": [solution.model_dump() for solution in result.solutions],
                "recommended_solution": result.recommended_solution,
                "reasoning": result.reasoning,
            },
        },
        "response": _reply(result),
        "options": [Option(id=s.id, label=s.name, value=s.id) for s in result.solutions],
        "need_more_info": True,
    }
