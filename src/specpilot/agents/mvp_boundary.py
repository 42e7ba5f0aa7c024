"""MVP scoping: what ships first and what waits."""

from __future__ import annotations

import json
import logging

from specpilot.agents import prompts
from specpilot.agents.context import AgentContext
from specpilot.agents.schemas import MVPBoundaryOutput
from specpilot.workflow.state import Option, SessionState, Stage

logger = logging.getLogger(__name__)

CONFIRM_OPTIONS = [
    Option(id="confirm", label="Looks good", value="confirm"),
    Option(id="adjust", label="Keep it but note my changes", value="adjust"),
]


def _numbered(items: list[str]) -> list[str]:
    return [f"{index}. {item}" for index, item in enumerate(items, start=1)]


async def run(state: SessionState, ctx: AgentContext) -> dict:
    context = {
        "profile": state.profile,
        "risk_analysis": state.summary.get(Stage.RISK_ANALYSIS, {}),
        "tech_stack": state.summary.get(Stage.TECH_STACK, {}),
    }
    result = await ctx.call_structured(
        "mvp_boundary",
        prompts.MVP_BOUNDARY,
        json.dumps(context, ensure_ascii=False, indent=2, default=str),
        MVPBoundaryOutput,
        state=state,
        temperature=0.3,
    )
    logger.info(
        "MVP boundary for %s: %d in scope, %d deferred",
        state.session_id, len(result.mvp_features), len(result.future_features),
    )

    plan = result.dev_plan
    lines = ["Proposed MVP scope:", *_numbered(result.mvp_features)]
    if result.future_features:
        lines.extend(["", "Deferred to later releases:", *_numbered(result.future_features)])
    lines.extend(["", f"Phase 1: {', '.join(plan.phase1) or 'n/a'}"])
    if plan.phase2:
        lines.append(f"Phase 2: {', '.join(plan.phase2)}")
    lines.append(f"Estimated complexity: {plan.estimated_complexity}")
    if result.recommendation:
        lines.extend(["", result.recommendation])

    return {
        "current_stage": Stage.MVP_BOUNDARY,
        "summary": {
            Stage.MVP_BOUNDARY: {
                "mvp_features": result.mvp_features,
                "future_features": result.future_features,
                "dev_plan": plan.model_dump(),
                "recommendation": result.recommendation,
            },
        },
        "profile": {"non_goals": list(result.future_features)},
        "response": "\n".join(lines),
        "options": list(CONFIRM_OPTIONS),
        "need_more_info": True,
    }
