"""Architecture diagrams as Mermaid sources."""

from __future__ import annotations

import json
import logging

from specpilot.agents import prompts
from specpilot.agents.context import AgentContext
from specpilot.agents.mvp_boundary import CONFIRM_OPTIONS
from specpilot.agents.schemas import DiagramOutput
from specpilot.workflow.state import SessionState, Stage

logger = logging.getLogger(__name__)

_SECTIONS = (
    ("system_architecture", "System architecture"),
    ("sequence_diagram", "Main sequence"),
    ("data_flow", "Data flow"),
    ("component_diagram", "Components"),
)


async def run(state: SessionState, ctx: AgentContext) -> dict:
    context = {
        "profile": state.profile,
        "tech_stack": state.summary.get(Stage.TECH_STACK, {}),
        "mvp": state.summary.get(Stage.MVP_BOUNDARY, {}),
    }
    result = await ctx.call_structured(
        "diagram_designer",
        prompts.DIAGRAM_DESIGNER,
        json.dumps(context, ensure_ascii=False, indent=2, default=str),
        DiagramOutput,
        state=state,
        temperature=0.2,
    )
    diagrams = result.model_dump()

    lines = []
    for name, title in _SECTIONS:
        source = diagrams.get(name)
        if source:
            lines.extend([f"### {title}", "```mermaid", source.strip(), "```", ""])
    if result.explanation:
        lines.append(result.explanation)
    logger.info(
        "Diagrams for %s: %s",
        state.session_id, [name for name, _ in _SECTIONS if diagrams.get(name)],
    )
    return {
        "current_stage": Stage.DIAGRAM_DESIGN,
        "summary": {Stage.DIAGRAM_DESIGN: diagrams},
        "response": "\n".join(lines).strip() or "Diagrams are ready.",
        "options": list(CONFIRM_OPTIONS),
        "need_more_info": True,
    }
