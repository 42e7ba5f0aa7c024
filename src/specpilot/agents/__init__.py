"""Stage agents.

Each agent module exposes ``async def run(state, ctx) -> dict`` and
returns a partial update for the session state.
"""

from specpilot.agents import (
    asker,
    diagram_designer,
    extractor,
    mvp_boundary,
    planner,
    risk_analyst,
    spec_generator,
    tech_advisor,
)
from specpilot.agents.context import AgentContext

__all__ = [
    "AgentContext",
    "asker",
    "diagram_designer",
    "extractor",
    "mvp_boundary",
    "planner",
    "risk_analyst",
    "spec_generator",
    "tech_advisor",
]
