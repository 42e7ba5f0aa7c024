"""Response models for the stage agents.

Fields are snake_case; every model also accepts the camelCase spelling
because models answer in either style.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class AgentModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OptionChip(AgentModel):
    id: str
    label: str
    value: str
    description: str | None = None


# ----------------------------------------------------------------------
# Requirement collection
# ----------------------------------------------------------------------


class ExtractedProfile(AgentModel):
    project_name: str | None = None
    product_goal: str | None = None
    target_users: str | None = None
    use_cases: str | None = None
    core_functions: list[str] | None = None
    needs_data_storage: bool | None = None
    needs_multi_user: bool | None = None
    needs_auth: bool | None = None


class ExtractorOutput(AgentModel):
    extracted: ExtractedProfile = Field(default_factory=ExtractedProfile)
    missing_fields: list[str] = Field(default_factory=list)
    next_question: str | None = None
    options: list[OptionChip] | None = None


class PlannerOutput(AgentModel):
    completeness: int | None = None
    missing_critical: list[str] = Field(default_factory=list)
    can_proceed: bool = False
    recommendation: str = ""

    @field_validator("completeness")
    @classmethod
    def _clamp(cls, value: int | None) -> int | None:
        if value is None:
            return None
        return max(0, min(100, value))


class AskerOutput(AgentModel):
    question: str = Field(min_length=1)
    options: list[OptionChip] = Field(default_factory=list)
    context: str | None = None


# ----------------------------------------------------------------------
# Later stages
# ----------------------------------------------------------------------


class Risk(AgentModel):
    category: str
    description: str
    severity: Literal["low", "medium", "high"]
    mitigation: str | None = None


class Solution(AgentModel):
    id: str
    name: str
    description: str
    approach: Literal["conservative", "balanced", "aggressive"]
    pros: list[str] = Field(default_factory=list)
    cons: list[str] = Field(default_factory=list)
    estimated_effort: str = ""


class RiskAnalysisOutput(AgentModel):
    risks: list[Risk] = Field(default_factory=list)
    solutions: list[Solution] = Field(min_length=1)
    recommended_solution: str = ""
    reasoning: str = ""


class TechStack(AgentModel):
    frontend: str
    backend: str | None = None
    database: str | None = None
    deployment: str


class TechOption(AgentModel):
    id: str
    label: str
    category: str = ""
    stack: TechStack
    pros: list[str] = Field(default_factory=list)
    cons: list[str] = Field(default_factory=list)
    suitable_for: str = ""
    evolution_cost: str = ""
    recommended: bool = False


class TechStackOutput(AgentModel):
    recommended_category: str = ""
    reasoning: str = ""
    options: list[TechOption] = Field(min_length=1)


class DevPlan(AgentModel):
    phase1: list[str] = Field(default_factory=list)
    phase2: list[str] | None = None
    estimated_complexity: Literal["low", "medium", "high"] = "medium"


class MVPBoundaryOutput(AgentModel):
    mvp_features: list[str] = Field(min_length=1)
    future_features: list[str] = Field(default_factory=list)
    dev_plan: DevPlan = Field(default_factory=DevPlan)
    recommendation: str = ""


class DiagramOutput(AgentModel):
    system_architecture: str | None = None
    sequence_diagram: str | None = None
    data_flow: str | None = None
    component_diagram: str | None = None
    explanation: str | None = None
    edge_cases: list[str] = Field(default_factory=list)
