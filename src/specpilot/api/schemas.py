"""Pydantic request/response schemas for the SpecPilot API."""

from __future__ import annotations

from pydantic import BaseModel, Field

# --- Request Schemas ---


class MessageRequest(BaseModel):
    message: str = Field(min_length=1)


# --- Response Schemas ---


class OptionResponse(BaseModel):
    id: str
    label: str
    value: str


class SessionCreateResponse(BaseModel):
    session_id: str
    stage: str


class TurnResponse(BaseModel):
    session_id: str
    stage: str
    stage_index: int
    reply: str
    options: list[OptionResponse] = Field(default_factory=list)
    need_more_info: bool
    completeness: int
    forced_advance: bool = False
    stop: bool = False


class MessageResponse(BaseModel):
    role: str
    content: str
    timestamp: float


class SessionResponse(BaseModel):
    session_id: str
    stage: str
    completeness: int
    profile: dict = Field(default_factory=dict)
    summary: dict = Field(default_factory=dict)
    messages: list[MessageResponse] = Field(default_factory=list)
    asked_questions: list[str] = Field(default_factory=list)
    final_spec: str = ""
    stop: bool = False
    metadata: dict = Field(default_factory=dict)


class HealthResponse(BaseModel):
    status: str
    version: str
    provider: str
    provider_reachable: bool | None = None
