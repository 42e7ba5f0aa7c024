"""Session state for the staged requirements conversation."""

from __future__ import annotations

import copy
import math
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

from specpilot.models.base import ConversationMessage


class Stage(IntEnum):
    INIT = 0
    REQUIREMENT_COLLECTION = 1
    RISK_ANALYSIS = 2
    TECH_STACK = 3
    MVP_BOUNDARY = 4
    DIAGRAM_DESIGN = 5
    DOCUMENT_GENERATION = 6
    COMPLETED = 7


# Profile fields that gate leaving requirement collection.
CHECKLIST_FIELDS = (
    "product_goal",
    "target_users",
    "core_functions",
    "needs_data_storage",
    "needs_multi_user",
    "needs_auth",
)


@dataclass(frozen=True)
class Option:
    """A selectable answer offered with a reply."""

    id: str
    label: str
    value: str

    def to_dict(self) -> dict:
        return {"id": self.id, "label": self.label, "value": self.value}

    @classmethod
    def from_dict(cls, data: dict) -> Option:
        return cls(
            id=str(data["id"]),
            label=str(data.get("label", "")),
            value=str(data.get("value", "")),
        )


def checklist(profile: dict) -> dict[str, bool]:
    """Which gating fields of ``profile`` are filled in."""
    core = profile.get("core_functions")
    return {
        "product_goal": bool(profile.get("product_goal")),
        "target_users": bool(profile.get("target_users")),
        "core_functions": isinstance(core, list) and len(core) > 0,
        "needs_data_storage": profile.get("needs_data_storage") is not None,
        "needs_multi_user": profile.get("needs_multi_user") is not None,
        "needs_auth": profile.get("needs_auth") is not None,
    }


def missing_fields(profile: dict) -> list[str]:
    return [name for name, done in checklist(profile).items() if not done]


def checklist_score(profile: dict) -> int:
    """Completeness percentage from the checklist alone."""
    done = sum(checklist(profile).values())
    return math.floor(done / len(CHECKLIST_FIELDS) * 100)


@dataclass
class SessionState:
    """Everything the router knows about one session.

    ``profile`` is an open map: agents may add keys beyond the known
    ones and they survive serialization.
    """

    session_id: str
    current_stage: Stage = Stage.INIT
    completeness: int = 0
    profile: dict[str, Any] = field(default_factory=dict)
    summary: dict[Stage, dict] = field(default_factory=dict)
    messages: list[ConversationMessage] = field(default_factory=list)
    user_input: str = ""
    response: str = ""
    options: list[Option] = field(default_factory=list)
    need_more_info: bool = True
    missing_fields: list[str] = field(default_factory=list)
    next_question: str | None = None
    asked_questions: list[str] = field(default_factory=list)
    forced_advance: bool = False
    stop: bool = False
    final_spec: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        now = time.time()
        self.metadata.setdefault("created_at", now)
        self.metadata.setdefault("updated_at", now)
        self.metadata.setdefault("total_tokens", 0)

    def copy(self) -> SessionState:
        """Deep working copy; mutations never reach the original."""
        return copy.deepcopy(self)

    def touch(self) -> None:
        self.metadata["updated_at"] = time.time()

    def add_tokens(self, count: int) -> None:
        self.metadata["total_tokens"] = int(self.metadata.get("total_tokens", 0)) + max(0, count)

    def recent_messages(self, limit: int = 5) -> list[ConversationMessage]:
        return self.messages[-limit:] if limit > 0 else []

    def apply(self, updates: dict) -> None:
        """Merge an agent's partial update into this state.

        ``profile`` and ``summary`` merge key-wise, ``messages`` and
        ``asked_questions`` append, and ``current_stage`` never moves
        backwards. Everything else is replaced.
        """
        for key, value in updates.items():
            if key == "profile":
                self.profile.update(value)
            elif key == "summary":
                for stage, data in value.items():
                    self.summary[Stage(stage)] = data
            elif key == "messages":
                self.messages.extend(value)
            elif key == "asked_questions":
                self.asked_questions.extend(value)
            elif key == "current_stage":
                self.current_stage = max(self.current_stage, Stage(value))
            elif key == "metadata":
                self.metadata.update(value)
            elif hasattr(self, key):
                setattr(self, key, value)
            else:
                raise KeyError(f"Unknown session state field: {key!r}")

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "current_stage": int(self.current_stage),
            "completeness": self.completeness,
            "profile": copy.deepcopy(self.profile),
            "summary": {str(int(stage)): data for stage, data in self.summary.items()},
            "messages": [m.to_dict() for m in self.messages],
            "user_input": self.user_input,
            "response": self.response,
            "options": [o.to_dict() for o in self.options],
            "need_more_info": self.need_more_info,
            "missing_fields": list(self.missing_fields),
            "next_question": self.next_question,
            "asked_questions": list(self.asked_questions),
            "forced_advance": self.forced_advance,
            "stop": self.stop,
            "final_spec": self.final_spec,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict) -> SessionState:
        return cls(
            session_id=str(data["session_id"]),
            current_stage=Stage(int(data.get("current_stage", 0))),
            completeness=int(data.get("completeness", 0)),
            profile=dict(data.get("profile") or {}),
            summary={
                Stage(int(stage)): value
                for stage, value in (data.get("summary") or {}).items()
            },
            messages=[ConversationMessage.from_dict(m) for m in data.get("messages") or []],
            user_input=str(data.get("user_input", "")),
            response=str(data.get("response", "")),
            options=[Option.from_dict(o) for o in data.get("options") or []],
            need_more_info=bool(data.get("need_more_info", True)),
            missing_fields=list(data.get("missing_fields") or []),
            next_question=data.get("next_question"),
            asked_questions=list(data.get("asked_questions") or []),
            forced_advance=bool(data.get("forced_advance", False)),
            stop=bool(data.get("stop", False)),
            final_spec=str(data.get("final_spec", "")),
            metadata=dict(data.get("metadata") or {}),
        )
