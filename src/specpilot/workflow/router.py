"""Stage router: drives a session through the requirements pipeline.

One call to ``advance`` handles one user turn. The turn runs under the
session's lock against a private copy of the stored state; the copy is
committed with ``save_turn`` only once every agent of the turn has
succeeded. A failing agent leaves the store exactly as it was.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from specpilot import agents
from specpilot.agents.context import AgentContext
from specpilot.config import RouterConfig
from specpilot.events.bus import Event, EventBus
from specpilot.events.types import (
    AGENT_COMPLETED,
    AGENT_FAILED,
    AGENT_STARTED,
    FORCED_ADVANCE,
    STAGE_TRANSITION,
    TURN_COMPLETED,
    TURN_FAILED,
    TURN_STARTED,
)
from specpilot.exceptions import StateError
from specpilot.models.base import ConversationMessage
from specpilot.state.session_store import SessionStore
from specpilot.workflow.state import Option, SessionState, Stage

logger = logging.getLogger(__name__)

AgentFn = Callable[[SessionState, AgentContext], Awaitable[dict]]

DEFAULT_AGENTS: dict[str, AgentFn] = {
    "extractor": agents.extractor.run,
    "planner": agents.planner.run,
    "asker": agents.asker.run,
    "risk_analyst": agents.risk_analyst.run,
    "tech_advisor": agents.tech_advisor.run,
    "mvp_boundary": agents.mvp_boundary.run,
    "diagram_designer": agents.diagram_designer.run,
    "spec_generator": agents.spec_generator.run,
}

# Agent that opens each stage after requirement collection.
STAGE_AGENTS: dict[Stage, str] = {
    Stage.RISK_ANALYSIS: "risk_analyst",
    Stage.TECH_STACK: "tech_advisor",
    Stage.MVP_BOUNDARY: "mvp_boundary",
    Stage.DIAGRAM_DESIGN: "diagram_designer",
    Stage.DOCUMENT_GENERATION: "spec_generator",
}


@dataclass
class TurnResult:
    state: SessionState
    reply: str
    options: list[Option] = field(default_factory=list)
    need_more_info: bool = False

    @property
    def stage(self) -> Stage:
        return self.state.current_stage

    @property
    def completeness(self) -> int:
        return self.state.completeness

    def to_dict(self) -> dict:
        return {
            "session_id": self.state.session_id,
            "stage": self.state.current_stage.name,
            "stage_index": int(self.state.current_stage),
            "reply": self.reply,
            "options": [o.to_dict() for o in self.options],
            "need_more_info": self.need_more_info,
            "completeness": self.state.completeness,
            "forced_advance": self.state.forced_advance,
            "stop": self.state.stop,
        }


class StageRouter:
    """Routes user turns to agents and commits the results."""

    def __init__(
        self,
        store: SessionStore,
        ctx: AgentContext,
        config: RouterConfig | None = None,
        event_bus: EventBus | None = None,
        agent_fns: dict[str, AgentFn] | None = None,
    ):
        self._store = store
        self._ctx = ctx
        self._config = config or RouterConfig()
        self._events = event_bus
        self._agents = {**DEFAULT_AGENTS, **(agent_fns or {})}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @property
    def store(self) -> SessionStore:
        return self._store

    @asynccontextmanager
    async def _session_lock(self, session_id: str) -> AsyncIterator[None]:
        """Hold the session's lock; the lock is dropped once nobody uses it."""
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[session_id] -= 1
            if self._lock_users[session_id] == 0:
                del self._lock_users[session_id]
                del self._locks[session_id]

    @property
    def active_locks(self) -> int:
        return len(self._locks)

    async def advance(self, session_id: str, user_message: str) -> TurnResult:
        """Process one user turn and return what to show the user."""
        async with self._session_lock(session_id):
            stored = await self._store.get_session(session_id)
            if stored is None:
                raise StateError(f"Unknown session: {session_id}")
            if stored.current_stage is Stage.COMPLETED:
                return TurnResult(state=stored, reply=stored.final_spec, need_more_info=False)

            working = stored.copy()
            committed = len(working.messages)
            working.user_input = user_message
            working.response = ""
            working.options = []
            working.forced_advance = False
            working.messages.append(ConversationMessage(role="user", content=user_message))

            self._emit(TURN_STARTED, session_id, {"stage": working.current_stage.name})
            try:
                await self._dispatch(working)
                if working.response:
                    working.messages.append(
                        ConversationMessage(role="assistant", content=working.response)
                    )
                working.touch()
                await self._store.save_turn(session_id, working.messages[committed:], working)
            except Exception as e:
                logger.warning(
                    "Turn failed for %s at %s: %s", session_id, working.current_stage.name, e,
                )
                self._emit(TURN_FAILED, session_id, {
                    "stage": stored.current_stage.name, "error": str(e),
                })
                raise

            self._emit(TURN_COMPLETED, session_id, {
                "stage": working.current_stage.name,
                "completeness": working.completeness,
                "need_more_info": working.need_more_info,
            })
            return TurnResult(
                state=working,
                reply=working.response,
                options=list(working.options),
                need_more_info=working.need_more_info,
            )

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    async def _dispatch(self, state: SessionState) -> None:
        if state.current_stage is Stage.INIT:
            self._transition(state, Stage.REQUIREMENT_COLLECTION)

        if state.current_stage is Stage.REQUIREMENT_COLLECTION:
            await self._collect_requirements(state)
            return

        if state.current_stage is Stage.DOCUMENT_GENERATION:
            await self._run_agent("spec_generator", state)
            return

        if state.current_stage not in state.summary:
            await self._run_agent(STAGE_AGENTS[state.current_stage], state)
            return

        await self._run_agent("extractor", state)
        await self._open_stage(state, Stage(state.current_stage + 1))

    async def _collect_requirements(self, state: SessionState) -> None:
        await self._run_agent("extractor", state)
        await self._run_agent("planner", state)
        if not state.need_more_info:
            await self._open_stage(state, Stage.RISK_ANALYSIS)
            return

        if len(state.asked_questions) >= self._config.max_questions:
            state.completeness = max(state.completeness, self._config.forced_completeness)
            state.forced_advance = True
            logger.info(
                "Question cap (%d) reached for %s; advancing with completeness %d",
                self._config.max_questions, state.session_id, state.completeness,
            )
            self._emit(FORCED_ADVANCE, state.session_id, {
                "asked": len(state.asked_questions), "completeness": state.completeness,
            })
            await self._open_stage(state, Stage.RISK_ANALYSIS)
            state.need_more_info = True
            return

        await self._run_agent("asker", state)

    async def _open_stage(self, state: SessionState, stage: Stage) -> None:
        self._transition(state, stage)
        await self._run_agent(STAGE_AGENTS[stage], state)

    def _transition(self, state: SessionState, stage: Stage) -> None:
        previous = state.current_stage
        if stage < previous:
            raise StateError(f"Stage cannot move backwards: {previous.name} -> {stage.name}")
        if stage == previous:
            return
        state.current_stage = stage
        logger.info("Session %s: %s -> %s", state.session_id, previous.name, stage.name)
        self._emit(STAGE_TRANSITION, state.session_id, {
            "from": previous.name, "to": stage.name,
        })

    async def _run_agent(self, name: str, state: SessionState) -> None:
        self._emit(AGENT_STARTED, state.session_id, {"agent": name})
        previous = state.current_stage
        try:
            updates = await self._agents[name](state, self._ctx)
        except Exception as e:
            self._emit(AGENT_FAILED, state.session_id, {"agent": name, "error": str(e)})
            raise
        state.apply(updates)
        if state.current_stage != previous:
            logger.info(
                "Session %s: %s -> %s (%s)",
                state.session_id, previous.name, state.current_stage.name, name,
            )
            self._emit(STAGE_TRANSITION, state.session_id, {
                "from": previous.name, "to": state.current_stage.name,
            })
        self._emit(AGENT_COMPLETED, state.session_id, {"agent": name})

    def _emit(self, event_type: str, session_id: str, data: dict) -> None:
        if self._events is not None:
            self._events.emit(Event(event_type=event_type, session_id=session_id, data=data))
