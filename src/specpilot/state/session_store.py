"""Session persistence.

The router reads a session, works on a private copy, and commits the
whole turn through ``save_turn``. Stores keep state and messages apart:
the state row holds everything except the transcript, which is
append-only.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from typing import Protocol, runtime_checkable

from specpilot.exceptions import StateError
from specpilot.models.base import ConversationMessage
from specpilot.state.memory import Database
from specpilot.workflow.state import SessionState, Stage

logger = logging.getLogger(__name__)


def new_session_id() -> str:
    return uuid.uuid4().hex


def _state_payload(state: SessionState) -> dict:
    payload = state.to_dict()
    payload.pop("messages", None)
    return payload


@runtime_checkable
class SessionStore(Protocol):
    async def create_session(self, session_id: str | None = None) -> SessionState: ...

    async def get_messages(self, session_id: str) -> list[ConversationMessage]: ...

    async def add_message(self, session_id: str, message: ConversationMessage) -> None: ...

    async def clear_messages(self, session_id: str) -> None: ...

    async def get_state(self, session_id: str) -> SessionState | None: ...

    async def set_state(self, session_id: str, state: SessionState) -> None: ...

    async def get_summary(self, session_id: str) -> dict[Stage, dict]: ...

    async def update_summary(self, session_id: str, stage: Stage, data: dict) -> None: ...

    async def get_session(self, session_id: str) -> SessionState | None: ...

    async def delete_session(self, session_id: str) -> bool: ...

    async def session_exists(self, session_id: str) -> bool: ...

    async def save_turn(
        self, session_id: str, messages: list[ConversationMessage], state: SessionState,
    ) -> None: ...


class InMemorySessionStore:
    """Dict-backed store for tests and the interactive CLI.

    States are held serialized so callers can never alias stored data.
    """

    def __init__(self):
        self._states: dict[str, dict] = {}
        self._messages: dict[str, list[ConversationMessage]] = {}

    def __len__(self) -> int:
        return len(self._states)

    async def create_session(self, session_id: str | None = None) -> SessionState:
        session_id = session_id or new_session_id()
        if session_id in self._states:
            raise StateError(f"Session already exists: {session_id}")
        state = SessionState(session_id=session_id)
        self._states[session_id] = _state_payload(state)
        self._messages[session_id] = []
        return state

    async def get_messages(self, session_id: str) -> list[ConversationMessage]:
        return list(self._messages.get(session_id, []))

    async def add_message(self, session_id: str, message: ConversationMessage) -> None:
        self._require(session_id)
        self._messages[session_id].append(message)

    async def clear_messages(self, session_id: str) -> None:
        self._require(session_id)
        self._messages[session_id] = []

    async def get_state(self, session_id: str) -> SessionState | None:
        payload = self._states.get(session_id)
        if payload is None:
            return None
        return SessionState.from_dict(json.loads(json.dumps(payload)))

    async def set_state(self, session_id: str, state: SessionState) -> None:
        self._states[session_id] = json.loads(json.dumps(_state_payload(state)))
        self._messages.setdefault(session_id, [])

    async def get_summary(self, session_id: str) -> dict[Stage, dict]:
        state = await self.get_state(session_id)
        return dict(state.summary) if state else {}

    async def update_summary(self, session_id: str, stage: Stage, data: dict) -> None:
        self._require(session_id)
        summary = self._states[session_id].setdefault("summary", {})
        summary[str(int(stage))] = json.loads(json.dumps(data))

    async def get_session(self, session_id: str) -> SessionState | None:
        state = await self.get_state(session_id)
        if state is None:
            return None
        state.messages = await self.get_messages(session_id)
        return state

    async def delete_session(self, session_id: str) -> bool:
        self._messages.pop(session_id, None)
        return self._states.pop(session_id, None) is not None

    async def session_exists(self, session_id: str) -> bool:
        return session_id in self._states

    async def save_turn(
        self, session_id: str, messages: list[ConversationMessage], state: SessionState,
    ) -> None:
        if session_id not in self._states:
            raise StateError(f"Session {session_id} was deleted during the turn")
        payload = json.loads(json.dumps(_state_payload(state)))
        self._states[session_id] = payload
        self._messages.setdefault(session_id, []).extend(messages)

    def _require(self, session_id: str) -> None:
        if session_id not in self._states:
            raise StateError(f"Unknown session: {session_id}")


class SqliteSessionStore:
    """Session store on the aiosqlite ``Database``."""

    def __init__(self, db: Database):
        self._db = db

    async def create_session(self, session_id: str | None = None) -> SessionState:
        session_id = session_id or new_session_id()
        if await self.session_exists(session_id):
            raise StateError(f"Session already exists: {session_id}")
        state = SessionState(session_id=session_id)
        now = datetime.now().isoformat()
        await self._db.execute(
            """INSERT INTO sessions (id, current_stage, state, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?)""",
            (session_id, int(state.current_stage), json.dumps(_state_payload(state)), now, now),
        )
        return state

    async def get_messages(self, session_id: str) -> list[ConversationMessage]:
        rows = await self._db.query(
            "SELECT role, content, timestamp FROM messages WHERE session_id = ? ORDER BY id",
            (session_id,),
        )
        return [ConversationMessage.from_dict(row) for row in rows]

    async def add_message(self, session_id: str, message: ConversationMessage) -> None:
        await self._require(session_id)
        await self._db.execute(
            "INSERT INTO messages (session_id, role, content, timestamp) VALUES (?, ?, ?, ?)",
            (session_id, message.role, message.content, message.timestamp),
        )

    async def clear_messages(self, session_id: str) -> None:
        await self._require(session_id)
        await self._db.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))

    async def get_state(self, session_id: str) -> SessionState | None:
        row = await self._db.query_one("SELECT state FROM sessions WHERE id = ?", (session_id,))
        if row is None:
            return None
        try:
            payload = json.loads(row["state"])
        except json.JSONDecodeError as e:
            raise StateError(f"Corrupt state for session {session_id}: {e}") from e
        return SessionState.from_dict(payload)

    async def set_state(self, session_id: str, state: SessionState) -> None:
        await self._db.execute(*self._upsert_statement(session_id, state))

    async def get_summary(self, session_id: str) -> dict[Stage, dict]:
        state = await self.get_state(session_id)
        return dict(state.summary) if state else {}

    async def update_summary(self, session_id: str, stage: Stage, data: dict) -> None:
        state = await self.get_state(session_id)
        if state is None:
            raise StateError(f"Unknown session: {session_id}")
        state.summary[Stage(stage)] = data
        await self.set_state(session_id, state)

    async def get_session(self, session_id: str) -> SessionState | None:
        state = await self.get_state(session_id)
        if state is None:
            return None
        state.messages = await self.get_messages(session_id)
        return state

    async def delete_session(self, session_id: str) -> bool:
        existed = await self.session_exists(session_id)
        await self._db.transaction([
            ("DELETE FROM messages WHERE session_id = ?", (session_id,)),
            ("DELETE FROM sessions WHERE id = ?", (session_id,)),
        ])
        return existed

    async def session_exists(self, session_id: str) -> bool:
        row = await self._db.query_one("SELECT 1 AS found FROM sessions WHERE id = ?", (session_id,))
        return row is not None

    async def save_turn(
        self, session_id: str, messages: list[ConversationMessage], state: SessionState,
    ) -> None:
        statements = [(
            "UPDATE sessions SET current_stage = ?, state = ?, updated_at = ? WHERE id = ?",
            (
                int(state.current_stage),
                json.dumps(_state_payload(state)),
                datetime.now().isoformat(),
                session_id,
            ),
        )]
        statements.extend(
            (
                "INSERT INTO messages (session_id, role, content, timestamp) VALUES (?, ?, ?, ?)",
                (session_id, m.role, m.content, m.timestamp),
            )
            for m in messages
        )
        if not await self._db.transaction(statements, require_rows=(0,)):
            raise StateError(f"Session {session_id} was deleted during the turn")
        logger.debug(
            "Saved turn for %s (stage=%s, %d new messages)",
            session_id, state.current_stage.name, len(messages),
        )

    @staticmethod
    def _upsert_statement(session_id: str, state: SessionState) -> tuple[str, tuple]:
        now = datetime.now().isoformat()
        return (
            """INSERT INTO sessions (id, current_stage, state, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   current_stage = excluded.current_stage,
                   state = excluded.state,
                   updated_at = excluded.updated_at""",
            (
                session_id,
                int(state.current_stage),
                json.dumps(_state_payload(state)),
                now,
                now,
            ),
        )

    async def _require(self, session_id: str) -> None:
        if not await self.session_exists(session_id):
            raise StateError(f"Unknown session: {session_id}")
