"""Async SQLite database wrapper backing the session store."""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

import aiosqlite


class Database:
    """Async SQLite database wrapper for SpecPilot.

    All access is non-blocking via aiosqlite. Connections are opened
    per call; ``transaction`` runs several statements on one connection
    and commits them together.
    """

    def __init__(self, db_path: str | Path):
        self._db_path = str(db_path)

    @property
    def path(self) -> str:
        return self._db_path

    async def initialize(self) -> None:
        """Create tables from schema.sql if they don't exist."""
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        schema_path = Path(__file__).parent / "schema.sql"
        schema = schema_path.read_text()
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.executescript(schema)
            await db.commit()

    async def execute(self, sql: str, params: tuple = ()) -> None:
        """Execute a write query."""
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("PRAGMA foreign_keys=ON")
            await db.execute(sql, params)
            await db.commit()

    async def transaction(
        self,
        statements: list[tuple[str, tuple]],
        require_rows: Sequence[int] = (),
    ) -> bool:
        """Run ``statements`` in order and commit once; roll back on any failure.

        ``require_rows`` lists statement indexes that must change at least
        one row. If one changes none, everything is rolled back and False
        is returned.
        """
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("PRAGMA foreign_keys=ON")
            try:
                for index, (sql, params) in enumerate(statements):
                    cursor = await db.execute(sql, params)
                    if index in require_rows and cursor.rowcount < 1:
                        await db.rollback()
                        return False
            except BaseException:
                await db.rollback()
                raise
            await db.commit()
            return True

    async def query(self, sql: str, params: tuple = ()) -> list[dict]:
        """Execute a read query and return results as dicts."""
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]

    async def query_one(self, sql: str, params: tuple = ()) -> dict | None:
        """Execute a read query and return the first result."""
        results = await self.query(sql, params)
        return results[0] if results else None
