"""SQLite-backed table store using aiosqlite."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any

from tabular_checkpoint.backends._sql import compile_select, compile_upsert, create_table_statements
from tabular_checkpoint.backends.base import Query, TableStore
from tabular_checkpoint.exceptions import BackendError

logger = logging.getLogger(__name__)


def _require_aiosqlite() -> Any:
    """Import aiosqlite with a clear error message if not installed."""
    try:
        import aiosqlite

        return aiosqlite
    except ImportError:
        raise ImportError("SqliteTableStore requires aiosqlite. Install it with: pip install tabular-checkpoint[sqlite]") from None


class SqliteTableStore(TableStore):
    """SQLite table store.

    Best for: local development, tests, single-process deployments.

    One connection is shared by all callers. Each upsert commits on its
    own unless it runs inside ``transaction()``, which holds the
    connection for the owning task until the block exits.

    Args:
        path: Path to SQLite database file, or ":memory:".

    Example::

        async with SqliteTableStore("./checkpoints.db") as store:
            checkpointer = TableCheckpointer(store, create_tables=True)
            await checkpointer.setup()
    """

    atomic = True

    def __init__(self, path: str):
        self._path = path
        self._db: Any = None
        self._aiosqlite = _require_aiosqlite()
        self._lock = asyncio.Lock()
        self._in_tx: ContextVar[bool] = ContextVar(f"sqlite_tx_{id(self)}", default=False)

    async def initialize(self) -> None:
        """Open the database connection."""
        if self._db is not None:
            return
        try:
            self._db = await self._aiosqlite.connect(self._path)
            self._db.row_factory = self._aiosqlite.Row
            await self._db.execute("PRAGMA journal_mode=WAL")
        except self._aiosqlite.Error as exc:
            raise BackendError("connect", cause=exc) from exc
        logger.debug("Opened SQLite table store at %s", self._path)

    async def close(self) -> None:
        """Close the database connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def _ensure_db(self) -> None:
        """Lazy-initialize on first use."""
        if self._db is None:
            await self.initialize()

    async def setup(self, tables: Mapping[str, str]) -> None:
        await self._ensure_db()
        async with self._guard():
            try:
                for statement in create_table_statements("sqlite", dict(tables)):
                    await self._db.execute(statement)
                await self._db.commit()
            except self._aiosqlite.Error as exc:
                await self._db.rollback()
                raise BackendError("setup", cause=exc) from exc

    @asynccontextmanager
    async def _guard(self) -> AsyncIterator[None]:
        """Hold the connection lock unless this task already owns a transaction."""
        if self._in_tx.get():
            yield
        else:
            async with self._lock:
                yield

    # === Read ===

    async def fetch(self, query: Query) -> list[dict[str, Any]]:
        await self._ensure_db()
        sql, params = compile_select(query, "qmark")
        async with self._guard():
            try:
                cursor = await self._db.execute(sql, params)
                rows = await cursor.fetchall()
                await cursor.close()
            except self._aiosqlite.Error as exc:
                raise BackendError("select", table=query.table, cause=exc) from exc
        return [{key: row[key] for key in row.keys()} for row in rows]

    # === Write ===

    async def upsert(self, table: str, rows: Sequence[dict[str, Any]], *, on_conflict: Sequence[str]) -> None:
        if not rows:
            return
        await self._ensure_db()
        columns = list(rows[0])
        sql = compile_upsert(table, columns, on_conflict, "qmark")
        params = [tuple(row[c] for c in columns) for row in rows]

        async with self._guard():
            try:
                await self._db.executemany(sql, params)
                if not self._in_tx.get():
                    await self._db.commit()
            except self._aiosqlite.Error as exc:
                if not self._in_tx.get():
                    await self._db.rollback()
                raise BackendError("upsert", table=table, cause=exc) from exc

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Commit every upsert in the block together, or none of them.

        Ownership is tracked per task. Tasks spawned inside the block inherit
        it and would bypass the lock after the block exits; spawning tasks
        inside a transaction is unsupported.
        """
        if self._in_tx.get():
            yield
            return
        await self._ensure_db()
        async with self._lock:
            token = self._in_tx.set(True)
            try:
                yield
            except BaseException:
                await self._db.rollback()
                raise
            else:
                try:
                    await self._db.commit()
                except self._aiosqlite.Error as exc:
                    await self._db.rollback()
                    raise BackendError("transaction", cause=exc) from exc
            finally:
                self._in_tx.reset(token)
