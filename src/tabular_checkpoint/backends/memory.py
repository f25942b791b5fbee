"""Dict-backed table store for tests and ephemeral runs."""

from __future__ import annotations

import asyncio
import operator
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any

from tabular_checkpoint.backends.base import Filter, Query, TableStore
from tabular_checkpoint.exceptions import BackendError

_OPS = {"eq": operator.eq, "lt": operator.lt, "gt": operator.gt}


def _matches(row: dict[str, Any], flt: Filter) -> bool:
    value = row.get(flt.column)
    if flt.op != "eq" and (value is None or flt.value is None):
        return False
    return _OPS[flt.op](value, flt.value)


class InMemoryTableStore(TableStore):
    """Tables as dicts keyed by each upsert's conflict columns.

    Transactions snapshot every table on entry and restore it if the
    block raises. A lock keeps writes from other tasks out of an open
    transaction so a rollback cannot discard them.

    Example:
        >>> store = InMemoryTableStore()
        >>> checkpointer = TableCheckpointer(store)
    """

    atomic = True

    def __init__(self) -> None:
        self._tables: dict[str, dict[tuple[Any, ...], dict[str, Any]]] = {}
        self._lock = asyncio.Lock()
        self._in_tx: ContextVar[bool] = ContextVar(f"memory_tx_{id(self)}", default=False)

    def rows(self, table: str) -> list[dict[str, Any]]:
        """All rows of a table, in insertion order. For inspection in tests."""
        return [dict(row) for row in self._tables.get(table, {}).values()]

    async def fetch(self, query: Query) -> list[dict[str, Any]]:
        rows = [row for row in self._tables.get(query.table, {}).values() if all(_matches(row, f) for f in query.filters)]
        # Stable sorts applied last-key-first give multi-column ordering
        for order in reversed(query.ordering):
            rows.sort(key=lambda r, c=order.column: (r.get(c) is None, r.get(c)), reverse=order.descending)
        if query.limit_to is not None:
            rows = rows[: query.limit_to]
        return [dict(row) for row in rows]

    async def upsert(self, table: str, rows: Sequence[dict[str, Any]], *, on_conflict: Sequence[str]) -> None:
        if not rows:
            return
        if self._in_tx.get():
            self._apply(table, rows, on_conflict)
            return
        async with self._lock:
            self._apply(table, rows, on_conflict)

    def _apply(self, table: str, rows: Sequence[dict[str, Any]], on_conflict: Sequence[str]) -> None:
        target = self._tables.setdefault(table, {})
        for row in rows:
            try:
                key = tuple(row[col] for col in on_conflict)
            except KeyError as exc:
                raise BackendError("upsert", table=table, cause=exc, message=f"Row is missing conflict column {exc}") from exc
            target[key] = dict(row)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Snapshot tables and restore them if the block raises.

        Spawning tasks inside the block is unsupported: they inherit the
        owner flag and would skip the lock.
        """
        if self._in_tx.get():
            yield
            return
        async with self._lock:
            snapshot = {name: dict(rows) for name, rows in self._tables.items()}
            token = self._in_tx.set(True)
            try:
                yield
            except BaseException:
                self._tables = snapshot
                raise
            finally:
                self._in_tx.reset(token)
