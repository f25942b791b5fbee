"""Table store protocol and query builder.

A table store is the only thing the checkpointer talks to. It offers
filtered, ordered, limited reads and upserts keyed on a conflict target.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from typing import Any, Literal

logger = logging.getLogger(__name__)

Operator = Literal["eq", "lt", "gt"]


@dataclass(frozen=True)
class Filter:
    column: str
    op: Operator
    value: Any


@dataclass(frozen=True)
class OrderBy:
    column: str
    descending: bool = False


@dataclass(frozen=True)
class Query:
    """Immutable select query. Every builder call returns a new query.

    Example:
        >>> q = Query("checkpoints").eq("thread_id", "t1").order("checkpoint_id", descending=True).limit(1)
        >>> q.limit_to
        1
    """

    table: str
    filters: tuple[Filter, ...] = ()
    ordering: tuple[OrderBy, ...] = ()
    limit_to: int | None = None

    def eq(self, column: str, value: Any) -> Query:
        return replace(self, filters=(*self.filters, Filter(column, "eq", value)))

    def lt(self, column: str, value: Any) -> Query:
        return replace(self, filters=(*self.filters, Filter(column, "lt", value)))

    def gt(self, column: str, value: Any) -> Query:
        return replace(self, filters=(*self.filters, Filter(column, "gt", value)))

    def order(self, column: str, *, descending: bool = False) -> Query:
        return replace(self, ordering=(*self.ordering, OrderBy(column, descending)))

    def limit(self, n: int) -> Query:
        if n < 0:
            raise ValueError(f"limit must be >= 0, got {n}")
        return replace(self, limit_to=n)


class TableStore(ABC):
    """Base class for row stores backing the checkpointer.

    Implementations wrap driver failures in ``BackendError``.

    ``transaction()`` groups upserts so they commit together. Stores that
    cannot do that keep the default, which only logs a warning and sets
    ``atomic = False``; a failure midway then leaves earlier rows in place.
    """

    atomic: bool = False

    @abstractmethod
    async def fetch(self, query: Query) -> list[dict[str, Any]]:
        """Run a select and return rows as dicts."""
        ...

    @abstractmethod
    async def upsert(self, table: str, rows: Sequence[dict[str, Any]], *, on_conflict: Sequence[str]) -> None:
        """Insert rows, replacing any row with the same conflict key."""
        ...

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if not getattr(self, "_warned_non_atomic", False):
            logger.warning("%s does not support transactions; writes are applied one by one", type(self).__name__)
            self._warned_non_atomic = True
        yield

    # === Lifecycle ===

    async def initialize(self) -> None:  # noqa: B027
        """Open connections, create tables, etc."""

    async def close(self) -> None:  # noqa: B027
        """Release connections."""

    async def setup(self, tables: Mapping[str, str]) -> None:  # noqa: B027
        """Create the checkpoint tables if missing.

        ``tables`` maps logical names to physical (possibly schema-qualified)
        names. Stores whose tables are provisioned elsewhere keep this no-op.
        """

    async def __aenter__(self) -> TableStore:
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
