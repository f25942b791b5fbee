"""Table stores backing the checkpointer.

``SqliteTableStore`` and ``PostgresTableStore`` import their drivers lazily,
so this package imports without aiosqlite or asyncpg installed.
"""

from tabular_checkpoint.backends.base import Filter, OrderBy, Query, TableStore
from tabular_checkpoint.backends.memory import InMemoryTableStore
from tabular_checkpoint.backends.postgres import PostgresTableStore
from tabular_checkpoint.backends.sqlite import SqliteTableStore

__all__ = [
    "Filter",
    "InMemoryTableStore",
    "OrderBy",
    "PostgresTableStore",
    "Query",
    "SqliteTableStore",
    "TableStore",
]
