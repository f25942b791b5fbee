"""SQL compilation shared by the SQLite and PostgreSQL stores."""

from __future__ import annotations

import re
from collections.abc import Sequence
from typing import Any, Literal

from tabular_checkpoint.backends.base import Query

ParamStyle = Literal["qmark", "numeric"]

_IDENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_SQL_OPS = {"eq": "=", "lt": "<", "gt": ">"}


def quote_ident(name: str) -> str:
    """Quote a column or (optionally schema-qualified) table name.

    Raises:
        ValueError: If any part is not a plain identifier.
    """
    parts = name.split(".")
    if len(parts) > 2 or not all(_IDENT.match(p) for p in parts):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return ".".join(f'"{p}"' for p in parts)


class _Params:
    def __init__(self, style: ParamStyle) -> None:
        self.style = style
        self.values: list[Any] = []

    def add(self, value: Any) -> str:
        self.values.append(value)
        return "?" if self.style == "qmark" else f"${len(self.values)}"


def compile_select(query: Query, style: ParamStyle) -> tuple[str, list[Any]]:
    """Compile a Query to ``(sql, params)``."""
    params = _Params(style)
    sql = f"SELECT * FROM {quote_ident(query.table)}"
    if query.filters:
        conditions = [f"{quote_ident(f.column)} {_SQL_OPS[f.op]} {params.add(f.value)}" for f in query.filters]
        sql += " WHERE " + " AND ".join(conditions)
    if query.ordering:
        sql += " ORDER BY " + ", ".join(f"{quote_ident(o.column)} {'DESC' if o.descending else 'ASC'}" for o in query.ordering)
    if query.limit_to is not None:
        sql += f" LIMIT {params.add(query.limit_to)}"
    return sql, params.values


def compile_upsert(table: str, columns: Sequence[str], on_conflict: Sequence[str], style: ParamStyle) -> str:
    """Compile an ``INSERT ... ON CONFLICT DO UPDATE`` for one row of ``columns``."""
    if not on_conflict:
        raise ValueError("on_conflict must name at least one column")
    missing = [c for c in on_conflict if c not in columns]
    if missing:
        raise ValueError(f"Conflict columns not in row: {missing}")

    params = _Params(style)
    cols = ", ".join(quote_ident(c) for c in columns)
    placeholders = ", ".join(params.add(None) for _ in columns)
    conflict = ", ".join(quote_ident(c) for c in on_conflict)
    updates = [f"{quote_ident(c)} = excluded.{quote_ident(c)}" for c in columns if c not in on_conflict]
    action = f"DO UPDATE SET {', '.join(updates)}" if updates else "DO NOTHING"
    return f"INSERT INTO {quote_ident(table)} ({cols}) VALUES ({placeholders}) ON CONFLICT ({conflict}) {action}"


# === Table definitions ===

# Column types per dialect: (text, integer, binary)
_TYPES = {
    "sqlite": ("TEXT", "INTEGER", "BLOB"),
    "postgres": ("TEXT", "INTEGER", "BYTEA"),
}


def create_table_statements(dialect: Literal["sqlite", "postgres"], tables: dict[str, str]) -> list[str]:
    """DDL for the three checkpoint tables.

    ``tables`` maps the logical names ("checkpoints", "checkpoint_blobs",
    "checkpoint_writes") to the physical, possibly qualified, names.
    """
    text, integer, binary = _TYPES[dialect]
    checkpoints = quote_ident(tables["checkpoints"])
    blobs = quote_ident(tables["checkpoint_blobs"])
    writes = quote_ident(tables["checkpoint_writes"])
    return [
        f"""
        CREATE TABLE IF NOT EXISTS {checkpoints} (
            thread_id {text} NOT NULL,
            checkpoint_ns {text} NOT NULL DEFAULT '',
            checkpoint_id {text} NOT NULL,
            parent_checkpoint_id {text},
            type {text},
            checkpoint {binary} NOT NULL,
            metadata {binary} NOT NULL,
            PRIMARY KEY (thread_id, checkpoint_ns, checkpoint_id)
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS {blobs} (
            thread_id {text} NOT NULL,
            checkpoint_ns {text} NOT NULL DEFAULT '',
            channel {text} NOT NULL,
            version {text} NOT NULL,
            type {text} NOT NULL,
            blob {binary},
            PRIMARY KEY (thread_id, checkpoint_ns, channel, version)
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS {writes} (
            thread_id {text} NOT NULL,
            checkpoint_ns {text} NOT NULL DEFAULT '',
            checkpoint_id {text} NOT NULL,
            task_id {text} NOT NULL,
            idx {integer} NOT NULL,
            channel {text} NOT NULL,
            type {text},
            blob {binary} NOT NULL,
            PRIMARY KEY (thread_id, checkpoint_ns, checkpoint_id, task_id, idx)
        )
        """,
    ]
