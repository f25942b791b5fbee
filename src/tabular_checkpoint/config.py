"""Project-level configuration from pyproject.toml.

Reads the [tool.tabular-checkpoint] section to pick a backend, its
connection settings and the value serializer.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from tabular_checkpoint.backends import InMemoryTableStore, PostgresTableStore, SqliteTableStore, TableStore
from tabular_checkpoint.serializers import JsonSerializer, PickleSerializer, Serializer
from tabular_checkpoint.table import TableCheckpointer

_SECTION = "tabular-checkpoint"


@dataclass(frozen=True)
class StoreConfig:
    """Configuration from [tool.tabular-checkpoint] in pyproject.toml."""

    backend: Literal["memory", "sqlite", "postgres"] = "sqlite"
    path: str = "checkpoints.db"
    dsn: str | None = None
    schema: str = "public"
    serializer: Literal["json", "pickle"] = "json"
    pool_size: int = 10
    create_tables: bool = True

    def __post_init__(self) -> None:
        if self.backend not in ("memory", "sqlite", "postgres"):
            raise ValueError(f"Unknown backend {self.backend!r}. Must be one of 'memory', 'sqlite', 'postgres'")
        if self.serializer not in ("json", "pickle"):
            raise ValueError(f"Unknown serializer {self.serializer!r}. Must be 'json' or 'pickle'")
        if self.backend == "postgres" and not self.dsn:
            raise ValueError('backend="postgres" requires dsn')
        if self.backend == "sqlite" and self.schema != "public":
            raise ValueError('schema is only supported with backend="postgres"')
        if self.pool_size < 1:
            raise ValueError(f"pool_size must be >= 1, got {self.pool_size}")


def find_pyproject(start: Path | None = None) -> Path | None:
    """Walk up from start directory to find pyproject.toml."""
    current = (start or Path.cwd()).resolve()
    for directory in (current, *current.parents):
        candidate = directory / "pyproject.toml"
        if candidate.is_file():
            return candidate
    return None


def load_config(start: Path | None = None) -> StoreConfig:
    """Load [tool.tabular-checkpoint] from the nearest pyproject.toml.

    Returns default config if no pyproject.toml or no section is found.
    """
    path = find_pyproject(start)
    if path is None:
        return StoreConfig()

    if sys.version_info >= (3, 11):
        import tomllib
    else:
        import tomli as tomllib

    with open(path, "rb") as f:
        data = tomllib.load(f)

    section = data.get("tool", {}).get(_SECTION, {})
    if not section:
        return StoreConfig()

    known = StoreConfig.__dataclass_fields__
    unknown = sorted(set(section) - set(known))
    if unknown:
        raise ValueError(f"Unknown keys in [tool.{_SECTION}]: {', '.join(unknown)}")
    return StoreConfig(**section)


def build_serializer(config: StoreConfig) -> Serializer:
    if config.serializer == "pickle":
        return PickleSerializer(allow_pickle=True)
    return JsonSerializer()


def build_store(config: StoreConfig) -> TableStore:
    if config.backend == "memory":
        return InMemoryTableStore()
    if config.backend == "postgres":
        return PostgresTableStore(config.dsn, pool_size=config.pool_size)
    return SqliteTableStore(config.path)


async def open_checkpointer(config: StoreConfig | None = None) -> TableCheckpointer:
    """Build and initialize the checkpointer a config describes.

    Uses ``load_config()`` when no config is given.
    """
    config = config or load_config()
    checkpointer = TableCheckpointer(
        build_store(config),
        serializer=build_serializer(config),
        schema=config.schema,
        create_tables=config.create_tables,
    )
    await checkpointer.initialize()
    return checkpointer
