"""Checkpointer base class."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Mapping, Sequence
from typing import Any

from tabular_checkpoint.serializers import JsonSerializer, Serializer
from tabular_checkpoint.types import Checkpoint, CheckpointRef, CheckpointTuple

Config = CheckpointRef | Mapping[str, Any]


class Checkpointer(ABC):
    """Base class for checkpoint persistence.

    The execution engine calls ``put`` after each step, ``put_writes``
    as tasks emit writes, and ``get_tuple`` to resume. A ``None`` from
    ``get_tuple`` means "no prior state, start fresh".

    Callers must keep at most one ``put`` in flight per
    (thread_id, checkpoint_ns). Writes are not serialized internally;
    two concurrent steps extending the same parent fork the history.
    """

    def __init__(self, serializer: Serializer | None = None):
        self.serializer = serializer or JsonSerializer()

    # === Read Operations ===

    @abstractmethod
    async def get_tuple(self, config: Config) -> CheckpointTuple | None:
        """Fetch the addressed checkpoint, or the latest one in the thread.

        Returns None if nothing matches.
        """
        ...

    @abstractmethod
    def list(
        self,
        config: Config,
        *,
        before: Config | str | None = None,
        limit: int | None = None,
        filter: Mapping[str, Any] | None = None,
    ) -> AsyncIterator[CheckpointTuple]:
        """Iterate checkpoints newest-first.

        ``before`` excludes ids >= its checkpoint id. ``limit`` caps rows
        scanned. ``filter`` keeps tuples whose metadata contains every
        given key/value pair.
        """
        ...

    async def get(self, config: Config) -> Checkpoint | None:
        """Fetch just the checkpoint body (with channel values)."""
        found = await self.get_tuple(config)
        return found.checkpoint if found is not None else None

    # === Write Operations ===

    @abstractmethod
    async def put(
        self,
        config: Config,
        checkpoint: Checkpoint | Mapping[str, Any],
        metadata: Mapping[str, Any] | None,
        new_versions: Mapping[str, str | int],
    ) -> CheckpointRef:
        """Store a checkpoint as a child of ``config``'s checkpoint id.

        Idempotent: repeating the same call leaves the same rows.
        Returns the ref of the stored checkpoint.
        """
        ...

    @abstractmethod
    async def put_writes(self, config: Config, writes: Sequence[tuple[str, Any]], task_id: str) -> None:
        """Store a task's pending writes against an existing checkpoint.

        Idempotent: re-emitting the same writes overwrites the same rows.
        """
        ...

    # === Lifecycle ===

    async def initialize(self) -> None:  # noqa: B027
        """Initialize the checkpointer (open connections, create tables, etc.)."""

    async def close(self) -> None:  # noqa: B027
        """Clean up resources (close connections, etc.)."""

    async def __aenter__(self) -> Checkpointer:
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
