"""Checkpointer over a generic table store.

A checkpoint is stored as three kinds of rows:

- ``checkpoints``: one row per checkpoint; the body without channel
  values, the metadata, and a nullable parent id.
- ``checkpoint_blobs``: one row per (channel, version); the channel's
  value when it took that version.
- ``checkpoint_writes``: one row per pending write, keyed by task and
  position.

Reads join them back: a checkpoint's channel values are the blobs whose
version matches the checkpoint's own ``channel_versions``, so every
checkpoint in a thread reads back its own state.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Mapping, Sequence
from typing import Any

from tabular_checkpoint.backends.base import Query, TableStore
from tabular_checkpoint.base import Checkpointer, Config
from tabular_checkpoint.exceptions import InvalidArgumentError, SerializationError
from tabular_checkpoint.serializers import EMPTY_TAG, Serializer
from tabular_checkpoint.types import Checkpoint, CheckpointRef, CheckpointTuple, PendingWrite

logger = logging.getLogger(__name__)

CHECKPOINTS = "checkpoints"
CHECKPOINT_BLOBS = "checkpoint_blobs"
CHECKPOINT_WRITES = "checkpoint_writes"

CHECKPOINTS_KEY = ("thread_id", "checkpoint_ns", "checkpoint_id")
CHECKPOINT_BLOBS_KEY = ("thread_id", "checkpoint_ns", "channel", "version")
CHECKPOINT_WRITES_KEY = ("thread_id", "checkpoint_ns", "checkpoint_id", "task_id", "idx")


def _before_id(before: Config | str | None) -> str | None:
    if before is None or isinstance(before, str):
        return before or None
    if isinstance(before, CheckpointRef):
        return before.checkpoint_id
    return before.get("configurable", before).get("checkpoint_id") or None


def _metadata_matches(metadata: Mapping[str, Any], wanted: Mapping[str, Any]) -> bool:
    return all(key in metadata and metadata[key] == value for key, value in wanted.items())


class TableCheckpointer(Checkpointer):
    """Checkpointer storing normalized rows in a ``TableStore``.

    Args:
        store: Backing table store.
        serializer: Value serializer (default: JSON).
        schema: Table namespace. Tables are named ``<schema>.<table>``
            unless the schema is "public".
        create_tables: Create missing tables during ``initialize()``.

    ``put`` writes blob rows before the checkpoint row inside
    ``store.transaction()``. On stores without transactions a failure
    can leave orphan blob rows, but never a checkpoint row whose blobs
    are missing. Retrying the same ``put`` completes it.

    Example::

        async with TableCheckpointer(SqliteTableStore("./cp.db"), create_tables=True) as cp:
            ref = await cp.put({"thread_id": "t1"}, checkpoint, {"step": 0}, {"x": "1"})
            latest = await cp.get_tuple({"thread_id": "t1"})
    """

    def __init__(
        self,
        store: TableStore,
        *,
        serializer: Serializer | None = None,
        schema: str = "public",
        create_tables: bool = False,
    ):
        super().__init__(serializer)
        self.store = store
        self.schema = schema
        self.create_tables = create_tables

    @classmethod
    def from_store(cls, store: TableStore, serializer: Serializer | None = None, **kwargs: Any) -> TableCheckpointer:
        return cls(store, serializer=serializer, **kwargs)

    def table_name(self, table: str) -> str:
        return table if self.schema == "public" else f"{self.schema}.{table}"

    @property
    def tables(self) -> dict[str, str]:
        """Logical table name -> physical table name."""
        return {name: self.table_name(name) for name in (CHECKPOINTS, CHECKPOINT_BLOBS, CHECKPOINT_WRITES)}

    # === Lifecycle ===

    async def initialize(self) -> None:
        await self.store.initialize()
        if self.create_tables:
            await self.setup()

    async def setup(self) -> None:
        """Create the three checkpoint tables if the store supports it."""
        await self.store.setup(self.tables)

    async def close(self) -> None:
        await self.store.close()

    # === Read ===

    async def get_tuple(self, config: Config) -> CheckpointTuple | None:
        ref = CheckpointRef.coerce(config)
        query = Query(self.table_name(CHECKPOINTS)).eq("thread_id", ref.thread_id).eq("checkpoint_ns", ref.checkpoint_ns)
        if ref.checkpoint_id is not None:
            query = query.eq("checkpoint_id", ref.checkpoint_id)
        else:
            query = query.order("checkpoint_id", descending=True).limit(1)

        rows = await self.store.fetch(query)
        if not rows:
            return None
        return await self._assemble(ref, rows[0])

    async def list(
        self,
        config: Config,
        *,
        before: Config | str | None = None,
        limit: int | None = None,
        filter: Mapping[str, Any] | None = None,
    ) -> AsyncIterator[CheckpointTuple]:
        """Iterate checkpoints newest-first.

        ``limit`` caps rows scanned, so ``limit=0`` yields nothing; pass None
        for no limit. Negative limits raise ValueError.
        """
        ref = CheckpointRef.coerce(config)
        query = (
            Query(self.table_name(CHECKPOINTS))
            .eq("thread_id", ref.thread_id)
            .eq("checkpoint_ns", ref.checkpoint_ns)
            .order("checkpoint_id", descending=True)
        )
        before_id = _before_id(before)
        if before_id is not None:
            query = query.lt("checkpoint_id", before_id)
        if limit is not None:
            query = query.limit(limit)

        # One bounded scan; each tuple is assembled only when requested
        rows = await self.store.fetch(query)
        for row in rows:
            found = await self._assemble(ref, row)
            if filter and not _metadata_matches(found.metadata, filter):
                continue
            yield found

    async def _assemble(self, ref: CheckpointRef, row: dict[str, Any]) -> CheckpointTuple:
        """Join a checkpoint row with its channel blobs and pending writes."""
        checkpoint_id = row["checkpoint_id"]
        resolved = ref.with_checkpoint(checkpoint_id)

        blob_query = (
            Query(self.table_name(CHECKPOINT_BLOBS)).eq("thread_id", ref.thread_id).eq("checkpoint_ns", ref.checkpoint_ns)
        )
        writes_query = (
            Query(self.table_name(CHECKPOINT_WRITES))
            .eq("thread_id", ref.thread_id)
            .eq("checkpoint_ns", ref.checkpoint_ns)
            .eq("checkpoint_id", checkpoint_id)
            .order("idx")
            .order("task_id")
        )
        blob_rows, write_rows = await asyncio.gather(self.store.fetch(blob_query), self.store.fetch(writes_query))

        body = self._decode_document(row["checkpoint"])
        try:
            checkpoint = Checkpoint.from_dict(body)
        except (InvalidArgumentError, AttributeError, TypeError) as exc:
            raise SerializationError(f"Stored body of checkpoint {checkpoint_id!r} is malformed: {exc}") from exc
        checkpoint.channel_values = self._load_channel_values(checkpoint.channel_versions, blob_rows)
        metadata = self._decode_document(row["metadata"]) or {}

        parent_id = row.get("parent_checkpoint_id")
        return CheckpointTuple(
            config=resolved,
            checkpoint=checkpoint,
            metadata=metadata,
            parent_config=ref.with_checkpoint(parent_id) if parent_id else None,
            pending_writes=[
                PendingWrite(w["task_id"], w["channel"], self.serializer.decode(w["type"] or "", w["blob"])) for w in write_rows
            ],
        )

    def _load_channel_values(self, versions: Mapping[str, str], blob_rows: Sequence[dict[str, Any]]) -> dict[str, Any]:
        """Decode the blobs whose version is the one recorded in ``versions``."""
        values: dict[str, Any] = {}
        for blob in blob_rows:
            channel = blob["channel"]
            if versions.get(channel) != blob["version"]:
                continue
            if blob["type"] == EMPTY_TAG or blob["blob"] is None:
                continue
            values[channel] = self.serializer.decode(blob["type"], blob["blob"])
        return values

    # === Write ===

    async def put(
        self,
        config: Config,
        checkpoint: Checkpoint | Mapping[str, Any],
        metadata: Mapping[str, Any] | None,
        new_versions: Mapping[str, str | int],
    ) -> CheckpointRef:
        ref = CheckpointRef.coerce(config)
        if not isinstance(checkpoint, Checkpoint):
            checkpoint = Checkpoint.from_dict(checkpoint)
        if not checkpoint.id:
            raise InvalidArgumentError("id", "Checkpoint has no 'id'")

        versions = {channel: str(version) for channel, version in new_versions.items()}
        body = checkpoint.to_dict(include_values=False)
        body["channel_versions"] = {**body["channel_versions"], **versions}

        blob_rows = []
        for channel, version in versions.items():
            if channel in checkpoint.channel_values:
                type_tag, data = self.serializer.encode(checkpoint.channel_values[channel])
            else:
                type_tag, data = EMPTY_TAG, None
            blob_rows.append(
                {
                    "thread_id": ref.thread_id,
                    "checkpoint_ns": ref.checkpoint_ns,
                    "channel": channel,
                    "version": version,
                    "type": type_tag,
                    "blob": data,
                }
            )

        checkpoint_row = {
            "thread_id": ref.thread_id,
            "checkpoint_ns": ref.checkpoint_ns,
            "checkpoint_id": checkpoint.id,
            "parent_checkpoint_id": ref.checkpoint_id,
            "type": "standard" if body["channel_versions"] else None,
            "checkpoint": self._encode_document(body),
            "metadata": self._encode_document(dict(metadata or {})),
        }

        async with self.store.transaction():
            await self.store.upsert(self.table_name(CHECKPOINT_BLOBS), blob_rows, on_conflict=CHECKPOINT_BLOBS_KEY)
            await self.store.upsert(self.table_name(CHECKPOINTS), [checkpoint_row], on_conflict=CHECKPOINTS_KEY)

        logger.debug(
            "Stored checkpoint %s (thread=%s ns=%r parent=%s, %d blobs)",
            checkpoint.id,
            ref.thread_id,
            ref.checkpoint_ns,
            ref.checkpoint_id,
            len(blob_rows),
        )
        return ref.with_checkpoint(checkpoint.id)

    async def put_writes(self, config: Config, writes: Sequence[tuple[str, Any]], task_id: str) -> None:
        ref = CheckpointRef.coerce(config)
        if ref.checkpoint_id is None:
            raise InvalidArgumentError("checkpoint_id")
        if not task_id:
            raise InvalidArgumentError("task_id")
        if not writes:
            return

        rows = []
        for idx, (channel, value) in enumerate(writes):
            type_tag, data = self.serializer.encode(value)
            rows.append(
                {
                    "thread_id": ref.thread_id,
                    "checkpoint_ns": ref.checkpoint_ns,
                    "checkpoint_id": ref.checkpoint_id,
                    "task_id": task_id,
                    "idx": idx,
                    "channel": channel,
                    "type": type_tag,
                    "blob": data,
                }
            )

        async with self.store.transaction():
            await self.store.upsert(self.table_name(CHECKPOINT_WRITES), rows, on_conflict=CHECKPOINT_WRITES_KEY)
        logger.debug("Stored %d pending writes for task %s at checkpoint %s", len(rows), task_id, ref.checkpoint_id)

    # === Internal ===

    def _encode_document(self, document: dict[str, Any]) -> bytes:
        """Encode a checkpoint body or metadata dict in the serializer's own format."""
        type_tag, data = self.serializer.encode(document)
        if type_tag != self.serializer.type_tag:
            raise SerializationError(f"Expected {self.serializer.type_tag!r} encoding for a document, got {type_tag!r}", type_tag=type_tag)
        return data

    def _decode_document(self, data: bytes) -> Any:
        return self.serializer.decode(self.serializer.type_tag, data)
