"""Checkpoint types: addressing, snapshots and assembled tuples."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, NamedTuple

from tabular_checkpoint.exceptions import InvalidArgumentError
from tabular_checkpoint.ids import new_checkpoint_id


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class CheckpointRef:
    """Address of a checkpoint, or of a thread's latest checkpoint.

    Attributes:
        thread_id: Isolated execution timeline. Required.
        checkpoint_ns: Sub-scope within the thread. Defaults to "".
        checkpoint_id: Exact checkpoint. None means "latest" on reads
            and "no parent" on writes.
    """

    thread_id: str
    checkpoint_ns: str = ""
    checkpoint_id: str | None = None

    @classmethod
    def coerce(cls, value: CheckpointRef | Mapping[str, Any]) -> CheckpointRef:
        """Build a ref from a ref, a flat mapping, or a ``{"configurable": {...}}`` config.

        Raises:
            InvalidArgumentError: If ``thread_id`` is missing or empty.
        """
        if isinstance(value, CheckpointRef):
            if not value.thread_id:
                raise InvalidArgumentError("thread_id")
            return value
        if not isinstance(value, Mapping):
            raise InvalidArgumentError("thread_id", f"Expected a CheckpointRef or mapping, got {type(value).__name__}")

        fields = value.get("configurable", value)
        thread_id = fields.get("thread_id")
        if not thread_id:
            raise InvalidArgumentError("thread_id")
        return cls(
            thread_id=str(thread_id),
            checkpoint_ns=fields.get("checkpoint_ns") or "",
            checkpoint_id=fields.get("checkpoint_id") or None,
        )

    def with_checkpoint(self, checkpoint_id: str | None) -> CheckpointRef:
        return replace(self, checkpoint_id=checkpoint_id)

    def to_config(self) -> dict[str, Any]:
        configurable: dict[str, Any] = {"thread_id": self.thread_id, "checkpoint_ns": self.checkpoint_ns}
        if self.checkpoint_id is not None:
            configurable["checkpoint_id"] = self.checkpoint_id
        return {"configurable": configurable}


@dataclass
class Checkpoint:
    """Point-in-time snapshot of a computation's channels.

    Attributes:
        id: Totally ordered id; later checkpoints sort higher as strings.
        channel_values: Channel name -> value at this checkpoint.
        channel_versions: Channel name -> version marker at this checkpoint.
        versions_seen: Task/node name -> channel versions it has consumed.
        ts: ISO-8601 UTC creation time. Stamped by ``create``; None when
            the caller never set one, so rebuilding a body is deterministic.
        v: Body format version.
        extra: Additional body fields written by the engine, kept verbatim.
    """

    id: str
    channel_values: dict[str, Any] = field(default_factory=dict)
    channel_versions: dict[str, str] = field(default_factory=dict)
    versions_seen: dict[str, dict[str, str]] = field(default_factory=dict)
    ts: str | None = None
    v: int = 1
    extra: dict[str, Any] = field(default_factory=dict)

    _FIELDS = ("id", "channel_values", "channel_versions", "versions_seen", "ts", "v")

    @classmethod
    def create(cls, **kwargs: Any) -> Checkpoint:
        """New checkpoint with a fresh ordered id and the current time."""
        kwargs.setdefault("ts", _utcnow_iso())
        return cls(id=new_checkpoint_id(), **kwargs)

    def to_dict(self, *, include_values: bool = True) -> dict[str, Any]:
        """JSON-friendly dict. ``include_values=False`` drops channel values."""
        data: dict[str, Any] = dict(self.extra)
        data.update(
            {
                "v": self.v,
                "id": self.id,
                "ts": self.ts,
                "channel_versions": dict(self.channel_versions),
                "versions_seen": {k: dict(v) for k, v in self.versions_seen.items()},
            }
        )
        if include_values:
            data["channel_values"] = dict(self.channel_values)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Checkpoint:
        if not data.get("id"):
            raise InvalidArgumentError("id", "Checkpoint body has no 'id'")
        return cls(
            id=data["id"],
            channel_values=dict(data.get("channel_values") or {}),
            channel_versions={k: str(v) for k, v in (data.get("channel_versions") or {}).items()},
            versions_seen={k: dict(v) for k, v in (data.get("versions_seen") or {}).items()},
            ts=data.get("ts") or None,
            v=data.get("v", 1),
            extra={k: v for k, v in data.items() if k not in cls._FIELDS},
        )


class PendingWrite(NamedTuple):
    """A write emitted by a task before its checkpoint was finalized."""

    task_id: str
    channel: str
    value: Any


@dataclass
class CheckpointTuple:
    """A checkpoint assembled from its rows.

    Attributes:
        config: Ref resolved to the exact checkpoint id.
        checkpoint: Body with channel values filled in.
        metadata: Out-of-band annotations (step, source, ...).
        parent_config: Ref to the parent checkpoint, None for a root.
        pending_writes: Writes recorded against this checkpoint, in idx order.
    """

    config: CheckpointRef
    checkpoint: Checkpoint
    metadata: dict[str, Any] = field(default_factory=dict)
    parent_config: CheckpointRef | None = None
    pending_writes: list[PendingWrite] = field(default_factory=list)
