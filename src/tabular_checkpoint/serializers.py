"""Serializers for checkpoint bodies and channel values."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any

from tabular_checkpoint.exceptions import SerializationError

NULL_TAG = "null"
BYTES_TAG = "bytes"
# Marks a channel blob row that holds no value. Never decoded.
EMPTY_TAG = "empty"


class Serializer(ABC):
    """Base class for tagged value serialization.

    ``encode`` returns a ``(type, bytes)`` pair and ``decode`` reverses it.
    ``None`` and raw ``bytes`` get their own tags so every serializer
    round-trips them without touching the underlying format.
    """

    type_tag: str = ""

    def encode(self, value: Any) -> tuple[str, bytes]:
        if value is None:
            return NULL_TAG, b""
        if isinstance(value, (bytes, bytearray)):
            return BYTES_TAG, bytes(value)
        try:
            return self.type_tag, self._dumps(value)
        except Exception as exc:
            raise SerializationError(
                f"Cannot encode value of type {type(value).__name__} as {self.type_tag}: {exc}",
                type_tag=self.type_tag,
            ) from exc

    def decode(self, type_tag: str, data: bytes) -> Any:
        if type_tag == NULL_TAG:
            return None
        if type_tag == BYTES_TAG:
            return bytes(data)
        if type_tag != self.type_tag:
            raise SerializationError(
                f"{type(self).__name__} cannot decode type {type_tag!r} (expected {self.type_tag!r})",
                type_tag=type_tag,
            )
        try:
            return self._loads(bytes(data))
        except Exception as exc:
            raise SerializationError(f"Corrupt {type_tag} payload: {exc}", type_tag=type_tag) from exc

    @abstractmethod
    def _dumps(self, value: Any) -> bytes:
        """Convert value to bytes for storage."""
        ...

    @abstractmethod
    def _loads(self, data: bytes) -> Any:
        """Convert bytes back to value."""
        ...


class JsonSerializer(Serializer):
    """JSON serializer (default). Safe, human-readable, inspectable.

    By default, non-JSON-serializable types fail to encode.
    Pass ``lossy=True`` to fall back to ``str()`` for unsupported types.
    """

    type_tag = "json"

    def __init__(self, *, lossy: bool = False):
        self._default = str if lossy else None

    def _dumps(self, value: Any) -> bytes:
        return json.dumps(value, default=self._default).encode("utf-8")

    def _loads(self, data: bytes) -> Any:
        return json.loads(data.decode("utf-8"))


class PickleSerializer(Serializer):
    """Pickle serializer for complex Python objects.

    WARNING: Pickle can execute arbitrary code on deserialization.
    Requires explicit ``allow_pickle=True`` to construct.
    """

    type_tag = "pickle"

    def __init__(self, *, allow_pickle: bool = False):
        if not allow_pickle:
            raise ValueError(
                "PickleSerializer requires explicit allow_pickle=True. "
                "Pickle can execute arbitrary code on deserialization. "
                "Only use with trusted data sources."
            )

    def _dumps(self, value: Any) -> bytes:
        import pickle

        return pickle.dumps(value)

    def _loads(self, data: bytes) -> Any:
        import pickle

        return pickle.loads(data)  # noqa: S301
