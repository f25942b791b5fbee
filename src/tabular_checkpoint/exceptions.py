"""Exceptions for checkpoint storage."""

from __future__ import annotations


class CheckpointStoreError(Exception):
    """Base class for all checkpoint store failures."""


class InvalidArgumentError(CheckpointStoreError, ValueError):
    """Caller passed an incomplete or malformed addressing context.

    Raised before any backend round trip. Required fields are never
    defaulted.

    Attributes:
        field: Name of the offending field
        message: Human-readable error message
    """

    def __init__(self, field: str, message: str | None = None) -> None:
        self.field = field
        self.message = message or self._default_message()
        super().__init__(self.message)

    def _default_message(self) -> str:
        return f"Missing required field '{self.field}' in checkpoint config"


class BackendError(CheckpointStoreError):
    """The backing table store failed to read or write rows.

    Wraps the driver exception, which is kept as ``__cause__``.

    Attributes:
        operation: "select", "upsert", "setup", "connect" or "transaction"
        table: Table being accessed, if any
        message: Human-readable error message
    """

    def __init__(
        self,
        operation: str,
        *,
        table: str | None = None,
        cause: BaseException | None = None,
        message: str | None = None,
    ) -> None:
        self.operation = operation
        self.table = table
        self.message = message or self._default_message(cause)
        super().__init__(self.message)
        if cause is not None:
            self.__cause__ = cause

    def _default_message(self, cause: BaseException | None) -> str:
        target = f" on '{self.table}'" if self.table else ""
        detail = f": {cause}" if cause is not None else ""
        return f"Backend {self.operation} failed{target}{detail}"


class SerializationError(CheckpointStoreError):
    """A value could not be encoded, or stored bytes could not be decoded.

    Not retried: stored bytes that fail to decode are presumed corrupt.

    Attributes:
        type_tag: Serializer tag involved, if known
        message: Human-readable error message
    """

    def __init__(self, message: str, *, type_tag: str | None = None) -> None:
        self.type_tag = type_tag
        self.message = message
        super().__init__(message)
