"""Tabular checkpoint - durable, replayable checkpoints over relational tables.

Provides the ``Checkpointer`` ABC, the ``TableCheckpointer`` implementation,
table stores for memory, SQLite and PostgreSQL, and supporting types.
"""

from tabular_checkpoint.backends import (
    InMemoryTableStore,
    PostgresTableStore,
    Query,
    SqliteTableStore,
    TableStore,
)
from tabular_checkpoint.base import Checkpointer
from tabular_checkpoint.config import StoreConfig, load_config, open_checkpointer
from tabular_checkpoint.exceptions import (
    BackendError,
    CheckpointStoreError,
    InvalidArgumentError,
    SerializationError,
)
from tabular_checkpoint.ids import new_checkpoint_id, next_version
from tabular_checkpoint.serializers import JsonSerializer, PickleSerializer, Serializer
from tabular_checkpoint.table import TableCheckpointer
from tabular_checkpoint.types import Checkpoint, CheckpointRef, CheckpointTuple, PendingWrite

__all__ = [
    # Checkpointers
    "Checkpointer",
    "TableCheckpointer",
    # Types
    "Checkpoint",
    "CheckpointRef",
    "CheckpointTuple",
    "PendingWrite",
    # Table stores
    "InMemoryTableStore",
    "PostgresTableStore",
    "Query",
    "SqliteTableStore",
    "TableStore",
    # Serializers
    "JsonSerializer",
    "PickleSerializer",
    "Serializer",
    # Errors
    "BackendError",
    "CheckpointStoreError",
    "InvalidArgumentError",
    "SerializationError",
    # Config and ids
    "StoreConfig",
    "load_config",
    "new_checkpoint_id",
    "next_version",
    "open_checkpointer",
]
