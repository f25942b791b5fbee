"""Shared fixtures: every checkpointer test runs against each table store."""

import pytest

from tabular_checkpoint import InMemoryTableStore, TableCheckpointer


def _sqlite_store(tmp_path):
    pytest.importorskip("aiosqlite")
    from tabular_checkpoint import SqliteTableStore

    return SqliteTableStore(str(tmp_path / "test.db"))


@pytest.fixture(params=["memory", "sqlite"])
async def store(request, tmp_path):
    """A fresh, initialized table store."""
    if request.param == "memory":
        s = InMemoryTableStore()
    else:
        s = _sqlite_store(tmp_path)
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
async def checkpointer(store):
    """A TableCheckpointer with its tables created."""
    cp = TableCheckpointer(store)
    await cp.setup()
    return cp
