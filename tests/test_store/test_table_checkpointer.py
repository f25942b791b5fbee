"""Tests for TableCheckpointer against each table store."""

import pytest

from tabular_checkpoint import (
    Checkpoint,
    CheckpointRef,
    InvalidArgumentError,
    PendingWrite,
    SerializationError,
)
from tabular_checkpoint.table import CHECKPOINT_BLOBS, CHECKPOINT_WRITES, CHECKPOINTS, CHECKPOINTS_KEY
from tabular_checkpoint.backends import Query


def _make_checkpoint(checkpoint_id, values=None, versions=None):
    """Helper to build a checkpoint whose versions default to "1" per channel."""
    values = values or {}
    versions = versions if versions is not None else {ch: "1" for ch in values}
    return Checkpoint(id=checkpoint_id, channel_values=values, channel_versions=versions, ts="2024-01-01T00:00:00+00:00")


async def _put_chain(checkpointer, ids, thread="t1", ns=""):
    """Put checkpoints so each extends the previous one. Returns the last ref."""
    ref = CheckpointRef(thread, ns)
    for step, checkpoint_id in enumerate(ids):
        version = f"{step + 1}"
        checkpoint = _make_checkpoint(checkpoint_id, {"x": step}, {"x": version})
        ref = await checkpointer.put(ref, checkpoint, {"step": step}, {"x": version})
    return ref


async def _all_rows(store, table):
    return await store.fetch(Query(table))


class TestGet:
    async def test_empty_thread_returns_none(self, checkpointer):
        assert await checkpointer.get_tuple({"thread_id": "nope"}) is None
        assert await checkpointer.get({"thread_id": "nope"}) is None

    async def test_missing_thread_id_fails_fast(self, checkpointer):
        with pytest.raises(InvalidArgumentError, match="thread_id"):
            await checkpointer.get_tuple({"checkpoint_ns": ""})

    async def test_unknown_checkpoint_id_returns_none(self, checkpointer):
        await _put_chain(checkpointer, ["c1"])
        assert await checkpointer.get_tuple({"thread_id": "t1", "checkpoint_id": "zz"}) is None

    async def test_latest_has_parent(self, checkpointer):
        await checkpointer.put({"thread_id": "t1"}, _make_checkpoint("c1"), {}, {"x": "1"})
        await checkpointer.put({"thread_id": "t1", "checkpoint_id": "c1"}, _make_checkpoint("c2"), {}, {"x": "2"})

        latest = await checkpointer.get_tuple({"thread_id": "t1", "checkpoint_ns": ""})
        assert latest.config == CheckpointRef("t1", "", "c2")
        assert latest.parent_config == CheckpointRef("t1", "", "c1")

    async def test_root_has_no_parent(self, checkpointer):
        await _put_chain(checkpointer, ["c1"])
        found = await checkpointer.get_tuple({"thread_id": "t1", "checkpoint_id": "c1"})
        assert found.parent_config is None

    async def test_parent_is_retrievable(self, checkpointer):
        await _put_chain(checkpointer, ["c1", "c2", "c3"])
        latest = await checkpointer.get_tuple({"thread_id": "t1"})
        parent = await checkpointer.get_tuple(latest.parent_config)
        assert parent.config.checkpoint_id == "c2"

    async def test_nested_config_form(self, checkpointer):
        await _put_chain(checkpointer, ["c1"])
        found = await checkpointer.get_tuple({"configurable": {"thread_id": "t1", "checkpoint_id": "c1"}})
        assert found.config.checkpoint_id == "c1"

    async def test_metadata_roundtrip(self, checkpointer):
        await checkpointer.put({"thread_id": "t1"}, _make_checkpoint("c1"), {"source": "input", "step": -1}, {})
        found = await checkpointer.get_tuple({"thread_id": "t1"})
        assert found.metadata == {"source": "input", "step": -1}

    async def test_body_fields_roundtrip(self, checkpointer):
        checkpoint = Checkpoint(
            id="c1",
            channel_values={"x": 1},
            channel_versions={"x": "1"},
            versions_seen={"node_a": {"x": "1"}},
            ts="2024-01-01T00:00:00+00:00",
            extra={"pending_sends": []},
        )
        await checkpointer.put({"thread_id": "t1"}, checkpoint, {}, {"x": "1"})
        found = (await checkpointer.get_tuple({"thread_id": "t1"})).checkpoint
        assert found == checkpoint

    async def test_stored_body_without_id_is_serialization_error(self, checkpointer, store):
        _, body = checkpointer.serializer.encode({"channel_versions": {}})
        _, metadata = checkpointer.serializer.encode({})
        row = {
            "thread_id": "t1",
            "checkpoint_ns": "",
            "checkpoint_id": "c1",
            "parent_checkpoint_id": None,
            "type": None,
            "checkpoint": body,
            "metadata": metadata,
        }
        await store.upsert(CHECKPOINTS, [row], on_conflict=CHECKPOINTS_KEY)

        with pytest.raises(SerializationError, match="c1"):
            await checkpointer.get_tuple({"thread_id": "t1"})


class TestChannelValues:
    async def test_values_roundtrip(self, checkpointer):
        values = {"messages": [{"role": "user", "content": "hi"}], "count": 3, "flag": None}
        await checkpointer.put({"thread_id": "t1"}, _make_checkpoint("c1", values), {}, {ch: "1" for ch in values})
        found = await checkpointer.get({"thread_id": "t1"})
        assert found.channel_values == values

    async def test_historical_checkpoint_reads_its_own_values(self, checkpointer):
        await _put_chain(checkpointer, ["c1", "c2", "c3"])

        first = await checkpointer.get({"thread_id": "t1", "checkpoint_id": "c1"})
        middle = await checkpointer.get({"thread_id": "t1", "checkpoint_id": "c2"})
        latest = await checkpointer.get({"thread_id": "t1"})
        assert first.channel_values == {"x": 0}
        assert middle.channel_values == {"x": 1}
        assert latest.channel_values == {"x": 2}

    async def test_unchanged_channel_carries_over(self, checkpointer):
        """A channel not in new_versions keeps the blob of its recorded version."""
        await checkpointer.put(
            {"thread_id": "t1"},
            _make_checkpoint("c1", {"x": 1, "y": "a"}),
            {},
            {"x": "1", "y": "1"},
        )
        second = _make_checkpoint("c2", {"x": 2, "y": "a"}, {"x": "2", "y": "1"})
        await checkpointer.put({"thread_id": "t1", "checkpoint_id": "c1"}, second, {}, {"x": "2"})

        found = await checkpointer.get({"thread_id": "t1"})
        assert found.channel_values == {"x": 2, "y": "a"}

    async def test_channel_without_value_is_tombstoned(self, checkpointer, store):
        await checkpointer.put({"thread_id": "t1"}, _make_checkpoint("c1"), {}, {"x": "1"})

        found = await checkpointer.get_tuple({"thread_id": "t1"})
        assert found.checkpoint.channel_values == {}
        assert found.checkpoint.channel_versions == {"x": "1"}

        blobs = await _all_rows(store, CHECKPOINT_BLOBS)
        assert len(blobs) == 1
        assert blobs[0]["type"] == "empty"
        assert blobs[0]["blob"] is None

    async def test_new_versions_merge_into_body(self, checkpointer):
        checkpoint = _make_checkpoint("c1", {"x": 1}, versions={})
        await checkpointer.put({"thread_id": "t1"}, checkpoint, {}, {"x": 7})
        found = await checkpointer.get({"thread_id": "t1"})
        assert found.channel_versions == {"x": "7"}
        assert found.channel_values == {"x": 1}


class TestPut:
    async def test_returns_ref_to_new_checkpoint(self, checkpointer):
        ref = await checkpointer.put({"thread_id": "t1", "checkpoint_ns": "sub"}, _make_checkpoint("c1"), {}, {})
        assert ref == CheckpointRef("t1", "sub", "c1")

    async def test_accepts_dict_checkpoint(self, checkpointer):
        body = {"id": "c1", "channel_values": {"x": 1}, "channel_versions": {"x": "1"}, "versions_seen": {}}
        await checkpointer.put({"thread_id": "t1"}, body, None, {"x": "1"})
        found = await checkpointer.get({"thread_id": "t1"})
        assert found.id == "c1"
        assert found.channel_values == {"x": 1}

    async def test_idempotent(self, checkpointer, store):
        checkpoint = _make_checkpoint("c1", {"x": 1})
        await checkpointer.put({"thread_id": "t1"}, checkpoint, {"step": 0}, {"x": "1"})
        first = {table: await _all_rows(store, table) for table in (CHECKPOINTS, CHECKPOINT_BLOBS)}

        await checkpointer.put({"thread_id": "t1"}, checkpoint, {"step": 0}, {"x": "1"})
        second = {table: await _all_rows(store, table) for table in (CHECKPOINTS, CHECKPOINT_BLOBS)}

        assert first == second
        assert len(second[CHECKPOINTS]) == 1

    async def test_idempotent_for_plain_dict(self, checkpointer, store):
        body = {"id": "c1", "channel_values": {"x": 1}}
        await checkpointer.put({"thread_id": "t1"}, body, {"step": 0}, {"x": "1"})
        first = {table: await _all_rows(store, table) for table in (CHECKPOINTS, CHECKPOINT_BLOBS)}

        await checkpointer.put({"thread_id": "t1"}, body, {"step": 0}, {"x": "1"})
        second = {table: await _all_rows(store, table) for table in (CHECKPOINTS, CHECKPOINT_BLOBS)}

        assert first == second
        found = await checkpointer.get({"thread_id": "t1"})
        assert found.ts is None

    async def test_type_column(self, checkpointer, store):
        await checkpointer.put({"thread_id": "t1"}, _make_checkpoint("c1", {"x": 1}), {}, {"x": "1"})
        await checkpointer.put({"thread_id": "t2"}, _make_checkpoint("c1"), {}, {})
        rows = {r["thread_id"]: r for r in await _all_rows(store, CHECKPOINTS)}
        assert rows["t1"]["type"] == "standard"
        assert rows["t2"]["type"] is None

    async def test_missing_thread_id(self, checkpointer):
        with pytest.raises(InvalidArgumentError):
            await checkpointer.put({}, _make_checkpoint("c1"), {}, {})

    async def test_missing_checkpoint_id(self, checkpointer):
        with pytest.raises(InvalidArgumentError, match="id"):
            await checkpointer.put({"thread_id": "t1"}, {"channel_values": {}}, {}, {})

    async def test_unencodable_value_writes_nothing(self, checkpointer, store):
        checkpoint = _make_checkpoint("c1", {"x": object()})
        with pytest.raises(SerializationError):
            await checkpointer.put({"thread_id": "t1"}, checkpoint, {}, {"x": "1"})
        assert await _all_rows(store, CHECKPOINTS) == []
        assert await _all_rows(store, CHECKPOINT_BLOBS) == []


class TestIsolation:
    async def test_threads_are_isolated(self, checkpointer):
        await _put_chain(checkpointer, ["a1", "a2"], thread="ta")
        await _put_chain(checkpointer, ["b1"], thread="tb")

        assert (await checkpointer.get_tuple({"thread_id": "ta"})).config.checkpoint_id == "a2"
        assert (await checkpointer.get_tuple({"thread_id": "tb"})).config.checkpoint_id == "b1"

    async def test_namespaces_are_isolated(self, checkpointer):
        await _put_chain(checkpointer, ["c1", "c2"])
        await _put_chain(checkpointer, ["s1"], ns="child")

        root = await checkpointer.get_tuple({"thread_id": "t1"})
        child = await checkpointer.get_tuple({"thread_id": "t1", "checkpoint_ns": "child"})
        assert root.config.checkpoint_id == "c2"
        assert child.config == CheckpointRef("t1", "child", "s1")
        assert [cp.config.checkpoint_id async for cp in checkpointer.list({"thread_id": "t1", "checkpoint_ns": "child"})] == ["s1"]


class TestList:
    async def test_newest_first_covers_all(self, checkpointer):
        await _put_chain(checkpointer, ["c1", "c2", "c3", "c4"])
        ids = [cp.config.checkpoint_id async for cp in checkpointer.list({"thread_id": "t1"})]
        assert ids == ["c4", "c3", "c2", "c1"]

    async def test_before_is_strict(self, checkpointer):
        await _put_chain(checkpointer, ["c1", "c2", "c3", "c4"])
        ids = [cp.config.checkpoint_id async for cp in checkpointer.list({"thread_id": "t1"}, before={"thread_id": "t1", "checkpoint_id": "c3"})]
        assert ids == ["c2", "c1"]

    async def test_before_accepts_ref_and_str(self, checkpointer):
        await _put_chain(checkpointer, ["c1", "c2", "c3"])
        by_ref = [cp.config.checkpoint_id async for cp in checkpointer.list({"thread_id": "t1"}, before=CheckpointRef("t1", "", "c2"))]
        by_str = [cp.config.checkpoint_id async for cp in checkpointer.list({"thread_id": "t1"}, before="c2")]
        assert by_ref == by_str == ["c1"]

    async def test_limit(self, checkpointer):
        await _put_chain(checkpointer, ["c1", "c2", "c3"])
        ids = [cp.config.checkpoint_id async for cp in checkpointer.list({"thread_id": "t1"}, limit=2)]
        assert ids == ["c3", "c2"]

    async def test_zero_limit_yields_nothing(self, checkpointer):
        await _put_chain(checkpointer, ["c1", "c2"])
        assert [cp async for cp in checkpointer.list({"thread_id": "t1"}, limit=0)] == []
        assert len([cp async for cp in checkpointer.list({"thread_id": "t1"}, limit=None)]) == 2

    async def test_negative_limit(self, checkpointer):
        with pytest.raises(ValueError, match="limit"):
            [cp async for cp in checkpointer.list({"thread_id": "t1"}, limit=-1)]

    async def test_before_and_limit(self, checkpointer):
        await _put_chain(checkpointer, ["c1", "c2", "c3", "c4"])
        ids = [cp.config.checkpoint_id async for cp in checkpointer.list({"thread_id": "t1"}, before="c4", limit=2)]
        assert ids == ["c3", "c2"]

    async def test_metadata_filter(self, checkpointer):
        await _put_chain(checkpointer, ["c1", "c2", "c3"])
        ids = [cp.config.checkpoint_id async for cp in checkpointer.list({"thread_id": "t1"}, filter={"step": 1})]
        assert ids == ["c2"]

    async def test_limit_counts_scanned_rows_not_matches(self, checkpointer):
        await _put_chain(checkpointer, ["c1", "c2", "c3"])
        ids = [cp.config.checkpoint_id async for cp in checkpointer.list({"thread_id": "t1"}, filter={"step": 0}, limit=2)]
        assert ids == []

    async def test_tuples_match_get(self, checkpointer):
        await _put_chain(checkpointer, ["c1", "c2"])
        await checkpointer.put_writes({"thread_id": "t1", "checkpoint_id": "c1"}, [("x", 5)], "task-A")

        listed = {cp.config.checkpoint_id: cp async for cp in checkpointer.list({"thread_id": "t1"})}
        for checkpoint_id, tup in listed.items():
            assert tup == await checkpointer.get_tuple({"thread_id": "t1", "checkpoint_id": checkpoint_id})

    async def test_stop_early(self, checkpointer):
        await _put_chain(checkpointer, ["c1", "c2", "c3"])
        iterator = checkpointer.list({"thread_id": "t1"})
        first = await iterator.__anext__()
        await iterator.aclose()
        assert first.config.checkpoint_id == "c3"
        # Store stays usable after abandoning the sequence
        assert (await checkpointer.get_tuple({"thread_id": "t1"})).config.checkpoint_id == "c3"

    async def test_empty_thread(self, checkpointer):
        assert [cp async for cp in checkpointer.list({"thread_id": "nope"})] == []

    async def test_missing_thread_id(self, checkpointer):
        with pytest.raises(InvalidArgumentError):
            async for _ in checkpointer.list({}):
                pass


class TestPutWrites:
    async def test_writes_returned_in_order(self, checkpointer):
        await _put_chain(checkpointer, ["c1"])
        await checkpointer.put_writes({"thread_id": "t1", "checkpoint_id": "c1"}, [("x", 10), ("y", 20)], "task-A")

        found = await checkpointer.get_tuple({"thread_id": "t1", "checkpoint_id": "c1"})
        assert found.pending_writes == [PendingWrite("task-A", "x", 10), PendingWrite("task-A", "y", 20)]

    async def test_idempotent(self, checkpointer, store):
        await _put_chain(checkpointer, ["c1"])
        config = {"thread_id": "t1", "checkpoint_id": "c1"}
        await checkpointer.put_writes(config, [("x", 10), ("y", 20)], "task-A")
        await checkpointer.put_writes(config, [("x", 10), ("y", 20)], "task-A")

        assert len(await _all_rows(store, CHECKPOINT_WRITES)) == 2
        found = await checkpointer.get_tuple(config)
        assert [w.channel for w in found.pending_writes] == ["x", "y"]

    async def test_writes_scoped_to_checkpoint(self, checkpointer):
        await _put_chain(checkpointer, ["c1", "c2"])
        await checkpointer.put_writes({"thread_id": "t1", "checkpoint_id": "c1"}, [("x", 1)], "task-A")

        latest = await checkpointer.get_tuple({"thread_id": "t1"})
        assert latest.pending_writes == []

    async def test_multiple_tasks(self, checkpointer):
        await _put_chain(checkpointer, ["c1"])
        config = {"thread_id": "t1", "checkpoint_id": "c1"}
        await checkpointer.put_writes(config, [("a", 1), ("b", 2)], "task-B")
        await checkpointer.put_writes(config, [("c", 3)], "task-A")

        found = await checkpointer.get_tuple(config)
        assert found.pending_writes == [
            PendingWrite("task-A", "c", 3),
            PendingWrite("task-B", "a", 1),
            PendingWrite("task-B", "b", 2),
        ]

    async def test_requires_checkpoint_id(self, checkpointer):
        with pytest.raises(InvalidArgumentError, match="checkpoint_id"):
            await checkpointer.put_writes({"thread_id": "t1"}, [("x", 1)], "task-A")

    async def test_requires_thread_id(self, checkpointer):
        with pytest.raises(InvalidArgumentError, match="thread_id"):
            await checkpointer.put_writes({"checkpoint_id": "c1"}, [("x", 1)], "task-A")

    async def test_requires_task_id(self, checkpointer):
        with pytest.raises(InvalidArgumentError, match="task_id"):
            await checkpointer.put_writes({"thread_id": "t1", "checkpoint_id": "c1"}, [("x", 1)], "")

    async def test_empty_writes_is_noop(self, checkpointer, store):
        await checkpointer.put_writes({"thread_id": "t1", "checkpoint_id": "c1"}, [], "task-A")
        assert await _all_rows(store, CHECKPOINT_WRITES) == []


class TestSchema:
    async def test_qualified_table_names(self, store):
        from tabular_checkpoint import TableCheckpointer

        cp = TableCheckpointer(store, schema="agents")
        assert cp.tables == {
            "checkpoints": "agents.checkpoints",
            "checkpoint_blobs": "agents.checkpoint_blobs",
            "checkpoint_writes": "agents.checkpoint_writes",
        }

    async def test_public_schema_is_unqualified(self, checkpointer):
        assert checkpointer.table_name("checkpoints") == "checkpoints"
