"""Tests for the in-memory document store contract."""

import asyncio
import copy

import pytest

from survey_node.errors import NotFoundError, StoreError
from survey_node.store import SERVER_TIMESTAMP, DocumentStore, Increment


async def _create(store, collection, data):
    async def fn(tx):
        return {"id": tx.create(collection, data), **data}

    return await store.run_transaction(fn)


async def test_transaction_commits_all_writes_and_resolves_timestamp(store):
    created = await _create(store, "things", {"name": "a", "created_at": SERVER_TIMESTAMP})

    assert created["created_at"] is not SERVER_TIMESTAMP
    doc = await store.get("things", created["id"])
    assert doc == {"id": created["id"], "name": "a", "created_at": created["created_at"]}


async def test_query_filters_by_equality(store):
    await _create(store, "things", {"kind": "x", "n": 1})
    await _create(store, "things", {"kind": "x", "n": 2})
    await _create(store, "things", {"kind": "y", "n": 1})

    assert len(await store.query("things", kind="x")) == 2
    assert len(await store.query("things", kind="x", n=1)) == 1
    assert await store.query("things", kind="z") == []


async def test_increment_is_applied_at_commit(store):
    created = await _create(store, "counters", {"count": 0})

    await asyncio.gather(*(store.update("counters", created["id"], {"count": Increment()}) for _ in range(10)))

    assert (await store.get("counters", created["id"]))["count"] == 10


async def test_update_of_missing_document_raises():
    store = DocumentStore()
    with pytest.raises(StoreError):
        await store.update("things", "nope", {"x": 1})


async def test_error_in_transaction_writes_nothing(store):
    async def fn(tx):
        tx_id = tx.create("things", {"name": "a"})
        assert tx_id
        raise NotFoundError("missing")

    with pytest.raises(NotFoundError):
        await store.run_transaction(fn)
    assert await store.query("things") == []


async def test_read_after_write_is_rejected(store):
    async def fn(tx):
        tx.create("things", {"name": "a"})
        await tx.get("things", "x")

    with pytest.raises(RuntimeError):
        await store.run_transaction(fn)


async def test_conflicting_read_forces_retry(store):
    created = await _create(store, "counters", {"count": 0})
    attempts = []

    async def bump(tx):
        attempts.append(1)
        doc = await tx.get("counters", created["id"])
        await asyncio.sleep(0)
        tx.update("counters", created["id"], {"count": doc["count"] + 1})

    await asyncio.gather(store.run_transaction(bump), store.run_transaction(bump))

    assert (await store.get("counters", created["id"]))["count"] == 2
    assert len(attempts) == 3


async def test_contention_exhausts_attempts():
    store = DocumentStore(max_attempts=1)
    created = await _create(store, "counters", {"count": 0})

    async def bump(tx):
        doc = await tx.get("counters", created["id"])
        await asyncio.sleep(0)
        tx.update("counters", created["id"], {"count": doc["count"] + 1})

    results = await asyncio.gather(
        store.run_transaction(bump), store.run_transaction(bump), return_exceptions=True
    )

    assert sum(isinstance(r, StoreError) for r in results) == 1
    assert (await store.get("counters", created["id"]))["count"] == 1


async def test_query_in_read_set_detects_phantom_insert(store):
    async def insert_if_absent(tx):
        existing = await tx.query("names", value="ram")
        await asyncio.sleep(0)
        if not existing:
            tx.create("names", {"value": "ram"})

    await asyncio.gather(store.run_transaction(insert_if_absent), store.run_transaction(insert_if_absent))

    assert len(await store.query("names", value="ram")) == 1


async def test_watch_document_delivers_initial_and_changes(store):
    created = await _create(store, "things", {"n": 1})
    seen = []

    sub = store.watch_document("things", created["id"], seen.append)
    await store.update("things", created["id"], {"n": 2})
    await _create(store, "things", {"n": 99})  # other document, no delivery

    assert [d["n"] for d in seen] == [1, 2]

    sub.cancel()
    await store.update("things", created["id"], {"n": 3})
    assert len(seen) == 2
    assert not sub.active


async def test_watch_query_tracks_membership(store):
    snapshots = []
    store.watch_query("things", snapshots.append, kind="x")

    await _create(store, "things", {"kind": "x"})
    await _create(store, "things", {"kind": "y"})

    assert [len(s) for s in snapshots] == [0, 1]


async def test_failing_watch_callback_does_not_break_commit(store):
    def boom(_):
        if boom.armed:
            raise ValueError("bad subscriber")

    boom.armed = False
    store.watch_query("things", boom)
    boom.armed = True

    created = await _create(store, "things", {"n": 1})
    assert await store.get("things", created["id"]) is not None


def test_server_timestamp_survives_copies():
    assert copy.copy(SERVER_TIMESTAMP) is SERVER_TIMESTAMP
    assert copy.deepcopy({"at": [SERVER_TIMESTAMP]})["at"][0] is SERVER_TIMESTAMP


async def test_nested_server_timestamp_is_resolved_on_update(store):
    created = await _create(store, "things", {"meta": {}})

    await store.update("things", created["id"], {"meta": {"at": SERVER_TIMESTAMP}, "seen": [SERVER_TIMESTAMP]})

    doc = await store.get("things", created["id"])
    assert doc["meta"]["at"] is not SERVER_TIMESTAMP
    assert doc["meta"]["at"].year == 2025
    assert doc["seen"] == [doc["meta"]["at"]]


async def test_dotted_increments_do_not_conflict():
    store = DocumentStore(max_attempts=1, latency=0.001)
    created = await _create(store, "tallies", {"counts": {"a": 0}})

    async def bump(tx, key):
        tx.update("tallies", created["id"], {f"counts.{key}": Increment()})

    await asyncio.gather(
        *(store.run_transaction(lambda tx, k=key: bump(tx, k)) for key in ["a", "b"] * 10)
    )

    assert (await store.get("tallies", created["id"]))["counts"] == {"a": 10, "b": 10}


async def test_set_overwrites_whole_document(store):
    created = await _create(store, "things", {"a": 1, "b": 2})

    async def replace(tx):
        tx.set("things", created["id"], {"c": 3, "at": SERVER_TIMESTAMP})

    await store.run_transaction(replace)

    doc = await store.get("things", created["id"])
    assert set(doc) == {"id", "c", "at"}
    assert doc["c"] == 3


async def test_watch_count_follows_cancel(store):
    first = store.watch_query("things", lambda _: None)
    second = store.watch_document("things", "x", lambda _: None)
    assert store.watch_count == 2

    first.cancel()
    first.cancel()
    second.cancel()
    assert store.watch_count == 0
