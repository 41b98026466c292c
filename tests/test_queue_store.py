from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path

import pytest

from bulkgen.core import MemoryQueueBackend, QueueStore, SqliteQueueBackend
from bulkgen.models import Task

LOGGER = logging.getLogger("bulkgen.tests")


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def sample_tasks():
    return [
        Task(item_id=1, post_date="2024-03-01", field="camera_script", phase=1),
        Task(item_id=1, post_date="2024-03-01", field="tts", phase=3, sub_key="KJV"),
    ]


def test_add_bulk_creates_queued_entries_newest_first():
    store = QueueStore(MemoryQueueBackend(), logger=LOGGER)

    ids = asyncio.run(store.add_bulk(sample_tasks(), mode="bible", language="en"))

    assert len(set(ids)) == 2
    assert all(re.fullmatch(r"gen_\d+_\d+_[a-z0-9]{5}", entry_id) for entry_id in ids)
    entries = store.entries()
    assert [entry.id for entry in entries] == list(reversed(ids))
    assert {entry.status for entry in entries} == {"queued"}
    assert entries[0].sub_key == "KJV"
    assert entries[0].label == "KJV tts"
    assert store.counts()["queued"] == 2


def test_entries_survive_reload_from_sqlite(tmp_path: Path):
    db_path = tmp_path / "queue.db"
    first = QueueStore(SqliteQueueBackend(db_path, logger=LOGGER), logger=LOGGER)

    async def scenario():
        ids = await first.add_bulk(sample_tasks())
        await first.set_running(ids[0])
        await first.resolve(ids[1], "failed", "Failed (500)")
        return ids

    ids = asyncio.run(scenario())
    second = QueueStore(SqliteQueueBackend(db_path, logger=LOGGER), logger=LOGGER)

    reloaded = {entry.id: entry for entry in second.entries()}
    assert reloaded[ids[0]].status == "running"
    assert reloaded[ids[1]].status == "failed"
    assert reloaded[ids[1]].error == "Failed (500)"
    assert [entry.id for entry in second.entries()] == list(reversed(ids))
    # another session's running entry is considered stale
    assert [entry.id for entry in second.stale_running()] == [ids[0]]
    assert first.stale_running() == []


def test_success_entries_expire_after_grace_period():
    clock = FakeClock()
    store = QueueStore(MemoryQueueBackend(), logger=LOGGER, clock=clock)

    async def scenario():
        ids = await store.add_bulk(sample_tasks())
        await store.set_running(ids[0])
        await store.resolve(ids[0], "success", log_id=11)
        await store.resolve(ids[1], "failed", "boom")
        clock.now += 29
        early = await store.expire_successes()
        delay = store.next_expiry_delay()
        clock.now += 1
        late = await store.expire_successes()
        return ids, early, delay, late

    ids, early, delay, late = asyncio.run(scenario())

    assert early == 0
    assert delay == pytest.approx(1.0)
    assert late == 1
    assert [entry.id for entry in store.entries()] == [ids[1]]
    assert store.next_expiry_delay() is None


def test_concurrent_resolves_are_all_persisted(tmp_path: Path):
    db_path = tmp_path / "queue.db"
    store = QueueStore(SqliteQueueBackend(db_path, logger=LOGGER), logger=LOGGER)
    tasks = [Task(item_id=idx, post_date="2024-03-01", field="camera_script", phase=1) for idx in range(10)]

    async def scenario():
        ids = await store.add_bulk(tasks)
        await asyncio.gather(*(store.resolve(entry_id, "success") for entry_id in ids))

    asyncio.run(scenario())
    reloaded = QueueStore(SqliteQueueBackend(db_path, logger=LOGGER), logger=LOGGER)

    assert reloaded.counts()["success"] == 10


def test_clear_completed_keeps_active_entries():
    store = QueueStore(MemoryQueueBackend(), logger=LOGGER)

    async def scenario():
        ids = await store.add_bulk(sample_tasks())
        single = await store.add_item(item_id=2, post_date="2024-03-02", field="background_prompt")
        await store.resolve(ids[0], "success")
        await store.resolve(ids[1], "skipped", "Skipped: translation text failed")
        removed = await store.clear_completed()
        return single, removed

    single, removed = asyncio.run(scenario())

    assert removed == 2
    assert [entry.id for entry in store.entries()] == [single]
    assert store.get(single).status == "running"
    assert asyncio.run(store.clear_all()) == 1
    assert store.entries() == []


def test_listeners_receive_snapshots():
    store = QueueStore(MemoryQueueBackend(), logger=LOGGER)
    snapshots = []
    store.subscribe(lambda entries: snapshots.append([entry.status for entry in entries]))

    async def scenario():
        ids = await store.add_bulk(sample_tasks()[:1])
        await store.set_running(ids[0])
        await store.remove(ids[0])

    asyncio.run(scenario())

    assert snapshots == [["queued"], ["running"], []]


def test_resolve_rejects_non_terminal_status():
    store = QueueStore(MemoryQueueBackend(), logger=LOGGER)
    entry_id = asyncio.run(store.add_item(item_id=1, post_date="2024-03-01", field="camera_script"))

    with pytest.raises(ValueError):
        asyncio.run(store.resolve(entry_id, "running"))


def test_malformed_rows_are_ignored():
    backend = MemoryQueueBackend()
    backend.put({"id": "gen_1_1_abcde", "item_id": 1, "field": "tts", "status": "exploded"})
    backend.put({"id": "gen_1_2_abcde", "item_id": 2, "field": "tts", "status": "queued", "started_at": 1.0})

    store = QueueStore(backend, logger=LOGGER)

    assert [entry.id for entry in store.entries()] == ["gen_1_2_abcde"]


def test_requeue_and_set_running_clear_the_previous_outcome():
    clock = FakeClock()
    store = QueueStore(MemoryQueueBackend(), logger=LOGGER, clock=clock)

    async def scenario():
        ids = await store.add_bulk(sample_tasks())
        await store.resolve(ids[0], "failed", "Failed (500)", log_id=4)
        assert store.latest_for("1_camera_script").status == "failed"
        clock.now += 5
        await store.requeue([ids[0]])
        requeued = (store.get(ids[0]).status, store.get(ids[0]).error, store.get(ids[0]).log_id, store.get(ids[0]).completed_at)
        await store.resolve(ids[1], "failed", "boom")
        await store.set_running(ids[1])
        return ids, requeued

    ids, requeued = asyncio.run(scenario())

    assert requeued == ("queued", None, None, None)
    assert store.get(ids[0]).started_at == clock.now
    running = store.get(ids[1])
    assert (running.status, running.error, running.completed_at) == ("running", None, None)
    assert store.latest_for("missing") is None
