import threading
from datetime import timedelta

import pytest
from sqlalchemy import delete

from app.models.records import FileRecord, FileStatus
from app.utils.database import DatabaseClient
from domains.file_ingest.errors import (
    InvalidTransitionError,
    RecordNotFoundError,
    StoreConflictError,
    StoreUnavailableError,
)
from domains.file_ingest.store import StatusStore


def test_create_pending_sets_initial_state(clocked_store, clock, tmp_path):
    record = clocked_store.create_pending(tmp_path / "a.txt")

    assert record.id > 0
    assert record.name == "a.txt"
    assert record.path == str(tmp_path / "a.txt")
    assert record.status == FileStatus.PENDING
    assert record.created_at == clock.now
    assert record.processed_at is None
    assert record.started_at is None
    assert record.note == ""
    assert record.attempts == 0


def test_success_lifecycle_sets_processed_at_once(clocked_store, clock, tmp_path):
    record = clocked_store.create_pending(tmp_path / "b.csv")

    clock.advance(seconds=5)
    processing = clocked_store.start_attempt(record.id)
    assert processing.status == FileStatus.PROCESSING
    assert processing.attempts == 1
    assert processing.started_at == clock.now
    assert processing.processed_at is None

    clock.advance(seconds=5)
    done = clocked_store.mark_success(record.id)
    assert done.status == FileStatus.SUCCESS
    assert done.note == ""
    assert done.processed_at == clock.now
    assert done.created_at == record.created_at


def test_failure_stores_note(store, tmp_path):
    record = store.create_pending(tmp_path / "a.txt")
    store.start_attempt(record.id)

    failed = store.mark_failed(record.id, "empty file")

    assert failed.status == FileStatus.FAILED
    assert failed.note == "empty file"
    assert failed.processed_at is not None


@pytest.mark.parametrize("finish", ["mark_success", "mark_failed"])
def test_terminal_states_are_final(store, tmp_path, finish):
    record = store.create_pending(tmp_path / "c.txt")
    store.start_attempt(record.id)
    getattr(store, finish)(record.id, "done")

    with pytest.raises(InvalidTransitionError):
        store.start_attempt(record.id, resume=True)
    with pytest.raises(InvalidTransitionError):
        store.mark_success(record.id)
    with pytest.raises(InvalidTransitionError):
        store.mark_failed(record.id, "again")

    assert store.get(record.id).status.is_terminal


def test_pending_cannot_skip_processing(store, tmp_path):
    record = store.create_pending(tmp_path / "d.txt")

    with pytest.raises(InvalidTransitionError):
        store.mark_success(record.id)
    with pytest.raises(InvalidTransitionError):
        store.mark_failed(record.id, "nope")

    fetched = store.get(record.id)
    assert fetched.status == FileStatus.PENDING
    assert fetched.processed_at is None


def test_reclaiming_processing_requires_resume(store, tmp_path):
    record = store.create_pending(tmp_path / "e.txt")
    store.start_attempt(record.id)

    with pytest.raises(InvalidTransitionError):
        store.start_attempt(record.id)

    resumed = store.start_attempt(record.id, resume=True)
    assert resumed.status == FileStatus.PROCESSING
    assert resumed.attempts == 2


def test_unknown_record_raises(store):
    with pytest.raises(RecordNotFoundError):
        store.get(999)
    with pytest.raises(RecordNotFoundError):
        store.start_attempt(999)


def test_ids_are_never_reused(store, db, tmp_path):
    first = store.create_pending(tmp_path / "one.txt")
    second = store.create_pending(tmp_path / "two.txt")

    with db.session() as session:
        session.execute(delete(FileRecord).where(FileRecord.id == second.id))

    third = store.create_pending(tmp_path / "three.txt")
    assert third.id > second.id > first.id


def test_latest_for_path_returns_newest_record(store, tmp_path):
    path = tmp_path / "again.txt"
    assert store.latest_for_path(path) is None

    old = store.create_pending(path)
    store.start_attempt(old.id)
    store.mark_success(old.id)
    new = store.create_pending(path)
    store.create_pending(tmp_path / "other.txt")

    latest = store.latest_for_path(path)
    assert latest.id == new.id
    assert latest.status == FileStatus.PENDING


def test_concurrent_claims_only_one_wins(store, tmp_path):
    record = store.create_pending(tmp_path / "race.txt")
    barrier = threading.Barrier(8)
    outcomes = []
    lock = threading.Lock()

    def claim():
        barrier.wait()
        try:
            store.start_attempt(record.id)
            result = "won"
        except (InvalidTransitionError, StoreConflictError):
            result = "lost"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=claim) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("won") == 1
    assert store.get(record.id).attempts == 1


def test_stale_processing_ids_uses_started_at(clocked_store, clock, tmp_path):
    stale = clocked_store.create_pending(tmp_path / "stale.txt")
    clocked_store.start_attempt(stale.id)

    clock.advance(minutes=10)
    fresh = clocked_store.create_pending(tmp_path / "fresh.txt")
    clocked_store.start_attempt(fresh.id)
    clocked_store.create_pending(tmp_path / "waiting.txt")

    cutoff = clock.now - timedelta(minutes=5)
    assert clocked_store.stale_processing_ids(cutoff) == [stale.id]
    assert clocked_store.ids_with_status(FileStatus.PROCESSING) == [stale.id, fresh.id]


def test_count_by_status(store, tmp_path):
    ids = [store.create_pending(tmp_path / f"{i}.txt").id for i in range(4)]
    store.start_attempt(ids[0])
    store.start_attempt(ids[1])
    store.mark_success(ids[1])
    store.start_attempt(ids[2])
    store.mark_failed(ids[2], "bad")

    counts = store.count_by_status()
    assert counts == {
        FileStatus.PENDING: 1,
        FileStatus.PROCESSING: 1,
        FileStatus.SUCCESS: 1,
        FileStatus.FAILED: 1,
    }


def test_list_page_orders_by_id_and_clamps(store, tmp_path):
    ids = [store.create_pending(tmp_path / f"{i}.txt").id for i in range(5)]

    first = store.list_page(1, 2)
    assert [item.id for item in first.items] == ids[:2]
    assert first.total == 5
    assert first.total_pages == 3

    clamped = store.list_page(10, 2)
    assert clamped.page == 3
    assert [item.id for item in clamped.items] == ids[4:]


def test_list_page_on_empty_store(store):
    page = store.list_page(4, 25)
    assert page.page == 1
    assert page.total == 0
    assert page.total_pages == 0
    assert page.items == []


@pytest.mark.parametrize("page, page_size", [(0, 10), (1, 0), (-1, -1)])
def test_list_page_rejects_invalid_arguments(store, page, page_size):
    with pytest.raises(ValueError):
        store.list_page(page, page_size)


def test_unreachable_database_raises_store_unavailable(tmp_path):
    missing = tmp_path / "no-such-dir" / "ingest.db"
    client = DatabaseClient(f"sqlite:///{missing}")
    store = StatusStore(client)

    assert store.ping() is False
    with pytest.raises(StoreUnavailableError):
        store.create_pending(tmp_path / "a.txt")

    client.close()
