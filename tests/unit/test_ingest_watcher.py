import threading
from pathlib import Path

import pytest

from app.models.records import FileStatus
from app.utils.helpers import normalise_path
from domains.file_ingest.collectors.watcher import (
    DebounceTracker,
    FileIngestWatcher,
    IngestEventHandler,
)
from domains.file_ingest.errors import (
    AlreadyQueuedError,
    StoreConflictError,
    StoreUnavailableError,
    WatchSetupError,
)
from domains.file_ingest.store import StatusStore


class Event:
    def __init__(self, src: Path, dest: Path | None = None, is_directory: bool = False):
        self.src_path = str(src)
        self.dest_path = str(dest) if dest else None
        self.is_directory = is_directory


class RecordingExecutor:
    """Stands in for the job executor; remembers submissions."""

    def __init__(self):
        self.submitted: list[int] = []

    def submit(self, record_id: int, *, resume: bool = False):
        if record_id in self.submitted:
            raise AlreadyQueuedError(record_id)
        self.submitted.append(record_id)


class FlakyStore(StatusStore):
    """Status store that can be switched offline."""

    def __init__(self, db):
        super().__init__(db)
        self.online = True

    def latest_for_path(self, path):
        if not self.online:
            raise StoreUnavailableError("database offline")
        return super().latest_for_path(path)

    def ping(self) -> bool:
        return self.online and super().ping()


@pytest.fixture
def executor():
    return RecordingExecutor()


@pytest.fixture
def watcher(store, executor):
    watcher = FileIngestWatcher(store, executor, debounce_seconds=0.05)
    yield watcher
    watcher.stop_watching()


def test_debounce_collapses_bursts_per_path(tmp_path, wait_for):
    calls = []
    lock = threading.Lock()

    def callback(path):
        with lock:
            calls.append(path)

    tracker = DebounceTracker(0.1, callback)
    for _ in range(5):
        tracker.touch(tmp_path / "a.txt")
    tracker.touch(tmp_path / "b.txt")

    assert wait_for(lambda: len(calls) == 2, timeout=5)
    assert wait_for(lambda: tracker.pending == 0, timeout=5)
    assert sorted(calls) == [tmp_path / "a.txt", tmp_path / "b.txt"]


def test_debounce_cancel_all_drops_pending_events(tmp_path):
    calls = []
    tracker = DebounceTracker(0.2, calls.append)
    tracker.touch(tmp_path / "a.txt")

    assert tracker.cancel_all() == 1
    tracker.touch(tmp_path / "b.txt")
    threading.Event().wait(0.4)

    assert calls == []
    assert tracker.pending == 0


def test_handler_ignores_directories_and_excluded_names(tmp_path):
    touched = []

    class Tracker:
        def touch(self, path):
            touched.append(path)

    handler = IngestEventHandler(Tracker(), ["*.tmp"])
    handler.on_created(Event(tmp_path / "sub", is_directory=True))
    handler.on_modified(Event(tmp_path / "sub", is_directory=True))
    handler.on_created(Event(tmp_path / "upload.tmp"))
    handler.on_created(Event(tmp_path / ".hidden"))
    handler.on_created(Event(tmp_path / "report.csv"))
    handler.on_modified(Event(tmp_path / "report.csv"))
    handler.on_moved(Event(tmp_path / "upload.tmp", tmp_path / "final.csv"))

    assert touched == [
        normalise_path(tmp_path / "report.csv"),
        normalise_path(tmp_path / "report.csv"),
        normalise_path(tmp_path / "final.csv"),
    ]


def test_start_watching_rejects_missing_path(watcher, tmp_path):
    with pytest.raises(WatchSetupError):
        watcher.start_watching(tmp_path / "missing")


def test_start_watching_rejects_regular_file(watcher, tmp_path):
    path = tmp_path / "file.txt"
    path.write_text("x")
    with pytest.raises(WatchSetupError):
        watcher.start_watching(path)


def test_ingest_creates_pending_record_and_submits(watcher, store, executor, inbox):
    path = inbox / "a.txt"
    path.touch()

    record = watcher.ingest(path)

    assert record.status == FileStatus.PENDING
    assert record.path == str(normalise_path(path))
    assert record.name == "a.txt"
    assert executor.submitted == [record.id]


def test_ingest_reuses_in_flight_record(watcher, store, executor, inbox):
    path = inbox / "a.txt"
    path.touch()

    first = watcher.ingest(path)
    second = watcher.ingest(path)

    assert second.id == first.id
    assert executor.submitted == [first.id]
    assert store.list_page(1, 10).total == 1


def test_ingest_after_terminal_state_creates_new_record(watcher, store, executor, inbox):
    path = inbox / "a.txt"
    path.write_text("v1")
    first = watcher.ingest(path)
    store.start_attempt(first.id)
    store.mark_success(first.id)

    path.write_text("v2")
    second = watcher.ingest(path)

    assert second.id != first.id
    assert second.status == FileStatus.PENDING
    assert store.get(first.id).status == FileStatus.SUCCESS
    assert executor.submitted == [first.id, second.id]


def test_ingest_skips_vanished_file(watcher, store, inbox):
    assert watcher.ingest(inbox / "gone.txt") is None
    assert store.list_page(1, 10).total == 0


def test_no_records_after_stop(watcher, store, inbox):
    path = inbox / "late.txt"
    path.touch()

    watcher.stop_watching()

    assert watcher.ingest(path) is None
    assert store.list_page(1, 10).total == 0


def test_observer_events_become_records(watcher, store, executor, inbox, wait_for):
    watcher.start_watching(inbox)
    assert watcher.is_running

    (inbox / "dropped.csv").write_text("a,b\n")

    assert wait_for(lambda: len(executor.submitted) == 1)
    record = store.get(executor.submitted[0])
    assert record.name == "dropped.csv"
    assert record.status == FileStatus.PENDING


def test_scan_existing_ingests_unrecorded_files(watcher, store, executor, inbox):
    (inbox / "old.txt").write_text("old")
    (inbox / "new.txt").write_text("new")
    (inbox / "skip.tmp").write_text("tmp")
    (inbox / "nested").mkdir()
    seen = store.create_pending(normalise_path(inbox / "old.txt"))

    watcher.start_watching(inbox)
    assert watcher.scan_existing() == 1

    names = [item.name for item in store.list_page(1, 10).items]
    assert names == ["old.txt", "new.txt"]
    assert seen.id not in executor.submitted


def test_store_outage_pauses_and_replays_intake(db, executor, inbox, wait_for):
    flaky = FlakyStore(db)
    watcher = FileIngestWatcher(flaky, executor, debounce_seconds=0.05, intake_retry_seconds=0.05)
    path = inbox / "queued.txt"
    path.write_text("data")

    try:
        flaky.online = False
        assert watcher.ingest(path) is None
        assert watcher.intake_paused
        assert flaky.list_page(1, 10).total == 0

        flaky.online = True
        assert wait_for(lambda: not watcher.intake_paused, timeout=5)
        assert wait_for(lambda: len(executor.submitted) == 1, timeout=5)
        assert flaky.get(executor.submitted[0]).name == "queued.txt"
    finally:
        watcher.stop_watching()


class BusyExecutor(RecordingExecutor):
    def submit(self, record_id: int, *, resume: bool = False):
        raise StoreConflictError("database is locked")


class SlowPathStore(StatusStore):
    """Blocks lookups for one file name until released."""

    def __init__(self, db, slow_name: str):
        super().__init__(db)
        self.slow_name = slow_name
        self.entered = threading.Event()
        self.release = threading.Event()

    def latest_for_path(self, path):
        if Path(path).name == self.slow_name:
            self.entered.set()
            self.release.wait(10)
        return super().latest_for_path(path)


def test_busy_store_on_submit_keeps_pending_record(store, inbox):
    watcher = FileIngestWatcher(store, BusyExecutor(), debounce_seconds=0.05)
    path = inbox / "busy.txt"
    path.write_text("data")

    try:
        record = watcher.ingest(path)
    finally:
        watcher.stop_watching()

    assert record is not None
    assert store.get(record.id).status == FileStatus.PENDING


def test_slow_store_write_for_one_path_does_not_block_others(db, executor, inbox):
    slow_store = SlowPathStore(db, "slow.txt")
    watcher = FileIngestWatcher(slow_store, executor, debounce_seconds=0.05)
    (inbox / "slow.txt").write_text("slow")
    (inbox / "fast.txt").write_text("fast")
    results = {}

    slow = threading.Thread(target=lambda: results.setdefault("slow", watcher.ingest(inbox / "slow.txt")))
    slow.start()
    try:
        assert slow_store.entered.wait(10)

        fast = watcher.ingest(inbox / "fast.txt")
        assert fast is not None
        assert fast.name == "fast.txt"
        assert executor.submitted == [fast.id]
    finally:
        slow_store.release.set()
        slow.join(10)
        watcher.stop_watching()

    assert results["slow"].name == "slow.txt"
    assert len(executor.submitted) == 2
