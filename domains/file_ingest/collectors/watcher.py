"""
Directory watcher for the File Ingest domain.

Turns filesystem notifications into durable work items: events are
debounced per path, a Pending record is created (or reused while one is
still in flight) and the record is submitted to the job executor.
Uses watchdog library for cross-platform file system event monitoring.
"""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Callable, Optional

from loguru import logger
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from app.models.schemas import FileRecordOut
from app.utils.helpers import normalise_path, should_exclude_path

from ..errors import (
    AlreadyQueuedError,
    ExecutorClosedError,
    StoreConflictError,
    StoreUnavailableError,
    WatchSetupError,
)
from ..processors.executor import JobExecutor
from ..store import StatusStore


class DebounceTracker:
    """Collapses bursts of notifications for one path into a single call."""

    def __init__(self, window: float, callback: Callable[[Path], None]):
        self.window = window
        self.callback = callback
        self._timers: dict[Path, threading.Timer] = {}
        self._lock = threading.Lock()
        self._closed = False

    def touch(self, path: Path):
        """Restart the quiet period for ``path``."""
        with self._lock:
            if self._closed:
                return
            existing = self._timers.get(path)
            if existing is not None:
                existing.cancel()
            timer = threading.Timer(self.window, self._fire)
            timer.args = (path, timer)
            timer.daemon = True
            self._timers[path] = timer
            timer.start()

    def _fire(self, path: Path, timer: threading.Timer):
        with self._lock:
            if self._closed or self._timers.get(path) is not timer:
                return
            del self._timers[path]

        try:
            self.callback(path)
        except Exception as e:
            logger.exception(f"Failed to ingest {path}: {e}")

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._timers)

    def cancel_all(self) -> int:
        """Cancel every pending timer and refuse new ones."""
        with self._lock:
            self._closed = True
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        return len(timers)


class IngestEventHandler(FileSystemEventHandler):
    """Watchdog handler that feeds file paths into the debouncer."""

    def __init__(self, debouncer: DebounceTracker, ignore_patterns: list[str] = None):
        """
        Initialize event handler.

        Args:
            debouncer: Debounce tracker receiving qualifying paths
            ignore_patterns: File name globs to skip
        """
        super().__init__()
        self.debouncer = debouncer
        self.ignore_patterns = ignore_patterns

    def should_process(self, path: str) -> bool:
        """
        Check if path should be processed.

        Args:
            path: File path

        Returns:
            True if should process, False otherwise
        """
        return not should_exclude_path(Path(path), self.ignore_patterns)

    def _handle(self, path: str):
        if not self.should_process(path):
            return
        self.debouncer.touch(normalise_path(Path(path)))

    def on_created(self, event: FileSystemEvent):
        """Handle file creation."""
        if event.is_directory:
            return
        logger.debug(f"Created: {event.src_path}")
        self._handle(event.src_path)

    def on_modified(self, event: FileSystemEvent):
        """Handle file modification."""
        # Skip directory modifications (too noisy)
        if event.is_directory:
            return
        logger.debug(f"Modified: {event.src_path}")
        self._handle(event.src_path)

    def on_moved(self, event: FileSystemEvent):
        """Handle a file renamed or moved into the watched tree."""
        if event.is_directory:
            return
        dest = getattr(event, "dest_path", None)
        if dest:
            logger.debug(f"Moved: {event.src_path} -> {dest}")
            self._handle(dest)


class FileIngestWatcher:
    """Directory monitoring orchestrator."""

    def __init__(
        self,
        store: StatusStore,
        executor: JobExecutor,
        *,
        debounce_seconds: float = 0.5,
        recursive: bool = False,
        ignore_patterns: Optional[list[str]] = None,
        intake_retry_seconds: float = 5.0,
    ):
        """Initialize directory watcher."""
        self.store = store
        self.executor = executor
        self.recursive = recursive
        self.ignore_patterns = ignore_patterns
        self.intake_retry_seconds = intake_retry_seconds

        self.debouncer = DebounceTracker(debounce_seconds, self.ingest)
        self.event_handler = IngestEventHandler(self.debouncer, ignore_patterns)
        self.observer: Optional[Observer] = None
        self.watch_path: Optional[Path] = None

        # Pause state and deferred paths; per-path locks keep events for one
        # path in arrival order without blocking other paths.
        self._state_lock = threading.Lock()
        self._idle = threading.Condition(self._state_lock)
        self._active = 0
        self._path_locks: dict[Path, threading.Lock] = {}
        self._path_users: dict[Path, int] = {}
        self._stopping = threading.Event()
        self._paused = threading.Event()
        self._deferred: list[Path] = []
        self._probe: Optional[threading.Timer] = None

    # Lifecycle ---------------------------------------------------------------

    def start_watching(self, path: Path):
        """
        Start watching ``path`` in the background.

        Raises:
            WatchSetupError: if the path is missing, not a directory or unreadable
        """
        watch_path = normalise_path(Path(path))
        if not watch_path.exists():
            raise WatchSetupError(f"Watch path does not exist: {watch_path}")
        if not watch_path.is_dir():
            raise WatchSetupError(f"Watch path is not a directory: {watch_path}")
        if not os.access(watch_path, os.R_OK | os.X_OK):
            raise WatchSetupError(f"Watch path is not readable: {watch_path}")

        observer = Observer()
        try:
            observer.schedule(self.event_handler, str(watch_path), recursive=self.recursive)
            observer.daemon = True
            observer.start()
        except OSError as e:
            raise WatchSetupError(f"Failed to watch {watch_path}: {e}") from e

        self.observer = observer
        self.watch_path = watch_path
        logger.success(f"Started watching: {watch_path}")

    def stop_watching(self):
        """Stop watching; no record is created after this returns."""
        self._stopping.set()
        with self._state_lock:
            if self._probe is not None:
                self._probe.cancel()
                self._probe = None

        cancelled = self.debouncer.cancel_all()
        if self.observer is not None:
            self.observer.stop()
            self.observer.join()
            self.observer = None

        # Wait for ingests that already passed the stop check.
        with self._idle:
            self._idle.wait_for(lambda: self._active == 0)
        logger.info(f"Directory watcher stopped ({cancelled} debounced events dropped)")

    @property
    def is_running(self) -> bool:
        return self.observer is not None and self.observer.is_alive()

    @property
    def intake_paused(self) -> bool:
        return self._paused.is_set()

    # Ingestion ---------------------------------------------------------------

    def scan_existing(self) -> int:
        """Ingest files already in the watched directory that were never recorded."""
        if self.watch_path is None:
            return 0

        candidates = self.watch_path.rglob("*") if self.recursive else self.watch_path.iterdir()
        ingested = 0
        for candidate in sorted(candidates):
            if not candidate.is_file() or should_exclude_path(candidate, self.ignore_patterns):
                continue
            if self.store.latest_for_path(normalise_path(candidate)) is not None:
                continue
            if self.ingest(candidate) is not None:
                ingested += 1

        if ingested:
            logger.info(f"Initial scan picked up {ingested} files")
        return ingested

    def ingest(self, path: Path) -> Optional[FileRecordOut]:
        """
        Record and submit one logical file arrival.

        A terminal (or missing) latest record means a new arrival and a new
        Pending record; a record still in flight is reused.
        """
        path = normalise_path(Path(path))

        with self._state_lock:
            if self._stopping.is_set():
                return None
            if self._paused.is_set():
                self._defer(path)
                return None
            path_lock = self._acquire_path(path)

        try:
            with path_lock:
                record = self._record_arrival(path)
        finally:
            with self._state_lock:
                self._release_path(path)

        if record is None:
            return None

        try:
            self.executor.submit(record.id)
        except AlreadyQueuedError:
            logger.debug(f"Record {record.id} already queued")
        except ExecutorClosedError:
            logger.warning(f"Executor closed, record {record.id} left Pending")
        except (StoreUnavailableError, StoreConflictError) as e:
            logger.error(f"Record {record.id} not queued, left for reconciliation: {e}")
        return record

    def _record_arrival(self, path: Path) -> Optional[FileRecordOut]:
        """Create or reuse the record for ``path``. Runs under the path's lock."""
        if self._paused.is_set():
            with self._state_lock:
                self._defer(path)
            return None
        if not path.is_file():
            logger.debug(f"Skipping vanished path: {path}")
            return None

        try:
            latest = self.store.latest_for_path(path)
            if latest is None or latest.status.is_terminal:
                record = self.store.create_pending(path)
                logger.info(f"New file: {path} (record {record.id})")
                return record
            return latest
        except StoreUnavailableError as e:
            with self._state_lock:
                self._pause_intake(path, e)
            return None
        except StoreConflictError as e:
            logger.error(f"Could not record {path}: {e}")
            return None

    def _acquire_path(self, path: Path) -> threading.Lock:
        """Called with the state lock held."""
        self._active += 1
        self._path_users[path] = self._path_users.get(path, 0) + 1
        return self._path_locks.setdefault(path, threading.Lock())

    def _release_path(self, path: Path):
        """Called with the state lock held."""
        self._path_users[path] -= 1
        if not self._path_users[path]:
            del self._path_users[path]
            del self._path_locks[path]
        self._active -= 1
        if not self._active:
            self._idle.notify_all()

    # Intake pause ------------------------------------------------------------

    def _defer(self, path: Path):
        if path not in self._deferred:
            self._deferred.append(path)

    def _pause_intake(self, path: Path, error: Exception):
        """Called with the state lock held."""
        self._defer(path)
        if self._paused.is_set():
            return
        self._paused.set()
        logger.error(f"Status store unreachable, pausing intake: {error}")
        self._schedule_probe()

    def _schedule_probe(self):
        if self._stopping.is_set():
            return
        self._probe = threading.Timer(self.intake_retry_seconds, self._probe_store)
        self._probe.daemon = True
        self._probe.start()

    def _probe_store(self):
        if self._stopping.is_set():
            return
        if not self.store.ping():
            with self._state_lock:
                self._schedule_probe()
            return

        with self._state_lock:
            deferred, self._deferred = self._deferred, []
            self._paused.clear()
            self._probe = None

        logger.success(f"Status store reachable again, replaying {len(deferred)} deferred files")
        for path in deferred:
            self.ingest(path)
