"""
Job queue and executor for file processing.

A fixed pool of worker threads pulls record ids from a shared queue, claims
the record in the status store, runs the processing unit and records the
outcome. One in-flight job per record and per path; transient failures are
retried with exponential backoff while the record keeps its claim.
"""

from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Optional

from loguru import logger

from app.models.records import FileStatus
from app.utils.helpers import utc_now

from ..errors import (
    AlreadyQueuedError,
    ExecutorClosedError,
    InvalidTransitionError,
    RecordNotFoundError,
    StoreConflictError,
    StoreError,
    StoreUnavailableError,
)
from ..store import StatusStore
from .units import ProcessingUnit, describe_error, is_transient


@dataclass(frozen=True)
class Job:
    """A processing request for one record."""

    record_id: int
    path: str
    attempt: int = 1
    resume: bool = False


class JobExecutor:
    """Bounded worker pool with dedup, retry and reconciliation."""

    def __init__(
        self,
        store: StatusStore,
        unit: ProcessingUnit,
        *,
        pool_size: int = 4,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        stale_after_seconds: float = 300,
        reconcile_interval_seconds: float = 0,
    ):
        if pool_size < 1:
            raise ValueError("pool_size must be >= 1")

        self.store = store
        self.unit = unit
        self.pool_size = pool_size
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self.reconcile_interval = reconcile_interval_seconds

        self._queue: "queue.Queue[Optional[Job]]" = queue.Queue()
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._claimed: dict[int, str] = {}
        self._claimed_paths: dict[str, int] = {}
        self._running: set[int] = set()
        self._timers: set[threading.Timer] = set()
        self._workers: list[threading.Thread] = []
        self._reconciler: Optional[threading.Thread] = None
        self._stopping = threading.Event()
        self._started = False

        logger.info(
            f"Job executor initialized (workers={pool_size}, max_retries={max_retries})"
        )

    # Lifecycle ---------------------------------------------------------------

    def start(self):
        """Start the worker pool (and the periodic reconciler, if enabled)."""
        if self._started:
            return
        self._started = True

        for index in range(self.pool_size):
            worker = threading.Thread(
                target=self._worker_loop,
                name=f"ingest-worker-{index}",
                daemon=True,
            )
            worker.start()
            self._workers.append(worker)

        if self.reconcile_interval > 0:
            self._reconciler = threading.Thread(
                target=self._reconcile_loop,
                name="ingest-reconciler",
                daemon=True,
            )
            self._reconciler.start()

        logger.success(f"Started {self.pool_size} ingest workers")

    def shutdown(self, grace: float = 10.0) -> bool:
        """
        Stop accepting work and wait up to ``grace`` seconds for running jobs.

        Queued jobs that have not started are dropped (their records stay
        ``Pending``); pending retries are cancelled (records stay
        ``Processing``). Both are picked up by the next reconciliation.

        Returns:
            True if every worker finished within the grace period
        """
        if self._stopping.is_set():
            return all(not worker.is_alive() for worker in self._workers)

        logger.info("Shutting down job executor...")
        self._stopping.set()

        with self._lock:
            timers = list(self._timers)
            self._timers.clear()
        for timer in timers:
            timer.cancel()

        dropped = self._drain_queue()
        for _ in self._workers:
            self._queue.put(None)

        deadline = time.monotonic() + grace
        for worker in self._workers:
            worker.join(timeout=max(0.0, deadline - time.monotonic()))

        drained = all(not worker.is_alive() for worker in self._workers)
        with self._lock:
            leftover = len(self._running)
            self._claimed.clear()
            self._claimed_paths.clear()
            self._idle.notify_all()

        if drained:
            logger.success(f"Job executor stopped ({dropped} queued jobs left for reconciliation)")
        else:
            logger.warning(
                f"Job executor grace period expired with {leftover} jobs still running"
            )
        return drained

    def _drain_queue(self) -> int:
        dropped = 0
        while True:
            try:
                job = self._queue.get_nowait()
            except queue.Empty:
                return dropped
            if job is not None:
                self._release(job)
                dropped += 1

    # Submission --------------------------------------------------------------

    def submit(self, record_id: int, *, resume: bool = False) -> Job:
        """
        Enqueue a processing request for ``record_id``.

        Raises:
            AlreadyQueuedError: the record, or another record for the same
                path, is queued, running or waiting for a retry
            ExecutorClosedError: shutdown has begun
            RecordNotFoundError: the record does not exist
        """
        if self._stopping.is_set():
            raise ExecutorClosedError("Executor is shutting down")

        with self._lock:
            if record_id in self._claimed:
                raise AlreadyQueuedError(record_id, self._claimed[record_id])

        record = self.store.get(record_id)

        with self._lock:
            if self._stopping.is_set():
                raise ExecutorClosedError("Executor is shutting down")
            if record_id in self._claimed or record.path in self._claimed_paths:
                raise AlreadyQueuedError(record_id, record.path)
            self._claimed[record_id] = record.path
            self._claimed_paths[record.path] = record_id

        job = Job(record_id=record_id, path=record.path, resume=resume)
        self._queue.put(job)
        logger.debug(f"Queued record {record_id} ({record.name})")
        return job

    def _release(self, job: Job):
        with self._lock:
            self._running.discard(job.record_id)
            if self._claimed.get(job.record_id) == job.path:
                del self._claimed[job.record_id]
            if self._claimed_paths.get(job.path) == job.record_id:
                del self._claimed_paths[job.path]
            if not self._claimed:
                self._idle.notify_all()

    # Reconciliation ----------------------------------------------------------

    def reconcile(self) -> int:
        """
        Re-queue abandoned work.

        ``Processing`` records claimed longer ago than the staleness
        threshold get a resumed attempt; ``Pending`` records with no queued
        job are submitted again.

        Returns:
            Number of records re-queued
        """
        cutoff = utc_now() - self.stale_after
        requeued = 0

        candidates = [(rid, True) for rid in self.store.stale_processing_ids(cutoff)]
        candidates += [(rid, False) for rid in self.store.ids_with_status(FileStatus.PENDING)]

        for record_id, resume in candidates:
            try:
                self.submit(record_id, resume=resume)
            except AlreadyQueuedError:
                continue
            except RecordNotFoundError:
                continue
            except StoreConflictError as e:
                logger.warning(f"Record {record_id} not re-queued, store busy: {e}")
                continue
            requeued += 1
            if resume:
                logger.warning(f"Reconciling stale record {record_id}")

        if requeued:
            logger.info(f"Reconciliation re-queued {requeued} records")
        return requeued

    def _reconcile_loop(self):
        while not self._stopping.wait(self.reconcile_interval):
            try:
                self.reconcile()
            except StoreError as e:
                logger.error(f"Reconciliation skipped: {e}")
            except ExecutorClosedError:
                return

    # Execution ---------------------------------------------------------------

    def _worker_loop(self):
        while True:
            job = self._queue.get()
            try:
                if job is None:
                    return
                if self._stopping.is_set():
                    self._release(job)
                    continue
                with self._lock:
                    self._running.add(job.record_id)
                self._run(job)
            except Exception as e:
                # Keep the worker alive; the record is recovered by reconciliation.
                logger.exception(f"Unexpected error running record {job.record_id}: {e}")
                self._release(job)
            finally:
                self._queue.task_done()

    def _run(self, job: Job):
        try:
            record = self.store.start_attempt(job.record_id, resume=job.resume)
        except (InvalidTransitionError, RecordNotFoundError) as e:
            logger.warning(f"Skipping record {job.record_id}: {e}")
            self._release(job)
            return
        except StoreConflictError as e:
            self._retry_or_abandon(job, e)
            return
        except StoreUnavailableError as e:
            logger.error(f"Record {job.record_id} not started, store unavailable: {e}")
            self._release(job)
            return

        logger.info(f"Processing record {record.id}: {record.path} (attempt {record.attempts})")

        try:
            note = self.unit(Path(record.path))
        except Exception as exc:
            if is_transient(exc) and job.attempt <= self.max_retries:
                logger.warning(
                    f"Transient failure on record {record.id} "
                    f"(attempt {job.attempt}/{self.max_retries + 1}): {describe_error(exc)}"
                )
                self._schedule_retry(job)
                return
            self._complete(job, FileStatus.FAILED, describe_error(exc))
            return

        self._complete(job, FileStatus.SUCCESS, note or "")

    def _complete(self, job: Job, status: FileStatus, note: str):
        try:
            if status == FileStatus.SUCCESS:
                self.store.mark_success(job.record_id, note)
                logger.success(f"Record {job.record_id} processed")
            else:
                self.store.mark_failed(job.record_id, note)
                logger.warning(f"Record {job.record_id} failed: {note}")
        except StoreConflictError as e:
            self._retry_or_abandon(job, e)
            return
        except StoreUnavailableError as e:
            logger.error(f"Outcome for record {job.record_id} not saved, store unavailable: {e}")
        except InvalidTransitionError as e:
            logger.warning(f"Outcome for record {job.record_id} rejected: {e}")

        self._release(job)

    def _retry_or_abandon(self, job: Job, error: Exception):
        if job.attempt <= self.max_retries:
            logger.warning(f"Store conflict on record {job.record_id}, re-queueing: {error}")
            self._schedule_retry(job)
            return
        logger.error(f"Giving up on record {job.record_id} after store conflicts: {error}")
        self._release(job)

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retrying after ``attempt`` failed."""
        return min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)

    def _schedule_retry(self, job: Job):
        retry = Job(
            record_id=job.record_id,
            path=job.path,
            attempt=job.attempt + 1,
            resume=True,
        )
        delay = self.backoff_delay(job.attempt)

        # The claim is kept so the record cannot be submitted twice meanwhile.
        with self._lock:
            self._running.discard(job.record_id)
            scheduled = not self._stopping.is_set()
            if scheduled:
                timer = threading.Timer(delay, self._enqueue_retry)
                timer.args = (retry, timer)
                timer.daemon = True
                self._timers.add(timer)
                timer.start()

        if not scheduled:
            self._release(job)
            return
        logger.debug(f"Retrying record {job.record_id} in {delay:.2f}s")

    def _enqueue_retry(self, job: Job, timer: threading.Timer):
        with self._lock:
            self._timers.discard(timer)
        if self._stopping.is_set():
            self._release(job)
            return
        self._queue.put(job)

    # Introspection -----------------------------------------------------------

    @property
    def in_flight(self) -> int:
        """Records queued, running or waiting for a retry."""
        with self._lock:
            return len(self._claimed)

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    @property
    def is_running(self) -> bool:
        return self._started and not self._stopping.is_set()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no record is claimed. Returns False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: not self._claimed, timeout=timeout)
