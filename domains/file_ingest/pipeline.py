"""
Explicit wiring of the file ingest components.

Builds the store, executor, watcher and aggregator from settings and owns
their start/stop order: store first, watcher last on the way up; watcher
first, store last on the way down.
"""

from __future__ import annotations

from typing import Optional

from loguru import logger

from app.utils.config import Settings, get_settings
from app.utils.database import DatabaseClient

from .collectors.watcher import FileIngestWatcher
from .errors import StoreError, WatchSetupError
from .processors.aggregator import StatusAggregator, TrendBucket
from .processors.executor import JobExecutor
from .processors.units import ProcessingUnit, load_unit
from .store import StatusStore


class IngestPipeline:
    """Owns the lifetime of every ingest component."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        db: Optional[DatabaseClient] = None,
        unit: Optional[ProcessingUnit] = None,
    ):
        self.settings = settings or get_settings()
        s = self.settings

        self.db = db or DatabaseClient(s.database_url)
        self.store = StatusStore(self.db, write_retries=s.store_write_retries)
        self.executor = JobExecutor(
            self.store,
            unit or load_unit(s.processing_unit),
            pool_size=s.worker_pool_size,
            max_retries=s.max_retries,
            backoff_base=s.retry_backoff_base,
            backoff_max=s.retry_backoff_max,
            stale_after_seconds=s.stale_after_seconds,
            reconcile_interval_seconds=s.reconcile_interval_seconds,
        )
        self.watcher = FileIngestWatcher(
            self.store,
            self.executor,
            debounce_seconds=s.debounce_seconds,
            recursive=s.watch_recursive,
            ignore_patterns=s.get_ignore_patterns(),
            intake_retry_seconds=s.intake_retry_seconds,
        )
        self.aggregator = StatusAggregator(
            self.store,
            bucket=TrendBucket(s.trend_bucket),
            window=s.trend_window,
        )
        self.watch_error: Optional[str] = None

    def start(self):
        """
        Bring the pipeline up.

        A watch path problem is logged and reported through ``watch_error``;
        the executor and read side keep running without a watcher.
        """
        logger.info("Starting file ingest pipeline...")
        self.store.create_schema()
        self.executor.start()

        try:
            self.executor.reconcile()
        except StoreError as e:
            logger.error(f"Startup reconciliation skipped: {e}")

        try:
            self.watcher.start_watching(self.settings.get_watch_path())
        except WatchSetupError as e:
            self.watch_error = str(e)
            logger.error(f"Watcher not started: {e}")
            return

        if self.settings.initial_scan:
            try:
                self.watcher.scan_existing()
            except StoreError as e:
                logger.error(f"Initial scan skipped: {e}")

        logger.success("File ingest pipeline started")

    def stop(self) -> bool:
        """Stop intake, let running jobs finish within the grace period, close the store."""
        logger.info("Stopping file ingest pipeline...")
        self.watcher.stop_watching()
        drained = self.executor.shutdown(self.settings.shutdown_grace_seconds)
        self.db.close()
        logger.success("File ingest pipeline stopped")
        return drained
