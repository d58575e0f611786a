"""Exceptions raised by the file ingest pipeline."""

from __future__ import annotations


class IngestError(RuntimeError):
    """Base error for the file ingest pipeline."""


class WatchSetupError(IngestError):
    """Raised when the watched path is missing or not accessible."""


class AlreadyQueuedError(IngestError):
    """Raised when a record (or its path) already has an in-flight job."""

    def __init__(self, record_id: int, path: str | None = None) -> None:
        super().__init__(f"Record {record_id} is already queued or running")
        self.record_id = record_id
        self.path = path


class ExecutorClosedError(IngestError):
    """Raised when submitting to an executor that is shutting down."""


class ProcessingError(IngestError):
    """Base class for failures reported by a processing unit."""


class TransientProcessingError(ProcessingError):
    """Failure that may succeed if retried (busy file, resource unavailable)."""


class PermanentProcessingError(ProcessingError):
    """Failure that will not go away on retry (bad or empty input)."""


class StoreError(IngestError):
    """Base class for status store failures."""


class RecordNotFoundError(StoreError):
    def __init__(self, record_id: int) -> None:
        super().__init__(f"File record {record_id} does not exist")
        self.record_id = record_id


class InvalidTransitionError(StoreError):
    def __init__(self, record_id: int, current: str, target: str) -> None:
        super().__init__(f"Record {record_id} cannot move from {current} to {target}")
        self.record_id = record_id
        self.current = current
        self.target = target


class StoreConflictError(StoreError):
    """Raised when optimistic update retries are exhausted."""


class StoreUnavailableError(StoreError):
    """Raised when the database cannot be reached."""
