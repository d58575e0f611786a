"""
Status store for tracked files.

Every lifecycle change goes through this module. Updates to one record are
serialised with optimistic concurrency (the ``version`` column); updates to
different records never wait on each other beyond SQLite's own locking.
"""

from __future__ import annotations

import math
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator, Optional

from loguru import logger
from sqlalchemy import func, or_, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.models.records import FileRecord, FileStatus
from app.models.schemas import FilePage, FileRecordOut
from app.utils.database import DatabaseClient
from app.utils.helpers import utc_now

from .errors import (
    InvalidTransitionError,
    RecordNotFoundError,
    StoreConflictError,
    StoreUnavailableError,
)

_LOCK_MARKERS = ("database is locked", "database table is locked", "busy")


class StatusStore:
    """Durable table of FileRecords and their lifecycle state."""

    def __init__(
        self,
        db: DatabaseClient,
        *,
        write_retries: int = 3,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.write_retries = max(1, write_retries)
        self.clock = clock

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with self.db.session() as session:
                yield session
        except OperationalError as exc:
            message = str(exc.orig).lower()
            if any(marker in message for marker in _LOCK_MARKERS):
                raise StoreConflictError(f"Status store busy: {exc.orig}") from exc
            raise StoreUnavailableError(f"Status store unavailable: {exc.orig}") from exc

    def create_schema(self):
        try:
            self.db.create_schema()
        except OperationalError as exc:
            raise StoreUnavailableError(f"Status store unavailable: {exc.orig}") from exc

    def ping(self) -> bool:
        """Return True when the database answers a trivial query."""
        try:
            return self.db.ping()
        except OperationalError as exc:
            logger.debug(f"Status store ping failed: {exc}")
            return False

    # Writes ------------------------------------------------------------------

    def create_pending(self, path: str | Path) -> FileRecordOut:
        """Insert a new record in ``Pending`` for ``path``."""
        path = Path(path)
        record = FileRecord(
            path=str(path),
            name=path.name,
            status=FileStatus.PENDING,
            note="",
            attempts=0,
            created_at=self.clock(),
        )
        with self._session() as session:
            session.add(record)
            session.flush()
            snapshot = FileRecordOut.model_validate(record)

        logger.debug(f"Created record {snapshot.id} for {snapshot.path}")
        return snapshot

    def start_attempt(self, record_id: int, *, resume: bool = False) -> FileRecordOut:
        """
        Claim a record for processing.

        ``Pending`` moves to ``Processing``. With ``resume`` a record that is
        already ``Processing`` (retry or reconciliation) is claimed again;
        only ``attempts`` and ``started_at`` change.
        """
        now = self.clock()

        def mutate(record: FileRecord):
            allowed = record.status == FileStatus.PENDING or (
                resume and record.status == FileStatus.PROCESSING
            )
            if not allowed:
                raise InvalidTransitionError(
                    record.id, record.status.value, FileStatus.PROCESSING.value
                )
            record.status = FileStatus.PROCESSING
            record.attempts += 1
            record.started_at = now

        return self._transition(record_id, mutate)

    def mark_success(self, record_id: int, note: Optional[str] = None) -> FileRecordOut:
        return self._finish(record_id, FileStatus.SUCCESS, note or "")

    def mark_failed(self, record_id: int, note: str) -> FileRecordOut:
        return self._finish(record_id, FileStatus.FAILED, note)

    def _finish(self, record_id: int, status: FileStatus, note: str) -> FileRecordOut:
        now = self.clock()

        def mutate(record: FileRecord):
            if record.status != FileStatus.PROCESSING:
                raise InvalidTransitionError(record.id, record.status.value, status.value)
            record.status = status
            record.processed_at = now
            record.note = note

        return self._transition(record_id, mutate)

    def _transition(self, record_id: int, mutate: Callable[[FileRecord], None]) -> FileRecordOut:
        last_error: Exception | None = None
        for attempt in range(1, self.write_retries + 1):
            try:
                with self._session() as session:
                    record = session.get(FileRecord, record_id)
                    if record is None:
                        raise RecordNotFoundError(record_id)
                    mutate(record)
                    session.flush()
                    return FileRecordOut.model_validate(record)
            except (StaleDataError, StoreConflictError) as exc:
                last_error = exc
                logger.debug(
                    f"Write conflict on record {record_id} "
                    f"(attempt {attempt}/{self.write_retries}): {exc}"
                )

        raise StoreConflictError(
            f"Record {record_id} update conflicted {self.write_retries} times: {last_error}"
        )

    # Reads -------------------------------------------------------------------

    def get(self, record_id: int) -> FileRecordOut:
        with self._session() as session:
            record = session.get(FileRecord, record_id)
            if record is None:
                raise RecordNotFoundError(record_id)
            return FileRecordOut.model_validate(record)

    def latest_for_path(self, path: str | Path) -> Optional[FileRecordOut]:
        """Most recent record for ``path``, or None if it was never seen."""
        query = (
            select(FileRecord)
            .where(FileRecord.path == str(path))
            .order_by(FileRecord.id.desc())
            .limit(1)
        )
        with self._session() as session:
            record = session.scalars(query).first()
            return FileRecordOut.model_validate(record) if record else None

    def ids_with_status(self, status: FileStatus) -> list[int]:
        query = select(FileRecord.id).where(FileRecord.status == status).order_by(FileRecord.id)
        with self._session() as session:
            return list(session.scalars(query))

    def stale_processing_ids(self, started_before: datetime) -> list[int]:
        """Ids of ``Processing`` records claimed before ``started_before``."""
        query = (
            select(FileRecord.id)
            .where(FileRecord.status == FileStatus.PROCESSING)
            .where(or_(FileRecord.started_at.is_(None), FileRecord.started_at < started_before))
            .order_by(FileRecord.id)
        )
        with self._session() as session:
            return list(session.scalars(query))

    def count_by_status(self) -> dict[FileStatus, int]:
        """Per-status counts from a single grouped query."""
        query = select(FileRecord.status, func.count(FileRecord.id)).group_by(FileRecord.status)
        counts = {status: 0 for status in FileStatus}
        with self._session() as session:
            for status, count in session.execute(query):
                counts[FileStatus(status)] = count
        return counts

    def activity_since(self, since: datetime) -> list[tuple[datetime, Optional[datetime], FileStatus]]:
        """(created_at, processed_at, status) for records touched at or after ``since``."""
        query = select(FileRecord.created_at, FileRecord.processed_at, FileRecord.status).where(
            or_(FileRecord.created_at >= since, FileRecord.processed_at >= since)
        )
        with self._session() as session:
            return [(row[0], row[1], FileStatus(row[2])) for row in session.execute(query)]

    def list_page(self, page: int, page_size: int) -> FilePage:
        """
        Page of records ordered by id.

        A page past the end clamps to the last page (page 1 when empty).
        Total and slice come from the same transaction.
        """
        if page < 1:
            raise ValueError("page must be >= 1")
        if page_size < 1:
            raise ValueError("page_size must be >= 1")

        with self._session() as session:
            total = session.scalar(select(func.count(FileRecord.id))) or 0
            total_pages = math.ceil(total / page_size)
            page = min(page, max(1, total_pages))

            query = (
                select(FileRecord)
                .order_by(FileRecord.id)
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            items = [FileRecordOut.model_validate(r) for r in session.scalars(query)]

        return FilePage(
            items=items,
            total=total,
            page=page,
            page_size=page_size,
            total_pages=total_pages,
        )
