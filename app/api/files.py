"""
File status endpoints.

Read-only views over the status store:
- Summary counts per state
- Time-bucketed trend for charts
- Paged record listing
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from loguru import logger

from app.api.deps import get_aggregator
from app.models.schemas import FilePage, FileRecordOut, StatusSummary, TrendPoint
from domains.file_ingest.errors import RecordNotFoundError, StoreUnavailableError
from domains.file_ingest.processors.aggregator import StatusAggregator, TrendBucket

router = APIRouter()


@router.get("/filestatus/summary", response_model=StatusSummary)
def get_summary(aggregator: StatusAggregator = Depends(get_aggregator)):
    """
    Counts of files in each lifecycle state.

    Returns:
        total, pending, processing, success and failed counts
    """
    try:
        return aggregator.summary()
    except StoreUnavailableError as e:
        logger.error(f"Summary unavailable: {e}")
        raise HTTPException(status_code=503, detail="Status store unavailable")


@router.get("/filestatus/trend", response_model=List[TrendPoint])
def get_trend(
    bucket: Optional[TrendBucket] = None,
    window: Optional[int] = Query(default=None, ge=1, le=1000),
    aggregator: StatusAggregator = Depends(get_aggregator),
):
    """
    Arrivals and completions per time bucket, oldest first.

    Args:
        bucket: minute, hour or day (defaults to the configured bucket)
        window: Number of buckets to return
    """
    try:
        return list(aggregator.trend(bucket, window=window))
    except StoreUnavailableError as e:
        logger.error(f"Trend unavailable: {e}")
        raise HTTPException(status_code=503, detail="Status store unavailable")


@router.get("/files", response_model=FilePage)
def list_files(
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=25, ge=1, le=500),
    aggregator: StatusAggregator = Depends(get_aggregator),
):
    """
    Page through tracked files ordered by id.

    A page past the end returns the last page.
    """
    try:
        return aggregator.list_files(page, page_size)
    except StoreUnavailableError as e:
        logger.error(f"Listing unavailable: {e}")
        raise HTTPException(status_code=503, detail="Status store unavailable")


@router.get("/files/{record_id}", response_model=FileRecordOut)
def get_file(record_id: int, aggregator: StatusAggregator = Depends(get_aggregator)):
    """Single file record by id."""
    try:
        return aggregator.store.get(record_id)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail=f"File record {record_id} not found")
    except StoreUnavailableError as e:
        logger.error(f"Record {record_id} unavailable: {e}")
        raise HTTPException(status_code=503, detail="Status store unavailable")
