"""
Admin endpoints for pipeline management.

Includes:
- Reconciliation trigger
- Queue and watcher statistics
"""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from typing import Optional
from loguru import logger

from app.api.deps import get_pipeline
from app.models.schemas import OperationStatus
from domains.file_ingest.errors import (
    ExecutorClosedError,
    StoreConflictError,
    StoreUnavailableError,
)
from domains.file_ingest.pipeline import IngestPipeline

router = APIRouter()


class PipelineStats(BaseModel):
    """Executor and watcher statistics."""
    queue_depth: int
    in_flight: int
    workers: int
    executor_running: bool
    watcher_running: bool
    intake_paused: bool
    watch_path: Optional[str] = None
    watch_error: Optional[str] = None


@router.post("/reconcile", response_model=OperationStatus)
def trigger_reconcile(pipeline: IngestPipeline = Depends(get_pipeline)):
    """
    Re-queue stale Processing records and orphaned Pending records.

    Returns:
        Number of records re-queued
    """
    logger.info("Manual reconciliation triggered")

    try:
        requeued = pipeline.executor.reconcile()
    except (StoreUnavailableError, StoreConflictError) as e:
        raise HTTPException(status_code=503, detail=str(e))
    except ExecutorClosedError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return OperationStatus(
        status="completed",
        message=f"Re-queued {requeued} records",
        details={"requeued": requeued},
    )


@router.get("/stats", response_model=PipelineStats)
def get_pipeline_stats(pipeline: IngestPipeline = Depends(get_pipeline)):
    """
    Get pipeline statistics.

    Returns:
        Queue depth, in-flight jobs and watcher state
    """
    watcher = pipeline.watcher
    return PipelineStats(
        queue_depth=pipeline.executor.queue_depth,
        in_flight=pipeline.executor.in_flight,
        workers=pipeline.executor.pool_size,
        executor_running=pipeline.executor.is_running,
        watcher_running=watcher.is_running,
        intake_paused=watcher.intake_paused,
        watch_path=str(watcher.watch_path) if watcher.watch_path else None,
        watch_error=pipeline.watch_error,
    )
