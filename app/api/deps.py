from fastapi import HTTPException, Request

from domains.file_ingest.pipeline import IngestPipeline
from domains.file_ingest.processors.aggregator import StatusAggregator


def get_pipeline(request: Request) -> IngestPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Ingest pipeline is not running")
    return pipeline


def get_aggregator(request: Request) -> StatusAggregator:
    return get_pipeline(request).aggregator
