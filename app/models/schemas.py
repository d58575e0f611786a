"""
Pydantic models for the File Ingest API.

Shared data models across the application. Store reads return these
detached snapshots, never live ORM objects.
"""

from datetime import datetime
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, ConfigDict

from app.models.records import FileStatus


# =====================================================
# File Record Models
# =====================================================

class FileRecordOut(BaseModel):
    """Point-in-time view of a FileRecord."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    path: str
    name: str
    status: FileStatus
    note: str = ""
    attempts: int = 0
    created_at: datetime
    started_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


class FilePage(BaseModel):
    """One page of file records ordered by id."""
    items: List[FileRecordOut]
    total: int
    page: int
    page_size: int
    total_pages: int


# =====================================================
# Aggregate Models
# =====================================================

class StatusSummary(BaseModel):
    """Counts per lifecycle state."""
    total: int = 0
    pending: int = 0
    processing: int = 0
    success: int = 0
    failed: int = 0


class TrendPoint(BaseModel):
    """Counts for a single time bucket."""
    time: str
    pending: int = 0
    success: int = 0
    failed: int = 0


# =====================================================
# Response Models
# =====================================================

class OperationStatus(BaseModel):
    """Generic operation status."""
    status: str
    message: str
    details: Optional[Dict[str, Any]] = None
