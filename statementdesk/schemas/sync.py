"""
Bulk sync Pydantic schemas.
"""
from datetime import datetime
from typing import Any
from pydantic import BaseModel, Field


class BulkImportRequest(BaseModel):
    """Start a bulk import of one statement file."""
    connection_id: str
    file_id: str
    settings: dict[str, Any] = Field(default_factory=dict)


class SyncError(BaseModel):
    """One failed transaction, in input order."""
    transaction_ref: str
    position: int
    code: str | None
    reason: str | None


class SyncJobRead(BaseModel):
    """Schema for reading a sync job with its progress."""
    id: str
    connection_id: str
    file_id: str
    retry_of_job_id: str | None
    status: str
    total_transactions: int
    successful_imports: int
    failed_imports: int
    progress: int
    cancel_requested: bool
    settings: dict[str, Any]
    error_summary: str | None
    errors: list[SyncError]
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    
    class Config:
        from_attributes = True


class SyncJobSummary(BaseModel):
    """Job history entry."""
    id: str
    connection_id: str
    file_id: str
    status: str
    total_transactions: int
    successful_imports: int
    failed_imports: int
    created_at: datetime
    completed_at: datetime | None
    
    class Config:
        from_attributes = True


class BulkImportResponse(BaseModel):
    job: SyncJobRead
