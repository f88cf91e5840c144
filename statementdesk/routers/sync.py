"""
Bulk sync router.

Requests only create and enqueue jobs; progress is polled.
"""
from typing import Annotated

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from statementdesk.database import get_db
from statementdesk.models.sync_job import SyncJob
from statementdesk.models.user import User
from statementdesk.schemas.sync import BulkImportRequest, BulkImportResponse, SyncJobRead, SyncJobSummary
from statementdesk.services.auth import get_current_user, require_bulk_sync_plan
from statementdesk.services.errors import JobNotFound
from statementdesk.services.integrations import get_adapter_factory
from statementdesk.services.oauth import AdapterFactory
from statementdesk.services.sync import SyncService
from statementdesk.services.worker import SyncWorker, get_sync_worker

router = APIRouter(prefix="/sync", tags=["Sync"])


@router.post("/bulk-import", response_model=BulkImportResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_bulk_import(
    request: BulkImportRequest,
    current_user: User = Depends(require_bulk_sync_plan),
    db: AsyncSession = Depends(get_db),
    adapter_factory: AdapterFactory = Depends(get_adapter_factory),
    worker: SyncWorker = Depends(get_sync_worker),
) -> BulkImportResponse:
    """Create a sync job for a statement file and queue it."""
    service = SyncService(db, adapter_factory)
    job = await service.create_job(current_user.id, request.connection_id, request.file_id, request.settings)
    await worker.enqueue(job.id)
    return BulkImportResponse(job=SyncJobRead.model_validate(job))


@router.get("/bulk-import", response_model=SyncJobRead)
async def get_bulk_import(
    job_id: Annotated[str, Query()],
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> SyncJob:
    """Current status and progress of a job."""
    job = await SyncService(db).get_job(job_id, current_user.id)
    if job is None:
        raise JobNotFound("Sync job not found")
    return job


@router.get("/jobs", response_model=list[SyncJobSummary])
async def list_jobs(
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    offset: Annotated[int, Query(ge=0)] = 0,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> list[SyncJob]:
    """Sync history, newest first."""
    return await SyncService(db).list_jobs(current_user.id, limit=limit, offset=offset)


@router.post("/jobs/{job_id}/cancel", response_model=SyncJobRead)
async def cancel_job(
    job_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> SyncJob:
    """Request cancellation of a pending or running job."""
    return await SyncService(db).cancel_job(job_id, current_user.id)


@router.post("/jobs/{job_id}/retry", response_model=BulkImportResponse, status_code=status.HTTP_202_ACCEPTED)
async def retry_job(
    job_id: str,
    current_user: User = Depends(require_bulk_sync_plan),
    db: AsyncSession = Depends(get_db),
    adapter_factory: AdapterFactory = Depends(get_adapter_factory),
    worker: SyncWorker = Depends(get_sync_worker),
) -> BulkImportResponse:
    """Queue a new job over the failed transactions of a finished one."""
    service = SyncService(db, adapter_factory)
    job = await service.retry_failed(job_id, current_user.id)
    await worker.enqueue(job.id)
    return BulkImportResponse(job=SyncJobRead.model_validate(job))
