# services/storage-service/storage_core/routers/migration.py

import asyncio
import logging
from typing import List
from fastapi import APIRouter, Depends, HTTPException
from ..dependencies import require_admin, get_scheduler, get_migration_job, get_file_repository
from ..exceptions import StorageError, RecordNotFound
from ..models.schemas import (
    MigrationRunRequest, MigrationStatusResponse,
    MigrationSummaryResponse, MigrationRunRecord,
)
from ..services.migration import MigrationJob
from ..services.repository import FileRepository, run_to_dict
from ..services.scheduler import MigrationScheduler
from .upload import storage_http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/admin/migration", tags=["migration"])

# Manual runs execute in the background; keep a reference so the task is not collected
background_runs = set()


@router.post("/run", status_code=202)
async def run_migration(
    body: MigrationRunRequest,
    admin: dict = Depends(require_admin),
    scheduler: MigrationScheduler = Depends(get_scheduler),
):
    """Trigger a migration now. A second trigger while one is running is rejected."""
    if scheduler.in_progress:
        raise HTTPException(status_code=409, detail="Migration already in progress")

    task = asyncio.create_task(scheduler.execute(body.batch_size, body.delay_ms))
    background_runs.add(task)
    task.add_done_callback(background_runs.discard)

    logger.info(f"[Admin] Migration triggered by {admin.get('sub')}")
    return {"status": "started"}


@router.get("/status", response_model=MigrationStatusResponse)
async def migration_status(
    admin: dict = Depends(require_admin),
    scheduler: MigrationScheduler = Depends(get_scheduler),
    repository: FileRepository = Depends(get_file_repository),
):
    """Runner snapshot; falls back to the run log when this process has not run yet"""
    status = scheduler.status()
    if status["last_stats"] is None:
        runs = await repository.recent_runs(limit=1)
        if runs:
            last = run_to_dict(runs[0])
            status["last_stats"] = last
            status["last_run_time"] = last["end_time"]
    return MigrationStatusResponse(**status)


@router.post("/cancel")
async def cancel_migration(
    admin: dict = Depends(require_admin),
    scheduler: MigrationScheduler = Depends(get_scheduler),
):
    if not scheduler.cancel():
        return {"status": "idle"}
    return {"status": "cancelling"}


@router.get("/summary", response_model=MigrationSummaryResponse)
async def migration_summary(
    admin: dict = Depends(require_admin),
    job: MigrationJob = Depends(get_migration_job),
):
    return MigrationSummaryResponse(**await job.summary())


@router.get("/runs", response_model=List[MigrationRunRecord])
async def migration_runs(
    limit: int = 10,
    admin: dict = Depends(require_admin),
    repository: FileRepository = Depends(get_file_repository),
):
    return [MigrationRunRecord(**run_to_dict(run)) for run in await repository.recent_runs(limit)]


@router.post("/verify/{file_id}")
async def verify_file(
    file_id: int,
    admin: dict = Depends(require_admin),
    job: MigrationJob = Depends(get_migration_job),
):
    return {"file_id": file_id, "reachable": await job.verify_integrity(file_id)}


@router.post("/rollback/{file_id}")
async def rollback_file(
    file_id: int,
    admin: dict = Depends(require_admin),
    job: MigrationJob = Depends(get_migration_job),
):
    try:
        await job.rollback_record(file_id)
    except RecordNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StorageError as e:
        raise storage_http_error(e)
    return {"file_id": file_id, "status": "rolled_back"}
