"""
Sync router: entity mutation hook, job inspection, diagnostics and manual retry.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status

from qbosync.auth.dependencies import get_current_org_id
from qbosync.models.enums import EntityType, SyncStatus
from qbosync.models.invoices import SyncProjection
from qbosync.models.jobs import SyncJob
from qbosync.services import SyncServices, get_sync_services
from qbosync.sync.errors import InvalidJobStateError, JobNotFoundError
from qbosync.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


def job_view(job: SyncJob) -> dict:
    """Job as exposed over HTTP; the verbatim provider error stays internal."""
    return job.model_dump(mode="json", exclude={"last_error", "lease_owner"})


@router.post("/entities/{entity_type}/{local_id}")
async def enqueue_entity_sync(
    entity_type: EntityType,
    local_id: str,
    reason: str = Query(default="local_mutation", max_length=64),
    org_id: str = Depends(get_current_org_id),
    services: SyncServices = Depends(get_sync_services),
):
    """
    Record that a local entity changed and must be pushed to QuickBooks.

    Organizations without a connection, or with automatic sync turned off,
    get no job; the entity's projection is marked skipped instead.
    """
    connection = services.store.find_connection(org_id)
    if connection is None or not connection.settings.auto_sync:
        skip_reason = "not_connected" if connection is None else "auto_sync_disabled"
        if entity_type == EntityType.INVOICE:
            services.storage.update_sync_projection(org_id, local_id, SyncProjection(status=SyncStatus.SKIPPED))
        logger.info("sync_enqueue_skipped", org_id=org_id, local_id=local_id, reason=skip_reason)
        return {"success": True, "data": {"enqueued": False, "reason": skip_reason}}

    job = services.queue.enqueue(org_id, entity_type, local_id, reason=reason)
    return {"success": True, "data": {"enqueued": True, "job": job_view(job)}}


@router.get("/jobs/{job_id}")
async def get_sync_job(
    job_id: str,
    org_id: str = Depends(get_current_org_id),
    services: SyncServices = Depends(get_sync_services),
):
    try:
        job = services.queue.get_job(org_id, job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return {"success": True, "data": job_view(job)}


@router.get("/diagnostics")
async def get_sync_diagnostics(
    org_id: str = Depends(get_current_org_id),
    services: SyncServices = Depends(get_sync_services),
):
    """
    Sync health: connection summary, job counts by state, recent failures.
    """
    diagnostics = services.diagnostics.get_diagnostics(org_id)
    return {"success": True, "data": diagnostics.model_dump(mode="json")}


@router.post("/jobs/retry-failed")
async def retry_failed_jobs(
    org_id: str = Depends(get_current_org_id),
    services: SyncServices = Depends(get_sync_services),
):
    jobs = services.diagnostics.retry_failed_jobs(org_id)
    return {"success": True, "data": {"retried": len(jobs), "jobs": [job_view(job) for job in jobs]}}


@router.post("/jobs/{job_id}/retry")
async def retry_sync_job(
    job_id: str,
    org_id: str = Depends(get_current_org_id),
    services: SyncServices = Depends(get_sync_services),
):
    """
    Reset a dead or failed job to pending with a fresh retry budget.
    """
    try:
        job = services.diagnostics.retry_job(org_id, job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidJobStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return {"success": True, "data": job_view(job)}
