"""
System health router.

Wired to:
- StorageBackend for database connectivity
- Settings for configuration
"""

import time

from fastapi import APIRouter, Depends

from qbosync.services import SyncServices, get_sync_services
from qbosync.storage.base import StorageError
from qbosync.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()

# Track startup time for uptime calculation
_startup_time = time.time()


@router.get("/health")
async def system_health(services: SyncServices = Depends(get_sync_services)):
    """
    Get system health status.
    Checks database connectivity and reports actual service health.
    """
    uptime = time.time() - _startup_time

    db_status = "healthy"
    try:
        # Simple read to verify connectivity
        services.storage.count_jobs_by_state("__health__")
    except StorageError as e:
        logger.error("health_check_database_failed", error=str(e))
        db_status = f"unhealthy: {e}"

    return {
        "success": True,
        "data": {
            "status": "healthy" if db_status == "healthy" else "degraded",
            "version": "0.1.0",
            "uptime_seconds": round(uptime, 1),
            "database": db_status,
            "environment": services.settings.intuit_env,
        },
    }
