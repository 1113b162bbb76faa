"""FastAPI application hosting the storage services and their background jobs"""

import asyncio
import time
from typing import Any, Dict, Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from blobkeeper import __version__
from blobkeeper.bootstrap import StorageServices, build_services
from blobkeeper.config import settings
from blobkeeper.database import DatabaseService
from blobkeeper.jobs.cleanup import cleanup_job
from blobkeeper.jobs.renewal import renewal_job
from blobkeeper.scheduler import SchedulerService
from blobkeeper.utils.logger import get_logger, log_storage_config

logger = get_logger(__name__)

app = FastAPI(
    title="blobkeeper",
    description="Permanent storage on a retention-bounded blob network",
    version=__version__,
)

database = DatabaseService(settings)
scheduler = SchedulerService()
services: Optional[StorageServices] = None

_app_start_time: Optional[float] = None


@app.on_event("startup")
async def startup_event():
    """Initialize services on startup"""
    global services, _app_start_time
    _app_start_time = time.time()
    logger.debug(f"Starting blobkeeper v{__version__}")

    database.initialize()

    services = build_services(settings, database)
    await services.initialize()
    log_storage_config(logger, settings)

    scheduler.initialize()
    if settings.renewal_enabled:
        scheduler.add_interval_job(
            renewal_job,
            minutes=settings.renewal_interval_minutes,
            job_id="renewal",
            run_immediately=True,
            args=[services.renewals],
        )
    else:
        logger.warning("Renewal pass disabled; files will expire after their retention window")
    scheduler.add_interval_job(
        cleanup_job,
        minutes=settings.cleanup_interval_minutes,
        job_id="cleanup",
        args=[settings, services.store, database],
    )
    scheduler.start()
    logger.info("✅ blobkeeper started")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown"""
    logger.debug("Shutting down blobkeeper")

    if services is not None:
        try:
            await services.renewals.drain(timeout=settings.effective_blob_timeout)
        except asyncio.TimeoutError:
            logger.error("Renewal pass did not finish before shutdown")

    scheduler.stop()

    if services is not None:
        await services.close()

    database.close()


@app.get("/health")
async def health_check() -> Dict[str, Any]:
    """Health check endpoint"""
    current_time = time.time()
    uptime = (current_time - _app_start_time) if _app_start_time else 0

    database_ok = await database.health_check()
    blob_network_ok = await services.blob_client.is_available() if services else False

    checks: Dict[str, Any] = {
        "status": "ok" if database_ok else "error",
        "timestamp": current_time,
        "uptime": uptime,
        "database": database_ok,
        "blob_network": blob_network_ok,
        "renewal_running": services.renewals.is_running if services else False,
    }
    if not database_ok:
        return JSONResponse(status_code=503, content=checks)
    return checks


@app.get("/status")
async def status() -> Dict[str, Any]:
    """Renewal and storage statistics"""
    stats = await database.get_stats()
    last_summary = services.renewals.last_summary if services else None
    stats["renewal"] = {
        "enabled": settings.renewal_enabled,
        "interval_minutes": settings.renewal_interval_minutes,
        "last_pass": last_summary.to_dict() if last_summary else None,
    }
    stats["jobs"] = [job.id for job in scheduler.get_jobs()]
    return stats
