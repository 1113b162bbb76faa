"""Abandoned upload cleanup and database maintenance job"""

from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict

from blobkeeper.config import Settings
from blobkeeper.database import DatabaseService
from blobkeeper.services.metadata_store import MetadataStore
from blobkeeper.utils.logger import get_logger

logger = get_logger(__name__)

MAINTENANCE_MARKER = ".db_maintenance"
MAINTENANCE_INTERVAL = timedelta(days=7)


def _maintenance_due(marker: Path) -> bool:
    if not marker.exists():
        return True
    last_run = datetime.fromtimestamp(marker.stat().st_mtime)
    return datetime.now() - last_run > MAINTENANCE_INTERVAL


async def cleanup_job(settings: Settings, store: MetadataStore, database: DatabaseService) -> Dict[str, Any]:
    """Delete abandoned chunked uploads and run weekly VACUUM/ANALYZE"""
    result: Dict[str, Any] = {"abandoned_deleted": 0, "maintenance": False}
    try:
        logger.debug("🧹 Starting cleanup pass...")

        grace = timedelta(hours=settings.abandoned_upload_grace_hours)
        result["abandoned_deleted"] = await store.delete_abandoned_uploads(grace)

        db_path = database.sqlite_path
        if db_path and Path(db_path).exists():
            marker = Path(db_path).parent / MAINTENANCE_MARKER
            if _maintenance_due(marker):
                await database.vacuum_and_analyze()
                marker.touch()
                result["maintenance"] = True
                logger.debug("Database maintenance (VACUUM/ANALYZE) completed")
    except Exception as e:
        logger.error(f"❌ Cleanup pass failed: {e}", exc_info=True)
        result["error"] = str(e)
    return result
