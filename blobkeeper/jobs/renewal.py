"""Scheduled renewal pass"""

from blobkeeper.services.renewal_service import RenewalService
from blobkeeper.utils.logger import get_logger

logger = get_logger(__name__)


async def renewal_job(renewal_service: RenewalService):
    """Run one renewal pass; failures are logged and retried on the next interval"""
    try:
        await renewal_service.run_cycle(trigger="scheduled")
    except Exception as e:
        logger.error(f"❌ Renewal pass failed: {e}", exc_info=True)
