"""APScheduler setup for recurring jobs"""

from datetime import datetime, timezone
from typing import Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.triggers.interval import IntervalTrigger

from blobkeeper.utils.logger import get_logger

logger = get_logger(__name__)


class SchedulerService:
    """Scheduler service using APScheduler"""

    def __init__(self, misfire_grace_time: int = 300):
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.running = False
        self.misfire_grace_time = misfire_grace_time

    def initialize(self):
        """Initialize scheduler"""
        try:
            # Jobs are bound methods of live services, so they are registered on every start
            jobstores = {"default": MemoryJobStore()}
            executors = {"default": AsyncIOExecutor()}
            job_defaults = {
                "coalesce": True,  # Coalesce missed runs into one
                "max_instances": 1,
                "misfire_grace_time": self.misfire_grace_time,
            }

            self.scheduler = AsyncIOScheduler(
                jobstores=jobstores,
                executors=executors,
                job_defaults=job_defaults,
                timezone="UTC",
            )

            logger.info("Scheduler initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize scheduler: {e}")
            raise

    def start(self):
        """Start scheduler"""
        if not self.scheduler:
            raise RuntimeError("Scheduler not initialized. Call initialize() first.")

        self.scheduler.start()
        self.running = True
        logger.info("Scheduler started")

    def stop(self):
        """Stop scheduler"""
        if self.scheduler and self.running:
            try:
                self.scheduler.shutdown(wait=False)
                self.running = False
                logger.info("Scheduler stopped")
            except Exception as e:
                logger.error(f"Failed to stop scheduler: {e}")

    def add_job(self, func, trigger, job_id: Optional[str] = None, **kwargs):
        """Add a job to the scheduler"""
        if not self.scheduler:
            raise RuntimeError("Scheduler not initialized. Call initialize() first.")

        try:
            job = self.scheduler.add_job(
                func, trigger=trigger, id=job_id, replace_existing=True, **kwargs
            )
            next_run = getattr(job, "next_run_time", None)
            if next_run:
                logger.info(
                    f"Job added: {job_id or func.__name__} - Next run: {next_run.strftime('%Y-%m-%d %H:%M:%S UTC')}"
                )
            else:
                logger.info(f"Job added: {job_id or func.__name__}")
            return job
        except Exception as e:
            logger.error(f"Failed to add job: {e}")
            raise

    def add_interval_job(
        self,
        func,
        minutes: int,
        job_id: Optional[str] = None,
        run_immediately: bool = False,
        **kwargs,
    ):
        """Add an interval job, optionally also running it right away"""
        trigger = IntervalTrigger(minutes=minutes)
        if run_immediately:
            kwargs.setdefault("next_run_time", datetime.now(timezone.utc))
        return self.add_job(func, trigger, job_id=job_id, **kwargs)

    def remove_job(self, job_id: str):
        """Remove a job from the scheduler"""
        if not self.scheduler:
            raise RuntimeError("Scheduler not initialized. Call initialize() first.")

        try:
            self.scheduler.remove_job(job_id)
            logger.info(f"Job removed: {job_id}")
        except Exception as e:
            logger.error(f"Failed to remove job: {job_id}: {e}")

    def get_jobs(self):
        """Get all scheduled jobs"""
        if not self.scheduler:
            return []
        return self.scheduler.get_jobs()
