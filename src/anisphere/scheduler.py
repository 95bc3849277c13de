"""Scheduler module for anisphere."""

import re
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from . import logger


class JobType(Enum):
    """Job type enumeration."""

    DOWNLOAD_MONITOR = "download_monitor"


def parse_cadence(cadence: str) -> dict[str, int]:
    """Parse cadence string into interval parameters.

    Args:
        cadence: Cadence string (e.g., "5 seconds", "6 hours", "30 minutes").

    Returns:
        Dictionary with interval parameters.

    Raises:
        ValueError: If cadence string is invalid.
    """
    patterns = [
        (r"(\d+)\s*weeks?$", "weeks"),
        (r"(\d+)\s*days?$", "days"),
        (r"(\d+)\s*hours?$", "hours"),
        (r"(\d+)\s*minutes?$", "minutes"),
        (r"(\d+)\s*seconds?$", "seconds"),
    ]

    for pattern, unit in patterns:
        match = re.match(pattern, cadence.lower().strip())
        if match:
            value = int(match.group(1))
            if value <= 0:
                break
            return {unit: value}

    raise ValueError(f"Invalid cadence format: {cadence}")


class JobManager:
    """Job manager for handling scheduled tasks."""

    def __init__(self):
        self.scheduler = AsyncIOScheduler()

    def add_interval_job(
        self,
        job_type: JobType,
        func: Callable[[], Awaitable[Any]],
        cadence: str,
        name: str | None = None,
    ) -> None:
        """Register a coroutine to run every ``cadence``.

        Overlapping runs are prevented and missed runs are coalesced into one.

        Raises:
            ValueError: If cadence string is invalid.
        """
        interval = parse_cadence(cadence)
        self.scheduler.add_job(
            func,
            trigger=IntervalTrigger(**interval),
            id=job_type.value,
            name=name or job_type.value,
            max_instances=1,
            misfire_grace_time=60,
            coalesce=True,
            replace_existing=True,
        )
        logger.info(f"Added {job_type.value} job with cadence: {cadence}")

    def remove_job(self, job_type: JobType) -> None:
        if self.scheduler.get_job(job_type.value) is not None:
            self.scheduler.remove_job(job_type.value)
            logger.debug(f"Removed {job_type.value} job")

    def get_job_status(self, job_type: JobType) -> dict[str, Any]:
        """Get status of a job.

        Returns:
            Dictionary with job status.
        """
        job_name = job_type.value
        job = self.scheduler.get_job(job_name)

        if not job:
            return {
                "status": "not_found",
                "message": f"Job {job_name} not found",
                "job_name": job_name,
            }

        # Jobs added before the scheduler starts have no next_run_time yet
        next_run_time = getattr(job, "next_run_time", None)
        return {
            "status": "active" if next_run_time else "pending",
            "job_name": job_name,
            "next_run": next_run_time.isoformat() if next_run_time else None,
        }

    def start(self) -> None:
        """Start the scheduler; must be called from within a running event loop."""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Scheduler started successfully")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
