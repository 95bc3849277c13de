import pytest

from anisphere.scheduler import JobManager, JobType


async def _noop():
    return None


class TestJobManager:
    @pytest.mark.asyncio
    async def test_add_and_remove_monitor_job(self):
        manager = JobManager()
        manager.add_interval_job(JobType.DOWNLOAD_MONITOR, _noop, "5 seconds")
        manager.start()
        try:
            status = manager.get_job_status(JobType.DOWNLOAD_MONITOR)
            assert status["status"] == "active"
            assert status["next_run"] is not None

            job = manager.scheduler.get_job(JobType.DOWNLOAD_MONITOR.value)
            assert job.max_instances == 1
            assert job.coalesce is True

            manager.remove_job(JobType.DOWNLOAD_MONITOR)
            assert manager.get_job_status(JobType.DOWNLOAD_MONITOR)["status"] == "not_found"
        finally:
            manager.stop()

    def test_invalid_cadence_is_rejected(self):
        manager = JobManager()
        with pytest.raises(ValueError):
            manager.add_interval_job(JobType.DOWNLOAD_MONITOR, _noop, "every now and then")

    def test_remove_missing_job_is_noop(self):
        JobManager().remove_job(JobType.DOWNLOAD_MONITOR)
