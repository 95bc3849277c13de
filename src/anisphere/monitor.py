"""Download monitor: reconciles downloading tasks with the torrent client."""

from collections.abc import Callable
from typing import Any

import msgspec

from . import logger
from .callbacks import maybe_await
from .config import MediaConfig
from .db import Task, TaskDatabase, TaskStatus
from .media import file_extension, is_video_file, needs_transcode
from .scheduler import JobManager, JobType
from .torrent_client import QBittorrentClient, TorrentState


class MonitorStats(msgspec.Struct):
    """Counters for one reconciliation cycle."""

    checked: int = 0
    progressed: int = 0
    downloaded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0


class DownloadMonitor:
    """Polls qBittorrent for every ``downloading`` task and advances its state."""

    def __init__(
        self,
        store: TaskDatabase,
        client: QBittorrentClient,
        media: MediaConfig,
        on_downloaded: Callable[[Task], Any] | None = None,
    ):
        self.store = store
        self.client = client
        self.media = media
        self._on_downloaded = on_downloaded
        self._job_manager: JobManager | None = None

    def start(self, job_manager: JobManager, cadence: str) -> None:
        """Register the reconciliation loop on the scheduler."""
        job_manager.add_interval_job(JobType.DOWNLOAD_MONITOR, self.run_cycle, cadence, name="Download Monitor")
        job_manager.start()
        self._job_manager = job_manager
        logger.info("Download monitoring started")

    def stop(self) -> None:
        if self._job_manager is not None:
            self._job_manager.remove_job(JobType.DOWNLOAD_MONITOR)
            self._job_manager = None
            logger.info("Download monitoring stopped")

    async def run_cycle(self) -> MonitorStats:
        """Check every downloading task once.

        One task's failure never stops the remaining tasks from being checked.
        """
        stats = MonitorStats()

        tasks_result = await self.store.find_by_status(TaskStatus.DOWNLOADING)
        if not tasks_result.ok:
            logger.error(f"Download monitor could not load tasks: {tasks_result.error}")
            stats.errors += 1
            return stats

        for task in tasks_result.value:
            stats.checked += 1
            try:
                await self._check_task(task, stats)
            except Exception as e:
                stats.errors += 1
                logger.error(f"Error checking task {task.id}: {e}")

        if stats.checked:
            logger.debug(
                f"Monitor cycle: checked={stats.checked} progressed={stats.progressed} "
                f"downloaded={stats.downloaded} failed={stats.failed} errors={stats.errors}"
            )
        return stats

    async def _check_task(self, task: Task, stats: MonitorStats) -> None:
        if not task.torrent_hash:
            # Can never resolve, so fail now instead of retrying forever
            await self._fail(task, "Task has no torrent hash", TaskStatus.DOWNLOADING, stats)
            return

        info_result = await self.client.get_info(task.torrent_hash)
        if not info_result.ok:
            stats.errors += 1
            logger.warning(f"Could not query torrent {task.torrent_hash} for task {task.id}: {info_result.error}")
            return

        info = info_result.value
        if info is None:
            stats.skipped += 1
            logger.debug(f"Torrent {task.torrent_hash} for task {task.id} not found in client")
            return

        if info.torrent_state is TorrentState.METADATA_DOWNLOADING:
            stats.skipped += 1
            return

        progress = round(info.progress * 100)
        if progress != task.download_progress:
            progress_result = await self.store.update_download_progress(task.id, progress)
            if not progress_result.ok:
                stats.errors += 1
                logger.warning(f"Failed to store progress for task {task.id}: {progress_result.error}")
            elif progress_result.value:
                stats.progressed += 1
                logger.progress(f"Task {task.id} download progress: {progress}%")

        if not info.is_complete:
            return

        # File-per-task rows carry their own path; torrent-level rows use the torrent's content path
        if task.file_index is not None and task.file_path:
            path, size = task.file_path, task.file_size or 0
        else:
            path, size = info.content_path, info.size

        if not is_video_file(path, self.media):
            ext = file_extension(path) or "no extension"
            await self._fail(task, f"Unsupported format ({ext}): {path}", None, stats)
            return

        downloaded = await self.store.mark_downloaded(task.id, path, size, needs_transcode(path, self.media))
        if not downloaded.ok:
            stats.errors += 1
            logger.error(f"Failed to mark task {task.id} downloaded: {downloaded.error}")
            return

        stats.downloaded += 1
        logger.success(f"Task {task.id} downloaded: {path}")

        if self._on_downloaded is not None:
            await maybe_await(self._on_downloaded(downloaded.value))

    async def _fail(self, task: Task, message: str, failed_at: TaskStatus | None, stats: MonitorStats) -> None:
        result = await self.store.mark_failed(task.id, message, failed_at)
        if not result.ok:
            stats.errors += 1
            logger.error(f"Failed to mark task {task.id} failed: {result.error}")
            return
        stats.failed += 1
        logger.warning(f"Task {task.id} failed: {message}")
