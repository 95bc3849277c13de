"""Core pipeline: webhook ingestion and the composition root that wires the services."""

import posixpath
from collections.abc import Callable
from enum import StrEnum
from typing import Any

import msgspec

from . import logger
from .callbacks import maybe_await
from .config import AnisphereConfig, MediaConfig
from .db import NewTask, Task, TaskDatabase, TaskStatus
from .errors import ConflictError, InvalidStateError, NotFoundError
from .infohash import InvalidLinkError
from .media import is_video_file, needs_transcode
from .monitor import DownloadMonitor
from .result import Result
from .scheduler import JobManager
from .torrent_client import QBittorrentClient, TorrentClientError, TorrentExistsError, create_torrent_client
from .transcoder import TranscodeEngine, TranscodeJob


class IngestOutcome(StrEnum):
    SKIPPED = "skipped"
    ALREADY_PROCESSED = "already_processed"
    NO_VIDEO = "no_video"
    CREATED = "created"


class IngestResult(msgspec.Struct):
    outcome: IngestOutcome
    message: str
    task_ids: list[int] = []


class WebhookIngestor:
    """Turns a qBittorrent "download finished" notification into per-file tasks."""

    def __init__(
        self,
        store: TaskDatabase,
        client: QBittorrentClient,
        tag: str,
        media: MediaConfig,
        on_downloaded: Callable[[Task], Any] | None = None,
    ):
        self.store = store
        self.client = client
        self.tag = tag
        self.media = media
        self._on_downloaded = on_downloaded

    def matches_tag(self, tag: str | None) -> bool:
        """qBittorrent's %G passes a comma-separated tag list."""
        return self.tag in [t.strip() for t in (tag or "").split(",")]

    async def handle(self, torrent_hash: str, tag: str | None) -> Result[IngestResult]:
        """Create one task per video file of the torrent.

        Redelivery of the same hash is a no-op. Client or store failures are
        returned as errors; tag mismatches and torrents without video are not.
        """
        if not self.matches_tag(tag):
            return Result.success(IngestResult(IngestOutcome.SKIPPED, f"Tag '{tag}' is not ours, skipped"))

        torrent_hash = torrent_hash.strip().lower()
        logger.info(f"Received webhook for torrent {torrent_hash}")

        existing = await self.store.find_by_torrent_hash(torrent_hash)
        if not existing.ok:
            return Result.failure(existing.error)
        if existing.value:
            logger.info(f"Torrent {torrent_hash} already processed")
            return Result.success(
                IngestResult(
                    IngestOutcome.ALREADY_PROCESSED,
                    "Torrent already processed",
                    [task.id for task in existing.value],
                )
            )

        info_result = await self.client.get_info(torrent_hash)
        if not info_result.ok:
            logger.error(f"Failed to get torrent info for {torrent_hash}: {info_result.error}")
            return Result.failure(info_result.error)
        info = info_result.value
        if info is None:
            return Result.failure(TorrentClientError(f"Torrent {torrent_hash} not found in client"))

        files_result = await self.client.list_files(torrent_hash)
        if not files_result.ok:
            logger.error(f"Failed to get torrent files for {torrent_hash}: {files_result.error}")
            return Result.failure(files_result.error)

        video_files = [f for f in files_result.value if is_video_file(f.name, self.media)]
        if not video_files:
            logger.warning(f"No video files in torrent {torrent_hash}")
            return Result.success(IngestResult(IngestOutcome.NO_VIDEO, "No video files in torrent"))

        # Rows for a finished torrent skip the monitor entirely
        status = TaskStatus.DOWNLOADED if info.is_complete else TaskStatus.DOWNLOADING
        entries = [
            NewTask(
                torrent_hash=torrent_hash,
                file_index=f.index,
                filename=posixpath.basename(f.name),
                file_path=posixpath.join(info.save_path, f.name),
                file_size=f.size,
                needs_transcode=needs_transcode(f.name, self.media),
                status=status,
                download_progress=100 if status is TaskStatus.DOWNLOADED else round(f.progress * 100),
            )
            for f in video_files
        ]

        created = await self.store.create_many(entries)
        if not created.ok:
            logger.error(f"Failed to create tasks for {torrent_hash}: {created.error}")
            return Result.failure(created.error)

        logger.success(f"Created {len(created.value)} task(s) for torrent {info.name or torrent_hash}")

        if status is TaskStatus.DOWNLOADED and self._on_downloaded is not None:
            for task in created.value:
                await maybe_await(self._on_downloaded(task))

        return Result.success(
            IngestResult(
                IngestOutcome.CREATED,
                f"Created {len(created.value)} task(s)",
                [task.id for task in created.value],
            )
        )


class Pipeline:
    """Composition root owning the store, torrent client, monitor and engine."""

    def __init__(
        self,
        config: AnisphereConfig,
        store: TaskDatabase | None = None,
        client: QBittorrentClient | None = None,
        engine: TranscodeEngine | None = None,
        job_manager: JobManager | None = None,
    ):
        self.config = config
        self.store = store or TaskDatabase(config.global_config.database)
        self.client = client or create_torrent_client(config.downloader)
        self.engine = engine or TranscodeEngine(self.store, config.transcode, config.media)
        self.job_manager = job_manager or JobManager()
        self.monitor = DownloadMonitor(self.store, self.client, config.media, on_downloaded=self._on_downloaded)
        self.ingestor = WebhookIngestor(
            self.store, self.client, config.downloader.tag, config.media, on_downloaded=self._on_downloaded
        )

    async def start(self) -> None:
        logger.section("===== Starting Pipeline =====")
        await self.engine.start()
        self.monitor.start(self.job_manager, self.config.monitor.cadence)

    async def stop(self) -> None:
        logger.section("===== Stopping Pipeline =====")
        self.monitor.stop()
        self.job_manager.stop()
        await self.engine.stop()
        self.client.close()
        self.store.close()

    async def _on_downloaded(self, task: Task) -> None:
        if not self.config.transcode.auto_transcode:
            return
        result = await self.transcode(task.id)
        if not result.ok:
            logger.warning(f"Automatic transcode of task {task.id} not queued: {result.error}")

    async def _get(self, task_id: int) -> Result[Task]:
        found = await self.store.find_by_id(task_id)
        if not found.ok:
            return Result.failure(found.error)
        if found.value is None:
            return Result.failure(NotFoundError(f"Task {task_id} not found"))
        return Result.success(found.value)

    async def get_task(self, task_id: int) -> Result[Task]:
        return await self._get(task_id)

    async def submit(self, link: str) -> Result[Task]:
        """Create a pending task for a magnet or .torrent link.

        A link that already has a task which has not failed is a conflict.
        """
        link = link.strip()
        if not link:
            return Result.failure(InvalidLinkError("Link cannot be empty"))

        existing = await self.store.find_by_source_url(link)
        if not existing.ok:
            return Result.failure(existing.error)
        active = [task for task in existing.value if task.status is not TaskStatus.FAILED]
        if active:
            return Result.failure(ConflictError(f"Link already submitted as task {active[0].id} ({active[0].status})"))

        created = await self.store.create(NewTask(source_url=link, filename=None))
        if created.ok:
            logger.info(f"Created task {created.value.id} for {link}")
        return created

    async def start_download(self, task_id: int) -> Result[Task]:
        """Add a pending task's link to the torrent client and move it to downloading."""
        found = await self._get(task_id)
        if not found.ok:
            return found
        task = found.value

        if task.status is not TaskStatus.PENDING:
            return Result.failure(InvalidStateError(f"Task {task_id} is {task.status}, expected pending"))
        if not task.source_url:
            return Result.failure(InvalidStateError(f"Task {task_id} has no source link"))

        added = await self.client.add_download(task.source_url)
        if added.ok:
            torrent_hash = added.value
        elif isinstance(added.error, TorrentExistsError):
            torrent_hash = added.error.torrent_hash
            logger.info(f"Torrent {torrent_hash} already in client, tracking existing download")
        else:
            await self.store.mark_failed(task_id, f"Failed to add torrent: {added.error}", TaskStatus.PENDING)
            return Result.failure(added.error)

        return await self.store.start_download(task_id, torrent_hash)

    async def transcode(self, task_id: int) -> Result[TranscodeJob]:
        found = await self._get(task_id)
        if not found.ok:
            return Result.failure(found.error)
        task = found.value

        if self.engine.is_active(task_id):
            return Result.failure(ConflictError(f"Task {task_id} is already {self.engine.status(task_id)}"))
        # A store status of transcoding without an engine entry is left over from a previous run
        if task.status not in (TaskStatus.DOWNLOADED, TaskStatus.TRANSCODING):
            return Result.failure(InvalidStateError(f"Task {task_id} is {task.status}, expected downloaded"))

        return await self.engine.submit(task)

    async def cancel(self, task_id: int) -> Result[str]:
        found = await self._get(task_id)
        if not found.ok:
            return Result.failure(found.error)

        result = await self.engine.cancel(task_id)
        if not result.ok:
            return Result.failure(InvalidStateError(str(result.error)))
        return result

    async def retry(self, task_id: int) -> Result[TranscodeJob]:
        """Reset a failed task to transcoding and queue it again without re-downloading."""
        found = await self._get(task_id)
        if not found.ok:
            return Result.failure(found.error)
        task = found.value

        if task.status is not TaskStatus.FAILED:
            return Result.failure(InvalidStateError(f"Task {task_id} is {task.status}, expected failed"))
        if not task.file_path:
            return Result.failure(InvalidStateError(f"Task {task_id} has no downloaded file to transcode"))
        if self.engine.is_active(task_id):
            return Result.failure(ConflictError(f"Task {task_id} is already {self.engine.status(task_id)}"))

        reset = await self.store.reset_by_id(task_id)
        if not reset.ok:
            return Result.failure(reset.error)

        logger.info(f"Retrying transcode for task {task_id}")
        return await self.engine.submit(reset.value)

    async def complete(self, task_id: int) -> Result[Task]:
        found = await self._get(task_id)
        if not found.ok:
            return found
        return await self.store.mark_completed(task_id)
