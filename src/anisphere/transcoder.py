"""
Transcoding engine.

Runs ffmpeg jobs from an ordered queue on a bounded pool of asyncio workers.
The active table (task id -> running job) is the only authority on whether a
task is transcoding right now; the task store may lag behind it.
"""

import asyncio
import codecs
import os
import shutil
from collections import deque
from collections.abc import Callable
from contextlib import suppress
from typing import Any

import msgspec
from asyncer import asyncify

from . import logger
from .callbacks import maybe_await
from .config import MediaConfig, TranscodeConfig
from .db import Task, TaskDatabase, TaskStatus
from .errors import ConflictError
from .ffmpeg import (
    EncoderProfile,
    ProbeError,
    ProgressParser,
    TranscodeProgress,
    build_ffmpeg_args,
    detect_encoder,
    playlist_path,
    probe_video,
)
from .media import file_extension, is_video_file
from .result import Result

CANCELLED_MESSAGE = "Cancelled by user"
SHUTDOWN_MESSAGE = "Transcoder shut down while job was running"


class TranscodeError(Exception):
    """Raised when a transcode request cannot be accepted or acted on."""

    pass


class TranscodeConflictError(TranscodeError, ConflictError):
    """Raised when a task is already queued or running."""

    pass


class UnsupportedFormatError(TranscodeError):
    pass


class TranscodeJob(msgspec.Struct, frozen=True):
    """A queued unit of work; discarded once the job finishes or is cancelled."""

    task_id: int
    input_path: str
    output_dir: str
    source_status: TaskStatus | None = None


class ActiveTranscode:
    """Runtime state of a job a worker has picked up."""

    def __init__(self, job: TranscodeJob):
        self.job = job
        self.process: asyncio.subprocess.Process | None = None
        self.cancelled = False
        # Status recorded as failed_at_status if the job fails or is cancelled
        self.failed_at: TaskStatus | None = job.source_status


class TranscodeEngine:
    """Queue plus worker pool that turns downloaded videos into HLS."""

    def __init__(
        self,
        store: TaskDatabase,
        transcode: TranscodeConfig,
        media: MediaConfig,
        encoder: EncoderProfile | None = None,
    ):
        self.store = store
        self.config = transcode
        self.media = media
        self.encoder = encoder

        self._queue: deque[TranscodeJob] = deque()
        self._active: dict[int, ActiveTranscode] = {}
        self._condition = asyncio.Condition()
        self._workers: list[asyncio.Task[None]] = []
        self._observers: list[Callable[[TranscodeProgress], Any]] = []

    # region Lifecycle

    async def start(self) -> None:
        """Detect the encoder (once) and start the worker pool."""
        if self._workers:
            return

        if self.encoder is None:
            self.encoder = await detect_encoder(self.config.ffmpeg_path)

        for worker_id in range(self.config.max_concurrent):
            self._workers.append(asyncio.create_task(self._worker(worker_id), name=f"transcode-worker-{worker_id}"))
        logger.info(f"Transcode engine started with {self.config.max_concurrent} worker(s) using {self.encoder.name}")

    async def stop(self) -> None:
        """Stop running processes and workers.

        Running jobs are terminated and their tasks failed. Queued jobs are
        dropped without touching their tasks, so they can be submitted again.
        """
        async with self._condition:
            dropped = len(self._queue)
            self._queue.clear()
            running = list(self._active)

        await asyncio.gather(*(self.cancel(task_id, reason=SHUTDOWN_MESSAGE) for task_id in running))

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()

        if dropped:
            logger.warning(f"Dropped {dropped} queued transcode job(s) on shutdown")
        logger.info("Transcode engine stopped")

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    # endregion

    # region Observers and status

    def on_progress(self, callback: Callable[[TranscodeProgress], Any]) -> None:
        """Register a sync or async callable receiving every progress block."""
        self._observers.append(callback)

    def status(self, task_id: int) -> str | None:
        """Return "running", "queued" or None for a task id."""
        if task_id in self._active:
            return "running"
        if any(job.task_id == task_id for job in self._queue):
            return "queued"
        return None

    def is_active(self, task_id: int) -> bool:
        return self.status(task_id) is not None

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    @property
    def active_count(self) -> int:
        return len(self._active)

    def output_dir_for(self, task_id: int) -> str:
        return os.path.join(self.config.output_dir, f"task_{task_id}")

    # endregion

    async def submit(self, task: Task) -> Result[TranscodeJob]:
        """Queue a task for transcoding.

        Fails with ``TranscodeConflictError`` if the task is already queued or
        running. An unsupported container fails the task itself.
        """
        input_path = task.file_path or ""
        if not is_video_file(input_path, self.media):
            message = f"Unsupported format ({file_extension(input_path) or 'no extension'}): {input_path}"
            await self._fail(task.id, message, task.status)
            return Result.failure(UnsupportedFormatError(message))

        job = TranscodeJob(
            task_id=task.id,
            input_path=input_path,
            output_dir=self.output_dir_for(task.id),
            source_status=task.status,
        )

        async with self._condition:
            if self.status(task.id) is not None:
                return Result.failure(TranscodeConflictError(f"Task {task.id} is already {self.status(task.id)}"))
            self._queue.append(job)
            self._condition.notify()

        logger.info(f"Queued transcode for task {task.id} (queue length: {len(self._queue)})")
        return Result.success(job)

    async def cancel(self, task_id: int, reason: str = CANCELLED_MESSAGE) -> Result[str]:
        """Cancel a queued or running job; returns which of the two it was.

        A running job stays in the active table until its worker has exited,
        so the task cannot be queued again while the old worker still owns
        its output directory. Returns once the worker is gone.
        """
        async with self._condition:
            queued = next((job for job in self._queue if job.task_id == task_id), None)
            if queued is not None:
                self._queue.remove(queued)
                active = None
            else:
                active = self._active.get(task_id)
                if active is not None and active.cancelled:
                    return Result.failure(TranscodeError(f"Task {task_id} is already being cancelled"))
                if active is not None:
                    active.cancelled = True

        if queued is not None:
            await self._fail(task_id, reason, queued.source_status)
            logger.info(f"Removed queued transcode for task {task_id}")
            return Result.success("queued")

        if active is None:
            return Result.failure(TranscodeError(f"Task {task_id} is not queued or running"))

        process = active.process
        if process is not None and process.returncode is None:
            with suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=self.config.cancel_grace)
            except TimeoutError:
                with suppress(ProcessLookupError):
                    process.kill()
                await process.wait()
                logger.warning(f"ffmpeg for task {task_id} ignored SIGTERM, killed")

        async with self._condition:
            await self._condition.wait_for(lambda: self._active.get(task_id) is not active)

        await self._remove_output(active.job.output_dir)
        await self._fail(task_id, reason, active.failed_at)
        logger.info(f"Cancelled running transcode for task {task_id}")
        return Result.success("running")

    # region Worker

    async def _worker(self, worker_id: int) -> None:
        while True:
            async with self._condition:
                await self._condition.wait_for(lambda: bool(self._queue))
                job = self._queue.popleft()
                active = ActiveTranscode(job)
                self._active[job.task_id] = active

            logger.debug(f"Worker {worker_id} picked up task {job.task_id}")
            try:
                await self._run_job(active)
            except asyncio.CancelledError:
                if active.process is not None and active.process.returncode is None:
                    with suppress(ProcessLookupError):
                        active.process.kill()
                raise
            except Exception as e:
                logger.error(f"Unexpected error transcoding task {job.task_id}: {e}")
                await self._fail_job(active, f"Unexpected error: {e}")
            finally:
                async with self._condition:
                    del self._active[job.task_id]
                    self._condition.notify_all()

    async def _fail_job(self, active: ActiveTranscode, message: str) -> None:
        """Discard the job's output and fail its task, unless cancel() owns the cleanup."""
        if active.cancelled:
            return
        await self._remove_output(active.job.output_dir)
        await self._fail(active.job.task_id, message, active.failed_at)

    async def _run_job(self, active: ActiveTranscode) -> None:
        job = active.job

        try:
            await asyncify(os.makedirs)(job.output_dir, exist_ok=True)
        except OSError as e:
            await self._fail_job(active, f"Failed to create output directory {job.output_dir}: {e}")
            return
        if active.cancelled:
            return

        try:
            video_info = await probe_video(self.config.ffprobe_path, job.input_path)
        except ProbeError as e:
            await self._fail_job(active, f"Probe failed: {e}")
            return
        if active.cancelled:
            return

        marked = await self.store.mark_transcoding(job.task_id)
        if not marked.ok:
            logger.error(f"Could not mark task {job.task_id} transcoding: {marked.error}")
            if not active.cancelled:
                await self._remove_output(job.output_dir)
            return
        active.failed_at = TaskStatus.TRANSCODING
        if active.cancelled:
            return

        args = build_ffmpeg_args(
            job.input_path,
            job.output_dir,
            video_info,
            self.encoder,
            segment_time=self.config.segment_time,
            threads=self.config.threads,
            max_height=self.config.max_height,
            audio_bitrate=self.config.audio_bitrate,
        )
        logger.debug(f"Task {job.task_id}: {self.config.ffmpeg_path} {' '.join(args)}")

        try:
            process = await asyncio.create_subprocess_exec(
                self.config.ffmpeg_path,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            await self._fail_job(active, f"Failed to start ffmpeg: {e}")
            return

        active.process = process
        if active.cancelled:
            # Cancelled while spawning, before cancel() could see the process
            with suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            return

        mode = "copy" if video_info.copy_video else self.encoder.encoder
        logger.info(f"Transcoding task {job.task_id} ({mode}, {video_info.width}x{video_info.height})")

        stderr_task = asyncio.create_task(self._read_stderr_tail(process.stderr))
        await self._read_progress(job.task_id, process.stdout, ProgressParser(job.task_id, video_info.duration))
        returncode = await process.wait()
        stderr_tail = await stderr_task

        if active.cancelled:
            return

        if returncode == 0:
            result = await self.store.mark_transcoded(job.task_id, playlist_path(job.output_dir))
            if result.ok:
                logger.success(f"Task {job.task_id} transcoded: {playlist_path(job.output_dir)}")
            else:
                logger.error(f"Could not mark task {job.task_id} transcoded: {result.error}")
            return

        logger.error(f"ffmpeg failed for task {job.task_id} with code {returncode}: {stderr_tail}")
        await self._fail_job(active, f"ffmpeg exited with code {returncode}: {stderr_tail}".strip())

    async def _read_progress(self, task_id: int, stream: asyncio.StreamReader, parser: ProgressParser) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        stored_percent = 0

        while chunk := await stream.read(4096):
            for event in parser.feed(decoder.decode(chunk)):
                stored_percent = await self._publish(event, stored_percent)
        for event in parser.feed(decoder.decode(b"", final=True)) + parser.flush():
            stored_percent = await self._publish(event, stored_percent)

    async def _read_stderr_tail(self, stream: asyncio.StreamReader) -> str:
        """Drain stderr keeping only the last ``stderr_tail`` characters."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        limit = self.config.stderr_tail
        tail = ""
        while chunk := await stream.read(4096):
            tail = (tail + decoder.decode(chunk))[-limit:]
        return (tail + decoder.decode(b"", final=True))[-limit:].strip()

    async def _publish(self, event: TranscodeProgress, stored_percent: int) -> int:
        if event.percent > stored_percent:
            result = await self.store.update_transcode_progress(event.task_id, event.percent)
            if result.ok:
                stored_percent = event.percent
                logger.progress(
                    f"Task {event.task_id}: {event.percent}% (frame={event.frame} fps={event.fps} "
                    f"speed={event.speed or 'N/A'})"
                )
            else:
                logger.warning(f"Failed to store progress for task {event.task_id}: {result.error}")

        for observer in list(self._observers):
            try:
                await maybe_await(observer(event))
            except Exception as e:
                logger.warning(f"Progress observer failed for task {event.task_id}: {e}")
        return stored_percent

    # endregion

    async def _fail(self, task_id: int, message: str, failed_at: TaskStatus | None) -> None:
        result = await self.store.mark_failed(task_id, message, failed_at)
        if not result.ok:
            logger.error(f"Could not mark task {task_id} failed: {result.error}")
        else:
            logger.warning(f"Task {task_id} failed: {message}")

    @staticmethod
    async def _remove_output(output_dir: str) -> None:
        await asyncify(shutil.rmtree)(output_dir, ignore_errors=True)
