import asyncio
import os
from unittest.mock import AsyncMock

import msgspec
import pytest

from anisphere.db import NewTask, TaskStatus
from anisphere.ffmpeg import SOFTWARE_ENCODER
from anisphere.transcoder import (
    CANCELLED_MESSAGE,
    SHUTDOWN_MESSAGE,
    TranscodeConflictError,
    TranscodeEngine,
    UnsupportedFormatError,
)


async def _downloaded(store, file_path):
    task = await store.create(
        NewTask(
            torrent_hash="c12fe1c06bba254a9dc9f519b335aa7c1367a88a",
            file_index=0,
            filename=os.path.basename(file_path),
            file_path=file_path,
            status=TaskStatus.DOWNLOADED,
            download_progress=100,
        )
    )
    return task.unwrap()


def _engine(store, transcode, media):
    return TranscodeEngine(store, transcode, media, encoder=SOFTWARE_ENCODER)


class TestTranscodeEngine:
    @pytest.mark.asyncio
    async def test_successful_transcode(self, store, media, transcode_config, input_file, wait_until):
        task = await _downloaded(store, input_file)
        engine = _engine(store, transcode_config, media)
        events = []
        engine.on_progress(events.append)
        await engine.start()
        try:
            job = (await engine.submit(task)).unwrap()
            assert job.output_dir == os.path.join(transcode_config.output_dir, f"task_{task.id}")

            async def transcoded():
                current = (await store.find_by_id(task.id)).unwrap()
                return current.status is TaskStatus.TRANSCODED

            await wait_until(transcoded)
        finally:
            await engine.stop()

        done = (await store.find_by_id(task.id)).unwrap()
        playlist = os.path.join(job.output_dir, "index.m3u8")
        assert done.transcode_output_path == playlist
        assert done.transcode_progress == 100
        assert os.path.exists(playlist)
        assert [event.percent for event in events] == [50, 99]
        assert events[-1].done is True
        assert not engine.is_active(task.id)

    @pytest.mark.asyncio
    async def test_async_observer_failures_are_contained(
        self, store, media, transcode_config, input_file, wait_until
    ):
        task = await _downloaded(store, input_file)
        engine = _engine(store, transcode_config, media)

        async def broken_observer(event):
            raise RuntimeError("observer exploded")

        engine.on_progress(broken_observer)
        await engine.start()
        try:
            await engine.submit(task)

            async def transcoded():
                return (await store.find_by_id(task.id)).unwrap().status is TaskStatus.TRANSCODED

            await wait_until(transcoded)
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_ffprobe_failure_fails_task_before_transcoding(
        self, store, media, transcode_config, input_file, write_script, wait_until
    ):
        ffprobe = write_script("ffprobe_broken", "echo 'Invalid data found' >&2\nexit 1\n")
        engine = _engine(store, msgspec.structs.replace(transcode_config, ffprobe_path=ffprobe), media)
        task = await _downloaded(store, input_file)
        await engine.start()
        try:
            await engine.submit(task)

            async def failed():
                return (await store.find_by_id(task.id)).unwrap().status is TaskStatus.FAILED

            await wait_until(failed)
        finally:
            await engine.stop()

        current = (await store.find_by_id(task.id)).unwrap()
        assert current.error_message.startswith("Probe failed")
        assert current.failed_at_status is TaskStatus.DOWNLOADED
        assert not os.path.exists(engine.output_dir_for(task.id))

    @pytest.mark.asyncio
    async def test_ffmpeg_failure_records_exit_code_and_stderr(
        self, store, media, transcode_config, input_file, write_script, wait_until
    ):
        ffmpeg = write_script("ffmpeg_failing", "echo 'Conversion failed!' >&2\nexit 1\n")
        engine = _engine(store, msgspec.structs.replace(transcode_config, ffmpeg_path=ffmpeg), media)
        task = await _downloaded(store, input_file)
        await engine.start()
        try:
            await engine.submit(task)

            async def failed():
                return (await store.find_by_id(task.id)).unwrap().status is TaskStatus.FAILED

            await wait_until(failed)
        finally:
            await engine.stop()

        current = (await store.find_by_id(task.id)).unwrap()
        assert current.error_message == "ffmpeg exited with code 1: Conversion failed!"
        assert current.failed_at_status is TaskStatus.TRANSCODING
        assert current.transcode_output_path is None
        assert not os.path.exists(engine.output_dir_for(task.id))

    @pytest.mark.asyncio
    async def test_cancel_queued_job(self, store, media, transcode_config, input_file):
        engine = _engine(store, transcode_config, media)
        task = await _downloaded(store, input_file)

        await engine.submit(task)
        assert engine.status(task.id) == "queued"

        assert (await engine.cancel(task.id)).unwrap() == "queued"

        current = (await store.find_by_id(task.id)).unwrap()
        assert current.status is TaskStatus.FAILED
        assert current.error_message == CANCELLED_MESSAGE
        assert current.failed_at_status is TaskStatus.DOWNLOADED
        assert engine.queue_length == 0
        assert not os.path.exists(engine.output_dir_for(task.id))

    @pytest.mark.asyncio
    async def test_cancel_running_job(self, store, media, transcode_config, input_file, slow_ffmpeg, wait_until):
        engine = _engine(store, msgspec.structs.replace(transcode_config, ffmpeg_path=slow_ffmpeg), media)
        task = await _downloaded(store, input_file)
        events = []
        engine.on_progress(events.append)
        await engine.start()
        try:
            await engine.submit(task)
            await wait_until(lambda: events)
            assert engine.status(task.id) == "running"

            assert (await engine.cancel(task.id)).unwrap() == "running"

            current = (await store.find_by_id(task.id)).unwrap()
            assert current.status is TaskStatus.FAILED
            assert current.error_message == CANCELLED_MESSAGE
            assert current.failed_at_status is TaskStatus.TRANSCODING
            assert not engine.is_active(task.id)
            assert not os.path.exists(engine.output_dir_for(task.id))
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_cancel_unknown_task(self, store, media, transcode_config):
        engine = _engine(store, transcode_config, media)

        result = await engine.cancel(12345)

        assert not result.ok

    @pytest.mark.asyncio
    async def test_duplicate_submission_conflicts(self, store, media, transcode_config, input_file):
        engine = _engine(store, transcode_config, media)
        task = await _downloaded(store, input_file)

        assert (await engine.submit(task)).ok
        second = await engine.submit(task)

        assert isinstance(second.error, TranscodeConflictError)
        assert engine.queue_length == 1

    @pytest.mark.asyncio
    async def test_unsupported_container_fails_task(self, store, media, transcode_config, tmp_path):
        engine = _engine(store, transcode_config, media)
        task = await _downloaded(store, str(tmp_path / "notes.txt"))

        result = await engine.submit(task)

        assert isinstance(result.error, UnsupportedFormatError)
        current = (await store.find_by_id(task.id)).unwrap()
        assert current.status is TaskStatus.FAILED
        assert current.error_message.startswith("Unsupported format (.txt)")
        assert current.failed_at_status is TaskStatus.DOWNLOADED
        assert engine.queue_length == 0

    @pytest.mark.asyncio
    async def test_stop_fails_running_and_drops_queued(
        self, store, media, transcode_config, input_file, slow_ffmpeg, wait_until
    ):
        engine = _engine(store, msgspec.structs.replace(transcode_config, ffmpeg_path=slow_ffmpeg), media)
        running = await _downloaded(store, input_file)
        queued = await _downloaded(store, input_file)
        events = []
        engine.on_progress(events.append)
        await engine.start()

        await engine.submit(running)
        await engine.submit(queued)
        await wait_until(lambda: events)
        assert engine.status(running.id) == "running"

        await engine.stop()

        first = (await store.find_by_id(running.id)).unwrap()
        second = (await store.find_by_id(queued.id)).unwrap()
        assert first.status is TaskStatus.FAILED
        assert first.error_message == SHUTDOWN_MESSAGE
        assert second.status is TaskStatus.DOWNLOADED
        assert not engine.is_running
        assert engine.active_count == 0
        assert engine.queue_length == 0

    @pytest.mark.asyncio
    async def test_cancel_during_ffprobe_holds_task_until_worker_exits(
        self, store, media, transcode_config, input_file, fake_ffprobe, write_script, wait_until
    ):
        ffprobe = write_script("ffprobe_slow", f'sleep 1\nexec "{fake_ffprobe}" "$@"\n')
        config = msgspec.structs.replace(transcode_config, ffprobe_path=ffprobe, max_concurrent=2)
        engine = _engine(store, config, media)
        task = await _downloaded(store, input_file)
        await engine.start()
        try:
            await engine.submit(task)
            await wait_until(lambda: engine.status(task.id) == "running")

            cancelling = asyncio.create_task(engine.cancel(task.id))
            await asyncio.sleep(0.2)
            # The worker still owns task_{id} while ffprobe runs, so the task cannot be queued again yet
            assert engine.status(task.id) == "running"
            assert isinstance((await engine.submit(task)).error, TranscodeConflictError)

            assert (await cancelling).unwrap() == "running"
            assert not engine.is_active(task.id)
            cancelled = (await store.find_by_id(task.id)).unwrap()
            assert cancelled.status is TaskStatus.FAILED
            assert cancelled.failed_at_status is TaskStatus.DOWNLOADED

            retried = (await store.reset_by_id(task.id)).unwrap()
            await engine.submit(retried)

            async def transcoded():
                return (await store.find_by_id(task.id)).unwrap().status is TaskStatus.TRANSCODED

            await wait_until(transcoded)
        finally:
            await engine.stop()

        assert os.path.exists(os.path.join(engine.output_dir_for(task.id), "index.m3u8"))

    @pytest.mark.asyncio
    async def test_unexpected_error_removes_partial_output(
        self, store, media, transcode_config, input_file, monkeypatch, wait_until
    ):
        engine = _engine(store, transcode_config, media)
        task = await _downloaded(store, input_file)
        monkeypatch.setattr(store, "mark_transcoding", AsyncMock(side_effect=RuntimeError("database is locked")))
        await engine.start()
        try:
            await engine.submit(task)

            async def failed():
                return (await store.find_by_id(task.id)).unwrap().status is TaskStatus.FAILED

            await wait_until(failed)
            await wait_until(lambda: not engine.is_active(task.id))
        finally:
            await engine.stop()

        current = (await store.find_by_id(task.id)).unwrap()
        assert current.error_message == "Unexpected error: database is locked"
        assert current.failed_at_status is TaskStatus.DOWNLOADED
        assert not os.path.exists(engine.output_dir_for(task.id))
