from unittest.mock import AsyncMock, MagicMock

import pytest

from anisphere.config import MediaConfig
from anisphere.db import NewTask, TaskStatus
from anisphere.monitor import DownloadMonitor
from anisphere.result import Result
from anisphere.torrent_client import ClientTorrentInfo, TorrentClientError

HASH = "c12fe1c06bba254a9dc9f519b335aa7c1367a88a"
OTHER_HASH = "0" * 40


def _info(progress=1.0, state="stalledUP", content_path="/downloads/Episode 01.mp4", size=1000):
    return ClientTorrentInfo(
        hash=HASH, name="Episode 01", progress=progress, state=state, content_path=content_path, size=size
    )


async def _downloading(store, torrent_hash=HASH, **fields):
    task = (await store.create(NewTask(source_url="magnet:?xt=urn:btih:x", **fields))).unwrap()
    return (await store.start_download(task.id, torrent_hash)).unwrap()


@pytest.fixture
def client():
    qbit = MagicMock()
    qbit.get_info = AsyncMock(return_value=Result.success(_info()))
    return qbit


class TestDownloadMonitor:
    @pytest.mark.asyncio
    async def test_completed_video_is_marked_downloaded(self, store, client, media):
        callback = AsyncMock()
        task = await _downloading(store)
        monitor = DownloadMonitor(store, client, media, on_downloaded=callback)

        stats = await monitor.run_cycle()

        updated = (await store.find_by_id(task.id)).unwrap()
        assert updated.status is TaskStatus.DOWNLOADED
        assert updated.file_path == "/downloads/Episode 01.mp4"
        assert updated.file_size == 1000
        assert updated.needs_transcode is False
        assert stats.downloaded == 1
        callback.assert_awaited_once()
        assert callback.await_args.args[0].id == task.id

    @pytest.mark.asyncio
    async def test_sync_callback_is_supported(self, store, client, media):
        seen = []
        await _downloading(store)
        monitor = DownloadMonitor(store, client, media, on_downloaded=seen.append)

        await monitor.run_cycle()

        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_mkv_outside_configured_set_fails_without_phase(self, store, client):
        media = MediaConfig(video_extensions=[".mp4"], direct_play_extensions=[".mp4"])
        client.get_info.return_value = Result.success(_info(content_path="/downloads/Episode 01.mkv"))
        task = await _downloading(store)

        stats = await DownloadMonitor(store, client, media).run_cycle()

        failed = (await store.find_by_id(task.id)).unwrap()
        assert failed.status is TaskStatus.FAILED
        assert failed.failed_at_status is None
        assert failed.error_message == "Unsupported format (.mkv): /downloads/Episode 01.mkv"
        assert stats.failed == 1

    @pytest.mark.asyncio
    async def test_progress_is_stored_until_complete(self, store, client, media):
        client.get_info.return_value = Result.success(_info(progress=0.426, state="downloading"))
        task = await _downloading(store)

        stats = await DownloadMonitor(store, client, media).run_cycle()

        updated = (await store.find_by_id(task.id)).unwrap()
        assert updated.status is TaskStatus.DOWNLOADING
        assert updated.download_progress == 43
        assert stats.progressed == 1

    @pytest.mark.asyncio
    async def test_full_progress_before_upload_state_is_not_complete(self, store, client, media):
        client.get_info.return_value = Result.success(_info(progress=1.0, state="checkingDL"))
        task = await _downloading(store)

        await DownloadMonitor(store, client, media).run_cycle()

        assert (await store.find_by_id(task.id)).unwrap().status is TaskStatus.DOWNLOADING

    @pytest.mark.asyncio
    async def test_metadata_downloading_is_skipped(self, store, client, media):
        client.get_info.return_value = Result.success(_info(progress=0.0, state="metaDL"))
        task = await _downloading(store)

        stats = await DownloadMonitor(store, client, media).run_cycle()

        assert stats.skipped == 1
        assert (await store.find_by_id(task.id)).unwrap().status is TaskStatus.DOWNLOADING

    @pytest.mark.asyncio
    async def test_unknown_torrent_is_skipped(self, store, client, media):
        client.get_info.return_value = Result.success(None)
        task = await _downloading(store)

        stats = await DownloadMonitor(store, client, media).run_cycle()

        assert stats.skipped == 1
        assert (await store.find_by_id(task.id)).unwrap().status is TaskStatus.DOWNLOADING

    @pytest.mark.asyncio
    async def test_missing_hash_fails_task(self, store, client, media):
        task = (await store.create(NewTask(status=TaskStatus.DOWNLOADING))).unwrap()

        await DownloadMonitor(store, client, media).run_cycle()

        failed = (await store.find_by_id(task.id)).unwrap()
        assert failed.status is TaskStatus.FAILED
        assert failed.failed_at_status is TaskStatus.DOWNLOADING
        client.get_info.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_one_client_error_does_not_stop_the_cycle(self, store, client, media):
        first = await _downloading(store, torrent_hash=OTHER_HASH)
        second = await _downloading(store)

        async def get_info(torrent_hash):
            if torrent_hash == OTHER_HASH:
                return Result.failure(TorrentClientError("connection refused"))
            return Result.success(_info())

        client.get_info.side_effect = get_info

        stats = await DownloadMonitor(store, client, media).run_cycle()

        assert stats.errors == 1
        assert (await store.find_by_id(first.id)).unwrap().status is TaskStatus.DOWNLOADING
        assert (await store.find_by_id(second.id)).unwrap().status is TaskStatus.DOWNLOADED

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_contained(self, store, client, media):
        first = await _downloading(store, torrent_hash=OTHER_HASH)
        second = await _downloading(store)

        async def get_info(torrent_hash):
            if torrent_hash == OTHER_HASH:
                raise RuntimeError("boom")
            return Result.success(_info())

        client.get_info.side_effect = get_info

        stats = await DownloadMonitor(store, client, media).run_cycle()

        assert stats.errors == 1
        assert (await store.find_by_id(first.id)).unwrap().status is TaskStatus.DOWNLOADING
        assert (await store.find_by_id(second.id)).unwrap().status is TaskStatus.DOWNLOADED

    @pytest.mark.asyncio
    async def test_per_file_task_uses_its_own_path(self, store, client, media):
        client.get_info.return_value = Result.success(_info(content_path="/downloads/Season 1", size=9000))
        task = await _downloading(
            store, file_index=3, file_path="/downloads/Season 1/ep04.mkv", file_size=2500, filename="ep04.mkv"
        )

        await DownloadMonitor(store, client, media).run_cycle()

        updated = (await store.find_by_id(task.id)).unwrap()
        assert updated.status is TaskStatus.DOWNLOADED
        assert updated.file_path == "/downloads/Season 1/ep04.mkv"
        assert updated.file_size == 2500
        assert updated.needs_transcode is True
