import asyncio
import json
import os
import stat

import pytest

from anisphere.config import MediaConfig, TranscodeConfig
from anisphere.db import TaskDatabase


@pytest.fixture
def store(tmp_path):
    database = TaskDatabase(str(tmp_path / "tasks.db"))
    yield database
    database.close()


@pytest.fixture
def media():
    return MediaConfig()


@pytest.fixture
def write_script(tmp_path):
    """Write an executable /bin/sh script into tmp_path and return its path."""

    def _write(name, body):
        path = tmp_path / name
        path.write_text("#!/bin/sh\n" + body)
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return _write


@pytest.fixture
def fake_ffprobe(write_script):
    """ffprobe stand-in reporting a 10 second 1080p HEVC/FLAC source."""
    output = {
        "streams": [
            {"codec_type": "video", "codec_name": "hevc", "width": 1920, "height": 1080},
            {"codec_type": "audio", "codec_name": "flac"},
        ],
        "format": {"duration": "10.000000"},
    }
    return write_script("ffprobe", f"cat <<'EOF'\n{json.dumps(output)}\nEOF\n")


@pytest.fixture
def fake_ffmpeg(write_script):
    """ffmpeg stand-in that reports two progress blocks and writes the playlist (last argument)."""
    return write_script(
        "ffmpeg",
        "for last; do :; done\n"
        "printf 'frame=125\\nfps=25.0\\nout_time_us=5000000\\nspeed=2.01x\\nprogress=continue\\n'\n"
        "printf 'frame=250\\nfps=25.0\\nout_time_us=10000000\\nspeed=2.00x\\nprogress=end\\n'\n"
        'echo "#EXTM3U" > "$last"\n'
        "exit 0\n",
    )


@pytest.fixture
def slow_ffmpeg(write_script):
    """ffmpeg stand-in that reports one progress block, then blocks until signalled."""
    return write_script(
        "ffmpeg_slow",
        "printf 'out_time_us=1000000\\nprogress=continue\\n'\nexec sleep 30\n",
    )


@pytest.fixture
def transcode_config(tmp_path, fake_ffmpeg, fake_ffprobe):
    return TranscodeConfig(
        ffmpeg_path=fake_ffmpeg,
        ffprobe_path=fake_ffprobe,
        output_dir=str(tmp_path / "hls"),
        cancel_grace=2.0,
    )


@pytest.fixture
def wait_until():
    """Poll a sync or async predicate until it is truthy."""

    async def _wait(predicate, timeout=10.0, interval=0.02):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            result = predicate()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return result
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(interval)

    return _wait


@pytest.fixture
def input_file(tmp_path):
    path = tmp_path / "downloads" / "episode.mkv"
    os.makedirs(path.parent, exist_ok=True)
    path.write_bytes(b"\x00" * 16)
    return str(path)
