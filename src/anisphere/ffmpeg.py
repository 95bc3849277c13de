"""
FFmpeg helpers: encoder detection, source probing, HLS argument building and
progress parsing. Nothing here touches the task store.
"""

import asyncio
import os
import re

import msgspec

from . import logger

H264_CODECS = frozenset({"h264", "avc1", "avc"})
AAC_CODECS = frozenset({"aac", "mp4a"})

PLAYLIST_NAME = "index.m3u8"
SEGMENT_PATTERN = "segment_%03d.ts"


class ProbeError(Exception):
    """Raised when ffprobe fails or its output cannot be used."""

    pass


class EncoderProfile(msgspec.Struct, frozen=True):
    """H.264 encoder selected once at startup."""

    key: str
    name: str
    encoder: str
    scale_filter: str
    extra_args: tuple[str, ...] = ()
    hwaccel: str | None = None
    hwaccel_output_format: str | None = None


ENCODERS: dict[str, EncoderProfile] = {
    "qsv": EncoderProfile(
        key="qsv",
        name="Intel QSV",
        encoder="h264_qsv",
        hwaccel="qsv",
        hwaccel_output_format="qsv",
        scale_filter="scale_qsv",
        extra_args=("-preset", "medium", "-global_quality", "23"),
    ),
    "nvenc": EncoderProfile(
        key="nvenc",
        name="NVIDIA NVENC",
        encoder="h264_nvenc",
        hwaccel="cuda",
        hwaccel_output_format="cuda",
        scale_filter="scale_cuda",
        extra_args=("-preset", "p4", "-cq", "23"),
    ),
    "videotoolbox": EncoderProfile(
        key="videotoolbox",
        name="Apple VideoToolbox",
        encoder="h264_videotoolbox",
        scale_filter="scale",
        extra_args=("-q:v", "65"),
    ),
    "software": EncoderProfile(
        key="software",
        name="Software (libx264)",
        encoder="libx264",
        scale_filter="scale",
        extra_args=("-preset", "medium", "-crf", "23", "-profile:v", "high", "-level", "4.1"),
    ),
}

# Fastest first; software is always the fallback
ENCODER_PRIORITY = ("qsv", "nvenc", "videotoolbox", "software")

SOFTWARE_ENCODER = ENCODERS["software"]


def select_encoder(encoders_output: str) -> EncoderProfile:
    """Pick the first encoder in priority order listed by ``ffmpeg -encoders``."""
    for key in ENCODER_PRIORITY:
        profile = ENCODERS[key]
        if re.search(rf"(?<![\w-]){re.escape(profile.encoder)}(?![\w-])", encoders_output):
            return profile
    return SOFTWARE_ENCODER


async def detect_encoder(ffmpeg_path: str = "ffmpeg") -> EncoderProfile:
    """Detect the preferred available H.264 encoder.

    Falls back to libx264 when ffmpeg cannot be run or lists nothing better.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            ffmpeg_path,
            "-hide_banner",
            "-encoders",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
        stdout, _ = await process.communicate()
    except OSError as e:
        logger.warning(f"Could not run {ffmpeg_path} for encoder detection: {e}")
        return SOFTWARE_ENCODER

    if process.returncode != 0:
        logger.warning(f"Encoder detection exited with code {process.returncode}, using software encoder")
        return SOFTWARE_ENCODER

    profile = select_encoder(stdout.decode("utf-8", errors="replace"))
    logger.info(f"Using encoder: {profile.name} ({profile.encoder})")
    return profile


# region Probe


class _ProbeStream(msgspec.Struct):
    codec_type: str = ""
    codec_name: str = ""
    width: int = 0
    height: int = 0


class _ProbeFormat(msgspec.Struct):
    duration: str | None = None


class _ProbeOutput(msgspec.Struct):
    streams: list[_ProbeStream] = []
    format: _ProbeFormat = msgspec.field(default_factory=_ProbeFormat)


class VideoInfo(msgspec.Struct, frozen=True):
    """Source media facts needed to build the ffmpeg command."""

    duration: float
    width: int
    height: int
    video_codec: str
    audio_codec: str | None = None

    @property
    def copy_video(self) -> bool:
        return self.video_codec.lower() in H264_CODECS

    @property
    def copy_audio(self) -> bool:
        return self.audio_codec is not None and self.audio_codec.lower() in AAC_CODECS


def parse_probe_output(raw: bytes) -> VideoInfo:
    """Build VideoInfo from ``ffprobe -print_format json`` output.

    Raises:
        ProbeError: If the output is not valid JSON or has no video stream.
    """
    try:
        probe = msgspec.json.decode(raw, type=_ProbeOutput)
    except (msgspec.DecodeError, msgspec.ValidationError) as e:
        raise ProbeError(f"Invalid ffprobe output: {e}") from e

    video = next((s for s in probe.streams if s.codec_type == "video"), None)
    if video is None or not video.codec_name:
        raise ProbeError("No video stream found")
    audio = next((s for s in probe.streams if s.codec_type == "audio"), None)

    try:
        duration = float(probe.format.duration) if probe.format.duration else 0.0
    except ValueError:
        duration = 0.0

    return VideoInfo(
        duration=duration,
        width=video.width,
        height=video.height,
        video_codec=video.codec_name,
        audio_codec=audio.codec_name if audio and audio.codec_name else None,
    )


async def probe_video(ffprobe_path: str, input_path: str) -> VideoInfo:
    """Run ffprobe against ``input_path``.

    Raises:
        ProbeError: On spawn failure, non-zero exit or unusable output.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            ffprobe_path,
            "-v",
            "quiet",
            "-print_format",
            "json",
            "-show_format",
            "-show_streams",
            input_path,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
    except OSError as e:
        raise ProbeError(f"Failed to run ffprobe: {e}") from e

    if process.returncode != 0:
        detail = stderr.decode("utf-8", errors="replace").strip()[-200:]
        raise ProbeError(f"ffprobe exited with code {process.returncode}" + (f": {detail}" if detail else ""))

    return parse_probe_output(stdout)


# endregion


def playlist_path(output_dir: str) -> str:
    return os.path.join(output_dir, PLAYLIST_NAME)


def build_ffmpeg_args(
    input_path: str,
    output_dir: str,
    video_info: VideoInfo,
    encoder: EncoderProfile,
    segment_time: int = 6,
    threads: int = 0,
    max_height: int = 1080,
    audio_bitrate: str = "128k",
) -> list[str]:
    """Build ffmpeg arguments (without the binary) for single-rendition VOD HLS.

    H.264 video is copied and never scaled. Other codecs are re-encoded with
    ``encoder`` and scaled down to ``max_height`` only when taller.
    """
    args: list[str] = []

    if video_info.copy_video:
        args += ["-i", input_path, "-y", "-c:v", "copy"]
    else:
        if encoder.hwaccel:
            args += ["-hwaccel", encoder.hwaccel]
            if encoder.hwaccel_output_format:
                args += ["-hwaccel_output_format", encoder.hwaccel_output_format]

        args += ["-i", input_path, "-y", "-c:v", encoder.encoder, *encoder.extra_args]

        if video_info.height > max_height:
            if encoder.scale_filter == "scale":
                args += ["-vf", f"scale=-2:{max_height}"]
            else:
                args += ["-vf", f"{encoder.scale_filter}=w=-1:h={max_height}"]

    if video_info.copy_audio:
        args += ["-c:a", "copy"]
    else:
        args += ["-c:a", "aac", "-b:a", audio_bitrate]

    args += [
        "-threads",
        str(threads),
        "-f",
        "hls",
        "-hls_time",
        str(segment_time),
        "-hls_list_size",
        "0",
        "-hls_segment_type",
        "mpegts",
        "-hls_segment_filename",
        os.path.join(output_dir, SEGMENT_PATTERN),
        "-hls_playlist_type",
        "vod",
        "-progress",
        "pipe:1",
        playlist_path(output_dir),
    ]
    return args


# region Progress


class TranscodeProgress(msgspec.Struct):
    """One ``-progress`` block reported by a running ffmpeg."""

    task_id: int
    percent: int
    current_time: float
    duration: float
    frame: int = 0
    fps: float = 0.0
    speed: str | None = None
    done: bool = False


_SPEED_RE = re.compile(r"([\d.]+)x")


class ProgressParser:
    """Incremental parser for ffmpeg's ``-progress pipe:1`` key=value stream.

    Chunks may split lines anywhere; the unterminated tail is carried over to
    the next ``feed``. A ``TranscodeProgress`` is produced each time a block
    ends with its ``progress=continue`` or ``progress=end`` line. Percent is
    capped at 99; 100 is only ever written when the process has succeeded.
    """

    def __init__(self, task_id: int, duration: float):
        self.task_id = task_id
        self.duration = duration
        self._buffer = ""
        self._current_time = 0.0
        self._percent = 0
        self._frame = 0
        self._fps = 0.0
        self._speed: str | None = None

    def feed(self, chunk: str) -> list[TranscodeProgress]:
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        events = []
        for line in lines:
            event = self._parse_line(line)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[TranscodeProgress]:
        """Parse a final line that arrived without a trailing newline."""
        tail, self._buffer = self._buffer, ""
        event = self._parse_line(tail) if tail else None
        return [event] if event is not None else []

    def _parse_line(self, line: str) -> TranscodeProgress | None:
        key, sep, value = line.strip().partition("=")
        if not sep:
            return None
        value = value.strip()

        try:
            if key in ("out_time_us", "out_time_ms"):
                # Both keys carry microseconds
                self._set_time(int(value) / 1_000_000)
            elif key == "frame":
                self._frame = int(value)
            elif key == "fps":
                self._fps = float(value)
            elif key == "speed":
                speed = _SPEED_RE.match(value)
                if speed:
                    self._speed = f"{speed.group(1)}x"
            elif key == "progress":
                return self._emit(done=value == "end")
        except ValueError:
            # "N/A" values appear before the first frame is written
            pass
        return None

    def _set_time(self, seconds: float) -> None:
        self._current_time = max(seconds, 0.0)
        if self.duration > 0:
            percent = min(round(self._current_time / self.duration * 100), 99)
            self._percent = max(self._percent, percent)

    def _emit(self, done: bool) -> TranscodeProgress:
        return TranscodeProgress(
            task_id=self.task_id,
            percent=self._percent,
            current_time=self._current_time,
            duration=self.duration,
            frame=self._frame,
            fps=self._fps,
            speed=self._speed,
            done=done,
        )


# endregion
