"""Container/extension checks shared by the ingestor, monitor and engine."""

import posixpath

from .config import MediaConfig


def file_extension(path: str) -> str:
    """Lowercased extension of the last path component, including the dot."""
    return posixpath.splitext(path.replace("\\", "/"))[1].lower()


def is_video_file(path: str, media: MediaConfig) -> bool:
    return file_extension(path) in media.video_extensions


def needs_transcode(path: str, media: MediaConfig) -> bool:
    """True unless the container is already directly playable."""
    return file_extension(path) not in media.direct_play_extensions
