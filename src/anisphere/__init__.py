"""Anisphere - Torrent acquisition to streamable HLS media pipeline."""

__version__ = "0.1.0"
__description__ = (
    "Acquires video through qBittorrent, tracks downloads to completion and "
    "transcodes the result into single-rendition HLS with hardware encoders when available"
)

from .cli import main

__all__ = ["main", "__version__", "__description__"]
