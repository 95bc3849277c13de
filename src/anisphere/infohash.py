"""Info hash computation for magnet links and .torrent metadata."""

import base64
import binascii
import hashlib
import re
from urllib.parse import parse_qsl, urlparse

import bencode

BTIH_PREFIX = "urn:btih:"
HEX_HASH_RE = re.compile(r"^[0-9a-fA-F]{40}$")
BASE32_HASH_RE = re.compile(r"^[A-Za-z2-7]{32}$")


class InvalidLinkError(ValueError):
    """Raised when a link is neither a usable magnet URI nor a .torrent file."""

    pass


def is_magnet(uri: str) -> bool:
    return uri.strip().lower().startswith("magnet:")


def magnet_info_hash(uri: str) -> str:
    """Extract the info hash from a magnet URI.

    Both the 40-character hex form and the 32-character base32 form of the
    ``xt=urn:btih:`` token are accepted; the result is always lowercase hex.

    Raises:
        InvalidLinkError: If the link carries no usable BitTorrent hash.
    """
    parsed = urlparse(uri.strip())
    if parsed.scheme.lower() != "magnet":
        raise InvalidLinkError(f"Not a magnet link: {uri}")

    for key, value in parse_qsl(parsed.query):
        if key.lower() != "xt" or not value.lower().startswith(BTIH_PREFIX):
            continue

        token = value[len(BTIH_PREFIX) :]
        if HEX_HASH_RE.match(token):
            return token.lower()
        if BASE32_HASH_RE.match(token):
            return base64.b32decode(token.upper()).hex()
        raise InvalidLinkError(f"Malformed btih token in magnet link: {token}")

    raise InvalidLinkError("Magnet link does not contain an xt=urn:btih: parameter")


def torrent_info_hash(torrent_data: bytes) -> str:
    """SHA-1 of the bencoded ``info`` dictionary of a .torrent file.

    Raises:
        InvalidLinkError: If the data is not valid bencode or lacks ``info``.
    """
    try:
        metainfo = bencode.decode(torrent_data)
    except (bencode.BencodeDecodeError, binascii.Error, ValueError, TypeError, IndexError) as e:
        raise InvalidLinkError(f"Invalid torrent file: {e}") from e

    info = metainfo.get("info", metainfo.get(b"info")) if isinstance(metainfo, dict) else None
    if not isinstance(info, dict):
        raise InvalidLinkError("Invalid torrent file: missing info dictionary")

    # bencode.encode writes dictionary keys in sorted order, which is the
    # canonical form the swarm hashes
    try:
        encoded = bencode.encode(info)
    except (TypeError, ValueError, KeyError) as e:
        raise InvalidLinkError(f"Invalid torrent file: info dictionary cannot be re-encoded: {e}") from e
    return hashlib.sha1(encoded).hexdigest()
