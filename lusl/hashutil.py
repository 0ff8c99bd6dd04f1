from __future__ import annotations

import hashlib
from typing import BinaryIO

from .constants import READ_BUFFER_SIZE


def digest(data: bytes) -> bytes:
    """16-byte MD5 digest of ``data``; detects accidental corruption only."""
    return hashlib.md5(data, usedforsecurity=False).digest()


def digest_stream(fh: BinaryIO, buffer_size: int = READ_BUFFER_SIZE) -> bytes:
    hasher = hashlib.md5(usedforsecurity=False)
    while True:
        buf = fh.read(buffer_size)
        if not buf:
            break
        hasher.update(buf)
    return hasher.digest()


def digest_file(path: str) -> bytes:
    with open(path, "rb") as fh:
        return digest_stream(fh)


EMPTY_DIGEST = digest(b"")
