from __future__ import annotations

import zlib
from typing import Optional

from .constants import COMPRESSION_LEVEL
from .errors import CorruptArchiveError


class Codec:
    """Whole-buffer zlib codec for the data section."""

    def __init__(self, level: Optional[int] = None):
        self.level = COMPRESSION_LEVEL if level is None else level
        if not 0 <= self.level <= 9:
            raise ValueError(f"zlib level must be in 0..9, got {self.level}")

    def compress(self, data: bytes) -> bytes:
        return zlib.compress(data, self.level)

    def decompress(self, data: bytes, expected_size: int) -> bytes:
        """Inflate ``data`` and require exactly ``expected_size`` bytes of output.

        Output is capped one byte past ``expected_size`` so an oversized
        stream is detected without inflating it completely.
        """
        d = zlib.decompressobj()
        try:
            out = d.decompress(data, expected_size + 1)
        except zlib.error as e:
            raise CorruptArchiveError(f"zlib decompression failed: {e}") from e
        if len(out) > expected_size or d.unconsumed_tail:
            raise CorruptArchiveError(
                f"Decompressed data section exceeds expected size of {expected_size} bytes"
            )
        if not d.eof:
            raise CorruptArchiveError("Compressed data section is truncated")
        if d.unused_data:
            raise CorruptArchiveError("Trailing bytes after compressed data section")
        if len(out) != expected_size:
            raise CorruptArchiveError(
                f"Decompressed data section is {len(out)} bytes, expected {expected_size}"
            )
        return out
