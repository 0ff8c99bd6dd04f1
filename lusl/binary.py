from __future__ import annotations

"""
Low-level binary helpers shared by the header and archive codecs.

- Integers: unsigned LEB128 varint for variable-width fields
- Fixed-width integers: little endian via ``struct``
- ``ByteReader``: bounded cursor over an in-memory archive; every read
  that runs past the end raises ``CorruptArchiveError`` instead of
  returning a short slice.
"""

import struct

from .errors import CorruptArchiveError


_U64 = struct.Struct("<Q")


def varint_encode(n: int) -> bytes:
    if n < 0:
        raise ValueError("varint: negative not supported")
    out = bytearray()
    while True:
        b = n & 0x7F
        n >>= 7
        if n:
            out.append(b | 0x80)
        else:
            out.append(b)
            break
    return bytes(out)


def varint_decode(data: bytes, pos: int) -> tuple[int, int]:
    """Decode a varint at ``pos``; returns ``(value, next_pos)``."""
    shift = 0
    result = 0
    while True:
        if pos >= len(data):
            raise CorruptArchiveError("varint: truncated")
        b = data[pos]
        pos += 1
        result |= (b & 0x7F) << shift
        if not (b & 0x80):
            return result, pos
        shift += 7
        if shift > 63:
            raise CorruptArchiveError("varint: too large")


def pack_u64(n: int) -> bytes:
    return _U64.pack(n)


def is_flag_set(data: int, flag: int) -> bool:
    return (data & flag) != 0


class ByteReader:
    def __init__(self, data: bytes, pos: int = 0):
        self.data = data
        self.pos = pos

    def remaining(self) -> int:
        return len(self.data) - self.pos

    def read_exact(self, n: int, what: str = "data") -> bytes:
        if n < 0 or self.pos + n > len(self.data):
            raise CorruptArchiveError(
                f"Unexpected end of archive while reading {what} "
                f"(need {n} bytes at offset {self.pos}, have {self.remaining()})"
            )
        b = self.data[self.pos : self.pos + n]
        self.pos += n
        return b

    def read_varint(self) -> int:
        value, self.pos = varint_decode(self.data, self.pos)
        return value

    def read_u64(self, what: str = "u64") -> int:
        return _U64.unpack(self.read_exact(_U64.size, what))[0]

    def read_rest(self) -> bytes:
        b = self.data[self.pos :]
        self.pos = len(self.data)
        return b
