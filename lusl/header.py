from __future__ import annotations

"""
Archive header and metadata-section codec.

Layout (little endian):

- file_tags (12 bytes): magic[8] || flags u8 || major u8 || minor u8 || patch u8
- file_count: varint
- file_count x record:
    path_length varint || path utf8 || size u64 || checksum[16]

Decoding validates ``file_tags`` before touching anything else and stops
after exactly ``file_count`` records, whatever follows.
"""

import struct
from dataclasses import dataclass
from typing import List, Tuple

from .binary import ByteReader, is_flag_set, pack_u64, varint_encode
from .constants import (
    CHECKSUM_SIZE,
    FILE_MAGIC,
    FLAG_COMPRESSED,
    FLAG_ENCRYPTED,
    FLAG_RESERVED_MASK,
    KNOWN_VARIANTS,
    SIZE_FIELD_SIZE,
    VERSION_MAJOR,
    VERSION_MINOR,
    VERSION_PATCH,
)
from .errors import CorruptArchiveError, UnsupportedFormatError
from .meta import FileRecord
from .pathutil import bytes_to_segments, segments_to_bytes


_FILE_TAGS_STRUCT = struct.Struct("<8sBBBB")
FILE_TAGS_SIZE = _FILE_TAGS_STRUCT.size

# smallest possible record: 1-byte path length, 1-byte path, size, checksum
_MIN_RECORD_SIZE = 2 + SIZE_FIELD_SIZE + CHECKSUM_SIZE


@dataclass(frozen=True, order=True)
class Version:
    major: int = VERSION_MAJOR
    minor: int = VERSION_MINOR
    patch: int = VERSION_PATCH

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"

    def is_compatible(self) -> bool:
        return self.major == VERSION_MAJOR


@dataclass(frozen=True)
class ArchiveHeader:
    is_encrypted: bool = False
    is_compressed: bool = False
    file_count: int = 0
    version: Version = Version()

    @property
    def flags(self) -> int:
        flags = 0
        if self.is_encrypted:
            flags |= FLAG_ENCRYPTED
        if self.is_compressed:
            flags |= FLAG_COMPRESSED
        return flags

    def file_tags(self) -> bytes:
        if self.flags not in KNOWN_VARIANTS:
            raise UnsupportedFormatError("Compression without encryption is not a defined variant")
        v = self.version
        return _FILE_TAGS_STRUCT.pack(FILE_MAGIC, self.flags, v.major, v.minor, v.patch)

    def pack(self) -> bytes:
        return self.file_tags() + varint_encode(self.file_count)


def read_file_tags(reader: ByteReader) -> Tuple[bool, bool, Version]:
    """Decode and validate ``file_tags``; returns (encrypted, compressed, version)."""
    if reader.remaining() < FILE_TAGS_SIZE:
        raise UnsupportedFormatError("File is too short to be a lusl archive")
    magic, flags, vmaj, vmin, vpatch = _FILE_TAGS_STRUCT.unpack(reader.read_exact(FILE_TAGS_SIZE))
    if magic != FILE_MAGIC:
        raise UnsupportedFormatError("Bad file tag; not a lusl archive")
    version = Version(vmaj, vmin, vpatch)
    if not version.is_compatible():
        raise UnsupportedFormatError(f"Unsupported archive version {version}")
    if flags & FLAG_RESERVED_MASK or flags not in KNOWN_VARIANTS:
        raise UnsupportedFormatError(f"Unknown archive variant flags 0x{flags:02x}")
    return is_flag_set(flags, FLAG_ENCRYPTED), is_flag_set(flags, FLAG_COMPRESSED), version


def read_header(reader: ByteReader) -> ArchiveHeader:
    encrypted, compressed, version = read_file_tags(reader)
    file_count = reader.read_varint()
    if file_count * _MIN_RECORD_SIZE > reader.remaining():
        raise CorruptArchiveError(
            f"Archive declares {file_count} files but only {reader.remaining()} bytes follow"
        )
    return ArchiveHeader(
        is_encrypted=encrypted,
        is_compressed=compressed,
        file_count=file_count,
        version=version,
    )


def pack_record(record: FileRecord) -> bytes:
    raw_path = segments_to_bytes(record.relative_path)
    return varint_encode(len(raw_path)) + raw_path + pack_u64(record.size) + record.checksum


def pack_metadata(records: List[FileRecord]) -> bytes:
    out = bytearray()
    for r in records:
        out += pack_record(r)
    return bytes(out)


def read_record(reader: ByteReader) -> FileRecord:
    path_len = reader.read_varint()
    raw_path = reader.read_exact(path_len, "path")
    segments = bytes_to_segments(raw_path)
    size = reader.read_u64("file size")
    checksum = reader.read_exact(CHECKSUM_SIZE, "checksum")
    return FileRecord(relative_path=segments, size=size, checksum=checksum)


def read_metadata(reader: ByteReader, file_count: int) -> List[FileRecord]:
    """Read exactly ``file_count`` records; paths must be unique and not nest inside each other."""
    records: List[FileRecord] = []
    seen = set()
    for _ in range(file_count):
        rec = read_record(reader)
        if rec.relative_path in seen:
            raise CorruptArchiveError(f"Duplicate path in archive: {rec.path}")
        seen.add(rec.relative_path)
        records.append(rec)
    # a file path may not also be a parent directory of another file
    for rec in records:
        for i in range(1, len(rec.relative_path)):
            if rec.relative_path[:i] in seen:
                raise CorruptArchiveError(
                    f"Archive path {'/'.join(rec.relative_path[:i])} is both a file and a directory"
                )
    return records
