from __future__ import annotations

import enum
import logging
import os
import time
from typing import List, Optional, Tuple

from .binary import ByteReader
from .codec import Codec
from .constants import NONCE_SIZE, TAG_SIZE
from .encryption import EncryptionContext
from .errors import (
    ArchiveIOError,
    ConfigurationError,
    CorruptArchiveError,
    IntegrityError,
    LuslError,
)
from .hashutil import digest, digest_file
from .header import ArchiveHeader, read_header, read_metadata
from .meta import FileRecord
from .option import SerializeOption
from .pathutil import join_under


logger = logging.getLogger(__name__)


def _read_archive_bytes(path: str) -> bytes:
    try:
        with open(path, "rb") as fh:
            return fh.read()
    except OSError as exc:
        raise ArchiveIOError(f"Cannot read archive: {exc}", path=path) from exc


def read_archive_metadata(path: str) -> Tuple[ArchiveHeader, List[FileRecord]]:
    reader = ByteReader(_read_archive_bytes(path))
    header = read_header(reader)
    return header, read_metadata(reader, header.file_count)


class DeserializerState(enum.Enum):
    IDLE = "idle"
    HEADER_READ = "header_read"
    METADATA_READ = "metadata_read"
    DATA_DECODED = "data_decoded"
    FILES_WRITTEN = "files_written"
    VERIFIED = "verified"
    FAILED = "failed"


class Deserializer:
    """Restore a directory tree from an archive.

    Policy on failure is abort-all: the whole data section is decoded and
    every checksum verified before the first file is written, and if
    writing fails part-way every file and directory created by this call
    is removed again. Existing files in the destination are never
    overwritten.
    """

    def __init__(self, source_file: str, destination_dir: str):
        self.source_file = os.fspath(source_file)
        self.destination_dir = os.fspath(destination_dir)
        if not os.path.isfile(self.source_file):
            raise ArchiveIOError(f"Archive is not a regular file: {self.source_file}", path=self.source_file)
        if os.path.exists(self.destination_dir) and not os.path.isdir(self.destination_dir):
            raise ArchiveIOError(
                f"Destination exists and is not a directory: {self.destination_dir}",
                path=self.destination_dir,
            )
        self.option = SerializeOption()
        self.decryptor: Optional[EncryptionContext] = None
        self.state = DeserializerState.IDLE

    def set_options(self, option: SerializeOption) -> None:
        """Same shape as :meth:`Serializer.set_options`; the password must match."""
        option.validate()
        self.decryptor = (
            EncryptionContext.from_password(option.password, option.kdf)
            if option.password is not None
            else None
        )
        self.option = option

    def read_metadata(self) -> Tuple[ArchiveHeader, List[FileRecord]]:
        """Decode the header and metadata section only (no data, no password needed)."""
        return read_archive_metadata(self.source_file)

    def deserialize(self) -> List[FileRecord]:
        """Restore every file under the destination; returns the restored records."""
        self.state = DeserializerState.IDLE
        t0 = time.time()
        try:
            records, data = self._decode()
            pieces = self._split_and_verify(records, data)
            self._write_files(pieces)
        except LuslError:
            self.state = DeserializerState.FAILED
            raise
        logger.info(
            "restored %d files (%d bytes) into %s in %.2fs",
            len(records),
            len(data),
            self.destination_dir,
            time.time() - t0,
        )
        return records

    # internals
    def _decode(self) -> Tuple[List[FileRecord], bytes]:
        reader = ByteReader(_read_archive_bytes(self.source_file))
        header = read_header(reader)
        self.state = DeserializerState.HEADER_READ
        logger.debug(
            "archive version %s, encrypted=%s, compressed=%s, %d files",
            header.version,
            header.is_encrypted,
            header.is_compressed,
            header.file_count,
        )
        records = read_metadata(reader, header.file_count)
        self.state = DeserializerState.METADATA_READ
        expected_size = sum(r.size for r in records)

        if header.is_encrypted:
            if self.decryptor is None:
                raise ConfigurationError("Archive is encrypted; a password is required")
            compressed_size: Optional[int] = None
            if header.is_compressed:
                compressed_size = reader.read_u64("compressed size")
            aad = reader.data[: reader.pos]
            nonce = reader.read_exact(NONCE_SIZE, "nonce")
            payload = reader.read_rest()
            if len(payload) < TAG_SIZE:
                raise CorruptArchiveError("Encrypted data section is truncated")
            if compressed_size is not None and len(payload) != compressed_size + TAG_SIZE:
                raise CorruptArchiveError(
                    f"Encrypted data section is {len(payload)} bytes but header declares "
                    f"{compressed_size} + {TAG_SIZE}"
                )
            data = self.decryptor.decrypt(nonce, payload, associated_data=aad)
            if compressed_size is not None:
                data = Codec().decompress(data, expected_size)
        else:
            if self.decryptor is not None:
                logger.warning("archive %s is not encrypted; ignoring password", self.source_file)
            data = reader.read_rest()

        if len(data) != expected_size:
            raise CorruptArchiveError(
                f"Data section is {len(data)} bytes but metadata declares {expected_size}"
            )
        self.state = DeserializerState.DATA_DECODED
        return records, data

    def _split_and_verify(self, records: List[FileRecord], data: bytes) -> List[Tuple[FileRecord, bytes]]:
        pieces: List[Tuple[FileRecord, bytes]] = []
        pos = 0
        view = memoryview(data)
        for rec in records:
            chunk = bytes(view[pos : pos + rec.size])
            pos += rec.size
            actual = digest(chunk)
            if actual != rec.checksum:
                raise IntegrityError(rec.path, rec.checksum, actual)
            pieces.append((rec, chunk))
        return pieces

    def _write_files(self, pieces: List[Tuple[FileRecord, bytes]]) -> None:
        targets = [(join_under(self.destination_dir, rec.relative_path), rec, chunk) for rec, chunk in pieces]
        for target, rec, _chunk in targets:
            if os.path.lexists(target):
                raise ArchiveIOError(f"Refusing to overwrite existing file: {target}", path=target)

        created_files: List[str] = []
        created_dirs: List[str] = []
        try:
            self._makedirs(self.destination_dir, created_dirs)
            for target, rec, chunk in targets:
                self._makedirs(os.path.dirname(target), created_dirs)
                # "xb" so a file appearing since the pre-check is never clobbered
                with open(target, "xb") as wf:
                    created_files.append(target)
                    wf.write(chunk)
                logger.debug("restored %s (%d bytes)", rec.path, rec.size)
            self.state = DeserializerState.FILES_WRITTEN
            for target, rec, _chunk in targets:
                actual = digest_file(target)
                if actual != rec.checksum:
                    raise IntegrityError(rec.path, rec.checksum, actual)
            self.state = DeserializerState.VERIFIED
        except OSError as exc:
            self._rollback(created_files, created_dirs)
            raise ArchiveIOError(f"Restoring files failed: {exc}", path=exc.filename) from exc
        except LuslError:
            self._rollback(created_files, created_dirs)
            raise

    @staticmethod
    def _makedirs(path: str, created: List[str]) -> None:
        missing = []
        while path and not os.path.isdir(path):
            missing.append(path)
            parent = os.path.dirname(path)
            if parent == path:
                break
            path = parent
        for d in reversed(missing):
            os.mkdir(d)
            created.append(d)

    @staticmethod
    def _rollback(created_files: List[str], created_dirs: List[str]) -> None:
        for f in reversed(created_files):
            try:
                os.unlink(f)
            except OSError as exc:
                logger.warning("could not remove partially restored file %s: %s", f, exc)
        for d in reversed(created_dirs):
            try:
                os.rmdir(d)
            except OSError as exc:
                logger.warning("could not remove directory %s during rollback: %s", d, exc)
