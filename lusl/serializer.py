from __future__ import annotations

import concurrent.futures as _fut
import enum
import logging
import os
import tempfile
import time
from typing import BinaryIO, List, Optional, Tuple

from .binary import pack_u64
from .codec import Codec
from .encryption import EncryptionContext, new_nonce
from .errors import ArchiveIOError, ConfigurationError, LuslError
from .hashutil import digest
from .header import ArchiveHeader, pack_metadata
from .meta import FileRecord, SourceFile, enumerate_files
from .option import SerializeOption


logger = logging.getLogger(__name__)


def _current_umask() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return mask


class SerializerState(enum.Enum):
    IDLE = "idle"
    HEADER_WRITTEN = "header_written"
    METADATA_WRITTEN = "metadata_written"
    DATA_WRITTEN = "data_written"
    FINALIZED = "finalized"
    FAILED = "failed"


def _read_source(sf: SourceFile) -> Tuple[FileRecord, bytes]:
    with open(sf.fs_path, "rb") as fh:
        data = fh.read()
    return FileRecord(relative_path=sf.relative_path, size=len(data), checksum=digest(data)), data


class Serializer:
    """Pack a directory tree into a single archive file.

    Example::

        serializer = Serializer("photos", "photos.lusl")
        serializer.set_options(SerializeOption().to_encrypt("secret").to_compress(True))
        serializer.serialize()

    The destination is written through a temporary file in the same
    directory and moved into place only once complete, so it is either
    absent (or its previous contents) or a finished archive.
    """

    def __init__(self, source_dir: str, destination_file: str):
        self.source_dir = os.fspath(source_dir)
        self.destination_file = os.fspath(destination_file)
        if not os.path.isdir(self.source_dir):
            raise ArchiveIOError(f"Source is not a directory: {self.source_dir}", path=self.source_dir)
        dest_dir = os.path.dirname(os.path.abspath(self.destination_file))
        if not os.path.isdir(dest_dir):
            raise ArchiveIOError(f"Destination directory does not exist: {dest_dir}", path=dest_dir)
        if os.path.isdir(self.destination_file):
            raise ArchiveIOError(
                f"Destination is a directory: {self.destination_file}", path=self.destination_file
            )
        self.option = SerializeOption()
        self.encryptor: Optional[EncryptionContext] = None
        self.state = SerializerState.IDLE

    def set_options(self, option: SerializeOption) -> None:
        """Validate ``option`` and derive the encryption key once, if a password is set."""
        option.validate()
        self.encryptor = (
            EncryptionContext.from_password(option.password, option.kdf)
            if option.password is not None
            else None
        )
        self.option = option

    def serialize(self) -> List[FileRecord]:
        """Write the archive; returns the stored FileRecord sequence."""
        self.state = SerializerState.IDLE
        self._check_options()
        t0 = time.time()
        tmp_path: Optional[str] = None
        try:
            sources = enumerate_files(self.source_dir, exclude=self.destination_file)
            records, data = self._collect(sources)
            dest_dir = os.path.dirname(os.path.abspath(self.destination_file))
            fd, tmp_path = tempfile.mkstemp(prefix=".lusl-", suffix=".tmp", dir=dest_dir)
            with os.fdopen(fd, "wb") as fh:
                self._write(fh, records, data)
                fh.flush()
                os.fsync(fh.fileno())
            # mkstemp creates 0600; give the archive the mode a plain open() would
            os.chmod(tmp_path, 0o666 & ~_current_umask())
            os.replace(tmp_path, self.destination_file)
            tmp_path = None
        except OSError as exc:
            self.state = SerializerState.FAILED
            raise ArchiveIOError(f"Serialization failed: {exc}", path=exc.filename) from exc
        except LuslError:
            self.state = SerializerState.FAILED
            raise
        finally:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except FileNotFoundError:
                    pass
        self.state = SerializerState.FINALIZED
        logger.info(
            "serialized %d files (%d bytes) into %s in %.2fs",
            len(records),
            len(data),
            self.destination_file,
            time.time() - t0,
        )
        return records

    # internals
    def _check_options(self) -> None:
        try:
            self.option.validate()
        except ConfigurationError:
            self.state = SerializerState.FAILED
            raise
        if self.option.is_encrypted and self.encryptor is None:
            self.state = SerializerState.FAILED
            raise ConfigurationError("Options changed without set_options(); key was never derived")

    def _collect(self, sources: List[SourceFile]) -> Tuple[List[FileRecord], bytes]:
        """Read every source once, in enumeration order.

        Size and checksum come from the same bytes that enter the data
        section, so a file changing mid-run cannot desynchronise them.
        """
        if self.option.workers > 1 and len(sources) > 1:
            with _fut.ThreadPoolExecutor(max_workers=self.option.workers) as ex:
                results = list(ex.map(_read_source, sources))
        else:
            results = [_read_source(sf) for sf in sources]
        records: List[FileRecord] = []
        data = bytearray()
        for record, content in results:
            records.append(record)
            data += content
            logger.debug("collected %s (%d bytes)", record.path, record.size)
        return records, bytes(data)

    def _write(self, fh: BinaryIO, records: List[FileRecord], data: bytes) -> None:
        header = ArchiveHeader(
            is_encrypted=self.option.is_encrypted,
            is_compressed=self.option.is_compressed,
            file_count=len(records),
        )
        # everything before the nonce doubles as AEAD associated data
        prefix = bytearray(header.pack())
        fh.write(prefix)
        self.state = SerializerState.HEADER_WRITTEN

        metadata = pack_metadata(records)
        prefix += metadata
        fh.write(metadata)
        self.state = SerializerState.METADATA_WRITTEN

        if self.encryptor is None:
            fh.write(data)
        else:
            if self.option.is_compressed:
                data = Codec().compress(data)
                size_field = pack_u64(len(data))
                prefix += size_field
                fh.write(size_field)
                logger.debug("compressed data section to %d bytes", len(data))
            nonce = new_nonce()
            ciphertext = self.encryptor.encrypt(nonce, data, associated_data=bytes(prefix))
            fh.write(nonce)
            fh.write(ciphertext)
        self.state = SerializerState.DATA_WRITTEN
