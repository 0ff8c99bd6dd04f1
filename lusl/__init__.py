"""
lusl: lossless serializer for whole directory trees.

Features:

- One linear archive per directory: file tags, a metadata table
  (path, size, MD5 checksum per file), then the concatenated file data.
- Optional whole-data-section AEAD via XChaCha20-Poly1305 with an
  Argon2id password-derived key; the header and metadata are bound to
  the ciphertext as associated data.
- Optional zlib compression of the data section (only together with
  encryption).
- Every restored file is checked against its stored checksum; nothing is
  written unless the whole archive authenticates and verifies.

See SPEC_FULL.md for the on-disk format.
"""

__version__ = "0.1"

from .errors import (
    ArchiveIOError,
    AuthenticationError,
    ConfigurationError,
    CorruptArchiveError,
    IntegrityError,
    LuslError,
    UnsupportedFormatError,
)
from .encryption import KdfParams
from .meta import FileRecord
from .option import SerializeOption
from .serializer import Serializer
from .deserializer import Deserializer

__all__ = [
    "Serializer",
    "Deserializer",
    "SerializeOption",
    "KdfParams",
    "FileRecord",
    "LuslError",
    "ConfigurationError",
    "ArchiveIOError",
    "UnsupportedFormatError",
    "CorruptArchiveError",
    "AuthenticationError",
    "IntegrityError",
]
