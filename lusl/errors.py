from __future__ import annotations

from typing import Optional


class LuslError(Exception):
    """Base class for lusl-specific errors."""


class ConfigurationError(LuslError):
    """Options are inconsistent (e.g. compression without a password)."""


class ArchiveIOError(LuslError):
    """Underlying read/write/create failure.

    The originating ``OSError`` is chained as ``__cause__``.
    """

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class UnsupportedFormatError(LuslError):
    """Unknown file tags, variant, or format version."""


class CorruptArchiveError(LuslError):
    """Structural inconsistency: truncated sections or mismatched sizes."""


class AuthenticationError(LuslError):
    """AEAD tag verification failed: wrong passphrase or tampering."""


class IntegrityError(LuslError):
    def __init__(self, path: str, expected: bytes, actual: bytes):
        super().__init__(
            f"Checksum mismatch for {path}: expected {expected.hex()}, got {actual.hex()}"
        )
        self.path = path
        self.expected = expected
        self.actual = actual
