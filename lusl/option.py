from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Optional

from .encryption import KdfParams
from .errors import ConfigurationError


@dataclass(frozen=True)
class SerializeOption:
    """Options shared by :class:`Serializer` and :class:`Deserializer`.

    Compression is only defined together with encryption, so
    ``compress=True`` without a password fails validation.

    Example::

        option = SerializeOption().to_encrypt("secret").to_compress(True)
        assert option.is_encrypted and option.is_compressed
    """

    password: Optional[str] = None
    compress: bool = False
    kdf: KdfParams = field(default_factory=KdfParams)
    workers: int = 1

    @property
    def is_encrypted(self) -> bool:
        return self.password is not None

    @property
    def is_compressed(self) -> bool:
        return self.compress

    def to_encrypt(self, password: str) -> "SerializeOption":
        return replace(self, password=password)

    def to_compress(self, compress: bool) -> "SerializeOption":
        return replace(self, compress=compress)

    def with_kdf(self, kdf: KdfParams) -> "SerializeOption":
        return replace(self, kdf=kdf)

    def with_workers(self, workers: int) -> "SerializeOption":
        return replace(self, workers=workers)

    def validate(self) -> None:
        if self.password is not None and not self.password:
            raise ConfigurationError("Encryption password must not be empty")
        if self.compress and self.password is None:
            raise ConfigurationError("Compression requires encryption; provide a password")
        if self.workers < 1:
            raise ConfigurationError("workers must be at least 1")
        if self.password is not None:
            self.kdf.validate()

    def __repr__(self) -> str:
        # never leak the password through logs or tracebacks
        pw = "***" if self.password is not None else None
        return (
            f"SerializeOption(password={pw!r}, compress={self.compress!r}, "
            f"kdf={self.kdf!r}, workers={self.workers!r})"
        )
