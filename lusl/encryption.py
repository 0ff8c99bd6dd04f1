from __future__ import annotations

import os
from dataclasses import dataclass

from argon2.exceptions import HashingError
from argon2.low_level import Type as ArgonType, hash_secret_raw
from Cryptodome.Cipher import ChaCha20_Poly1305

from .constants import (
    ARGON_MEMORY_COST_KIB,
    ARGON_PARALLELISM,
    ARGON_TIME_COST,
    KDF_SALT,
    KEY_SIZE,
    NONCE_SIZE,
    TAG_SIZE,
)
from .errors import AuthenticationError, ConfigurationError, CorruptArchiveError


@dataclass(frozen=True)
class KdfParams:
    time_cost: int = ARGON_TIME_COST
    memory_cost_kib: int = ARGON_MEMORY_COST_KIB
    parallelism: int = ARGON_PARALLELISM

    def validate(self) -> None:
        if self.time_cost < 1:
            raise ConfigurationError("Argon2 time cost must be at least 1")
        if self.parallelism < 1:
            raise ConfigurationError("Argon2 parallelism must be at least 1")
        if self.memory_cost_kib < 8 * self.parallelism:
            raise ConfigurationError("Argon2 memory cost must be at least 8 KiB per lane")


def derive_key(password: str, params: KdfParams) -> bytes:
    """Argon2id over ``password``; deterministic for a given password and params."""
    if not password:
        raise ConfigurationError("Encryption password must not be empty")
    params.validate()
    try:
        return hash_secret_raw(
            password.encode("utf-8"),
            KDF_SALT,
            time_cost=params.time_cost,
            memory_cost=params.memory_cost_kib,
            parallelism=params.parallelism,
            hash_len=KEY_SIZE,
            type=ArgonType.ID,
        )
    except HashingError as exc:
        raise ConfigurationError(f"Key derivation failed: {exc}") from exc


def new_nonce() -> bytes:
    return os.urandom(NONCE_SIZE)


class EncryptionContext:
    """XChaCha20-Poly1305 over whole buffers with a password-derived key."""

    def __init__(self, key: bytes):
        if len(key) != KEY_SIZE:
            raise ValueError("Key must be 32 bytes for XChaCha20-Poly1305")
        self.key = key

    @classmethod
    def from_password(cls, password: str, params: KdfParams | None = None) -> "EncryptionContext":
        return cls(derive_key(password, params or KdfParams()))

    def encrypt(self, nonce: bytes, plaintext: bytes, *, associated_data: bytes = b"") -> bytes:
        """Returns ciphertext || tag."""
        if len(nonce) != NONCE_SIZE:
            raise ValueError("Nonce must be 24 bytes for XChaCha20-Poly1305")
        cipher = ChaCha20_Poly1305.new(key=self.key, nonce=nonce)
        if associated_data:
            cipher.update(associated_data)
        ciphertext, tag = cipher.encrypt_and_digest(plaintext)
        return ciphertext + tag

    def decrypt(self, nonce: bytes, payload: bytes, *, associated_data: bytes = b"") -> bytes:
        """Verify and decrypt ``payload`` (ciphertext || tag).

        Nothing is returned unless the tag verifies.
        """
        if len(nonce) != NONCE_SIZE:
            raise CorruptArchiveError("Nonce is truncated")
        if len(payload) < TAG_SIZE:
            raise CorruptArchiveError("Encrypted data section too short")
        ciphertext = payload[:-TAG_SIZE]
        tag = payload[-TAG_SIZE:]
        cipher = ChaCha20_Poly1305.new(key=self.key, nonce=nonce)
        if associated_data:
            cipher.update(associated_data)
        try:
            return cipher.decrypt_and_verify(ciphertext, tag)
        except ValueError as exc:
            raise AuthenticationError(
                "Authentication failed: wrong password or archive has been tampered with"
            ) from exc
