from __future__ import annotations

import os
from typing import Optional

try:  # pragma: no cover - availability depends on environment
    from argon2.low_level import Type as _ArgonType, hash_secret_raw as _argon_hash  # type: ignore
    _HAS_ARGON2 = True
except ImportError:  # pragma: no cover
    _ArgonType = None  # type: ignore
    _argon_hash = None  # type: ignore
    _HAS_ARGON2 = False

try:  # pragma: no cover - availability depends on environment
    from Cryptodome.Cipher import AES  # type: ignore
    from Cryptodome.Hash import SHA256  # type: ignore
    from Cryptodome.Protocol.KDF import HKDF  # type: ignore
    _HAS_CRYPTODOME = True
except ImportError:  # pragma: no cover
    AES = None  # type: ignore
    SHA256 = None  # type: ignore
    HKDF = None  # type: ignore
    _HAS_CRYPTODOME = False

_HAS_CRYPTO = bool(_HAS_ARGON2 and _HAS_CRYPTODOME)

from .constants import FILE_NONCE_SIZE, KDF_SALT_SIZE, MAX_NONCE_COUNTER, MAX_U64, NONCE_COUNTER_SIZE


KEY_SIZE = 32  # AES-256
MIN_RAW_KEY_SIZE = 16

# Fixed Argon2id parameters for password derived archive keys
ARGON_TIME_COST = 3
ARGON_MEMORY_COST_KIB = 64 * 1024  # 64 MiB
ARGON_PARALLELISM = 4

_HKDF_CONTEXT = b"bar archive file key"


def new_salt() -> bytes:
    return os.urandom(KDF_SALT_SIZE)


class EncryptionContext:
    """AES-CTR stream cipher keyed by the archive secret and a per-file nonce."""

    def __init__(self, key: bytes, salt: bytes):
        if not _HAS_CRYPTODOME:
            raise RuntimeError("PyCryptodomex is required for encryption support")
        if len(key) != KEY_SIZE:
            raise ValueError(f"Archive key must be {KEY_SIZE} bytes")
        if len(salt) != KDF_SALT_SIZE:
            raise ValueError(f"Archive salt must be {KDF_SALT_SIZE} bytes")
        self.key = key
        self.salt = salt

    @classmethod
    def from_key(cls, raw_key: bytes, salt: Optional[bytes] = None) -> "EncryptionContext":
        if not _HAS_CRYPTODOME:
            raise RuntimeError("PyCryptodomex is required for encryption support")
        if len(raw_key) < MIN_RAW_KEY_SIZE:
            raise ValueError(f"Raw key must be at least {MIN_RAW_KEY_SIZE} bytes")
        salt = new_salt() if salt is None else salt
        key = HKDF(raw_key, KEY_SIZE, salt, SHA256, context=_HKDF_CONTEXT)
        return cls(key, salt)

    @classmethod
    def from_password(cls, password: str, salt: Optional[bytes] = None) -> "EncryptionContext":
        if not (_HAS_CRYPTO and _argon_hash is not None and _ArgonType is not None):
            raise RuntimeError("argon2-cffi and PyCryptodomex are required for encryption support")
        salt = new_salt() if salt is None else salt
        key = _argon_hash(
            password.encode("utf-8"),
            salt,
            time_cost=ARGON_TIME_COST,
            memory_cost=ARGON_MEMORY_COST_KIB,
            parallelism=ARGON_PARALLELISM,
            hash_len=KEY_SIZE,
            type=_ArgonType.ID,
        )
        return cls(key, salt)

    @classmethod
    def create(cls, *, key: Optional[bytes] = None, password: Optional[str] = None, salt: Optional[bytes] = None) -> "EncryptionContext":
        if key is not None and password is not None:
            raise ValueError("Provide either a key or a password, not both")
        if key is not None:
            return cls.from_key(key, salt)
        if password is not None:
            return cls.from_password(password, salt)
        raise ValueError("Encrypted archives require a key or password")

    def _cipher(self, nonce: int):
        if not (0 <= nonce <= MAX_U64):
            raise ValueError("File nonce must be an unsigned 64-bit integer")
        return AES.new(self.key, AES.MODE_CTR, nonce=nonce.to_bytes(FILE_NONCE_SIZE, "big"))

    def encrypt(self, data: bytes, nonce: int) -> bytes:
        return self._cipher(nonce).encrypt(data)

    def decrypt(self, data: bytes, nonce: int) -> bytes:
        return self._cipher(nonce).decrypt(data)


class NonceCounter:
    """Archive-wide 96-bit counter; each encrypted file takes the next value."""

    def __init__(self, value: int = 0):
        if not (0 <= value <= MAX_NONCE_COUNTER):
            raise ValueError("Nonce counter out of range")
        self.value = value

    def take(self) -> int:
        if self.value > MAX_U64:
            raise ValueError("Nonce space exhausted; per-file nonces are 64-bit")
        nonce = self.value
        self.value += 1
        return nonce

    def to_bytes(self) -> bytes:
        return self.value.to_bytes(NONCE_COUNTER_SIZE, "big")

    @classmethod
    def from_bytes(cls, raw: bytes) -> "NonceCounter":
        if len(raw) != NONCE_COUNTER_SIZE:
            raise ValueError(f"Nonce counter must be {NONCE_COUNTER_SIZE} bytes")
        return cls(int.from_bytes(raw, "big"))
