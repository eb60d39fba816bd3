from __future__ import annotations

import zlib
from dataclasses import dataclass
from typing import Optional, Union

from .constants import ALGORITHMS, COMPRESS_NONE, QUALITY_LEVELS
from .errors import CorruptData


# zlib window bits per container format
_WBITS = {
    "deflate": -15,  # raw RFC 1951 stream
    "gzip": 31,  # RFC 1952 gzip member
}


@dataclass(frozen=True)
class CompressMethod:
    """A ``(quality, algorithm)`` pair, or no compression when both are None."""

    quality: Optional[str] = None
    algorithm: Optional[str] = None

    def __post_init__(self):
        if (self.quality is None) != (self.algorithm is None):
            raise ValueError("quality and algorithm must both be set or both be None")
        if self.quality is not None and self.quality not in QUALITY_LEVELS:
            raise ValueError(f"Unknown compression quality: {self.quality!r}")
        if self.algorithm is not None and self.algorithm not in ALGORITHMS:
            raise ValueError(f"Unknown compression algorithm: {self.algorithm!r}")

    @classmethod
    def parse(cls, text: Union[str, "CompressMethod"]) -> "CompressMethod":
        """Parse ``"none"`` or ``"{fast|medium|high}-{gzip|deflate}"`` (case-insensitive)."""
        if isinstance(text, CompressMethod):
            return text
        if not isinstance(text, str):
            raise ValueError(f"Compression method must be a string, got {type(text).__name__}")
        s = text.strip().lower()
        if s == COMPRESS_NONE:
            return cls()
        quality, sep, algorithm = s.partition("-")
        if not sep or quality not in QUALITY_LEVELS or algorithm not in ALGORITHMS:
            raise ValueError(f"Unrecognized compression method {text!r}")
        return cls(quality, algorithm)

    @property
    def is_none(self) -> bool:
        return self.algorithm is None

    @property
    def level(self) -> int:
        if self.quality is None:
            return 0
        return QUALITY_LEVELS[self.quality]

    def __str__(self) -> str:
        if self.is_none:
            return COMPRESS_NONE
        return f"{self.quality}-{self.algorithm}"


NO_COMPRESSION = CompressMethod()


class Codec:
    def __init__(self, method: Union[str, CompressMethod]):
        self.method = CompressMethod.parse(method)

    def compress(self, data: bytes) -> bytes:
        if self.method.is_none:
            return bytes(data)
        c = zlib.compressobj(self.method.level, zlib.DEFLATED, _WBITS[self.method.algorithm])
        return c.compress(data) + c.flush()

    def decompress(self, data: bytes) -> bytes:
        if self.method.is_none:
            return bytes(data)
        d = zlib.decompressobj(_WBITS[self.method.algorithm])
        try:
            out = d.decompress(data)
            out += d.flush()
        except zlib.error as e:
            raise CorruptData(f"{self.method.algorithm} decompression failed: {e}", field="COMPRESSMETHOD")
        if not d.eof:
            raise CorruptData(f"{self.method.algorithm} stream is truncated", field="COMPRESSMETHOD")
        if d.unused_data:
            raise CorruptData(f"{self.method.algorithm} stream has trailing bytes", field="COMPRESSMETHOD")
        return out
