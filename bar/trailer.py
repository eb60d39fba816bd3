from __future__ import annotations

from dataclasses import dataclass
from typing import BinaryIO

from .constants import MAX_U64, TRAILER_SIZE, TRAILER_STRUCT
from .errors import Truncated


@dataclass
class Layout:
    """Byte ranges of ``[data][header][trailer]`` inside an archive."""

    total_size: int
    data_len: int

    @property
    def header_start(self) -> int:
        return self.data_len

    @property
    def header_end(self) -> int:
        return self.total_size - TRAILER_SIZE

    @property
    def header_len(self) -> int:
        return self.header_end - self.header_start


def pack_trailer(data_len: int) -> bytes:
    if not (0 <= data_len <= MAX_U64):
        raise ValueError("Data section length does not fit in 64 bits")
    return TRAILER_STRUCT.pack(data_len)


def write_trailer(fh: BinaryIO, data_len: int) -> None:
    fh.write(pack_trailer(data_len))


def locate(total_size: int, trailer: bytes) -> Layout:
    """Validate the trailer against the archive size and return the layout."""
    if total_size < TRAILER_SIZE or len(trailer) != TRAILER_SIZE:
        raise Truncated(f"Archive is {total_size} bytes, shorter than its {TRAILER_SIZE} byte trailer", field="TRAILER")
    (data_len,) = TRAILER_STRUCT.unpack(trailer)
    if data_len > total_size - TRAILER_SIZE:
        raise Truncated(
            f"Trailer claims {data_len} data bytes but only {total_size - TRAILER_SIZE} precede it", field="TRAILER"
        )
    return Layout(total_size=total_size, data_len=data_len)


def read_layout(fh: BinaryIO) -> Layout:
    """Seek to the end of ``fh`` and decode its trailer."""
    total = fh.seek(0, 2)
    if total < TRAILER_SIZE:
        return locate(total, b"")
    fh.seek(total - TRAILER_SIZE)
    return locate(total, fh.read(TRAILER_SIZE))
