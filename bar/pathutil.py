from __future__ import annotations

from typing import Iterable, List, Union

from .constants import MAX_NAME_BYTES


PathLike = Union[str, Iterable[str]]


def split_path(p: PathLike) -> List[str]:
    """Split an archive path into its segments.

    Rules:
    - Only '/' separates segments
    - Empty segments (leading, trailing, doubled slashes) are dropped
    - '.' and '..' are ordinary names; resolution is purely nominal
    - An already split sequence is returned as a list
    """
    if isinstance(p, str):
        return [q for q in p.split("/") if q]
    return [q for q in p if q]


def join_path(parts: Iterable[str]) -> str:
    return "/".join(parts)


def check_name(name: str) -> str:
    if not isinstance(name, str):
        raise ValueError(f"Entry name must be a string, got {type(name).__name__}")
    if not name:
        raise ValueError("Entry name may not be empty")
    if "/" in name:
        raise ValueError(f"Entry name may not contain '/': {name!r}")
    if "\x00" in name:
        raise ValueError("Entry name may not contain NUL")
    if len(name.encode("utf-8")) > MAX_NAME_BYTES:
        raise ValueError(f"Entry name exceeds {MAX_NAME_BYTES} bytes: {name[:32]!r}...")
    return name
