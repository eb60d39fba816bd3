from __future__ import annotations

from typing import Optional


class BarError(Exception):
    """Base class for bar-specific errors."""


class FormatError(BarError):
    """A malformed or misused archive or input.

    ``path`` names the archive path (or header location) and ``field`` the
    header field involved, when known.
    """

    def __init__(self, message: str, *, path: Optional[str] = None, field: Optional[str] = None):
        self.message = message
        self.path = path
        self.field = field
        super().__init__(self._render())

    def _render(self) -> str:
        parts = [self.message]
        if self.field is not None:
            parts.append(f"field={self.field}")
        if self.path is not None:
            parts.append(f"path={self.path!r}")
        if len(parts) == 1:
            return self.message
        return f"{parts[0]} ({', '.join(parts[1:])})"


# Header decoding
class Truncated(FormatError):
    pass


class UnknownTag(FormatError):
    pass


class TypeMismatch(FormatError):
    pass


class RevisionMismatch(TypeMismatch):
    """A field or layout belonging to the other header revision."""


class MissingField(FormatError):
    pass


# Tree construction and lookup
class NameCollision(FormatError):
    pass


class UnbalancedDirectory(FormatError):
    pass


class NotFound(FormatError):
    pass


# File data
class CorruptData(FormatError):
    pass
