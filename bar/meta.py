from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from .constants import (
    KEY_ENC,
    KEY_LASTUPDATE,
    KEY_NAME,
    KEY_NOTE,
    KEY_USED,
    MAX_U64,
    META_KEYS,
    Revision,
)
from .errors import MissingField, RevisionMismatch, TypeMismatch, UnknownTag


_I64_MIN = -(1 << 63)
_I64_MAX = (1 << 63) - 1


@dataclass
class Meta:
    """Descriptive fields attached to the archive, a directory or a file.

    ``last_update`` (unix seconds) only exists in TIMESTAMPED archives and
    ``enc_nonce`` only on files of ENCRYPTED archives.
    """

    name: str
    note: Optional[str] = None
    used: bool = False
    last_update: Optional[int] = None
    enc_nonce: Optional[int] = None


def _is_int(v: Any) -> bool:
    return isinstance(v, int) and not isinstance(v, bool)


def check_meta(meta: Meta, revision: Revision, *, context: Optional[str] = None, allow_nonce: bool = False) -> None:
    """Reject a Meta that would encode into something ``decode_meta`` refuses."""
    path = meta.name if context is None else context
    if not isinstance(meta.name, str):
        raise TypeMismatch("NAME field of metadata is not a string", path=path, field="NAME")
    if meta.note is not None and not isinstance(meta.note, str):
        raise TypeMismatch("NOTE field of metadata is not a string", path=path, field="NOTE")
    if not isinstance(meta.used, bool):
        raise TypeMismatch("USED field of metadata is not a boolean", path=path, field="USED")
    if revision is Revision.TIMESTAMPED:
        if meta.enc_nonce is not None:
            raise RevisionMismatch("ENC nonce in a timestamped archive", path=path, field="ENC")
        if meta.last_update is not None:
            if not _is_int(meta.last_update) or not (_I64_MIN <= meta.last_update <= _I64_MAX):
                raise TypeMismatch("LASTUPDATE field of metadata is not a 64-bit integer", path=path, field="LASTUPDATE")
    else:
        if meta.last_update is not None:
            raise RevisionMismatch("LASTUPDATE in an encrypted archive", path=path, field="LASTUPDATE")
        if meta.enc_nonce is not None:
            if not allow_nonce:
                raise TypeMismatch("ENC nonce is only valid on files", path=path, field="ENC")
            if not _is_int(meta.enc_nonce) or not (0 <= meta.enc_nonce <= MAX_U64):
                raise TypeMismatch("ENC field of metadata is not an unsigned 64-bit integer", path=path, field="ENC")


def encode_meta(
    meta: Meta, revision: Revision, *, context: Optional[str] = None, allow_nonce: bool = False
) -> Dict[int, Any]:
    check_meta(meta, revision, context=context, allow_nonce=allow_nonce)
    out: Dict[int, Any] = {
        KEY_NAME: meta.name,
        KEY_USED: meta.used,
    }
    if revision is Revision.TIMESTAMPED:
        if meta.last_update is not None:
            out[KEY_LASTUPDATE] = meta.last_update
    elif meta.enc_nonce is not None:
        out[KEY_ENC] = meta.enc_nonce
    if meta.note is not None:
        out[KEY_NOTE] = meta.note
    return out


def decode_meta(value: Any, revision: Revision, *, context: Optional[str] = None, allow_nonce: bool = False) -> Meta:
    """Decode a META map; absent optional fields take their defaults."""
    if not isinstance(value, dict):
        raise TypeMismatch(f"Metadata field is not a map, it is {type(value).__name__}", path=context, field="META")
    for key in value:
        if not _is_int(key):
            raise TypeMismatch(f"Key for metadata field is not an integer, it is {key!r}", path=context, field="META")
        if key not in META_KEYS:
            raise UnknownTag(f"Unknown metadata key {key}", path=context, field="META")

    if KEY_NAME not in value:
        raise MissingField("NAME field of metadata is not present", path=context, field="NAME")
    name = value[KEY_NAME]
    if not isinstance(name, str):
        raise TypeMismatch("NAME field of metadata is not a string", path=context, field="NAME")

    note = value.get(KEY_NOTE)
    if note is not None and not isinstance(note, str):
        raise TypeMismatch("NOTE field of metadata is not a string", path=context, field="NOTE")

    used = value.get(KEY_USED, False)
    if not isinstance(used, bool):
        raise TypeMismatch("USED field of metadata is not a boolean", path=context, field="USED")

    meta = Meta(name=name, note=note, used=used)
    if KEY_LASTUPDATE in value:
        raw = value[KEY_LASTUPDATE]
        if revision is Revision.TIMESTAMPED:
            if not _is_int(raw) or not (_I64_MIN <= raw <= _I64_MAX):
                raise TypeMismatch("LASTUPDATE field of metadata is not a 64-bit integer", path=context, field="LASTUPDATE")
            meta.last_update = raw
        else:
            if not allow_nonce:
                raise TypeMismatch("ENC nonce is only valid on files", path=context, field="ENC")
            if not _is_int(raw) or not (0 <= raw <= MAX_U64):
                raise TypeMismatch("ENC field of metadata is not an unsigned 64-bit integer", path=context, field="ENC")
            meta.enc_nonce = raw
    return meta
