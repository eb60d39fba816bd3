from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import msgpack

from .codec import CompressMethod
from .constants import (
    ENTRY_IS_DIR,
    ENTRY_IS_FILE,
    FILE_KEYS,
    KDF_SALT_SIZE,
    KEY_COMPRESSMETHOD,
    KEY_META,
    KEY_OFFSET,
    KEY_SIZE,
    MAX_NONCE_COUNTER,
    MAX_U32,
    MAX_U64,
    NONCE_COUNTER_SIZE,
    ROOT_NAME,
    Revision,
)
from .entry import Directory, Entry, File
from .errors import (
    CorruptData,
    MissingField,
    NameCollision,
    RevisionMismatch,
    Truncated,
    TypeMismatch,
    UnknownTag,
)
from .meta import Meta, _is_int, decode_meta, encode_meta
from .pathutil import check_name


# Root array arity per revision
_ROOT_ARITY = {
    Revision.TIMESTAMPED: 2,  # [meta, root]
    Revision.ENCRYPTED: 4,  # [meta, nonce_counter, root, kdf_salt]
}


@dataclass
class Header:
    """Decoded archive header.

    ``nonce_counter`` and ``kdf_salt`` are only present in ENCRYPTED archives.
    """

    meta: Meta
    root: Directory = field(default_factory=lambda: Directory(Meta(name=ROOT_NAME)))
    nonce_counter: Optional[int] = None
    kdf_salt: Optional[bytes] = None


# Encoding

def _encode_file(f: File, revision: Revision) -> Dict[int, Any]:
    if not (0 <= f.offset <= MAX_U64):
        raise TypeMismatch("OFFSET does not fit in 64 bits", path=f.name, field="OFFSET")
    if not (0 <= f.size <= MAX_U32):
        raise TypeMismatch("SIZE does not fit in 32 bits", path=f.name, field="SIZE")
    return {
        KEY_OFFSET: f.offset,
        KEY_SIZE: f.size,
        KEY_META: encode_meta(f.meta, revision, allow_nonce=True),
        KEY_COMPRESSMETHOD: str(f.compress_method),
    }


def _encode_dir(d: Directory, revision: Revision) -> List[Any]:
    return [encode_meta(d.meta, revision), [_encode_entry(c, revision) for c in d.children]]


def _encode_entry(e: Entry, revision: Revision) -> List[Any]:
    if isinstance(e, File):
        return [ENTRY_IS_FILE, _encode_file(e, revision)]
    return [ENTRY_IS_DIR, _encode_dir(e, revision)]


def serialize(header: Header, revision: Revision) -> bytes:
    """Encode ``header`` as a single msgpack value."""
    revision = Revision(revision)
    meta = encode_meta(header.meta, revision)
    root = _encode_dir(header.root, revision)
    if revision is Revision.TIMESTAMPED:
        if header.nonce_counter is not None or header.kdf_salt is not None:
            raise RevisionMismatch("Nonce counter or salt in a timestamped header", field="ENC")
        value: List[Any] = [meta, root]
    else:
        counter = 0 if header.nonce_counter is None else header.nonce_counter
        if not (0 <= counter <= MAX_NONCE_COUNTER):
            raise TypeMismatch("Nonce counter does not fit in 96 bits", field="ENC")
        if header.kdf_salt is None or len(header.kdf_salt) != KDF_SALT_SIZE:
            raise TypeMismatch(f"Encrypted header needs a {KDF_SALT_SIZE} byte salt", field="ENC")
        value = [meta, counter.to_bytes(NONCE_COUNTER_SIZE, "big"), root, bytes(header.kdf_salt)]
    return msgpack.packb(value, use_bin_type=True)


# Decoding

def _child_path(parent: Optional[str], name: str) -> str:
    return f"{parent}/{name}" if parent else name


def _decode_file(value: Any, revision: Revision, parent: Optional[str]) -> File:
    # Errors name the parent until the file's own name is known
    if not isinstance(value, dict):
        raise TypeMismatch(f"File field is not a map, it is {type(value).__name__}", path=parent, field="FILE")
    for key in value:
        if not _is_int(key):
            raise TypeMismatch(f"Key for file field is not an integer, it is {key!r}", path=parent, field="FILE")
        if key not in FILE_KEYS:
            raise UnknownTag(f"Unknown file key {key}", path=parent, field="FILE")
    if KEY_META not in value:
        raise MissingField("META field not present in FILE entry", path=parent, field="META")
    meta = decode_meta(value[KEY_META], revision, context=parent, allow_nonce=True)
    path = _child_path(parent, meta.name)

    if KEY_OFFSET not in value:
        raise MissingField("OFFSET field not present in FILE entry", path=path, field="OFFSET")
    offset = value[KEY_OFFSET]
    if not _is_int(offset) or not (0 <= offset <= MAX_U64):
        raise TypeMismatch("OFFSET field in FILE entry is not a u64", path=path, field="OFFSET")

    if KEY_SIZE not in value:
        raise MissingField("SIZE field not present in FILE entry", path=path, field="SIZE")
    size = value[KEY_SIZE]
    if not _is_int(size) or not (0 <= size <= MAX_U32):
        raise TypeMismatch("SIZE field in FILE entry is not a u32", path=path, field="SIZE")

    if KEY_COMPRESSMETHOD not in value:
        raise MissingField("COMPRESSMETHOD field not present in FILE entry", path=path, field="COMPRESSMETHOD")
    raw = value[KEY_COMPRESSMETHOD]
    if not isinstance(raw, str):
        raise TypeMismatch("COMPRESSMETHOD field in FILE entry is not a string", path=path, field="COMPRESSMETHOD")
    try:
        method = CompressMethod.parse(raw)
    except ValueError as e:
        raise TypeMismatch(str(e), path=path, field="COMPRESSMETHOD") from None
    return File(meta=meta, offset=offset, size=size, compress_method=method)


def _decode_dir(value: Any, revision: Revision, parent: Optional[str], *, is_root: bool = False) -> Directory:
    if not isinstance(value, list):
        raise TypeMismatch(f"Directory field is not an array, it is {type(value).__name__}", path=parent, field="DIR")
    if len(value) != 2:
        raise TypeMismatch(f"Directory field has {len(value)} elements, expected 2", path=parent, field="DIR")
    meta = decode_meta(value[0], revision, context=parent if not is_root else ROOT_NAME)
    path = ROOT_NAME if is_root else _child_path(parent, meta.name)
    children = value[1]
    if not isinstance(children, list):
        raise TypeMismatch("Directory files item is not an array", path=path, field="DIR")
    d = Directory(meta)
    prefix = None if is_root else path
    for item in children:
        child = _decode_entry(item, revision, prefix)
        try:
            check_name(child.name)
        except ValueError as e:
            raise TypeMismatch(str(e), path=_child_path(prefix, child.name), field="NAME") from None
        try:
            d.add(child)
        except NameCollision:
            raise NameCollision("Duplicate sibling name", path=_child_path(prefix, child.name)) from None
    return d


def _decode_entry(value: Any, revision: Revision, parent: Optional[str]) -> Entry:
    if not isinstance(value, list):
        raise TypeMismatch(f"Entry is not an array, it is {type(value).__name__}", path=parent, field="ENTRY")
    if len(value) != 2:
        raise TypeMismatch(f"Entry has {len(value)} elements, expected 2", path=parent, field="ENTRY")
    tag, body = value
    if not isinstance(tag, bool):
        raise UnknownTag(f"Entry discriminator is not a boolean, it is {tag!r}", path=parent, field="ENTRY")
    if tag is ENTRY_IS_FILE:
        return _decode_file(body, revision, parent)
    return _decode_dir(body, revision, parent)


def _decode_counter(raw: Any) -> int:
    if isinstance(raw, (bytes, bytearray)):
        if len(raw) != NONCE_COUNTER_SIZE:
            raise TypeMismatch(f"Nonce counter is {len(raw)} bytes, expected {NONCE_COUNTER_SIZE}", field="ENC")
        return int.from_bytes(raw, "big")
    raise TypeMismatch(f"Nonce counter is not binary, it is {type(raw).__name__}", field="ENC")


def unpack_value(data: bytes) -> Any:
    """Decode exactly one msgpack value, mapping failures onto format errors."""
    if not data:
        raise Truncated("Header is empty", field="HEADER")
    try:
        return msgpack.unpackb(bytes(data), raw=False, strict_map_key=False, use_list=True)
    except msgpack.exceptions.ExtraData:
        raise CorruptData("Trailing bytes after header", field="HEADER") from None
    except (msgpack.exceptions.FormatError, msgpack.exceptions.StackError, TypeError) as e:
        raise CorruptData(f"Malformed header: {e}", field="HEADER") from None
    except ValueError as e:
        # msgpack reports a short buffer as a plain ValueError
        if "incomplete" in str(e).lower():
            raise Truncated("Header ends early", field="HEADER") from None
        raise CorruptData(f"Malformed header: {e}", field="HEADER") from None


def deserialize(data: bytes, revision: Revision) -> Header:
    revision = Revision(revision)
    value = unpack_value(data)
    if not isinstance(value, list):
        raise TypeMismatch(f"Header is not an array, it is {type(value).__name__}", field="HEADER")
    expected = _ROOT_ARITY[revision]
    if len(value) != expected:
        if len(value) in _ROOT_ARITY.values():
            raise RevisionMismatch(
                f"Header has {len(value)} elements; {revision.value} archives have {expected}", field="HEADER"
            )
        raise TypeMismatch(f"Header has {len(value)} elements, expected {expected}", field="HEADER")

    meta = decode_meta(value[0], revision, context=ROOT_NAME)
    if revision is Revision.TIMESTAMPED:
        root = _decode_dir(value[1], revision, None, is_root=True)
        return Header(meta=meta, root=root)

    counter = _decode_counter(value[1])
    root = _decode_dir(value[2], revision, None, is_root=True)
    salt = value[3]
    if not isinstance(salt, (bytes, bytearray)) or len(salt) != KDF_SALT_SIZE:
        raise TypeMismatch(f"Key salt is not {KDF_SALT_SIZE} bytes of binary", field="ENC")
    return Header(meta=meta, root=root, nonce_counter=counter, kdf_salt=bytes(salt))
