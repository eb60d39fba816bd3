"""Metadata file written next to an unpacked archive.

Unpacking loses the notes and flags attached to entries, so they are saved
in ``.__barmeta.msgpack`` at the top of the output directory: a msgpack map
from archive-relative path (``/`` for the archive itself) to an encoded META
map. Packing that directory again reads the file back and skips it as content.

Nonces are never saved; key 7 always holds a LASTUPDATE timestamp here.
"""
from __future__ import annotations

import dataclasses
import os
from typing import Dict, Iterable, Tuple

import msgpack

from .constants import ROOT_METADATA_FILE, ROOT_NAME, Revision
from .errors import FormatError, TypeMismatch
from .meta import Meta, decode_meta, encode_meta


def sidecar_path(directory: str) -> str:
    return os.path.join(directory, ROOT_METADATA_FILE)


def dumps_sidecar(archive_meta: Meta, metas: Iterable[Tuple[str, Meta]]) -> bytes:
    out = {}
    for path, meta in metas:
        out[path] = encode_meta(dataclasses.replace(meta, enc_nonce=None), Revision.TIMESTAMPED)
    out[ROOT_NAME] = encode_meta(dataclasses.replace(archive_meta, enc_nonce=None), Revision.TIMESTAMPED)
    return msgpack.packb(out, use_bin_type=True)


def loads_sidecar(data: bytes) -> Dict[str, Meta]:
    try:
        value = msgpack.unpackb(data, raw=False, strict_map_key=False)
    except (ValueError, TypeError) as e:
        raise TypeMismatch(f"Metadata file is not valid msgpack: {e}", path=ROOT_METADATA_FILE) from None
    if not isinstance(value, dict):
        raise TypeMismatch("Metadata file's main content is not a map", path=ROOT_METADATA_FILE)
    metas: Dict[str, Meta] = {}
    for path, raw in value.items():
        if not isinstance(path, str):
            raise TypeMismatch("The keys of the metadata file are not strings", path=ROOT_METADATA_FILE)
        try:
            meta = decode_meta(raw, Revision.TIMESTAMPED, context=path)
        except FormatError as e:
            raise TypeMismatch(f"Bad entry in metadata file: {e.message}", path=path, field=e.field) from None
        key = path.replace("\\", "/")
        metas[key if key == ROOT_NAME else key.strip("/")] = meta
    return metas


def write_sidecar(directory: str, archive_meta: Meta, metas: Iterable[Tuple[str, Meta]]) -> str:
    path = sidecar_path(directory)
    with open(path, "wb") as fh:
        fh.write(dumps_sidecar(archive_meta, metas))
    return path


def read_sidecar(directory: str) -> Dict[str, Meta]:
    """Return the saved metadata of ``directory``, or an empty map without a file."""
    path = sidecar_path(directory)
    if not os.path.isfile(path):
        return {}
    with open(path, "rb") as fh:
        return loads_sidecar(fh.read())
