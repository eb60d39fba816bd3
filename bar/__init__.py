"""
Bar: a compact archive format with a self-describing trailing header.

Features:

- Layout ``[file data][msgpack header][u64 LE data length]``: the header is
  found in O(1) from the end of the file, no scanning.
- Directory tree with per-entry metadata (name, note, used flag, timestamps).
- Per-file compression: none, or deflate/gzip at fast, medium or high quality.
- Optional encrypted revision: AES-CTR per file under a unique 64-bit nonce,
  key derived with HKDF (raw key) or Argon2id (password).
- Parallel builds that are byte-identical to serial ones.
- Unpack/pack round trips that keep metadata, and metadata edits via rebuild.
"""

__version__ = "0.1"

__all__ = [
    "constants",
    "writer",
    "reader",
    "rebuild",
    "encryption",
]

# Importable programmatic API is available via bar.writer (ArchiveWriter, build),
# bar.reader (ArchiveReader, open_archive) and the cmd_* functions in bar.cli.
