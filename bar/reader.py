from __future__ import annotations

import os
import threading
from dataclasses import dataclass
from typing import BinaryIO, Iterator, List, Optional, Tuple, Union

from .codec import Codec, CompressMethod
from .constants import DEFAULT_REVISION, ROOT_NAME, TRAILER_SIZE, Revision
from .encryption import EncryptionContext
from .entry import Directory, Entry, File, TreeWalk
from .errors import BarError, CorruptData, NotFound, Truncated
from .header import Header, deserialize
from .meta import Meta
from .metafile import write_sidecar
from .pathutil import PathLike, join_path, split_path
from .trailer import Layout, locate, read_layout


@dataclass(frozen=True)
class EntrySummary:
    """A directory child as reported by :meth:`ArchiveReader.list`."""

    name: str
    path: str
    is_file: bool
    size: int
    compress_method: Optional[CompressMethod]
    meta: Meta


class DirListing:
    """Children of one directory; each iteration starts over."""

    def __init__(self, directory: Directory, path: str):
        self.directory = directory
        self.path = path

    def __iter__(self) -> Iterator[EntrySummary]:
        for child in self.directory.children:
            p = f"{self.path}/{child.name}" if self.path else child.name
            if isinstance(child, File):
                yield EntrySummary(child.name, p, True, child.size, child.compress_method, child.meta)
            else:
                yield EntrySummary(child.name, p, False, len(child.children), None, child.meta)

    def __len__(self) -> int:
        return len(self.directory.children)


class ArchiveReader:
    """Opens a bar archive from bytes, a path or a seekable binary file.

    The decoded tree is treated as read-only once ``open`` returns; use
    :meth:`copy_tree` and :mod:`bar.rebuild` to produce a modified archive.
    """

    def __init__(
        self,
        source: Union[bytes, bytearray, memoryview, str, "os.PathLike[str]", BinaryIO],
        *,
        revision: Union[Revision, str] = DEFAULT_REVISION,
        key: Optional[bytes] = None,
        password: Optional[str] = None,
    ):
        self.source = source
        self.revision = Revision(revision)
        self.key = key
        self.password = password
        self.f: Optional[BinaryIO] = None
        self._owns_file = False
        self._buf: Optional[memoryview] = None
        self._lock = threading.Lock()
        self.layout: Optional[Layout] = None
        self.header: Optional[Header] = None
        self.decryptor: Optional[EncryptionContext] = None

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def open(self) -> "ArchiveReader":
        if self.header is not None:
            return self
        if self.revision is Revision.TIMESTAMPED and (self.key is not None or self.password is not None):
            raise ValueError("Keys and passwords only apply to encrypted archives")
        if isinstance(self.source, (bytes, bytearray, memoryview)):
            self._buf = memoryview(bytes(self.source))
        elif isinstance(self.source, (str, os.PathLike)):
            self.f = open(self.source, "rb")
            self._owns_file = True
        else:
            self.f = self.source
        try:
            self.layout = self._read_layout()
            raw = self._read_range(self.layout.header_start, self.layout.header_len)
            self.header = deserialize(raw, self.revision)
            self._check_ranges()
            if self.revision is Revision.ENCRYPTED and (self.key is not None or self.password is not None):
                self.decryptor = EncryptionContext.create(key=self.key, password=self.password, salt=self.header.kdf_salt)
        except (BarError, OSError, ValueError, RuntimeError) as exc:
            # Ensure file handle is closed on failure to avoid leaks
            self.close()
            raise exc
        return self

    def close(self):
        if self.f is not None and self._owns_file:
            self.f.close()
        self.f = None
        self._owns_file = False
        self._buf = None
        self.header = None

    # internals
    def _read_layout(self) -> Layout:
        if self._buf is not None:
            total = len(self._buf)
            return locate(total, bytes(self._buf[total - TRAILER_SIZE :]) if total >= TRAILER_SIZE else b"")
        with self._lock:
            return read_layout(self.f)

    def _read_range(self, start: int, length: int) -> bytes:
        if self._buf is not None:
            data = bytes(self._buf[start : start + length])
        else:
            with self._lock:
                self.f.seek(start)
                data = self.f.read(length)
        if len(data) != length:
            raise Truncated(f"Expected {length} bytes at offset {start}, got {len(data)}")
        return data

    def _check_ranges(self) -> None:
        """Every file must lie inside the data section and not overlap another."""
        data_len = self.layout.data_len
        spans: List[Tuple[int, int, str]] = []
        for path, f in self.header.root.files():
            end = f.offset + f.size
            if end > data_len:
                raise Truncated(
                    f"File range [{f.offset}, {end}) exceeds the {data_len} byte data section", path=path, field="OFFSET"
                )
            if f.size:
                spans.append((f.offset, end, path))
        spans.sort()
        for (_s0, e0, p0), (s1, _e1, p1) in zip(spans, spans[1:]):
            if s1 < e0:
                raise CorruptData(f"File data overlaps {p0!r}", path=p1, field="OFFSET")

    def _require_open(self) -> Header:
        if self.header is None:
            raise RuntimeError("Archive not open")
        return self.header

    # Tree access

    @property
    def meta(self) -> Meta:
        return self._require_open().meta

    @property
    def root(self) -> Directory:
        return self._require_open().root

    @property
    def nonce_counter(self) -> Optional[int]:
        return self._require_open().nonce_counter

    @property
    def kdf_salt(self) -> Optional[bytes]:
        return self._require_open().kdf_salt

    @property
    def data_len(self) -> int:
        self._require_open()
        return self.layout.data_len

    def resolve(self, path: PathLike) -> Optional[Entry]:
        return self.root.resolve(path)

    def entry(self, path: PathLike) -> Entry:
        e = self.resolve(path)
        if e is None:
            raise NotFound("No such entry", path=join_path(split_path(path)))
        return e

    def file(self, path: PathLike) -> File:
        e = self.resolve(path)
        if not isinstance(e, File):
            raise NotFound("No such file", path=join_path(split_path(path)))
        return e

    def directory(self, path: PathLike) -> Directory:
        e = self.resolve(path)
        if not isinstance(e, Directory):
            raise NotFound("No such directory", path=join_path(split_path(path)) or ROOT_NAME)
        return e

    def list(self, dir_path: PathLike = "") -> DirListing:
        return DirListing(self.directory(dir_path), join_path(split_path(dir_path)))

    def walk(self) -> TreeWalk:
        return self.root.walk()

    def file_paths(self) -> List[str]:
        """Every file path in traversal order, for search front ends."""
        return [p for p, _ in self.root.files()]

    def copy_tree(self) -> Directory:
        return self.root.copy()

    # Extraction

    def read_stored(self, f: File) -> bytes:
        self._require_open()
        return self._read_range(f.offset, f.size)

    def decode(self, f: File, blob: bytes) -> bytes:
        """Undo encryption (when the file has a nonce) and then compression."""
        if f.meta.enc_nonce is not None:
            if self.decryptor is None:
                raise ValueError("Archive is encrypted; key or password required")
            blob = self.decryptor.decrypt(blob, f.meta.enc_nonce)
        return Codec(f.compress_method).decompress(blob)

    def extract(self, path: PathLike, *, decompress: bool = True) -> bytes:
        """Return a file's decoded bytes, or its stored bytes when ``decompress`` is False."""
        f = self.file(path)
        blob = self.read_stored(f)
        if not decompress:
            return blob
        return self.decode(f, blob)

    def extract_to(self, path: PathLike, fh: BinaryIO, *, decompress: bool = True) -> int:
        data = self.extract(path, decompress=decompress)
        fh.write(data)
        return len(data)

    def verify(self) -> bool:
        """Decode every file; False when any stored data is corrupt."""
        for _path, f in self.root.files():
            try:
                self.decode(f, self.read_stored(f))
            except CorruptData:
                return False
        return True

    def save_unpacked(self, out_dir: str, *, decompress: bool = True) -> int:
        """Write the whole tree below ``out_dir`` plus its metadata file.

        Returns the number of files written.
        """
        self._require_open()
        os.makedirs(out_dir, exist_ok=True)
        metas: List[Tuple[str, Meta]] = []
        n = 0
        for path, e in self.walk():
            if e.name in (".", ".."):
                raise ValueError(f"Refusing to unpack {path!r} outside of {out_dir!r}")
            target = os.path.join(out_dir, *split_path(path))
            metas.append((path, e.meta))
            if isinstance(e, Directory):
                os.makedirs(target, exist_ok=True)
                continue
            with open(target, "wb") as fh:
                self.extract_to(path, fh, decompress=decompress)
            n += 1
        write_sidecar(out_dir, self.meta, metas)
        return n


def open_archive(source, **kw) -> ArchiveReader:
    """Open ``source`` and return the ready reader; close it when done."""
    return ArchiveReader(source, **kw).open()
