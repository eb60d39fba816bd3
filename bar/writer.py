from __future__ import annotations

import concurrent.futures as _fut
import dataclasses
import io
import os
from dataclasses import dataclass
from typing import BinaryIO, Dict, Iterable, List, Optional, Union

from .codec import NO_COMPRESSION, Codec, CompressMethod
from .constants import DEFAULT_JOBS, DEFAULT_REVISION, MAX_U32, ROOT_NAME, Revision
from .encryption import EncryptionContext, NonceCounter
from .entry import Directory, File, TreeBuilder
from .errors import NameCollision, RevisionMismatch, TypeMismatch
from .header import Header, serialize
from .inputs import InputDir, InputFile, Source, input_tree_from_path, read_source
from .meta import Meta, check_meta
from .metafile import read_sidecar
from .pathutil import PathLike, check_name, join_path, split_path
from .trailer import write_trailer


@dataclass
class _Job:
    path: str
    entry: File
    source: Optional[Source] = None
    blob: Optional[bytes] = None  # already stored bytes, copied verbatim
    nonce: Optional[int] = None


class ArchiveWriter:
    """Builds a bar archive laid out as ``[data][header][u64 LE data length]``.

    Entries are collected into an in-memory tree first; ``finalize`` then
    walks it depth first, stores each file's bytes and writes the header.
    """

    def __init__(
        self,
        out: Union[str, "os.PathLike[str]", BinaryIO],
        name: str,
        *,
        revision: Union[Revision, str] = DEFAULT_REVISION,
        compress: Union[str, CompressMethod] = NO_COMPRESSION,
        key: Optional[bytes] = None,
        password: Optional[str] = None,
        salt: Optional[bytes] = None,
        nonce_start: int = 0,
        jobs: int = DEFAULT_JOBS,
        note: Optional[str] = None,
        used: bool = False,
        last_update: Optional[int] = None,
    ):
        self.out = out
        self.f: Optional[BinaryIO] = None
        self._owns_file = False
        self.revision = Revision(revision)
        self.compress = CompressMethod.parse(compress)
        self.jobs = max(1, int(jobs))
        self.encryptor: Optional[EncryptionContext] = None
        self.counter: Optional[NonceCounter] = None

        meta = Meta(name=name, note=note, used=used)
        if self.revision is Revision.ENCRYPTED:
            if key is None and password is None and salt is None:
                raise ValueError("Encrypted archives require a key or password")
            if last_update is not None:
                raise RevisionMismatch("LASTUPDATE in an encrypted archive", path=ROOT_NAME, field="LASTUPDATE")
            check_meta(meta, self.revision, context=ROOT_NAME)
            if key is not None or password is not None:
                self.encryptor = EncryptionContext.create(key=key, password=password, salt=salt)
                salt = self.encryptor.salt
            self.counter = NonceCounter(nonce_start)
            self.header = Header(meta=meta, nonce_counter=nonce_start, kdf_salt=salt)
        else:
            if key is not None or password is not None or salt is not None:
                raise ValueError("Keys and passwords only apply to encrypted archives")
            if nonce_start:
                raise ValueError("Timestamped archives have no nonce counter")
            meta.last_update = last_update
            check_meta(meta, self.revision, context=ROOT_NAME)
            self.header = Header(meta=meta)
        self._builder = TreeBuilder(self.header.root)
        self._jobs: Dict[int, _Job] = {}
        self._finalized = False

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def open(self):
        if self.f is not None:
            return
        if isinstance(self.out, (str, os.PathLike)):
            self.f = open(self.out, "wb")
            self._owns_file = True
        else:
            self.f = self.out

    def close(self):
        if self.f is not None and self._owns_file:
            self.f.close()
        self.f = None
        self._owns_file = False

    @property
    def root(self) -> Directory:
        return self.header.root

    @property
    def meta(self) -> Meta:
        return self.header.meta

    # Tree construction

    def _meta(
        self, name: str, note: Optional[str], used: bool, last_update: Optional[int], *, path: Optional[str] = None
    ) -> Meta:
        if last_update is not None and self.revision is Revision.ENCRYPTED:
            raise RevisionMismatch("LASTUPDATE in an encrypted archive", path=name, field="LASTUPDATE")
        meta = Meta(name=name, note=note, used=used, last_update=last_update)
        check_meta(meta, self.revision, context=path or join_path(split_path(self._builder.path) + [str(name)]))
        return meta

    def _parent_of(self, path: PathLike):
        parts = split_path(path)
        if not parts:
            raise ValueError("Entry path may not be empty")
        parent = self._builder.current.makedirs(parts[:-1])
        full = join_path(split_path(self._builder.path) + parts)
        return parent, parts[-1], full

    def _insert(self, parent: Directory, entry, full: str):
        try:
            return parent.add(entry)
        except NameCollision:
            raise NameCollision("Entry already exists", path=full) from None

    def enter_dir(self, name: str, *, note: Optional[str] = None, used: bool = False, last_update: Optional[int] = None) -> Directory:
        """Make ``name`` (created when missing) the base for relative paths."""
        return self._builder.push(name, self._meta(name, note, used, last_update))

    def leave_dir(self) -> Directory:
        return self._builder.pop()

    def add_dir(
        self,
        path: PathLike,
        *,
        note: Optional[str] = None,
        used: bool = False,
        last_update: Optional[int] = None,
    ) -> Directory:
        """Record a directory; missing parents are created with default metadata."""
        parent, name, full = self._parent_of(path)
        return self._insert(parent, Directory(self._meta(name, note, used, last_update, path=full)), full)

    def add_file(
        self,
        path: PathLike,
        source: Source,
        *,
        compress: Optional[Union[str, CompressMethod]] = None,
        note: Optional[str] = None,
        used: bool = False,
        last_update: Optional[int] = None,
    ) -> File:
        """Queue a file; ``source`` is its content or a filesystem path read at finalize."""
        if self._finalized:
            raise RuntimeError("Archive already finalized")
        method = self.compress if compress is None else CompressMethod.parse(compress)
        parent, name, full = self._parent_of(path)
        entry = File(meta=self._meta(name, note, used, last_update, path=full), compress_method=method)
        self._insert(parent, entry, full)
        self._jobs[id(entry)] = _Job(path=full, entry=entry, source=source)
        return entry

    def add_blob(self, path: PathLike, blob: bytes, *, meta: Meta, compress_method: CompressMethod) -> File:
        """Queue already stored bytes (compressed, and encrypted under ``meta.enc_nonce``)."""
        if self._finalized:
            raise RuntimeError("Archive already finalized")
        parent, name, full = self._parent_of(path)
        if meta.enc_nonce is not None and self.revision is not Revision.ENCRYPTED:
            raise RevisionMismatch("ENC nonce in a timestamped archive", path=full, field="ENC")
        entry = File(meta=dataclasses.replace(meta, name=name), compress_method=compress_method)
        check_meta(entry.meta, self.revision, context=full, allow_nonce=True)
        self._insert(parent, entry, full)
        self._jobs[id(entry)] = _Job(path=full, entry=entry, blob=bytes(blob))
        return entry

    def add_input(self, tree: InputDir) -> None:
        """Add the children of ``tree`` under the current directory.

        Siblings must have distinct names; two input directories of the same
        name are a collision, not a merge.
        """
        for child in tree.children:
            full = join_path(split_path(self._builder.path) + [str(child.name)])
            if not isinstance(child.name, str):
                raise TypeMismatch("NAME field of metadata is not a string", path=full, field="NAME")
            check_name(child.name)
            if isinstance(child, InputDir):
                if self._builder.current.get(child.name) is not None:
                    raise NameCollision("Entry already exists", path=full)
                self.enter_dir(child.name, note=child.note, used=child.used, last_update=child.last_update)
                self.add_input(child)
                self.leave_dir()
            elif isinstance(child, InputFile):
                self.add_file(
                    child.name,
                    child.source,
                    compress=child.compress,
                    note=child.note,
                    used=child.used,
                    last_update=child.last_update,
                )
            else:
                raise ValueError(f"Unsupported input node: {type(child).__name__}")

    def add_tree(self, fs_dir: str, *, metas: Optional[Dict[str, Meta]] = None) -> InputDir:
        """Pack a filesystem directory, honoring an unpacked archive's metadata file."""
        if metas is None:
            metas = read_sidecar(fs_dir)
        timestamped = self.revision is Revision.TIMESTAMPED
        if not timestamped:
            metas = {p: dataclasses.replace(m, last_update=None) for p, m in metas.items()}
        tree = input_tree_from_path(fs_dir, metas=metas, with_mtime=timestamped)
        root_meta = metas.get(ROOT_NAME)
        if root_meta is not None:
            self.header.meta.note = root_meta.note
            self.header.meta.used = root_meta.used
            if timestamped and root_meta.last_update is not None:
                self.header.meta.last_update = root_meta.last_update
        self.add_input(tree)
        return tree

    # Output

    def _encode(self, job: _Job) -> bytes:
        if job.blob is not None:
            return job.blob
        blob = Codec(job.entry.compress_method).compress(read_source(job.source))
        if job.nonce is not None:
            blob = self.encryptor.encrypt(blob, job.nonce)
        return blob

    def _write_blobs(self, jobs: List[_Job], blobs: Iterable[bytes]) -> int:
        off = 0
        for job, blob in zip(jobs, blobs):
            if len(blob) > MAX_U32:
                raise TypeMismatch("Stored file does not fit the 32-bit SIZE field", path=job.path, field="SIZE")
            job.entry.offset = off
            job.entry.size = len(blob)
            if job.nonce is not None:
                job.entry.meta.enc_nonce = job.nonce
            self.f.write(blob)
            off += len(blob)
        return off

    def finalize(self) -> Header:
        """Store every file in depth-first order, then write the header and trailer.

        Nonces are handed out in traversal order before any work is
        dispatched, so parallel and serial builds produce identical bytes.
        """
        if self.f is None:
            raise RuntimeError("Archive not open")
        if self._finalized:
            raise RuntimeError("Archive already finalized")
        jobs: List[_Job] = []
        for _path, entry in self.header.root.files():
            job = self._jobs[id(entry)]
            if job.blob is None and self.counter is not None:
                if self.encryptor is None:
                    raise ValueError("Encrypted archive: key or password required to add new files")
                job.nonce = self.counter.take()
            jobs.append(job)

        if self.jobs > 1 and len(jobs) > 1:
            with _fut.ThreadPoolExecutor(max_workers=self.jobs) as ex:
                data_len = self._write_blobs(jobs, ex.map(self._encode, jobs))
        else:
            data_len = self._write_blobs(jobs, map(self._encode, jobs))

        if self.counter is not None:
            self.header.nonce_counter = self.counter.value
        self.f.write(serialize(self.header, self.revision))
        write_trailer(self.f, data_len)
        self.f.flush()
        self._finalized = True
        return self.header


def build(
    root: InputDir,
    *,
    name: Optional[str] = None,
    revision: Union[Revision, str] = DEFAULT_REVISION,
    compress: Union[str, CompressMethod] = NO_COMPRESSION,
    key: Optional[bytes] = None,
    password: Optional[str] = None,
    jobs: int = DEFAULT_JOBS,
    note: Optional[str] = None,
) -> bytes:
    """Build a complete archive from ``root`` in memory and return its bytes.

    The archive takes its name, note and flags from ``root`` unless
    overridden; ``root``'s children become the archive's top level.
    """
    revision = Revision(revision)
    buf = io.BytesIO()
    with ArchiveWriter(
        buf,
        root.name if name is None else name,
        revision=revision,
        compress=compress,
        key=key,
        password=password,
        jobs=jobs,
        note=root.note if note is None else note,
        used=root.used,
        last_update=root.last_update if revision is Revision.TIMESTAMPED else None,
    ) as w:
        w.add_input(root)
        w.finalize()
    return buf.getvalue()
