from __future__ import annotations

import dataclasses
import os
import tempfile
from pathlib import Path
from typing import BinaryIO, Callable, Iterable, List, Optional, Tuple, TypeVar, Union

from .constants import DEFAULT_JOBS, Revision
from .entry import Directory, File
from .errors import BarError, NameCollision, NotFound
from .header import Header
from .meta import Meta
from .pathutil import PathLike, join_path, split_path
from .reader import ArchiveReader
from .writer import ArchiveWriter


class RebuildError(RuntimeError):
    """Raised when the rebuild operation cannot complete safely."""


_UNSET = object()
T = TypeVar("T")


def _copy_dir(reader: ArchiveReader, writer: ArchiveWriter, d: Directory) -> None:
    for child in d.children:
        if isinstance(child, File):
            writer.add_blob(child.name, reader.read_stored(child), meta=child.meta, compress_method=child.compress_method)
        else:
            m = child.meta
            writer.enter_dir(child.name, note=m.note, used=m.used, last_update=m.last_update)
            _copy_dir(reader, writer, child)
            writer.leave_dir()


def rebuild(
    reader: ArchiveReader,
    out: Union[str, "os.PathLike[str]", BinaryIO],
    *,
    tree: Optional[Directory] = None,
    meta: Optional[Meta] = None,
    jobs: int = DEFAULT_JOBS,
) -> Header:
    """Write a new archive from ``reader``'s tree, or an edited copy of it.

    Files in ``tree`` must still describe data of ``reader``: their stored
    bytes are copied verbatim, so nonces and the key salt carry over and no
    key is needed. The nonce counter continues where the source left off.
    """
    root = reader.root if tree is None else tree
    meta = reader.meta if meta is None else meta
    with ArchiveWriter(
        out,
        meta.name,
        revision=reader.revision,
        key=reader.key,
        password=reader.password,
        salt=reader.kdf_salt,
        nonce_start=reader.nonce_counter or 0,
        jobs=jobs,
        note=meta.note,
        used=meta.used,
        last_update=meta.last_update,
    ) as w:
        _copy_dir(reader, w, root)
        return w.finalize()


def _target(tree: Directory, archive_meta: Meta, parts: List[str]) -> Tuple[Optional[Directory], Meta]:
    """Parent directory and metadata of the entry at ``parts``; no parent for the archive itself."""
    if not parts:
        return None, archive_meta
    entry = tree.resolve(parts)
    if entry is None:
        raise NotFound("No such entry", path=join_path(parts))
    parent = tree.resolve(parts[:-1])
    return parent, entry.meta


def edit_archive(
    archive: Union[str, "os.PathLike[str]"],
    edit: Callable[[Directory, Meta], T],
    *,
    revision: Union[Revision, str] = Revision.TIMESTAMPED,
) -> T:
    """Apply ``edit(tree, archive_meta)`` to a copy of the archive's tree and swap the result in.

    The archive is rebuilt once into a temporary file beside it, checked, and
    then atomically replaced. Stored blobs are copied as they are, so
    encrypted archives are edited without their key.
    """
    src = Path(archive)
    fd, temp_archive = tempfile.mkstemp(prefix=".bar-rebuild-", suffix=".bar", dir=str(src.parent or Path(".")))
    os.close(fd)
    temp_path = Path(temp_archive)
    try:
        with ArchiveReader(str(src), revision=revision) as reader:
            tree = reader.copy_tree()
            archive_meta = dataclasses.replace(reader.meta)
            result = edit(tree, archive_meta)
            expected = [p for p, _ in tree.files()]
            rebuild(reader, str(temp_path), tree=tree, meta=archive_meta)

        with ArchiveReader(str(temp_path), revision=revision) as rebuilt:
            if rebuilt.file_paths() != expected:
                raise RebuildError("Rebuilt archive contents differ from the edited tree")
        os.replace(str(temp_path), str(src))
    except (BarError, OSError, ValueError, RuntimeError):
        if temp_path.exists():
            temp_path.unlink()
        raise
    return result


def update_meta(
    archive: Union[str, "os.PathLike[str]"],
    entry_path: PathLike = "",
    *,
    note=_UNSET,
    used: Optional[bool] = None,
    name: Optional[str] = None,
    revision: Union[Revision, str] = Revision.TIMESTAMPED,
) -> Meta:
    """Change the note, used flag or name of one entry (the archive itself for ``""``).

    Renaming keeps the entry's position among its siblings; a clash with a
    sibling raises ``NameCollision``. Returns the updated metadata.
    """
    parts = split_path(entry_path)

    def _edit(tree: Directory, archive_meta: Meta) -> Meta:
        parent, target = _target(tree, archive_meta, parts)
        if note is not _UNSET:
            target.note = note
        if used is not None:
            target.used = bool(used)
        if name is not None:
            if parent is None:
                target.name = name
            else:
                try:
                    parent.rename(parts[-1], name)
                except NameCollision:
                    raise NameCollision("Entry already exists", path=join_path(parts[:-1] + [name])) from None
        return dataclasses.replace(target)

    return edit_archive(archive, _edit, revision=revision)


def mark_used(
    archive: Union[str, "os.PathLike[str]"],
    paths: Iterable[PathLike],
    *,
    used: bool = True,
    revision: Union[Revision, str] = Revision.TIMESTAMPED,
) -> int:
    """Set the used flag of every entry in ``paths`` with a single rebuild."""
    split = [split_path(p) for p in paths]

    def _edit(tree: Directory, archive_meta: Meta) -> int:
        for parts in split:
            _parent, target = _target(tree, archive_meta, parts)
            target.used = used
        return len(split)

    return edit_archive(archive, _edit, revision=revision)
