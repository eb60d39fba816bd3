from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from .codec import CompressMethod
from .constants import ROOT_METADATA_FILE, ROOT_NAME
from .meta import Meta


Source = Union[bytes, bytearray, memoryview, str, "os.PathLike[str]"]


@dataclass
class InputFile:
    """A file to be archived: its name, where its bytes come from and how to store it.

    ``source`` is either the content itself or a filesystem path read at build time.
    ``compress`` overrides the writer's default compression when set.
    """

    name: str
    source: Source
    compress: Optional[Union[str, CompressMethod]] = None
    note: Optional[str] = None
    used: bool = False
    last_update: Optional[int] = None

    def meta(self) -> Meta:
        return Meta(name=self.name, note=self.note, used=self.used, last_update=self.last_update)

    def read(self) -> bytes:
        return read_source(self.source)


@dataclass
class InputDir:
    name: str
    children: List[Union[InputFile, "InputDir"]] = field(default_factory=list)
    note: Optional[str] = None
    used: bool = False
    last_update: Optional[int] = None

    def meta(self) -> Meta:
        return Meta(name=self.name, note=self.note, used=self.used, last_update=self.last_update)

    def file(self, name: str, source: Source, **kw) -> InputFile:
        f = InputFile(name, source, **kw)
        self.children.append(f)
        return f

    def dir(self, name: str, **kw) -> "InputDir":
        d = InputDir(name, **kw)
        self.children.append(d)
        return d


def read_source(source: Source) -> bytes:
    if isinstance(source, (bytes, bytearray, memoryview)):
        return bytes(source)
    with open(source, "rb") as fh:
        return fh.read()


def _apply_meta(node: Union[InputFile, InputDir], meta: Optional[Meta]) -> None:
    if meta is None:
        return
    node.note = meta.note
    node.used = meta.used
    if meta.last_update is not None:
        node.last_update = meta.last_update


def input_tree_from_path(
    fs_dir: str,
    *,
    metas: Optional[Dict[str, Meta]] = None,
    with_mtime: bool = True,
    name: Optional[str] = None,
) -> InputDir:
    """Describe a filesystem directory as an :class:`InputDir`.

    Children are visited in sorted name order. ``metas`` maps archive-relative
    paths (and ``/`` for the archive itself) to stored metadata, as read from
    an unpacked archive's metadata file, which is never archived itself.
    """
    metas = metas or {}
    if not os.path.isdir(fs_dir):
        raise NotADirectoryError(fs_dir)
    base = os.path.basename(os.path.normpath(os.path.abspath(fs_dir)))
    root = InputDir(name or base)
    root_meta = metas.get(ROOT_NAME)
    if root_meta is not None:
        root.name = name or root_meta.name
        _apply_meta(root, root_meta)

    def _walk(d: str, node: InputDir, rel: str) -> None:
        with os.scandir(d) as it:
            entries = sorted(it, key=lambda e: e.name)
        for ent in entries:
            if not rel and ent.name == ROOT_METADATA_FILE:
                continue
            arc = f"{rel}/{ent.name}" if rel else ent.name
            if ent.is_dir():
                child: Union[InputFile, InputDir] = InputDir(ent.name)
                if with_mtime:
                    child.last_update = int(ent.stat().st_mtime)
                _apply_meta(child, metas.get(arc))
                node.children.append(child)
                _walk(ent.path, child, arc)
            elif ent.is_file():
                child = InputFile(ent.name, ent.path)
                if with_mtime:
                    child.last_update = int(ent.stat().st_mtime)
                _apply_meta(child, metas.get(arc))
                node.children.append(child)
    _walk(fs_dir, root, "")
    return root
