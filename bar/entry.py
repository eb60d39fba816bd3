from __future__ import annotations

import copy as _copy
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple, Union

from .codec import NO_COMPRESSION, CompressMethod
from .constants import ROOT_NAME
from .errors import NameCollision, NotFound, UnbalancedDirectory
from .meta import Meta
from .pathutil import PathLike, check_name, join_path, split_path


@dataclass
class File:
    """A file entry: a byte range of the data section plus how it was stored."""

    meta: Meta
    offset: int = 0
    size: int = 0
    compress_method: CompressMethod = NO_COMPRESSION

    @property
    def name(self) -> str:
        return self.meta.name

    @property
    def is_file(self) -> bool:
        return True


@dataclass
class Directory:
    """A directory entry; children keep insertion order and have unique names."""

    meta: Meta
    children: List["Entry"] = field(default_factory=list)
    _index: Dict[str, "Entry"] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self):
        children, self.children = self.children, []
        for child in children:
            self.add(child)

    @property
    def name(self) -> str:
        return self.meta.name

    @property
    def is_file(self) -> bool:
        return False

    def get(self, name: str) -> Optional["Entry"]:
        return self._index.get(name)

    def add(self, entry: "Entry") -> "Entry":
        """Append ``entry`` as a direct child."""
        name = check_name(entry.meta.name)
        if name in self._index:
            raise NameCollision(f"Duplicate name {name!r} in directory {self.name!r}", path=name)
        self.children.append(entry)
        self._index[name] = entry
        return entry

    def remove(self, name: str) -> "Entry":
        entry = self._index.pop(name, None)
        if entry is None:
            raise NotFound(f"No entry named {name!r}", path=name)
        self.children.remove(entry)
        return entry

    def rename(self, old: str, new: str) -> "Entry":
        """Rename a direct child in place; it keeps its position."""
        entry = self._index.get(old)
        if entry is None:
            raise NotFound(f"No entry named {old!r}", path=old)
        if new == old:
            return entry
        check_name(new)
        if new in self._index:
            raise NameCollision(f"Duplicate name {new!r} in directory {self.name!r}", path=new)
        del self._index[old]
        entry.meta.name = new
        self._index[new] = entry
        return entry

    def insert(self, path: PathLike, entry: "Entry") -> "Entry":
        """Insert ``entry`` at ``path``; the last segment must equal its name.

        The parent must already exist and be a directory.
        """
        parts = split_path(path)
        if not parts:
            raise NameCollision("Cannot insert at the root path", path=ROOT_NAME)
        if parts[-1] != entry.meta.name:
            raise ValueError(f"Path {join_path(parts)!r} does not end in entry name {entry.meta.name!r}")
        parent = self._resolve_dir(parts[:-1])
        try:
            return parent.add(entry)
        except NameCollision:
            raise NameCollision("Entry already exists", path=join_path(parts)) from None

    def _resolve_dir(self, parts: List[str]) -> "Directory":
        cur: Directory = self
        for i, part in enumerate(parts):
            nxt = cur.get(part)
            if nxt is None:
                raise NotFound("Parent directory does not exist", path=join_path(parts[: i + 1]))
            if not isinstance(nxt, Directory):
                raise NotFound("Parent is a file, not a directory", path=join_path(parts[: i + 1]))
            cur = nxt
        return cur

    def resolve(self, path: PathLike) -> Optional["Entry"]:
        """Look up ``path`` nominally; the empty path resolves to this directory."""
        cur: Entry = self
        for part in split_path(path):
            if not isinstance(cur, Directory):
                return None
            nxt = cur.get(part)
            if nxt is None:
                return None
            cur = nxt
        return cur

    def makedirs(self, path: PathLike) -> "Directory":
        """Return the directory at ``path``, creating missing ones on the way."""
        cur: Directory = self
        parts = split_path(path)
        for i, part in enumerate(parts):
            nxt = cur.get(part)
            if nxt is None:
                nxt = cur.add(Directory(Meta(name=part)))
            elif not isinstance(nxt, Directory):
                raise NameCollision("A file is in the way", path=join_path(parts[: i + 1]))
            cur = nxt
        return cur

    def walk(self) -> "TreeWalk":
        return TreeWalk(self)

    def files(self) -> Iterator[Tuple[str, "File"]]:
        for p, e in self.walk():
            if isinstance(e, File):
                yield p, e

    def copy(self) -> "Directory":
        return _copy.deepcopy(self)

    def __deepcopy__(self, memo):
        clone = Directory(_copy.deepcopy(self.meta, memo))
        for child in self.children:
            clone.add(_copy.deepcopy(child, memo))
        return clone


Entry = Union[File, Directory]


class TreeWalk:
    """Depth-first pre-order traversal yielding ``(path, entry)``.

    The root itself is not yielded. Each ``iter()`` starts a fresh traversal.
    """

    def __init__(self, root: Directory):
        self.root = root

    def __iter__(self) -> Iterator[Tuple[str, Entry]]:
        stack: List[Tuple[str, Directory, int]] = [("", self.root, 0)]
        while stack:
            prefix, d, i = stack.pop()
            if i >= len(d.children):
                continue
            stack.append((prefix, d, i + 1))
            child = d.children[i]
            p = f"{prefix}/{child.name}" if prefix else child.name
            yield p, child
            if isinstance(child, Directory):
                stack.append((p, child, 0))


class TreeBuilder:
    """Stack based construction: ``push`` enters a directory, ``pop`` leaves it."""

    def __init__(self, root: Directory):
        self.root = root
        self._stack: List[Directory] = [root]

    @property
    def current(self) -> Directory:
        return self._stack[-1]

    @property
    def path(self) -> str:
        return join_path(d.name for d in self._stack[1:])

    @property
    def depth(self) -> int:
        return len(self._stack) - 1

    def push(self, name: str, meta: Optional[Meta] = None) -> Directory:
        existing = self.current.get(name)
        if existing is None:
            d = Directory(meta if meta is not None else Meta(name=name))
            if d.name != name:
                raise ValueError(f"Directory meta name {d.name!r} does not match {name!r}")
            self.current.add(d)
        elif isinstance(existing, Directory):
            d = existing
        else:
            raise NameCollision("A file is in the way", path=join_path([self.path, name]) if self.path else name)
        self._stack.append(d)
        return d

    def pop(self) -> Directory:
        if len(self._stack) == 1:
            raise UnbalancedDirectory("Left more directories than were entered", path=ROOT_NAME)
        return self._stack.pop()

    def add(self, entry: Entry) -> Entry:
        return self.current.add(entry)
