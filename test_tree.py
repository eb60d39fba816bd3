from __future__ import annotations

import unittest

from bar.constants import ROOT_NAME
from bar.entry import Directory, File, TreeBuilder
from bar.errors import NameCollision, NotFound, UnbalancedDirectory
from bar.meta import Meta
from bar.pathutil import split_path


def _root() -> Directory:
    return Directory(Meta(name=ROOT_NAME))


def _sample() -> Directory:
    root = _root()
    root.insert("a", Directory(Meta(name="a")))
    root.insert("a/x.txt", File(Meta(name="x.txt")))
    root.insert("a/sub", Directory(Meta(name="sub")))
    root.insert("a/sub/y.bin", File(Meta(name="y.bin")))
    root.insert("b.txt", File(Meta(name="b.txt")))
    return root


class PathTests(unittest.TestCase):
    def test_split_drops_empty_segments(self):
        self.assertEqual(split_path("/a//b/"), ["a", "b"])
        self.assertEqual(split_path(""), [])
        self.assertEqual(split_path("./.."), [".", ".."])
        self.assertEqual(split_path(["a", "", "b"]), ["a", "b"])


class TreeTests(unittest.TestCase):
    def test_insert_and_resolve(self):
        root = _sample()
        self.assertIsInstance(root.resolve("a/x.txt"), File)
        self.assertIsInstance(root.resolve("/a//sub/"), Directory)
        self.assertIs(root.resolve(""), root)
        self.assertIs(root.resolve("/"), root)
        self.assertIsNone(root.resolve("A"))
        self.assertIsNone(root.resolve("a/missing"))
        # A segment past a file never resolves
        self.assertIsNone(root.resolve("b.txt/extra"))

    def test_resolve_returns_exactly_the_inserted_paths(self):
        root = _sample()
        inserted = ["a", "a/x.txt", "a/sub", "a/sub/y.bin", "b.txt"]
        for p in inserted:
            self.assertIsNotNone(root.resolve(p), p)
        self.assertEqual(sorted(p for p, _ in root.walk()), sorted(inserted))

    def test_walk_is_preorder_and_restartable(self):
        root = _sample()
        walk = root.walk()
        first = [p for p, _ in walk]
        second = [p for p, _ in walk]
        self.assertEqual(first, ["a", "a/x.txt", "a/sub", "a/sub/y.bin", "b.txt"])
        self.assertEqual(first, second)
        self.assertEqual([p for p, _ in root.files()], ["a/x.txt", "a/sub/y.bin", "b.txt"])

    def test_children_keep_insertion_order(self):
        root = _root()
        for name in ("zeta", "alpha", "mid"):
            root.add(File(Meta(name=name)))
        self.assertEqual([c.name for c in root.children], ["zeta", "alpha", "mid"])

    def test_collisions(self):
        root = _sample()
        with self.assertRaises(NameCollision):
            root.insert("a", Directory(Meta(name="a")))
        with self.assertRaises(NameCollision):
            root.insert("a/x.txt", Directory(Meta(name="x.txt")))
        with self.assertRaises(NameCollision):
            root.insert("b.txt", File(Meta(name="b.txt")))

    def test_missing_parent(self):
        root = _sample()
        with self.assertRaises(NotFound):
            root.insert("nope/f", File(Meta(name="f")))
        with self.assertRaises(NotFound):
            root.insert("b.txt/f", File(Meta(name="f")))

    def test_dot_names_are_literal(self):
        root = _root()
        root.insert("..", Directory(Meta(name="..")))
        root.insert("../.", File(Meta(name=".")))
        self.assertIsInstance(root.resolve("../."), File)
        self.assertEqual([p for p, _ in root.walk()], ["..", "../."])

    def test_name_limits(self):
        root = _root()
        root.add(File(Meta(name="é" * 127)))
        with self.assertRaises(ValueError):
            root.add(File(Meta(name="é" * 128)))
        with self.assertRaises(ValueError):
            root.add(File(Meta(name="")))
        with self.assertRaises(ValueError):
            root.add(File(Meta(name="a/b")))

    def test_rename_keeps_position(self):
        root = _sample()
        a = root.resolve("a")
        renamed = a.rename("x.txt", "z.txt")
        self.assertIs(renamed, root.resolve("a/z.txt"))
        self.assertIsNone(root.resolve("a/x.txt"))
        self.assertEqual([c.name for c in a.children], ["z.txt", "sub"])
        self.assertIs(a.rename("sub", "sub"), root.resolve("a/sub"))
        with self.assertRaises(NameCollision):
            a.rename("z.txt", "sub")
        with self.assertRaises(NotFound):
            a.rename("missing", "m")
        with self.assertRaises(ValueError):
            a.rename("z.txt", "bad/name")
        self.assertEqual([c.name for c in a.children], ["z.txt", "sub"])

    def test_makedirs_reuses_and_detects_files(self):
        root = _sample()
        sub = root.makedirs("a/sub")
        self.assertIs(sub, root.resolve("a/sub"))
        deep = root.makedirs("a/new/deeper")
        self.assertIs(deep, root.resolve("a/new/deeper"))
        with self.assertRaises(NameCollision):
            root.makedirs("b.txt/inner")

    def test_copy_is_independent(self):
        root = _sample()
        clone = root.copy()
        self.assertEqual(clone, root)
        clone.resolve("a/x.txt").meta.note = "changed"
        clone.resolve("a").remove("sub")
        self.assertIsNone(root.resolve("a/x.txt").meta.note)
        self.assertIsNotNone(root.resolve("a/sub"))
        self.assertIsNone(clone.resolve("a/sub"))


class TreeBuilderTests(unittest.TestCase):
    def test_push_pop_add(self):
        root = _root()
        b = TreeBuilder(root)
        b.push("music")
        b.push("men at work")
        self.assertEqual(b.path, "music/men at work")
        b.add(File(Meta(name="land down under.mp3")))
        b.pop()
        b.push("men at work")  # re-entering reuses the directory
        self.assertEqual(len(b.current.children), 1)
        b.pop()
        b.pop()
        self.assertEqual(b.depth, 0)
        self.assertIsInstance(root.resolve("music/men at work/land down under.mp3"), File)

    def test_pop_past_root(self):
        b = TreeBuilder(_root())
        with self.assertRaises(UnbalancedDirectory):
            b.pop()
        b.push("a")
        b.pop()
        with self.assertRaises(UnbalancedDirectory):
            b.pop()

    def test_push_over_file(self):
        b = TreeBuilder(_root())
        b.add(File(Meta(name="f")))
        with self.assertRaises(NameCollision):
            b.push("f")


if __name__ == "__main__":
    unittest.main()
