from __future__ import annotations

import os
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path
from typing import Dict

from bar.constants import ROOT_METADATA_FILE, Revision
from bar.encryption import _HAS_CRYPTO
from bar.reader import ArchiveReader


def _random_bytes(size: int) -> bytes:
    return os.urandom(size)


def _build_fixture_tree(root: Path) -> Dict[str, bytes]:
    files: Dict[str, bytes] = {}
    (root / "docs").mkdir()
    (root / "docs" / "notes").mkdir()
    content = b"hello world\n" * 20
    (root / "docs" / "readme.txt").write_bytes(content)
    files["docs/readme.txt"] = content

    bin_data = _random_bytes(2048)
    (root / "docs" / "notes" / "binary.bin").write_bytes(bin_data)
    files["docs/notes/binary.bin"] = bin_data

    (root / "docs" / "notes" / "empty.txt").write_text("")
    files["docs/notes/empty.txt"] = b""

    (root / "top.md").write_text("# top\n")
    files["top.md"] = b"# top\n"
    return files


def _compare_trees(src: Path, dst: Path):
    for root_src, dirs_src, files_src in os.walk(src):
        rel = os.path.relpath(root_src, src)
        root_dst = os.path.join(dst, rel) if rel != "." else dst
        assert os.path.isdir(root_dst), f"Missing directory: {root_dst}"

        dirs_dst = sorted(d for d in os.listdir(root_dst) if os.path.isdir(os.path.join(root_dst, d)))
        assert dirs_dst == sorted(dirs_src), f"Directory mismatch under {root_src}: {dirs_dst} != {sorted(dirs_src)}"

        for fname in files_src:
            if fname == ROOT_METADATA_FILE:
                continue
            with open(Path(root_src) / fname, "rb") as sf, open(Path(root_dst) / fname, "rb") as df:
                assert sf.read() == df.read(), f"File contents differ: {root_dst}/{fname}"


class CLIIntegrationTests(unittest.TestCase):
    def run_cli(self, args, *, expect: int | None = 0, cwd: Path | None = None):
        cmd = [sys.executable, "-m", "bar.cli"] + list(args)
        env = os.environ.copy()
        repo_root = Path(__file__).resolve().parent
        existing = env.get("PYTHONPATH", "")
        env["PYTHONPATH"] = str(repo_root) if not existing else f"{repo_root}{os.pathsep}{existing}"
        proc = subprocess.run(
            cmd,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            env=env,
        )
        if expect is not None and proc.returncode != expect:
            raise AssertionError(
                f"CLI exited {proc.returncode}, expected {expect}\nCommand: {' '.join(cmd)}\nSTDOUT:\n{proc.stdout}\nSTDERR:\n{proc.stderr}"
            )
        return proc

    def test_pack_unpack_roundtrip(self):
        tmp_src = tempfile.TemporaryDirectory()
        tmp_workspace = tempfile.TemporaryDirectory()
        self.addCleanup(tmp_src.cleanup)
        self.addCleanup(tmp_workspace.cleanup)

        src_root = Path(tmp_src.name)
        workspace = Path(tmp_workspace.name)
        _build_fixture_tree(src_root)

        archive = workspace / "archive.bar"
        self.run_cli(["pack", str(src_root), str(archive), "--name", "fixture", "--compress", "high-gzip", "--jobs", "2"])

        verify_proc = self.run_cli(["verify", str(archive)])
        self.assertIn("OK", verify_proc.stdout)

        info = self.run_cli(["info", str(archive)])
        self.assertIn("Name: fixture", info.stdout)
        self.assertIn("Files: 4", info.stdout)
        self.assertIn("Revision: timestamped", info.stdout)

        extract_dir = workspace / "extract"
        self.run_cli(["unpack", str(archive), "--outdir", str(extract_dir), "--quiet"])
        self.assertTrue((extract_dir / ROOT_METADATA_FILE).is_file())
        _compare_trees(src_root, extract_dir)

        # Packing the unpacked tree again keeps the archive name from the metadata file
        again = workspace / "again.bar"
        self.run_cli(["pack", str(extract_dir), str(again)])
        with ArchiveReader(str(again)) as r:
            self.assertEqual(r.meta.name, "fixture")
            self.assertNotIn(ROOT_METADATA_FILE, r.file_paths())
            self.assertEqual(r.extract("docs/readme.txt"), b"hello world\n" * 20)

    def test_browse_and_edit_metadata(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            src = root / "music"
            src.mkdir()
            data = _build_fixture_tree(src)
            archive = root / "music.bar"
            self.run_cli(["pack", str(src), str(archive), "--note", "road trip"])

            tree = self.run_cli(["tree", str(archive)])
            self.assertIn("readme.txt", tree.stdout)
            self.assertIn("notes/", tree.stdout)

            ls = self.run_cli(["ls", str(archive), "docs"])
            self.assertIn("docs/readme.txt", ls.stdout)
            self.assertIn("docs/notes/", ls.stdout)

            view = self.run_cli(["view", str(archive)])
            self.assertIn("Name: music", view.stdout)
            self.assertIn("Note: road trip", view.stdout)

            self.run_cli(["edit", str(archive), "docs/readme.txt", "--note", "read me first"])
            view_file = self.run_cli(["view", str(archive), "docs/readme.txt"])
            self.assertIn("Note: read me first", view_file.stdout)
            self.assertIn("Used: no", view_file.stdout)

            out = root / "out"
            self.run_cli(["extract", str(archive), "docs/readme.txt", "top.md", "--outdir", str(out), "--mark-used", "-j", "2"])
            self.assertEqual((out / "readme.txt").read_bytes(), data["docs/readme.txt"])
            self.assertEqual((out / "top.md").read_bytes(), data["top.md"])
            view_used = self.run_cli(["view", str(archive), "docs/readme.txt", "top.md"])
            self.assertIn("File: docs/readme.txt", view_used.stdout)
            self.assertIn("File: top.md", view_used.stdout)
            self.assertEqual(view_used.stdout.count("Used: yes"), 2)
            self.assertIn("Note: read me first", view_used.stdout)

            self.run_cli(["edit", str(archive), "docs/readme.txt", "--clear-note", "--unused", "--rename", "README"])
            renamed = self.run_cli(["view", str(archive), "docs/README"])
            self.assertNotIn("Note:", renamed.stdout)
            self.assertIn("Used: no", renamed.stdout)
            self.assertEqual(self.run_cli(["extract", str(archive), "docs/readme.txt"], expect=2).returncode, 2)

            clash = self.run_cli(["edit", str(archive), "docs/README", "--rename", "notes"], expect=2)
            self.assertIn("Error", clash.stderr)
            nothing = self.run_cli(["edit", str(archive), "top.md"], expect=2)
            self.assertIn("Nothing to edit", nothing.stderr)

            (src / "docs" / "notes" / "top.md").write_bytes(b"shadow\n")
            self.run_cli(["pack", str(src), str(archive)])
            same_name = self.run_cli(
                ["extract", str(archive), "top.md", "docs/notes/top.md", "--outdir", str(root / "dupes"), "-j", "2"],
                expect=2,
            )
            self.assertIn("extract them separately", same_name.stderr)
            self.assertFalse((root / "dupes").exists())

            missing = self.run_cli(["extract", str(archive), "docs/nope.txt"], expect=2)
            self.assertIn("not found", missing.stderr)

    def test_verify_detects_corruption(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            src = root / "data"
            src.mkdir()
            (src / "a.txt").write_bytes(b"compressible text " * 200)
            archive = root / "data.bar"
            self.run_cli(["pack", str(src), str(archive), "--compress", "fast-gzip"])

            with ArchiveReader(str(archive)) as reader:
                target = reader.file("a.txt")
            with open(archive, "rb+") as fh:
                pos = target.offset + target.size // 2
                fh.seek(pos)
                b = fh.read(1)
                fh.seek(pos)
                fh.write(bytes([b[0] ^ 0x55]))

            proc = self.run_cli(["verify", str(archive)], expect=None)
            self.assertEqual(proc.returncode, 1)
            self.assertIn("FAIL", proc.stdout)

    def test_garbage_archive(self):
        with tempfile.TemporaryDirectory() as tmp:
            bogus = Path(tmp) / "bogus.bar"
            bogus.write_bytes(b"\x00" * 4)
            proc = self.run_cli(["info", str(bogus)], expect=2)
            self.assertIn("Error", proc.stderr)

    def test_encrypted_roundtrip(self):
        if not _HAS_CRYPTO:
            self.skipTest("PyCryptodomex not available")

        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            fixture = root / "enc"
            fixture.mkdir()
            (fixture / "file.txt").write_text("secret data")
            key_file = root / "archive.key"
            key_file.write_bytes(_random_bytes(32))
            archive = root / "enc.bar"
            self.run_cli(["pack", str(fixture), str(archive), "--key-file", str(key_file), "--compress", "medium-deflate"])
            self.assertNotIn(b"secret data", archive.read_bytes())

            with ArchiveReader(str(archive), revision=Revision.ENCRYPTED) as r:
                self.assertEqual(r.file("file.txt").meta.enc_nonce, 0)
                self.assertEqual(r.nonce_counter, 1)

            info = self.run_cli(["info", str(archive), "--encrypted"])
            self.assertIn("Revision: encrypted", info.stdout)

            denied = self.run_cli(["extract", str(archive), "file.txt", "--encrypted", "--outdir", str(root / "x")], expect=2)
            self.assertIn("Provide --key-file or --password", denied.stderr)

            extract_dir = root / "extract"
            self.run_cli(["unpack", str(archive), "--key-file", str(key_file), "--outdir", str(extract_dir)])
            self.assertEqual((extract_dir / "file.txt").read_text(), "secret data")

            self.run_cli(["edit", str(archive), "file.txt", "--note", "classified", "--used", "--encrypted"])
            verify = self.run_cli(["verify", str(archive), "--key-file", str(key_file)])
            self.assertIn("OK", verify.stdout)

            wrong_revision = self.run_cli(["info", str(archive)], expect=2)
            self.assertIn("Error", wrong_revision.stderr)


if __name__ == "__main__":
    unittest.main()
