from __future__ import annotations

import os
import sys
import time
import argparse
import getpass as _getpass
import concurrent.futures as _fut

from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple

from bar.constants import DEFAULT_JOBS, ROOT_NAME, Revision
from bar.codec import CompressMethod
from bar.entry import Directory, File
from bar.errors import BarError, NotFound
from bar.meta import Meta
from bar.metafile import read_sidecar
from bar.reader import ArchiveReader
from bar.rebuild import mark_used as mark_entries_used, update_meta
from bar.writer import ArchiveWriter


class Secret:
    """Key material chosen on the command line; either selects the encrypted revision."""

    def __init__(self, key: Optional[bytes] = None, password: Optional[str] = None, encrypted: bool = False):
        self.key = key
        self.password = password
        self.encrypted = encrypted or key is not None or password is not None

    @property
    def revision(self) -> Revision:
        return Revision.ENCRYPTED if self.encrypted else Revision.TIMESTAMPED

    def reader_kwargs(self):
        return {"revision": self.revision, "key": self.key, "password": self.password}


def _secret_from_args(args) -> Secret:
    key = None
    if getattr(args, "key_file", None):
        with open(args.key_file, "rb") as fh:
            key = fh.read()
    password = getattr(args, "password", None)
    if password == "-":
        password = _getpass.getpass("Archive password: ")
    return Secret(key=key, password=password, encrypted=getattr(args, "encrypted", False))


def _format_time(ts: Optional[int]) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def _print_meta(meta: Meta, *, indent: str = "  ") -> None:
    print(f"{indent}Name: {meta.name}")
    print(f"{indent}Used: {'yes' if meta.used else 'no'}")
    if meta.last_update is not None:
        print(f"{indent}Last update: {_format_time(meta.last_update)}")
    if meta.enc_nonce is not None:
        print(f"{indent}Nonce: {meta.enc_nonce}")
    if meta.note is not None:
        print(f"{indent}Note: {meta.note}")


def cmd_pack(
    directory: str,
    output: str,
    *,
    secret: Secret,
    name: Optional[str] = None,
    compress: str = "none",
    note: Optional[str] = None,
    jobs: int = DEFAULT_JOBS,
    quiet: bool = False,
) -> bool:
    """Pack a filesystem directory into a new archive.

    Args:
        directory: Directory whose contents become the archive's top level.
        output: Path of the archive to write.
        secret: Key or password; when given the archive is encrypted.
        name: Archive name (defaults to the saved metadata, then the directory name).
        compress: Default compression, e.g. "none" or "high-gzip".
        note: Archive note.
        jobs: Worker threads for per-file compression and encryption.
    """
    src = Path(directory)
    if not src.is_dir():
        raise NotADirectoryError(f"Not a directory: {directory}")
    metas = read_sidecar(str(src))
    saved = metas.get(ROOT_NAME)
    arc_name = name or (saved.name if saved is not None else src.resolve().name)
    t0 = time.time()
    last_update = int(t0) if secret.revision is Revision.TIMESTAMPED else None
    with ArchiveWriter(
        output,
        arc_name,
        revision=secret.revision,
        compress=CompressMethod.parse(compress),
        key=secret.key,
        password=secret.password,
        jobs=jobs,
        last_update=last_update,
    ) as w:
        w.add_tree(str(src), metas=metas)
        if note is not None:
            w.meta.note = note
        if not quiet:
            print(" Compressing and writing file data...", flush=True)
        header = w.finalize()
    n_files = sum(1 for _ in header.root.files())
    n_dirs = sum(1 for _, e in header.root.walk() if isinstance(e, Directory))
    dt = max(time.time() - t0, 1e-6)
    size = os.path.getsize(output)
    print(f"Done: {n_files} files, {n_dirs} dirs; {size / (1024 * 1024):.2f} MiB written in {dt:.1f}s")
    return True


def cmd_unpack(archive: str, *, secret: Secret, outdir: str = ".", raw: bool = False, quiet: bool = False) -> bool:
    """Unpack every entry plus the metadata file into ``outdir``."""
    with ArchiveReader(archive, **secret.reader_kwargs()) as r:
        n = r.save_unpacked(outdir, decompress=not raw)
        if not quiet:
            for p in r.file_paths():
                print(f"extracted: {p}")
    print(f"Unpacked {n} file(s) to {outdir}")
    return True


def _tree_lines(d: Directory, prefix: str = "") -> List[str]:
    lines: List[str] = []
    for i, child in enumerate(d.children):
        last = i == len(d.children) - 1
        branch = "└── " if last else "├── "
        if isinstance(child, File):
            lines.append(f"{prefix}{branch}{child.name} ({child.size} bytes, {child.compress_method})")
        else:
            lines.append(f"{prefix}{branch}{child.name}/")
            lines.extend(_tree_lines(child, prefix + ("    " if last else "│   ")))
    return lines


def cmd_tree(archive: str, *, secret: Secret, path: str = "") -> bool:
    """Print the directory tree below ``path``."""
    with ArchiveReader(archive, **secret.reader_kwargs()) as r:
        d = r.directory(path)
        print(f"{r.meta.name}:{ROOT_NAME}{path.strip('/')}")
        for line in _tree_lines(d):
            print(line)
    return True


def cmd_ls(archive: str, *, secret: Secret, path: str = "") -> bool:
    """List one directory: kind, stored size and path per child."""
    with ArchiveReader(archive, **secret.reader_kwargs()) as r:
        for s in r.list(path):
            if s.is_file:
                print(f"file\t{s.size}\t{s.compress_method}\t{s.path}")
            else:
                print(f"dir\t{s.size}\t-\t{s.path}/")
    return True


def cmd_extract(
    archive: str,
    paths: List[str],
    *,
    secret: Secret,
    outdir: str = ".",
    raw: bool = False,
    mark_used: bool = False,
    jobs: int = DEFAULT_JOBS,
) -> bool:
    """Extract single files into ``outdir`` (flat, by file name).

    Args:
        archive: Archive path.
        paths: Archive paths of the files to extract.
        raw: Write the stored bytes without decrypting or decompressing.
        mark_used: Set the USED flag of each extracted file afterwards.
        jobs: Files extracted in parallel.
    """
    with ArchiveReader(archive, **secret.reader_kwargs()) as r:
        files = [(p, r.file(p)) for p in paths]
        seen = {}
        for p, f in files:
            if f.name in seen:
                raise ValueError(f"{seen[f.name]!r} and {p!r} would both be written to {f.name!r}; extract them separately")
            seen[f.name] = p
        os.makedirs(outdir, exist_ok=True)

        def _one(item: Tuple[str, File]) -> str:
            p, f = item
            target = os.path.join(outdir, f.name)
            with open(target, "wb") as fh:
                r.extract_to(p, fh, decompress=not raw)
            return target

        with _fut.ThreadPoolExecutor(max_workers=max(1, int(jobs))) as ex:
            for p, target in zip(paths, ex.map(_one, files)):
                print(f"{p} -> {target}")
    if mark_used:
        mark_entries_used(archive, paths, revision=secret.revision)
    return True


def cmd_view(archive: str, *, secret: Secret, paths: Optional[List[str]] = None) -> bool:
    """Show the metadata of entries, or of the archive itself when no path is given."""
    with ArchiveReader(archive, **secret.reader_kwargs()) as r:
        wanted = [p for p in (paths or []) if p.strip("/")]
        if not wanted:
            print(f"Archive: {archive}")
            _print_meta(r.meta)
            return True
        for path in wanted:
            e = r.entry(path)
            print(f"{'File' if isinstance(e, File) else 'Directory'}: {path.strip('/')}")
            _print_meta(e.meta)
            if isinstance(e, File):
                print(f"  Offset: {e.offset}")
                print(f"  Stored size: {e.size}")
                print(f"  Compression: {e.compress_method}")
    return True


def cmd_edit(
    archive: str,
    *,
    secret: Secret,
    path: str = "",
    note: Optional[str] = None,
    clear_note: bool = False,
    rename: Optional[str] = None,
    used: Optional[bool] = None,
) -> bool:
    """Edit the note, name or used flag of an entry (the archive itself for ``""``)."""
    changes = {}
    if clear_note:
        changes["note"] = None
    elif note is not None:
        changes["note"] = note
    if not changes and rename is None and used is None:
        raise ValueError("Nothing to edit; give --note, --clear-note, --rename, --used or --unused")
    meta = update_meta(archive, path, used=used, name=rename, revision=secret.revision, **changes)
    print(f"Updated {path.strip('/') or ROOT_NAME}")
    _print_meta(meta)
    return True


def cmd_info(archive: str, *, secret: Secret) -> bool:
    """Show archive information."""
    with ArchiveReader(archive, **secret.reader_kwargs()) as r:
        files = [f for _, f in r.root.files()]
        n_dirs = sum(1 for _, e in r.walk() if isinstance(e, Directory))
        print(f"Archive: {archive}")
        print(f"  Revision: {r.revision.value}")
        _print_meta(r.meta, indent="  ")
        print(f"  Data section: {r.data_len} bytes")
        print(f"  Header: {r.layout.header_len} bytes")
        if r.nonce_counter is not None:
            print(f"  Nonce counter: {r.nonce_counter}")
        print(f"  Entries: {len(files) + n_dirs}")
        print(f"    Files: {len(files)}")
        print(f"    Directories: {n_dirs}")
    return True


def cmd_verify(archive: str, *, secret: Secret) -> bool:
    """Decode every file.

    Prints:
        "OK" on success, "FAIL" on corrupt file data.
    """
    with ArchiveReader(archive, **secret.reader_kwargs()) as r:
        ok = r.verify()
    print("OK" if ok else "FAIL")
    return ok


def _add_secret_args(ap: argparse.ArgumentParser) -> None:
    ap.add_argument("--key-file", help="File holding a raw key (at least 16 bytes); selects the encrypted format")
    ap.add_argument("--password", help="Archive password ('-' to prompt); selects the encrypted format")
    ap.add_argument("--encrypted", action="store_true", help="Read an encrypted archive without a key (metadata only)")


def main(argv: List[str] | None = None):
    ap = argparse.ArgumentParser(
        prog="bar",
        description="bar archive tool",
        epilog="Archives are timestamped unless a key file or password selects the encrypted format.",
    )
    sub = ap.add_subparsers(dest="cmd", required=True)

    ap_pack = sub.add_parser("pack", help="Pack a directory into an archive")
    ap_pack.add_argument("directory", help="Input directory")
    ap_pack.add_argument("output", help="Output archive path")
    ap_pack.add_argument("--name", help="Archive name (default: directory name)")
    ap_pack.add_argument("--note", help="Archive note")
    ap_pack.add_argument(
        "--compress",
        "-c",
        default="none",
        help="Compression: none or {fast,medium,high}-{gzip,deflate} (default: none)",
    )
    ap_pack.add_argument("--jobs", "-j", type=int, default=DEFAULT_JOBS, help="Parallel compression jobs")
    ap_pack.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")
    _add_secret_args(ap_pack)

    ap_unpack = sub.add_parser("unpack", help="Unpack an archive into a directory")
    ap_unpack.add_argument("archive", help="Archive path")
    ap_unpack.add_argument("--outdir", default=".", help="Output directory")
    ap_unpack.add_argument("--raw", action="store_true", help="Write stored bytes without decoding")
    ap_unpack.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")
    _add_secret_args(ap_unpack)

    ap_tree = sub.add_parser("tree", help="Show the directory tree")
    ap_tree.add_argument("archive", help="Archive path")
    ap_tree.add_argument("path", nargs="?", default="", help="Directory to start from")
    _add_secret_args(ap_tree)

    ap_ls = sub.add_parser("ls", help="List one directory")
    ap_ls.add_argument("archive", help="Archive path")
    ap_ls.add_argument("path", nargs="?", default="", help="Directory to list")
    _add_secret_args(ap_ls)

    ap_extract = sub.add_parser("extract", help="Extract single files")
    ap_extract.add_argument("archive", help="Archive path")
    ap_extract.add_argument("paths", nargs="+", help="Archive paths of files to extract")
    ap_extract.add_argument("--outdir", default=".", help="Output directory")
    ap_extract.add_argument("--raw", action="store_true", help="Write stored bytes without decoding")
    ap_extract.add_argument("--mark-used", action="store_true", help="Flag extracted files as used")
    ap_extract.add_argument("--jobs", "-j", type=int, default=DEFAULT_JOBS, help="Parallel extraction jobs")
    _add_secret_args(ap_extract)

    ap_view = sub.add_parser("view", help="Show metadata of entries or the archive")
    ap_view.add_argument("archive", help="Archive path")
    ap_view.add_argument("paths", nargs="*", help="Entry paths (default: the archive)")
    _add_secret_args(ap_view)

    ap_edit = sub.add_parser("edit", help="Edit the note, name or used flag of an entry")
    ap_edit.add_argument("archive", help="Archive path")
    ap_edit.add_argument("path", nargs="?", default="", help="Entry path (default: the archive)")
    note_group = ap_edit.add_mutually_exclusive_group()
    note_group.add_argument("--note", help="New note text")
    note_group.add_argument("--clear-note", action="store_true", help="Remove the note")
    ap_edit.add_argument("--rename", help="New name for the entry")
    used_group = ap_edit.add_mutually_exclusive_group()
    used_group.add_argument("--used", dest="used", action="store_const", const=True, help="Flag the entry as used")
    used_group.add_argument("--unused", dest="used", action="store_const", const=False, help="Clear the used flag")
    _add_secret_args(ap_edit)

    ap_info = sub.add_parser("info", help="Show archive information")
    ap_info.add_argument("archive", help="Archive path")
    _add_secret_args(ap_info)

    ap_verify = sub.add_parser("verify", help="Check that every file decodes")
    ap_verify.add_argument("archive", help="Archive path")
    _add_secret_args(ap_verify)

    args = ap.parse_args(argv)
    try:
        secret = _secret_from_args(args)
        if args.cmd == "pack":
            cmd_pack(
                args.directory,
                args.output,
                secret=secret,
                name=args.name,
                compress=args.compress,
                note=args.note,
                jobs=args.jobs,
                quiet=args.quiet,
            )
        elif args.cmd == "unpack":
            cmd_unpack(args.archive, secret=secret, outdir=args.outdir, raw=args.raw, quiet=args.quiet)
        elif args.cmd == "tree":
            cmd_tree(args.archive, secret=secret, path=args.path)
        elif args.cmd == "ls":
            cmd_ls(args.archive, secret=secret, path=args.path)
        elif args.cmd == "extract":
            cmd_extract(
                args.archive,
                args.paths,
                secret=secret,
                outdir=args.outdir,
                raw=args.raw,
                mark_used=args.mark_used,
                jobs=args.jobs,
            )
        elif args.cmd == "view":
            cmd_view(args.archive, secret=secret, paths=args.paths)
        elif args.cmd == "edit":
            cmd_edit(
                args.archive,
                secret=secret,
                path=args.path,
                note=args.note,
                clear_note=args.clear_note,
                rename=args.rename,
                used=args.used,
            )
        elif args.cmd == "info":
            cmd_info(args.archive, secret=secret)
        elif args.cmd == "verify":
            sys.exit(0 if cmd_verify(args.archive, secret=secret) else 1)
        else:
            raise RuntimeError("Unknown command")
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except NotFound as e:
        print(f"Error: not found: {e}", file=sys.stderr)
        sys.exit(2)
    except ValueError as e:
        msg = str(e)
        if "key or password required" in msg.lower():
            print("Error: Archive is encrypted. Provide --key-file or --password.", file=sys.stderr)
        else:
            print(f"Error: {msg}", file=sys.stderr)
        sys.exit(2)
    except RuntimeError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except (BarError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
