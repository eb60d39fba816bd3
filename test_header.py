from __future__ import annotations

import unittest

import msgpack

from bar.codec import CompressMethod
from bar.constants import (
    KEY_COMPRESSMETHOD,
    KEY_LASTUPDATE,
    KEY_META,
    KEY_NAME,
    KEY_NOTE,
    KEY_OFFSET,
    KEY_SIZE,
    KEY_USED,
    ROOT_NAME,
    Revision,
)
from bar.entry import Directory, File
from bar.errors import (
    CorruptData,
    MissingField,
    NameCollision,
    RevisionMismatch,
    Truncated,
    TypeMismatch,
    UnknownTag,
)
from bar.header import Header, deserialize, serialize
from bar.meta import Meta


TS = Revision.TIMESTAMPED
ENC = Revision.ENCRYPTED
SALT = b"\x11" * 16


def _meta(name, extra=None):
    return {KEY_NAME: name, KEY_USED: False, **(extra or {})}


def _file(name, offset=0, size=0, method="none", extra=None):
    return [True, {KEY_OFFSET: offset, KEY_SIZE: size, KEY_META: _meta(name, extra), KEY_COMPRESSMETHOD: method}]


def _raw_header(*entries, revision=TS):
    root = [_meta(ROOT_NAME), list(entries)]
    if revision is TS:
        return msgpack.packb([_meta("arc"), root], use_bin_type=True)
    return msgpack.packb([_meta("arc"), b"\x00" * 12, root, SALT], use_bin_type=True)


def _timestamped_header() -> Header:
    root = Directory(Meta(name=ROOT_NAME))
    docs = root.add(Directory(Meta(name="docs", note="papers", last_update=1_600_000_000)))
    docs.add(File(Meta(name="a.txt", used=True), offset=0, size=10, compress_method=CompressMethod("high", "gzip")))
    root.add(File(Meta(name="b.bin", last_update=-5), offset=10, size=3))
    return Header(meta=Meta(name="music", note="mixtape", last_update=1_700_000_000), root=root)


def _encrypted_header() -> Header:
    root = Directory(Meta(name=ROOT_NAME))
    root.add(File(Meta(name="a", enc_nonce=0), offset=0, size=4))
    root.add(File(Meta(name="b", enc_nonce=1, note="n"), offset=4, size=4, compress_method=CompressMethod("fast", "deflate")))
    return Header(meta=Meta(name="vault"), root=root, nonce_counter=2, kdf_salt=SALT)


class HeaderRoundTripTests(unittest.TestCase):
    def test_timestamped(self):
        h = _timestamped_header()
        self.assertEqual(deserialize(serialize(h, TS), TS), h)

    def test_encrypted(self):
        h = _encrypted_header()
        back = deserialize(serialize(h, ENC), ENC)
        self.assertEqual(back, h)
        self.assertEqual(back.nonce_counter, 2)
        self.assertEqual(back.root.resolve("b").meta.enc_nonce, 1)

    def test_layout(self):
        raw = msgpack.unpackb(serialize(_timestamped_header(), TS), raw=False, strict_map_key=False)
        self.assertEqual(len(raw), 2)
        # Meta maps are written as NAME, USED, LASTUPDATE, NOTE
        self.assertEqual(list(raw[0].keys()), [KEY_NAME, KEY_USED, KEY_LASTUPDATE, KEY_NOTE])
        docs_entry = raw[1][1][0]
        self.assertIs(docs_entry[0], False)
        file_entry = docs_entry[1][1][0]
        self.assertIs(file_entry[0], True)
        self.assertEqual(file_entry[1][KEY_COMPRESSMETHOD], "high-gzip")

        enc = msgpack.unpackb(serialize(_encrypted_header(), ENC), raw=False, strict_map_key=False)
        self.assertEqual(len(enc), 4)
        self.assertEqual(enc[1], (2).to_bytes(12, "big"))
        self.assertEqual(enc[3], SALT)


class RevisionTests(unittest.TestCase):
    def test_wrong_revision_on_read(self):
        with self.assertRaises(RevisionMismatch):
            deserialize(serialize(_timestamped_header(), TS), ENC)
        with self.assertRaises(RevisionMismatch):
            deserialize(serialize(_encrypted_header(), ENC), TS)

    def test_foreign_fields_on_write(self):
        with self.assertRaises(RevisionMismatch):
            serialize(_timestamped_header(), ENC)
        with self.assertRaises(RevisionMismatch):
            serialize(_encrypted_header(), TS)

    def test_nonce_on_directory(self):
        bad = msgpack.packb(
            [_meta("arc"), b"\x00" * 12, [_meta(ROOT_NAME, {7: 3}), []], SALT], use_bin_type=True
        )
        with self.assertRaises(TypeMismatch):
            deserialize(bad, ENC)

    def test_unreadable_values_are_not_written(self):
        cases = [
            (Meta(name="f", last_update=1 << 63), "LASTUPDATE"),
            (Meta(name="f", last_update="yesterday"), "LASTUPDATE"),
            (Meta(name="f", note=5), "NOTE"),
            (Meta(name="f", used=1), "USED"),
        ]
        for meta, field in cases:
            root = Directory(Meta(name=ROOT_NAME))
            root.add(File(meta, offset=0, size=0))
            with self.assertRaises(TypeMismatch, msg=field) as cm:
                serialize(Header(meta=Meta(name="arc"), root=root), TS)
            self.assertEqual(cm.exception.field, field)
        h = _encrypted_header()
        h.root.resolve("a").meta.enc_nonce = 1 << 64
        with self.assertRaises(TypeMismatch):
            serialize(h, ENC)
        with self.assertRaises(TypeMismatch):
            serialize(Header(meta=Meta(name=None)), TS)

    def test_encrypted_needs_salt(self):
        h = _encrypted_header()
        h.kdf_salt = None
        with self.assertRaises(TypeMismatch):
            serialize(h, ENC)


class MalformedHeaderTests(unittest.TestCase):
    def test_empty_and_short(self):
        with self.assertRaises(Truncated):
            deserialize(b"", TS)
        data = serialize(_timestamped_header(), TS)
        with self.assertRaises(Truncated):
            deserialize(data[:-3], TS)

    def test_trailing_bytes(self):
        with self.assertRaises(CorruptData):
            deserialize(serialize(_timestamped_header(), TS) + b"\x00", TS)

    def test_garbage(self):
        with self.assertRaises(CorruptData):
            deserialize(b"\xc1", TS)

    def test_not_an_array(self):
        with self.assertRaises(TypeMismatch):
            deserialize(msgpack.packb({"a": 1}), TS)
        with self.assertRaises(TypeMismatch):
            deserialize(msgpack.packb([1, 2, 3]), TS)

    def test_discriminator_must_be_boolean(self):
        entry = [1, {KEY_OFFSET: 0, KEY_SIZE: 0, KEY_META: _meta("f"), KEY_COMPRESSMETHOD: "none"}]
        with self.assertRaises(UnknownTag):
            deserialize(_raw_header(entry), TS)

    def test_unknown_keys(self):
        with self.assertRaises(UnknownTag):
            deserialize(_raw_header(_file("f", extra={3: "x"})), TS)
        entry = _file("f")
        entry[1][42] = 1
        with self.assertRaises(UnknownTag):
            deserialize(_raw_header(entry), TS)

    def test_missing_fields(self):
        entry = _file("f")
        del entry[1][KEY_OFFSET]
        with self.assertRaises(MissingField):
            deserialize(_raw_header(entry), TS)
        entry = _file("f")
        del entry[1][KEY_META][KEY_NAME]
        with self.assertRaises(MissingField):
            deserialize(_raw_header(entry), TS)

    def test_optional_meta_defaults(self):
        entry = [True, {KEY_OFFSET: 0, KEY_SIZE: 0, KEY_META: {KEY_NAME: "f"}, KEY_COMPRESSMETHOD: "none"}]
        h = deserialize(_raw_header(entry), TS)
        meta = h.root.resolve("f").meta
        self.assertFalse(meta.used)
        self.assertIsNone(meta.note)
        self.assertIsNone(meta.last_update)

    def test_type_mismatches(self):
        cases = [
            _file(7),
            _file("f", extra={KEY_USED: 1}),
            _file("f", offset=True),
            _file("f", offset=-1),
            _file("f", size=1 << 32),
            _file("f", method="ultra-zip"),
            _file("f", method=3),
            _file("f", extra={KEY_NOTE: 5}),
            _file("a/b"),
        ]
        for entry in cases:
            with self.assertRaises(TypeMismatch, msg=repr(entry)):
                deserialize(_raw_header(entry), TS)

    def test_duplicate_siblings(self):
        with self.assertRaises(NameCollision):
            deserialize(_raw_header(_file("same"), _file("same", offset=0)), TS)
        with self.assertRaises(NameCollision):
            deserialize(_raw_header(_file("same"), [False, [_meta("same"), []]]), TS)

    def test_error_names_path(self):
        entry = [False, [_meta("docs"), [_file("f", size=-1)]]]
        with self.assertRaises(TypeMismatch) as cm:
            deserialize(_raw_header(entry), TS)
        self.assertEqual(cm.exception.path, "docs/f")
        self.assertEqual(cm.exception.field, "SIZE")


if __name__ == "__main__":
    unittest.main()
