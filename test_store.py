from __future__ import annotations

import os
import tempfile
import unittest
from pathlib import Path
from typing import Dict, Optional
from unittest import mock

from lusl import (
    ArchiveIOError,
    AuthenticationError,
    ConfigurationError,
    CorruptArchiveError,
    Deserializer,
    IntegrityError,
    KdfParams,
    SerializeOption,
    Serializer,
    UnsupportedFormatError,
)
from lusl.binary import ByteReader
from lusl.codec import Codec
from lusl.constants import FILE_MAGIC, NONCE_SIZE
from lusl.deserializer import DeserializerState
from lusl.hashutil import EMPTY_DIGEST, digest
from lusl.header import FILE_TAGS_SIZE, read_header, read_metadata
from lusl.serializer import SerializerState


FAST_KDF = KdfParams(time_cost=1, memory_cost_kib=1024, parallelism=1)

VARIANTS = {
    "plain": SerializeOption(),
    "encrypted": SerializeOption(kdf=FAST_KDF).to_encrypt("test_password"),
    "encrypted+compressed": SerializeOption(kdf=FAST_KDF).to_encrypt("test_password").to_compress(True),
}


def _create_sample_files(base: Path) -> Dict[str, bytes]:
    files = {
        "notes.md": b"# Title\nSome content\n",
        "docs/a.txt": b"hello world\n" * 50,
        "docs/b.bin": os.urandom(4096),
        "docs/nested/deeper/empty.txt": b"",
        "z_last.dat": os.urandom(100),
    }
    for rel, data in files.items():
        p = base.joinpath(*rel.split("/"))
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(data)
    return files


def _read_tree(root: Path) -> Dict[str, bytes]:
    out = {}
    for dirpath, _dirs, filenames in os.walk(root):
        for fn in filenames:
            full = Path(dirpath) / fn
            out[full.relative_to(root).as_posix()] = full.read_bytes()
    return out


def _serialize(src: Path, archive: Path, option: Optional[SerializeOption] = None):
    s = Serializer(str(src), str(archive))
    if option is not None:
        s.set_options(option)
    return s.serialize()


def _deserialize(archive: Path, dest: Path, option: Optional[SerializeOption] = None):
    d = Deserializer(str(archive), str(dest))
    if option is not None:
        d.set_options(option)
    return d.deserialize()


def _flip(path: Path, offset: int, mask: int = 0x01):
    with open(path, "rb+") as fh:
        fh.seek(offset)
        original = fh.read(1)
        fh.seek(offset)
        fh.write(bytes([original[0] ^ mask]))


def _metadata_end(archive: Path) -> int:
    reader = ByteReader(archive.read_bytes())
    header = read_header(reader)
    read_metadata(reader, header.file_count)
    return reader.pos


class LuslTests(unittest.TestCase):
    def run_with_tmpdir(self, func):
        with tempfile.TemporaryDirectory() as tmp:
            func(Path(tmp))

    def test_roundtrip_all_variants(self):
        for name, option in VARIANTS.items():
            with self.subTest(variant=name):

                def scenario(tmp_path: Path):
                    src = tmp_path / "src"
                    src.mkdir()
                    expected = _create_sample_files(src)
                    archive = tmp_path / "out.lusl"
                    records = _serialize(src, archive, option)
                    self.assertEqual([r.path for r in records], sorted(expected, key=lambda p: tuple(p.split("/"))))
                    restored = tmp_path / "restored"
                    d = Deserializer(str(archive), str(restored))
                    d.set_options(option)
                    d.deserialize()
                    self.assertEqual(d.state, DeserializerState.VERIFIED)
                    self.assertEqual(_read_tree(restored), expected)

                self.run_with_tmpdir(scenario)

    def test_roundtrip_empty_directory(self):
        for name, option in VARIANTS.items():
            with self.subTest(variant=name):

                def scenario(tmp_path: Path):
                    src = tmp_path / "src"
                    src.mkdir()
                    archive = tmp_path / "empty.lusl"
                    self.assertEqual(_serialize(src, archive, option), [])
                    restored = tmp_path / "restored"
                    self.assertEqual(_deserialize(archive, restored, option), [])
                    self.assertTrue(restored.is_dir())
                    self.assertEqual(_read_tree(restored), {})

                self.run_with_tmpdir(scenario)

    def test_concrete_plain_scenario(self):
        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            (src / "sub").mkdir(parents=True)
            (src / "a.txt").write_bytes(b"abc")
            (src / "sub" / "b.txt").write_bytes(b"")
            archive = tmp_path / "plain.lusl"
            _serialize(src, archive)

            raw = archive.read_bytes()
            self.assertEqual(raw[:8], FILE_MAGIC)
            reader = ByteReader(raw)
            header = read_header(reader)
            self.assertEqual(header.file_count, 2)
            records = read_metadata(reader, header.file_count)
            self.assertEqual([r.path for r in records], ["a.txt", "sub/b.txt"])
            self.assertEqual(records[0].checksum, digest(b"abc"))
            self.assertEqual(records[1].size, 0)
            self.assertEqual(records[1].checksum, EMPTY_DIGEST)
            self.assertEqual(reader.read_rest(), b"abc")

            restored = tmp_path / "restored"
            _deserialize(archive, restored)
            self.assertEqual((restored / "a.txt").read_bytes(), b"abc")
            b = restored / "sub" / "b.txt"
            self.assertTrue(b.is_file())
            self.assertEqual(b.stat().st_size, 0)
            self.assertEqual(digest(b.read_bytes()), EMPTY_DIGEST)

        self.run_with_tmpdir(scenario)

    def test_deterministic_plain_archive(self):
        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            src.mkdir()
            _create_sample_files(src)
            first = tmp_path / "one.lusl"
            second = tmp_path / "two.lusl"
            _serialize(src, first)
            _serialize(src, second, SerializeOption().with_workers(4))
            self.assertEqual(first.read_bytes(), second.read_bytes())

        self.run_with_tmpdir(scenario)

    def test_deterministic_metadata_when_encrypted(self):
        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            src.mkdir()
            _create_sample_files(src)
            option = VARIANTS["encrypted"]
            first = tmp_path / "one.lusl"
            second = tmp_path / "two.lusl"
            _serialize(src, first, option)
            _serialize(src, second, option)
            end = _metadata_end(first)
            self.assertEqual(first.read_bytes()[:end], second.read_bytes()[:end])
            # fresh nonce per archive
            self.assertNotEqual(
                first.read_bytes()[end : end + NONCE_SIZE], second.read_bytes()[end : end + NONCE_SIZE]
            )

        self.run_with_tmpdir(scenario)

    def test_fixed_nonce_gives_identical_encrypted_archives(self):
        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            src.mkdir()
            _create_sample_files(src)
            option = VARIANTS["encrypted+compressed"]
            fixed = b"\x07" * NONCE_SIZE
            with mock.patch("lusl.serializer.new_nonce", return_value=fixed):
                _serialize(src, tmp_path / "one.lusl", option)
                _serialize(src, tmp_path / "two.lusl", option)
            self.assertEqual((tmp_path / "one.lusl").read_bytes(), (tmp_path / "two.lusl").read_bytes())

        self.run_with_tmpdir(scenario)

    def test_tamper_detection(self):
        for name in ("encrypted", "encrypted+compressed"):
            option = VARIANTS[name]
            with self.subTest(variant=name):

                def scenario(tmp_path: Path):
                    src = tmp_path / "src"
                    src.mkdir()
                    _create_sample_files(src)
                    archive = tmp_path / "enc.lusl"
                    _serialize(src, archive, option)
                    size = archive.stat().st_size
                    nonce_at = _metadata_end(archive) + (8 if option.compress else 0)
                    # nonce, first ciphertext byte, last tag byte
                    for i, offset in enumerate((nonce_at, nonce_at + NONCE_SIZE, size - 1)):
                        copy = tmp_path / f"tampered{i}.lusl"
                        copy.write_bytes(archive.read_bytes())
                        _flip(copy, offset)
                        dest = tmp_path / f"out{i}"
                        with self.assertRaises(AuthenticationError):
                            _deserialize(copy, dest, option)
                        self.assertFalse(dest.exists())

                self.run_with_tmpdir(scenario)

    def test_metadata_is_authenticated(self):
        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            src.mkdir()
            (src / "a.txt").write_bytes(b"abc")
            archive = tmp_path / "enc.lusl"
            option = VARIANTS["encrypted"]
            _serialize(src, archive, option)
            # last checksum byte of the only record
            _flip(archive, _metadata_end(archive) - 1)
            with self.assertRaises(AuthenticationError):
                _deserialize(archive, tmp_path / "out", option)

        self.run_with_tmpdir(scenario)

    def test_wrong_password(self):
        for name in ("encrypted", "encrypted+compressed"):
            option = VARIANTS[name]
            with self.subTest(variant=name):

                def scenario(tmp_path: Path):
                    src = tmp_path / "src"
                    src.mkdir()
                    _create_sample_files(src)
                    archive = tmp_path / "enc.lusl"
                    _serialize(src, archive, option)
                    wrong = option.to_encrypt("not the password")
                    dest = tmp_path / "out"
                    with self.assertRaises(AuthenticationError):
                        _deserialize(archive, dest, wrong)
                    self.assertFalse(dest.exists())

                self.run_with_tmpdir(scenario)

    def test_encrypted_archive_requires_password(self):
        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            src.mkdir()
            (src / "a.txt").write_bytes(b"abc")
            archive = tmp_path / "enc.lusl"
            _serialize(src, archive, VARIANTS["encrypted"])
            with self.assertRaises(ConfigurationError):
                _deserialize(archive, tmp_path / "out")

        self.run_with_tmpdir(scenario)

    def test_checksum_enforcement_aborts_whole_restore(self):
        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            src.mkdir()
            (src / "a.txt").write_bytes(b"first file")
            (src / "b.txt").write_bytes(b"second file")
            (src / "c.txt").write_bytes(b"third file")
            archive = tmp_path / "plain.lusl"
            _serialize(src, archive)
            # one byte inside b.txt's slice of the data section
            _flip(archive, _metadata_end(archive) + len(b"first file") + 2)
            dest = tmp_path / "out"
            d = Deserializer(str(archive), str(dest))
            with self.assertRaises(IntegrityError) as cm:
                d.deserialize()
            self.assertEqual(cm.exception.path, "b.txt")
            self.assertIn("b.txt", str(cm.exception))
            self.assertEqual(d.state, DeserializerState.FAILED)
            self.assertFalse(dest.exists())

        self.run_with_tmpdir(scenario)

    def test_checksum_enforcement_after_decryption(self):
        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            src.mkdir()
            (src / "a.txt").write_bytes(b"aaaa")
            (src / "b.txt").write_bytes(b"bbbb")
            archive = tmp_path / "enc.lusl"
            option = VARIANTS["encrypted+compressed"]
            _serialize(src, archive, option)

            real_decompress = Codec.decompress

            def corrupting(self_codec, data, expected_size):
                out = bytearray(real_decompress(self_codec, data, expected_size))
                out[5] ^= 0xFF
                return bytes(out)

            dest = tmp_path / "out"
            with mock.patch("lusl.codec.Codec.decompress", corrupting):
                with self.assertRaises(IntegrityError) as cm:
                    _deserialize(archive, dest, option)
            self.assertEqual(cm.exception.path, "b.txt")
            self.assertFalse(dest.exists())

        self.run_with_tmpdir(scenario)

    def test_truncated_after_metadata(self):
        for name, option in VARIANTS.items():
            with self.subTest(variant=name):

                def scenario(tmp_path: Path):
                    src = tmp_path / "src"
                    src.mkdir()
                    _create_sample_files(src)
                    archive = tmp_path / "arc.lusl"
                    _serialize(src, archive, option)
                    end = _metadata_end(archive)
                    archive.write_bytes(archive.read_bytes()[:end])
                    with self.assertRaises(CorruptArchiveError):
                        _deserialize(archive, tmp_path / "out", option)

                self.run_with_tmpdir(scenario)

    def test_truncated_plain_data_and_trailing_bytes(self):
        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            src.mkdir()
            _create_sample_files(src)
            archive = tmp_path / "arc.lusl"
            _serialize(src, archive)
            raw = archive.read_bytes()
            archive.write_bytes(raw[:-1])
            with self.assertRaises(CorruptArchiveError):
                _deserialize(archive, tmp_path / "out1")
            archive.write_bytes(raw + b"\x00")
            with self.assertRaises(CorruptArchiveError):
                _deserialize(archive, tmp_path / "out2")
            # inside the metadata section
            archive.write_bytes(raw[: FILE_TAGS_SIZE + 5])
            with self.assertRaises(CorruptArchiveError):
                _deserialize(archive, tmp_path / "out3")

        self.run_with_tmpdir(scenario)

    def test_truncated_compressed_ciphertext_is_corrupt(self):
        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            src.mkdir()
            _create_sample_files(src)
            archive = tmp_path / "arc.lusl"
            option = VARIANTS["encrypted+compressed"]
            _serialize(src, archive, option)
            raw = archive.read_bytes()
            archive.write_bytes(raw[:-1])
            with self.assertRaises(CorruptArchiveError):
                _deserialize(archive, tmp_path / "out1", option)
            self.assertFalse((tmp_path / "out1").exists())
            archive.write_bytes(raw + b"\x00")
            with self.assertRaises(CorruptArchiveError):
                _deserialize(archive, tmp_path / "out2", option)

        self.run_with_tmpdir(scenario)

    def test_unsupported_format(self):
        def scenario(tmp_path: Path):
            bogus = tmp_path / "bogus.lusl"
            bogus.write_bytes(b"PK\x03\x04" + os.urandom(200))
            with self.assertRaises(UnsupportedFormatError):
                _deserialize(bogus, tmp_path / "out")
            empty = tmp_path / "empty.lusl"
            empty.write_bytes(b"")
            with self.assertRaises(UnsupportedFormatError):
                _deserialize(empty, tmp_path / "out")
            self.assertFalse((tmp_path / "out").exists())

        self.run_with_tmpdir(scenario)

    def test_compression_without_encryption_is_configuration_error(self):
        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            src.mkdir()
            s = Serializer(str(src), str(tmp_path / "a.lusl"))
            with self.assertRaises(ConfigurationError):
                s.set_options(SerializeOption().to_compress(True))
            self.assertFalse((tmp_path / "a.lusl").exists())

        self.run_with_tmpdir(scenario)

    def test_constructor_io_errors(self):
        def scenario(tmp_path: Path):
            with self.assertRaises(ArchiveIOError):
                Serializer(str(tmp_path / "missing"), str(tmp_path / "a.lusl"))
            with self.assertRaises(ArchiveIOError):
                Serializer(str(tmp_path), str(tmp_path / "no_such_dir" / "a.lusl"))
            with self.assertRaises(ArchiveIOError):
                Deserializer(str(tmp_path / "missing.lusl"), str(tmp_path / "out"))
            archive = tmp_path / "a.lusl"
            archive.write_bytes(b"")
            blocker = tmp_path / "file"
            blocker.write_bytes(b"x")
            with self.assertRaises(ArchiveIOError):
                Deserializer(str(archive), str(blocker))

        self.run_with_tmpdir(scenario)

    def test_failed_serialize_leaves_previous_archive(self):
        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            src.mkdir()
            (src / "a.txt").write_bytes(b"abc")
            archive = tmp_path / "out.lusl"
            archive.write_bytes(b"previous contents")
            s = Serializer(str(src), str(archive))
            with mock.patch("lusl.serializer.pack_metadata", side_effect=OSError(28, "No space left on device")):
                with self.assertRaises(ArchiveIOError):
                    s.serialize()
            self.assertEqual(s.state, SerializerState.FAILED)
            self.assertEqual(archive.read_bytes(), b"previous contents")
            self.assertEqual(sorted(p.name for p in tmp_path.iterdir()), ["out.lusl", "src"])

        self.run_with_tmpdir(scenario)

    @unittest.skipIf(os.name != "posix", "POSIX permission bits required")
    def test_archive_mode_follows_umask(self):
        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            src.mkdir()
            (src / "a.txt").write_bytes(b"abc")
            archive = tmp_path / "out.lusl"
            old = os.umask(0o022)
            try:
                _serialize(src, archive)
            finally:
                os.umask(old)
            self.assertEqual(archive.stat().st_mode & 0o777, 0o644)

        self.run_with_tmpdir(scenario)

    def test_serializer_state_and_archive_inside_source(self):
        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            src.mkdir()
            (src / "a.txt").write_bytes(b"abc")
            archive = src / "self.lusl"
            s = Serializer(str(src), str(archive))
            self.assertEqual(s.state, SerializerState.IDLE)
            s.serialize()
            self.assertEqual(s.state, SerializerState.FINALIZED)
            # second run must not swallow the first archive
            records = s.serialize()
            self.assertEqual([r.path for r in records], ["a.txt"])

        self.run_with_tmpdir(scenario)

    def test_symlinks_are_skipped(self):
        if not hasattr(os, "symlink"):
            self.skipTest("symlinks not supported")

        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            (src / "real").mkdir(parents=True)
            (src / "real" / "f.txt").write_bytes(b"data")
            try:
                os.symlink("real/f.txt", src / "link.txt")
                os.symlink("real", src / "linkdir")
            except OSError:
                self.skipTest("cannot create symlinks")
            records = _serialize(src, tmp_path / "a.lusl")
            self.assertEqual([r.path for r in records], ["real/f.txt"])

        self.run_with_tmpdir(scenario)

    def test_refuses_to_overwrite_existing_files(self):
        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            src.mkdir()
            _create_sample_files(src)
            archive = tmp_path / "a.lusl"
            _serialize(src, archive)
            dest = tmp_path / "out"
            (dest / "docs").mkdir(parents=True)
            (dest / "z_last.dat").write_bytes(b"keep me")
            with self.assertRaises(ArchiveIOError):
                _deserialize(archive, dest)
            self.assertEqual((dest / "z_last.dat").read_bytes(), b"keep me")
            self.assertEqual(_read_tree(dest), {"z_last.dat": b"keep me"})

        self.run_with_tmpdir(scenario)

    def test_write_failure_rolls_back(self):
        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            src.mkdir()
            _create_sample_files(src)
            archive = tmp_path / "a.lusl"
            _serialize(src, archive)
            dest = tmp_path / "out"
            real_open = open
            calls = {"n": 0}

            def flaky_open(path, mode="r", *args, **kwargs):
                if mode == "xb":
                    calls["n"] += 1
                    if calls["n"] == 3:
                        raise OSError(28, "No space left on device", path)
                return real_open(path, mode, *args, **kwargs)

            d = Deserializer(str(archive), str(dest))
            with mock.patch("builtins.open", flaky_open):
                with self.assertRaises(ArchiveIOError):
                    d.deserialize()
            self.assertEqual(d.state, DeserializerState.FAILED)
            self.assertFalse(dest.exists())

        self.run_with_tmpdir(scenario)

    def test_read_metadata_without_password(self):
        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            src.mkdir()
            expected = _create_sample_files(src)
            archive = tmp_path / "a.lusl"
            _serialize(src, archive, VARIANTS["encrypted+compressed"])
            header, records = Deserializer(str(archive), str(tmp_path / "unused")).read_metadata()
            self.assertTrue(header.is_encrypted)
            self.assertTrue(header.is_compressed)
            self.assertEqual(header.file_count, len(expected))
            self.assertEqual({r.path: r.size for r in records}, {k: len(v) for k, v in expected.items()})
            self.assertFalse((tmp_path / "unused").exists())

        self.run_with_tmpdir(scenario)

    def test_compression_shrinks_repetitive_data(self):
        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            src.mkdir()
            (src / "big.txt").write_bytes(b"lorem ipsum dolor sit amet " * 4000)
            enc = tmp_path / "enc.lusl"
            comp = tmp_path / "comp.lusl"
            _serialize(src, enc, VARIANTS["encrypted"])
            _serialize(src, comp, VARIANTS["encrypted+compressed"])
            self.assertLess(comp.stat().st_size, enc.stat().st_size // 10)

        self.run_with_tmpdir(scenario)


if __name__ == "__main__":
    unittest.main()
