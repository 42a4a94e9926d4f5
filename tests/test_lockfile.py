from __future__ import annotations

from pathlib import Path
import hashlib
import tempfile
import textwrap
import unittest

from relforge.errors import LockMissingError, LockParseError
from relforge.lockfile import parse_lock, resolve_lock

from fakes import CARGO_LOCK


class ResolveLockTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _write(self, text: str) -> Path:
        path = self.root / "Cargo.lock"
        path.write_text(textwrap.dedent(text))
        return path

    def test_reads_every_locked_package(self) -> None:
        path = self.root / "Cargo.lock"
        path.write_text(CARGO_LOCK)

        lock = resolve_lock(path)

        self.assertEqual(lock.version, 3)
        self.assertEqual(len(lock), 3)
        self.assertEqual([package.key for package in lock], ["jujutsu@0.4.0", "jujutsu-lib@0.4.0", "thiserror@1.0.31"])
        self.assertEqual([package.name for package in lock.external], ["thiserror"])
        thiserror = lock.get("thiserror")[0]
        self.assertTrue(thiserror.is_registry)
        self.assertTrue(thiserror.checksum.startswith("bd829fe3"))
        self.assertEqual(lock.digest, hashlib.sha256(CARGO_LOCK.encode()).hexdigest())

    def test_packages_are_read_only(self) -> None:
        path = self.root / "Cargo.lock"
        path.write_text(CARGO_LOCK)
        lock = resolve_lock(path)

        with self.assertRaises(TypeError):
            lock.packages[("extra", "1.0.0", "")] = None  # type: ignore[index]

    def test_missing_lock_file(self) -> None:
        with self.assertRaises(LockMissingError) as ctx:
            resolve_lock(self.root / "Cargo.lock")
        self.assertEqual(ctx.exception.path, self.root / "Cargo.lock")

    def test_malformed_toml(self) -> None:
        path = self._write(
            """
            [[package]]
            name = "broken
            """
        )
        with self.assertRaises(LockParseError):
            resolve_lock(path)

    def test_lock_without_packages(self) -> None:
        path = self._write("version = 3\n")
        with self.assertRaises(LockParseError) as ctx:
            resolve_lock(path)
        self.assertIn("[[package]]", str(ctx.exception))

    def test_package_missing_version(self) -> None:
        path = self._write(
            """
            [[package]]
            name = "jujutsu"
            """
        )
        with self.assertRaises(LockParseError) as ctx:
            resolve_lock(path)
        self.assertIn("'version'", ctx.exception.reason)

    def test_registry_package_requires_checksum(self) -> None:
        path = self._write(
            """
            [[package]]
            name = "libc"
            version = "0.2.126"
            source = "registry+https://github.com/rust-lang/crates.io-index"
            """
        )
        with self.assertRaises(LockParseError) as ctx:
            resolve_lock(path)
        self.assertIn("libc@0.2.126", str(ctx.exception))

    def test_git_package_needs_no_checksum(self) -> None:
        path = self._write(
            """
            [[package]]
            name = "thrift"
            version = "0.16.0"
            source = "git+https://github.com/apache/thrift?rev=abc#abc"
            """
        )
        lock = resolve_lock(path)
        self.assertIsNone(lock.get("thrift")[0].checksum)

    def test_duplicate_packages_are_rejected(self) -> None:
        path = self._write(
            """
            [[package]]
            name = "jujutsu"
            version = "0.4.0"

            [[package]]
            name = "jujutsu"
            version = "0.4.0"
            """
        )
        with self.assertRaises(LockParseError):
            resolve_lock(path)

    def test_same_version_from_two_sources_is_allowed(self) -> None:
        path = self._write(
            """
            [[package]]
            name = "foo"
            version = "0.1.0"
            source = "registry+https://github.com/rust-lang/crates.io-index"
            checksum = "0f3a"

            [[package]]
            name = "foo"
            version = "0.1.0"
            source = "git+https://example.com/foo?rev=deadbeef#deadbeef"
            """
        )

        lock = resolve_lock(path)

        self.assertEqual(len(lock), 2)
        self.assertEqual(
            sorted(package.source for package in lock.get("foo")),
            [
                "git+https://example.com/foo?rev=deadbeef#deadbeef",
                "registry+https://github.com/rust-lang/crates.io-index",
            ],
        )

    def test_version_one_checksums_come_from_metadata(self) -> None:
        path = self._write(
            """
            [[package]]
            name = "libc"
            version = "0.2.126"
            source = "registry+https://github.com/rust-lang/crates.io-index"

            [metadata]
            "checksum libc 0.2.126 (registry+https://github.com/rust-lang/crates.io-index)" = "349d5a59"
            """
        )
        lock = resolve_lock(path)
        self.assertIsNone(lock.version)
        self.assertEqual(lock.get("libc")[0].checksum, "349d5a59")

    def test_invalid_utf8_is_a_parse_error(self) -> None:
        with self.assertRaises(LockParseError):
            parse_lock(b"\xff\xfe", path=self.root / "Cargo.lock")


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
