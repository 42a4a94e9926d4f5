from __future__ import annotations

from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
import io
import os
import tempfile
import textwrap
import unittest
from unittest.mock import patch

from relforge import cli

from fakes import fake_toolchain, make_source_tree


@unittest.skipIf(os.name == "nt", "fake toolchain is made of POSIX shell scripts")
class CliTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        base = Path(self.temp_dir.name).resolve()
        self.workspace = base / "jj"
        self.workspace.mkdir()
        make_source_tree(self.workspace)
        (self.workspace / "relforge.toml").write_text(
            textwrap.dedent(
                """
                [package]
                check_native_libraries = false

                [derive]
                timeout = 10
                """
            )
        )
        self.cargo_log = base / "cargo.log"
        environment = fake_toolchain(base / "bin")
        environment["FAKE_CARGO_LOG"] = str(self.cargo_log)
        patcher = patch.dict(os.environ, environment)
        patcher.start()
        self.addCleanup(patcher.stop)
        os.environ.pop("RELFORGE_CONFIG", None)
        self.prefix = self.workspace / "target" / "relforge" / "out"

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _main(self, *argv: str) -> tuple[int, str, str]:
        stdout = io.StringIO()
        stderr = io.StringIO()
        with redirect_stdout(stdout), redirect_stderr(stderr):
            code = cli.main(["--root", str(self.workspace), "--log-level", "error", *argv])
        return code, stdout.getvalue(), stderr.getvalue()

    def _cargo_calls(self) -> list[str]:
        if not self.cargo_log.exists():
            return []
        return self.cargo_log.read_text().splitlines()

    def test_build_installs_binary_and_derived_outputs(self) -> None:
        code, stdout, _ = self._main("build")

        self.assertEqual(code, 0)
        installed = sorted(
            path.relative_to(self.prefix).as_posix() for path in self.prefix.rglob("*") if path.is_file()
        )
        self.assertEqual(
            installed,
            [
                "bin/jj",
                "share/bash-completion/completions/jujutsu.bash",
                "share/fish/vendor_completions.d/jujutsu.fish",
                "share/man/man1/jj.1",
                "share/zsh/site-functions/_jujutsu",
            ],
        )
        self.assertTrue(os.access(self.prefix / "bin" / "jj", os.X_OK))
        self.assertEqual((self.prefix / "share" / "man" / "man1" / "jj.1").read_bytes(), b".TH JJ 1\n.SH NAME\njj\n")
        self.assertIn("manpage:", stdout)
        self.assertEqual(self._cargo_calls(), ["build release"])

    def test_repeated_build_reuses_cached_binary(self) -> None:
        self.assertEqual(self._main("build")[0], 0)
        self.assertEqual(self._main("build")[0], 0)

        self.assertEqual(self._cargo_calls(), ["build release"])

    def test_build_writes_archive(self) -> None:
        archive = self.workspace.parent / "jj.tar.zst"

        code, stdout, _ = self._main("build", "--archive", str(archive))

        self.assertEqual(code, 0)
        self.assertTrue(archive.is_file())
        self.assertIn(f"archive: {archive}", stdout)

    def test_unwritable_archive_location_is_reported(self) -> None:
        blocker = self.workspace.parent / "not-a-directory"
        blocker.write_text("")

        code, _, stderr = self._main("build", "--archive", str(blocker / "jj.tar.zst"))

        self.assertEqual(code, 1)
        self.assertIn("[ERROR] Cannot write archive", stderr)

    def test_failing_generator_leaves_prefix_empty(self) -> None:
        with patch.dict(os.environ, {"FAKE_MANGEN_EXIT": "1"}):
            code, _, stderr = self._main("build")

        self.assertEqual(code, 1)
        self.assertIn("Generating manpage failed with exit code 1", stderr)
        self.assertFalse(self.prefix.exists())

    def test_build_dry_run_prints_commands(self) -> None:
        code, stdout, _ = self._main("build", "--dry-run")

        self.assertEqual(code, 0)
        self.assertIn("[dry-run] Build binary", stdout)
        self.assertIn("cargo build --locked --no-default-features --features jujutsu-lib/legacy-thrift --release", stdout)
        self.assertIn("support completion --zsh", stdout)
        self.assertEqual(self._cargo_calls(), [])
        self.assertFalse(self.prefix.exists())

    def test_check_passes(self) -> None:
        code, _, stderr = self._main("check")

        self.assertEqual(code, 0, stderr)
        self.assertEqual(self._cargo_calls(), ["build debug", "test debug"])
        self.assertFalse(self.prefix.exists())

    def test_check_fails_on_compile_error(self) -> None:
        with patch.dict(os.environ, {"FAKE_CARGO_FAIL": "build"}):
            code, _, stderr = self._main("check")

        self.assertEqual(code, 1)
        self.assertIn("error[E0425]", stderr)
        self.assertEqual(self._cargo_calls(), ["build debug"])

    def test_check_fails_on_test_failure(self) -> None:
        with patch.dict(os.environ, {"FAKE_CARGO_FAIL": "test"}):
            code, _, stderr = self._main("check")

        self.assertEqual(code, 1)
        self.assertIn("Checks failed with exit code 101", stderr)

    def test_missing_lock_is_reported(self) -> None:
        (self.workspace / "Cargo.lock").unlink()

        code, _, stderr = self._main("build")

        self.assertEqual(code, 1)
        self.assertIn("[ERROR] Lock file not found", stderr)
        self.assertEqual(self._cargo_calls(), [])

    def test_run_returns_binary_exit_code(self) -> None:
        with patch.dict(os.environ, {"FAKE_RUN_EXIT": "7"}):
            code, _, _ = self._main("run", "--", "log")
        self.assertEqual(code, 7)

    def test_sources_lists_filtered_tree(self) -> None:
        code, stdout, _ = self._main("sources")

        self.assertEqual(code, 0)
        lines = stdout.splitlines()
        self.assertEqual(lines[:-1], ["Cargo.lock", "Cargo.toml", "relforge.toml", "src/main.rs"])
        self.assertTrue(lines[-1].startswith("# 4 files, sha256 "))

    def test_lock_summarizes_packages(self) -> None:
        code, stdout, _ = self._main("lock")

        self.assertEqual(code, 0)
        self.assertIn("thiserror@1.0.31\tregistry+https://github.com/rust-lang/crates.io-index\tbd829fe32373", stdout)
        self.assertIn("jujutsu@0.4.0\tlocal\t-", stdout)
        self.assertIn("# 3 packages (1 external)", stdout)

    def test_profile_for_macos(self) -> None:
        code, stdout, _ = self._main("profile", "--host", "macos")

        self.assertEqual(code, 0)
        self.assertIn("host: macos", stdout)
        self.assertIn("frameworks: Security, SystemConfiguration", stdout)
        self.assertIn("features: jujutsu-lib/legacy-thrift", stdout)
        self.assertIn("default_features: off", stdout)

    def test_devshell_report(self) -> None:
        code, stdout, _ = self._main("devshell")

        self.assertEqual(code, 0)
        self.assertIn("cargo nextest", stdout)
        self.assertIn("To provision:", stdout)
        self.assertIn("rustup toolchain install 1.61.0 --profile minimal", stdout)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
