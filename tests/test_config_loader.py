from __future__ import annotations

from pathlib import Path
import json
import tempfile
import textwrap
import unittest
from unittest.mock import patch

from core.config_loader import find_config_file, load_config_file, normalize_string_list
from relforge.config_loader import ReleaseConfig
from relforge.errors import ConfigurationError
from relforge.source_filter import DEFAULT_EXCLUDES, filter_source

try:
    import yaml  # noqa: F401
except ModuleNotFoundError:  # pragma: no cover - exercised when PyYAML absent
    yaml = None


class CoreConfigLoaderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_unsupported_suffix(self) -> None:
        path = self.root / "relforge.ini"
        path.write_text("[package]\n")
        with self.assertRaises(ValueError):
            load_config_file(path)

    def test_root_must_be_mapping(self) -> None:
        path = self.root / "relforge.json"
        path.write_text("[1, 2]")
        with self.assertRaises(TypeError):
            load_config_file(path)

    def test_find_config_file_rejects_multiple_formats(self) -> None:
        (self.root / "relforge.toml").write_text("")
        (self.root / "relforge.json").write_text("{}")
        with self.assertRaises(ValueError):
            find_config_file(self.root, "relforge")

    def test_find_config_file_returns_none_when_absent(self) -> None:
        self.assertIsNone(find_config_file(self.root, "relforge"))

    def test_normalize_string_list(self) -> None:
        self.assertEqual(normalize_string_list(" zlib "), ["zlib"])
        self.assertEqual(normalize_string_list(["a", " ", "b"]), ["a", "b"])
        with self.assertRaises(TypeError):
            normalize_string_list([1], field_name="x")


class ReleaseConfigTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_defaults_without_config_file(self) -> None:
        with patch.dict("os.environ", {}, clear=False) as environ:
            environ.pop("RELFORGE_CONFIG", None)
            config = ReleaseConfig.load(self.root)

        self.assertIsNone(config.source_path)
        self.assertEqual(config.package.binary, "jj")
        self.assertEqual(config.package.pname, "jujutsu")
        self.assertEqual(config.package.features, ["jujutsu-lib/legacy-thrift"])
        self.assertFalse(config.package.default_features)
        self.assertEqual(tuple(config.exclude), DEFAULT_EXCLUDES)
        self.assertEqual(config.lock_path, self.root / "Cargo.lock")
        self.assertEqual(config.work_dir, self.root / "target" / "relforge")
        self.assertEqual(config.install_prefix, self.root / "target" / "relforge" / "out")
        self.assertEqual(config.derive.timeout, 60.0)
        self.assertEqual(config.devshell.toolchain, "1.61.0")

    def test_toml_overrides(self) -> None:
        (self.root / "relforge.toml").write_text(
            textwrap.dedent(
                """
                [package]
                features = ["jujutsu-lib/legacy-thrift", "vendored-openssl"]
                offline = true

                [source]
                exclude = ['^docs/']

                [platforms.macos]
                frameworks = ["CoreFoundation"]

                [derive]
                timeout = 5
                parallel = true
                prefix = "/opt/jj"

                [release]
                archive_format = "gztar"
                """
            )
        )

        config = ReleaseConfig.load(self.root)

        self.assertEqual(config.source_path, self.root / "relforge.toml")
        self.assertEqual(config.package.features, ["jujutsu-lib/legacy-thrift", "vendored-openssl"])
        self.assertTrue(config.package.offline)
        self.assertEqual(config.exclude, ["^docs/"])
        self.assertEqual(config.platforms["macos"], {"frameworks": ["CoreFoundation"]})
        self.assertEqual(config.derive.timeout, 5.0)
        self.assertTrue(config.derive.parallel)
        self.assertEqual(config.install_prefix, Path("/opt/jj"))
        self.assertEqual(config.release.archive_format, "gztar")

    def test_json_config(self) -> None:
        (self.root / "relforge.json").write_text(json.dumps({"package": {"binary": "jjx", "pname": "jjx"}}))

        config = ReleaseConfig.load(self.root)

        self.assertEqual(config.package.binary, "jjx")

    @unittest.skipIf(yaml is None, "PyYAML not installed")
    def test_yaml_config(self) -> None:
        (self.root / "relforge.yaml").write_text("verify:\n  backtrace: full\n  run_tests: false\n")

        config = ReleaseConfig.load(self.root)

        self.assertEqual(config.verify.backtrace, "full")
        self.assertFalse(config.verify.run_tests)

    def test_environment_variable_selects_file(self) -> None:
        custom = self.root / "ci.toml"
        custom.write_text("[verify]\nverify_derived = false\n")
        with patch.dict("os.environ", {"RELFORGE_CONFIG": str(custom)}):
            config = ReleaseConfig.load(self.root)
        self.assertFalse(config.verify.verify_derived)

    def test_explicit_missing_file(self) -> None:
        with self.assertRaises(ConfigurationError):
            ReleaseConfig.load(self.root, path=Path("missing.toml"))

    def test_invalid_exclusion_pattern(self) -> None:
        with self.assertRaises(ConfigurationError):
            ReleaseConfig.from_mapping(self.root, {"source": {"exclude": ["[unterminated"]}})

    def test_non_positive_timeout(self) -> None:
        with self.assertRaises(ConfigurationError):
            ReleaseConfig.from_mapping(self.root, {"derive": {"timeout": 0}})

    def test_unknown_archive_format(self) -> None:
        with self.assertRaises(ConfigurationError):
            ReleaseConfig.from_mapping(self.root, {"release": {"archive_format": "zip"}})

    def test_section_must_be_table(self) -> None:
        with self.assertRaises(ConfigurationError):
            ReleaseConfig.from_mapping(self.root, {"package": "jj"})

    def test_malformed_toml_is_a_configuration_error(self) -> None:
        (self.root / "relforge.toml").write_text("[package\n")
        with self.assertRaises(ConfigurationError):
            ReleaseConfig.load(self.root)

    def test_string_booleans_are_rejected(self) -> None:
        (self.root / "relforge.json").write_text(json.dumps({"package": {"offline": "false"}}))

        with self.assertRaises(ConfigurationError) as ctx:
            ReleaseConfig.load(self.root)

        self.assertIn("package.offline", str(ctx.exception))

    def test_numeric_booleans_are_rejected(self) -> None:
        for section, key in (("derive", "parallel"), ("verify", "run_tests"), ("devshell", "nightly_rustfmt")):
            with self.subTest(field=f"{section}.{key}"):
                with self.assertRaises(ConfigurationError):
                    ReleaseConfig.from_mapping(self.root, {section: {key: 0}})

    def test_custom_excludes_still_drop_build_output(self) -> None:
        (self.root / "src").mkdir()
        (self.root / "src" / "main.rs").write_text("fn main() {}\n")
        staged = self.root / "target" / "relforge" / "release" / "src" / "src"
        staged.mkdir(parents=True)
        (staged / "main.rs").write_text("fn main() {}\n")
        installed = self.root / "target" / "relforge" / "out" / "bin"
        installed.mkdir(parents=True)
        (installed / "jj").write_text("")
        config = ReleaseConfig.from_mapping(self.root, {"source": {"exclude": ["^docs/"]}})

        tree = filter_source(self.root, config.exclusion_patterns())

        self.assertEqual(tree.paths, ("src/main.rs",))

    def test_prefix_outside_root_adds_no_pattern(self) -> None:
        config = ReleaseConfig.from_mapping(
            self.root,
            {"source": {"exclude": []}, "package": {"work_dir": "build"}, "derive": {"prefix": "/opt/jj"}},
        )

        self.assertEqual(config.exclusion_patterns().sources, ("^build/",))

    def test_work_dir_at_source_root_is_rejected(self) -> None:
        with self.assertRaises(ConfigurationError) as ctx:
            ReleaseConfig.from_mapping(self.root, {"package": {"work_dir": "."}})
        self.assertIn("package.work_dir", str(ctx.exception))


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
