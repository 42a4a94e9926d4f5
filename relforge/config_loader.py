"""Release configuration loading and validation logic."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping
import os
import re

from core.config_loader import find_config_file, load_config_file, normalize_string_list

from .errors import ConfigurationError
from .source_filter import DEFAULT_EXCLUDES, ExclusionPatternSet

CONFIG_STEM = "relforge"
CONFIG_ENV_VAR = "RELFORGE_CONFIG"


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = data.get(name, {})
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigurationError(f"[{name}] must be a table")
    return value


def _positive_float(value: Any, *, field_name: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{field_name} must be a number") from exc
    if number <= 0:
        raise ConfigurationError(f"{field_name} must be positive")
    return number


def _boolean(value: Any, *, field_name: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigurationError(f"{field_name} must be true or false, not {value!r}")
    return value


def _strings(value: Any, *, field_name: str) -> List[str]:
    try:
        return normalize_string_list(value, field_name=field_name)
    except TypeError as exc:
        raise ConfigurationError(str(exc)) from exc


@dataclass(slots=True)
class PackageSettings:
    pname: str = "jujutsu"
    binary: str = "jj"
    lock_file: str = "Cargo.lock"
    features: List[str] = field(default_factory=lambda: ["jujutsu-lib/legacy-thrift"])
    default_features: bool = False
    offline: bool = False
    work_dir: str = "target/relforge"
    check_native_libraries: bool = True

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "PackageSettings":
        defaults = cls()
        features = data.get("features")
        return cls(
            pname=str(data.get("pname", defaults.pname)),
            binary=str(data.get("binary", defaults.binary)),
            lock_file=str(data.get("lock_file", defaults.lock_file)),
            features=defaults.features if features is None else _strings(features, field_name="package.features"),
            default_features=_boolean(
                data.get("default_features", defaults.default_features), field_name="package.default_features"
            ),
            offline=_boolean(data.get("offline", defaults.offline), field_name="package.offline"),
            work_dir=str(data.get("work_dir", defaults.work_dir)),
            check_native_libraries=_boolean(
                data.get("check_native_libraries", defaults.check_native_libraries),
                field_name="package.check_native_libraries",
            ),
        )


@dataclass(slots=True)
class DeriveSettings:
    timeout: float = 60.0
    parallel: bool = False
    prefix: str = "target/relforge/out"

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "DeriveSettings":
        defaults = cls()
        return cls(
            timeout=_positive_float(data.get("timeout", defaults.timeout), field_name="derive.timeout"),
            parallel=_boolean(data.get("parallel", defaults.parallel), field_name="derive.parallel"),
            prefix=str(data.get("prefix", defaults.prefix)),
        )


@dataclass(slots=True)
class VerifySettings:
    verify_derived: bool = True
    backtrace: str = "1"
    run_tests: bool = True

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "VerifySettings":
        defaults = cls()
        return cls(
            verify_derived=_boolean(
                data.get("verify_derived", defaults.verify_derived), field_name="verify.verify_derived"
            ),
            backtrace=str(data.get("backtrace", defaults.backtrace)),
            run_tests=_boolean(data.get("run_tests", defaults.run_tests), field_name="verify.run_tests"),
        )


@dataclass(slots=True)
class DevShellSettings:
    toolchain: str = "1.61.0"
    profile: str = "minimal"
    extensions: List[str] = field(default_factory=lambda: ["rust-src", "clippy"])
    nightly_rustfmt: bool = True
    build_dependencies: List[str] = field(default_factory=lambda: ["openssl", "pkg-config"])
    tools: List[str] = field(
        default_factory=lambda: ["cargo-deny", "cargo-insta", "cargo-nextest", "cargo-watch"]
    )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "DevShellSettings":
        defaults = cls()

        def _list(key: str, default: List[str]) -> List[str]:
            value = data.get(key)
            return list(default) if value is None else _strings(value, field_name=f"devshell.{key}")

        return cls(
            toolchain=str(data.get("toolchain", defaults.toolchain)),
            profile=str(data.get("profile", defaults.profile)),
            extensions=_list("extensions", defaults.extensions),
            nightly_rustfmt=_boolean(
                data.get("nightly_rustfmt", defaults.nightly_rustfmt), field_name="devshell.nightly_rustfmt"
            ),
            build_dependencies=_list("build_dependencies", defaults.build_dependencies),
            tools=_list("tools", defaults.tools),
        )


@dataclass(slots=True)
class ReleaseSettings:
    archive_format: str = "zst"

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ReleaseSettings":
        archive_format = str(data.get("archive_format", "zst")).lower()
        if archive_format not in {"zst", "gztar", "tar"}:
            raise ConfigurationError(f"release.archive_format '{archive_format}' is not supported")
        return cls(archive_format=archive_format)


@dataclass(slots=True)
class ReleaseConfig:
    """Everything the pipeline needs to know, scoped to one invocation."""

    root: Path
    package: PackageSettings = field(default_factory=PackageSettings)
    exclude: List[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDES))
    platforms: Dict[str, Mapping[str, Any]] = field(default_factory=dict)
    derive: DeriveSettings = field(default_factory=DeriveSettings)
    verify: VerifySettings = field(default_factory=VerifySettings)
    devshell: DevShellSettings = field(default_factory=DevShellSettings)
    release: ReleaseSettings = field(default_factory=ReleaseSettings)
    source_path: Path | None = None

    @classmethod
    def from_mapping(cls, root: Path, data: Mapping[str, Any], *, source_path: Path | None = None) -> "ReleaseConfig":
        source_section = _section(data, "source")
        exclude = source_section.get("exclude")
        platforms_section = _section(data, "platforms")
        platforms: Dict[str, Mapping[str, Any]] = {}
        for key, value in platforms_section.items():
            if not isinstance(value, Mapping):
                raise ConfigurationError(f"[platforms.{key}] must be a table")
            platforms[str(key).lower()] = value

        config = cls(
            root=root,
            package=PackageSettings.from_mapping(_section(data, "package")),
            exclude=list(DEFAULT_EXCLUDES) if exclude is None else _strings(exclude, field_name="source.exclude"),
            platforms=platforms,
            derive=DeriveSettings.from_mapping(_section(data, "derive")),
            verify=VerifySettings.from_mapping(_section(data, "verify")),
            devshell=DevShellSettings.from_mapping(_section(data, "devshell")),
            release=ReleaseSettings.from_mapping(_section(data, "release")),
            source_path=source_path,
        )
        config.exclusion_patterns()
        return config

    @classmethod
    def load(cls, root: Path, *, path: Path | None = None) -> "ReleaseConfig":
        """Load ``relforge.{toml,json,yaml}`` from ``root``; absent means defaults."""
        root = Path(root)
        if path is None and os.environ.get(CONFIG_ENV_VAR):
            path = Path(os.environ[CONFIG_ENV_VAR])
        if path is not None:
            if not path.is_absolute():
                path = root / path
            if not path.is_file():
                raise ConfigurationError(f"Configuration file not found: {path}")
        else:
            try:
                path = find_config_file(root, CONFIG_STEM)
            except ValueError as exc:
                raise ConfigurationError(str(exc)) from exc
            if path is None:
                return cls(root=root)

        try:
            data = load_config_file(path)
        except (ValueError, TypeError, RuntimeError) as exc:
            raise ConfigurationError(f"Failed to load '{path}': {exc}") from exc
        return cls.from_mapping(root, data, source_path=path)

    def exclusion_patterns(self) -> ExclusionPatternSet:
        """Configured excludes plus the pipeline's own output directories."""
        sources = list(self.exclude)
        for field_name, path in (("package.work_dir", self.work_dir), ("derive.prefix", self.install_prefix)):
            pattern = self._output_pattern(path, field_name=field_name)
            if pattern is not None and pattern not in sources:
                sources.append(pattern)
        try:
            return ExclusionPatternSet.compile(sources)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc

    def _output_pattern(self, path: Path, *, field_name: str) -> str | None:
        root = Path(os.path.abspath(self.root))
        try:
            relative = Path(os.path.abspath(path)).relative_to(root)
        except ValueError:
            return None
        if relative == Path("."):
            raise ConfigurationError(f"{field_name} must not be the source root '{root}'")
        return "^" + re.escape(relative.as_posix()) + "/"

    @property
    def lock_path(self) -> Path:
        return self.root / self.package.lock_file

    @property
    def work_dir(self) -> Path:
        path = Path(self.package.work_dir)
        return path if path.is_absolute() else self.root / path

    @property
    def install_prefix(self) -> Path:
        path = Path(self.derive.prefix)
        return path if path.is_absolute() else self.root / path
