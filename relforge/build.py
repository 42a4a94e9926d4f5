"""Core build planning and execution logic."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence
import hashlib
import json
import os

from core.command_runner import CommandRunner, CommandResult

from .config_loader import ReleaseConfig
from .console import Console
from .errors import CompileError, FilesystemError
from .lockfile import DependencyLock
from .platforms import FeatureSet, HostOS, PlatformProfile
from .source_filter import SourceTree


class BuildType(str, Enum):
    RELEASE = "release"
    DEBUG = "debug"


# pkg-config module names for the native libraries a profile may list.
_PKG_CONFIG_MODULES: Dict[str, str] = {
    "openssl": "openssl",
    "dbus": "dbus-1",
    "sqlite": "sqlite3",
}

DIRTY_REVISION = "dirty"


@dataclass(slots=True)
class BuildStep:
    description: str
    command: Sequence[str]
    cwd: Path
    env: Dict[str, str]


@dataclass(slots=True)
class BuildPlan:
    tree: SourceTree
    lock: DependencyLock
    features: FeatureSet
    build_type: BuildType
    profile: PlatformProfile
    version: str
    stage_dir: Path
    target_dir: Path
    binary_path: Path
    fingerprint_path: Path
    steps: List[BuildStep]
    environment: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class BuildArtifact:
    """The compiled binary handed from the build to the deriver."""

    pname: str
    binary: str
    path: Path
    version: str
    build_type: BuildType
    features: FeatureSet
    fingerprint: str
    cached: bool = False

    @property
    def name(self) -> str:
        return f"{self.pname}-{self.version}"


class BuildEngine:
    def __init__(
        self,
        *,
        config: ReleaseConfig,
        command_runner: CommandRunner,
        console: Console | None = None,
    ) -> None:
        self._config = config
        self._command_runner = command_runner
        self._console = console or Console("none")

    def detect_revision(self) -> str:
        """Short revision of a clean checkout, or ``dirty`` when there is none."""
        root = self._config.root
        try:
            head = self._command_runner.run(
                ["git", "rev-parse", "--short=7", "HEAD"],
                cwd=root,
                check=False,
                note="Detect revision",
            )
            if head.returncode != 0 or not str(head.stdout).strip():
                return DIRTY_REVISION
            status = self._command_runner.run(
                ["git", "status", "--porcelain", "--untracked-files=no"],
                cwd=root,
                check=False,
                note="Check worktree state",
            )
        except OSError:
            return DIRTY_REVISION
        if status.returncode != 0 or str(status.stdout).strip():
            return DIRTY_REVISION
        return str(head.stdout).strip()

    def plan(
        self,
        tree: SourceTree,
        lock: DependencyLock,
        features: FeatureSet,
        build_type: BuildType,
        profile: PlatformProfile,
    ) -> BuildPlan:
        package = self._config.package
        build_root = self._config.work_dir / build_type.value
        stage_dir = build_root / "src"
        target_dir = build_root / "target"
        profile_dir = "release" if build_type is BuildType.RELEASE else "debug"
        binary_name = package.binary + (".exe" if os.name == "nt" else "")

        environment = self._build_environment(build_type=build_type, profile=profile, stage_dir=stage_dir)
        steps: List[BuildStep] = []

        modules = sorted(
            _PKG_CONFIG_MODULES[library] for library in profile.native_libraries if library in _PKG_CONFIG_MODULES
        )
        if modules and package.check_native_libraries:
            steps.append(
                BuildStep(
                    description="Check native libraries",
                    command=["pkg-config", "--exists", "--print-errors", *modules],
                    cwd=stage_dir,
                    env=environment,
                )
            )

        steps.append(
            BuildStep(
                description="Build binary",
                command=self.cargo_command("build", features=features, build_type=build_type, target_dir=target_dir),
                cwd=stage_dir,
                env=environment,
            )
        )

        return BuildPlan(
            tree=tree,
            lock=lock,
            features=features,
            build_type=build_type,
            profile=profile,
            version=f"unstable-{self.detect_revision()}",
            stage_dir=stage_dir,
            target_dir=target_dir,
            binary_path=target_dir / profile_dir / binary_name,
            fingerprint_path=build_root / "fingerprint",
            steps=steps,
            environment=environment,
        )

    def cargo_command(
        self,
        subcommand: str,
        *,
        features: FeatureSet,
        build_type: BuildType,
        target_dir: Path,
    ) -> List[str]:
        package = self._config.package
        command: List[str] = ["cargo", subcommand, "--locked"]
        if package.offline:
            command.append("--offline")
        if not package.default_features:
            command.append("--no-default-features")
        if features:
            command.extend(["--features", features.render()])
        if build_type is BuildType.RELEASE:
            command.append("--release")
        if subcommand == "build":
            command.extend(["--bin", package.binary])
        command.extend(["--target-dir", str(target_dir)])
        return command

    def _build_environment(
        self,
        *,
        build_type: BuildType,
        profile: PlatformProfile,
        stage_dir: Path,
    ) -> Dict[str, str]:
        rustflags: List[str] = []
        existing = os.environ.get("RUSTFLAGS", "").strip()
        if existing:
            rustflags.append(existing)
        rustflags.append(f"--remap-path-prefix={stage_dir}=/build/source")
        if profile.host is HostOS.MACOS:
            for framework in sorted(profile.frameworks):
                rustflags.append(f"-l framework={framework}")

        environment = {
            "CARGO_INCREMENTAL": "0",
            "SOURCE_DATE_EPOCH": "0",
            "RUSTFLAGS": " ".join(rustflags),
        }
        if build_type is BuildType.DEBUG:
            environment["RUST_BACKTRACE"] = self._config.verify.backtrace
        return environment

    def toolchain_version(self) -> str:
        try:
            result = self._command_runner.run(["cargo", "--version"], check=False, note="Query toolchain")
        except FileNotFoundError as exc:
            raise CompileError("cargo executable not found on PATH") from exc
        if result.returncode != 0:
            raise CompileError(result.stderr, returncode=result.returncode)
        return str(result.stdout).strip()

    def fingerprint(self, plan: BuildPlan, toolchain: str) -> str:
        payload: Mapping[str, Any] = {
            "tree": plan.tree.digest(),
            "lock": plan.lock.digest,
            "features": sorted(plan.features),
            "build_type": plan.build_type.value,
            "profile": plan.profile.to_mapping(),
            "toolchain": toolchain,
            "default_features": self._config.package.default_features,
            "binary": self._config.package.binary,
        }
        encoded = json.dumps(payload, sort_keys=True).encode("utf-8")
        return hashlib.sha256(encoded).hexdigest()

    def _is_fresh(self, plan: BuildPlan, fingerprint: str) -> bool:
        if not plan.binary_path.is_file() or not plan.fingerprint_path.is_file():
            return False
        return plan.fingerprint_path.read_text(encoding="utf-8").strip() == fingerprint

    def execute(self, plan: BuildPlan, *, dry_run: bool = False) -> BuildArtifact:
        package = self._config.package
        toolchain = self.toolchain_version()
        fingerprint = self.fingerprint(plan, toolchain)

        def _artifact(cached: bool) -> BuildArtifact:
            return BuildArtifact(
                pname=package.pname,
                binary=package.binary,
                path=plan.binary_path,
                version=plan.version,
                build_type=plan.build_type,
                features=plan.features,
                fingerprint=fingerprint,
                cached=cached,
            )

        if dry_run:
            for step in plan.steps:
                self._command_runner.run(step.command, cwd=step.cwd, env=step.env, note=step.description)
            return _artifact(False)

        if self._is_fresh(plan, fingerprint):
            self._console.info(f"{plan.build_type.value} build is up to date ({fingerprint[:12]})")
            return _artifact(True)

        self._console.info(f"Staging {len(plan.tree)} source files into {plan.stage_dir}")
        try:
            plan.fingerprint_path.unlink(missing_ok=True)
            plan.target_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise FilesystemError.from_os_error(exc, plan.target_dir, action="prepare build directory") from exc
        plan.tree.materialize(plan.stage_dir)

        for step in plan.steps:
            self._console.info(f"{step.description}: {self._command_runner.format_command(step.command)}")
            result = self._run_step(step)
            if result.returncode != 0:
                raise CompileError(self._diagnostics(result), returncode=result.returncode)
            if result.stderr:
                self._console.debug(result.stderr.rstrip())

        if not plan.binary_path.is_file():
            raise CompileError(f"Build finished but {plan.binary_path} was not produced")

        try:
            plan.fingerprint_path.write_text(fingerprint + "\n", encoding="utf-8")
        except OSError as exc:
            raise FilesystemError.from_os_error(exc, plan.fingerprint_path, action="record build fingerprint") from exc
        return _artifact(False)

    def build(
        self,
        tree: SourceTree,
        lock: DependencyLock,
        features: FeatureSet,
        build_type: BuildType,
        profile: PlatformProfile,
        *,
        dry_run: bool = False,
    ) -> BuildArtifact:
        plan = self.plan(tree, lock, features, build_type, profile)
        return self.execute(plan, dry_run=dry_run)

    def _run_step(self, step: BuildStep) -> CommandResult:
        try:
            return self._command_runner.run(step.command, cwd=step.cwd, env=step.env, check=False, note=step.description)
        except FileNotFoundError as exc:
            raise CompileError(f"{step.command[0]} executable not found on PATH") from exc

    @staticmethod
    def _diagnostics(result: CommandResult) -> str:
        stderr = result.stderr or ""
        if stderr.strip():
            return stderr
        return str(result.stdout or "")
