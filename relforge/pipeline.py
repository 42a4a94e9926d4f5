"""The release pipeline as an explicit chain of stages.

filter sources -> read lock -> pick platform profile -> build -> derive ->
install. Each stage's output is the next stage's input and any failure
propagates immediately.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Sequence
import os
import shutil
import tempfile

from core.archive import ArchiveArtifact, ArchiveManager
from core.command_runner import CommandRunner

from .build import BuildArtifact, BuildEngine, BuildType
from .config_loader import ReleaseConfig
from .console import Console
from .derive import ArtifactDeriver, DerivedArtifact
from .errors import ConfigurationError, FilesystemError, ReleaseError
from .lockfile import DependencyLock, resolve_lock
from .platforms import FeatureSet, HostOS, PlatformProfile, detect_host, merge_profile, profile_for
from .source_filter import SourceTree, filter_source
from .verify import VerificationResult, VerificationRunner


@dataclass(slots=True)
class PipelineResult:
    artifact: BuildArtifact
    derived: List[DerivedArtifact] = field(default_factory=list)
    prefix: Path | None = None
    installed_binary: Path | None = None
    archive: Path | None = None


class ReleasePipeline:
    def __init__(
        self,
        config: ReleaseConfig,
        *,
        command_runner: CommandRunner,
        console: Console | None = None,
        host: HostOS | None = None,
    ) -> None:
        self._config = config
        self._command_runner = command_runner
        self._console = console or Console("none")
        self._host = host if host is not None else detect_host()
        self.engine = BuildEngine(config=config, command_runner=command_runner, console=self._console)
        self.deriver = ArtifactDeriver(
            command_runner=command_runner,
            console=self._console,
            timeout=config.derive.timeout,
            parallel=config.derive.parallel,
        )

    def sources(self) -> SourceTree:
        tree = filter_source(self._config.root, self._config.exclusion_patterns())
        self._console.info(f"Filtered source tree: {len(tree)} files")
        return tree

    def lock(self) -> DependencyLock:
        lock = resolve_lock(self._config.lock_path)
        self._console.info(f"Resolved {len(lock)} locked packages from {lock.path.name}")
        return lock

    def profile(self) -> PlatformProfile:
        base = profile_for(self._host)
        return merge_profile(base, self._config.platforms.get(self._host.value))

    def features(self, profile: PlatformProfile) -> FeatureSet:
        return FeatureSet.resolve(self._config.package.features, profile)

    def build(
        self,
        *,
        build_type: BuildType = BuildType.RELEASE,
        prefix: Path | None = None,
        archive: Path | None = None,
        dry_run: bool = False,
    ) -> PipelineResult:
        tree = self.sources()
        lock = self.lock()
        profile = self.profile()
        features = self.features(profile)
        self._console.debug(f"Platform profile: {profile.to_mapping()}")
        self._console.debug(f"Features: {features.render() or '<none>'}")

        artifact = self.engine.build(tree, lock, features, build_type, profile, dry_run=dry_run)
        self._console.info(f"Built {artifact.name} ({artifact.build_type.value})")

        install_prefix = prefix if prefix is not None else self._config.install_prefix
        derived = self.deriver.derive(artifact, install_prefix, dry_run=dry_run)
        result = PipelineResult(artifact=artifact, derived=derived, prefix=install_prefix)
        if dry_run:
            self._console.dry(f"Would install {artifact.path} to {install_prefix / 'bin'}")
            return result

        result.installed_binary = self._install_binary(artifact, install_prefix)
        if archive is not None:
            result.archive = self._archive(artifact, install_prefix, archive)
        return result

    def verify(self, *, dry_run: bool = False) -> VerificationResult:
        runner = VerificationRunner(
            config=self._config,
            engine=self.engine,
            deriver=self.deriver,
            command_runner=self._command_runner,
            console=self._console,
        )
        try:
            tree = self.sources()
            lock = self.lock()
        except ReleaseError as exc:
            return VerificationResult.failure(exc)
        profile = self.profile()
        return runner.verify(tree, lock, self.features(profile), profile, dry_run=dry_run)

    def run(self, arguments: Sequence[str]) -> int:
        """Build (reusing a fresh cache) and run the binary with ``arguments``."""
        tree = self.sources()
        lock = self.lock()
        profile = self.profile()
        artifact = self.engine.build(tree, lock, self.features(profile), BuildType.RELEASE, profile)
        result = self._command_runner.run(
            [str(artifact.path), *arguments],
            cwd=Path.cwd(),
            check=False,
            stream=True,
            note=f"Run {artifact.binary}",
        )
        return result.returncode

    @staticmethod
    def _has_archive_suffix(path: Path) -> bool:
        name = path.name.lower()
        return name.endswith((".tar.zst", ".tzst", ".tar.gz", ".tgz", ".tar"))

    def _archive(self, artifact: BuildArtifact, install_prefix: Path, archive: Path) -> Path:
        manager = ArchiveManager(self._console)
        try:
            return manager.create_archive(
                artifact=ArchiveArtifact(source_dir=install_prefix, label=artifact.name, prefix=artifact.name),
                target_path=archive,
                format_hint=None if self._has_archive_suffix(archive) else self._config.release.archive_format,
            )
        except OSError as exc:
            raise FilesystemError.from_os_error(exc, archive, action="write archive") from exc
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc

    def _install_binary(self, artifact: BuildArtifact, prefix: Path) -> Path:
        target = prefix / "bin" / artifact.path.name
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(dir=target.parent, prefix=f".{target.name}.", delete=False) as handle:
                temp_path = Path(handle.name)
        except OSError as exc:
            raise FilesystemError.from_os_error(exc, target, action="install binary") from exc
        try:
            shutil.copyfile(artifact.path, temp_path)
            os.chmod(temp_path, 0o755)
            os.replace(temp_path, target)
        except OSError as exc:
            temp_path.unlink(missing_ok=True)
            raise FilesystemError.from_os_error(exc, target, action="install binary") from exc
        self._console.info(f"Installed {artifact.binary} to {target}")
        return target
