"""CI gate: the build pipeline under debug settings plus the test suite."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import tempfile

from core.command_runner import CommandRunner

from .build import BuildArtifact, BuildEngine, BuildType
from .config_loader import ReleaseConfig
from .console import Console
from .derive import ArtifactDeriver
from .errors import CheckError, ReleaseError
from .lockfile import DependencyLock
from .platforms import FeatureSet, PlatformProfile
from .source_filter import SourceTree


@dataclass(frozen=True, slots=True)
class VerificationResult:
    passed: bool
    reason: str = ""
    error: ReleaseError | None = None
    artifact: BuildArtifact | None = None

    @classmethod
    def success(cls, artifact: BuildArtifact | None = None) -> "VerificationResult":
        return cls(passed=True, artifact=artifact)

    @classmethod
    def failure(cls, error: ReleaseError) -> "VerificationResult":
        return cls(passed=False, reason=str(error), error=error)


class VerificationRunner:
    def __init__(
        self,
        *,
        config: ReleaseConfig,
        engine: BuildEngine,
        deriver: ArtifactDeriver,
        command_runner: CommandRunner,
        console: Console | None = None,
    ) -> None:
        self._config = config
        self._engine = engine
        self._deriver = deriver
        self._command_runner = command_runner
        self._console = console or Console("none")

    def verify(
        self,
        tree: SourceTree,
        lock: DependencyLock,
        features: FeatureSet,
        profile: PlatformProfile,
        *,
        dry_run: bool = False,
    ) -> VerificationResult:
        try:
            plan = self._engine.plan(tree, lock, features, BuildType.DEBUG, profile)
            artifact = self._engine.execute(plan, dry_run=dry_run)
            if self._config.verify.run_tests:
                self._run_checks(plan.stage_dir, plan.environment, features, plan.target_dir)
            if self._config.verify.verify_derived:
                with tempfile.TemporaryDirectory(prefix="relforge-verify-") as scratch:
                    self._deriver.derive(artifact, Path(scratch), dry_run=dry_run)
        except ReleaseError as exc:
            self._console.error(f"Verification failed: {type(exc).__name__}")
            return VerificationResult.failure(exc)
        self._console.info("Verification passed")
        return VerificationResult.success(artifact)

    def _run_checks(self, stage_dir: Path, environment: dict[str, str], features: FeatureSet, target_dir: Path) -> None:
        command = self._engine.cargo_command("test", features=features, build_type=BuildType.DEBUG, target_dir=target_dir)
        self._console.info(f"Run checks: {self._command_runner.format_command(command)}")
        try:
            result = self._command_runner.run(command, cwd=stage_dir, env=environment, check=False, note="Run checks")
        except FileNotFoundError as exc:
            raise CheckError(f"{command[0]} executable not found on PATH") from exc
        if result.returncode != 0:
            # cargo test reports failing tests on stdout and build errors on stderr.
            output = [str(part).rstrip() for part in (result.stdout, result.stderr) if str(part).strip()]
            raise CheckError("\n".join(output), returncode=result.returncode)
