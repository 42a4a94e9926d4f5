"""Generate documentation and shell completions by running the built binary."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Callable, List, Sequence
import os
import tempfile

from core.command_runner import CommandRunner, CommandTimeout

from .build import BuildArtifact
from .console import Console
from .errors import DerivationError, FilesystemError


class DerivedKind(str, Enum):
    MANPAGE = "manpage"
    BASH = "bash"
    FISH = "fish"
    ZSH = "zsh"


@dataclass(frozen=True, slots=True)
class DerivedSpec:
    kind: DerivedKind
    arguments: tuple[str, ...]
    install_path: Callable[[BuildArtifact], PurePosixPath]


@dataclass(frozen=True, slots=True)
class DerivedArtifact:
    kind: DerivedKind
    command: tuple[str, ...]
    install_path: PurePosixPath
    content: bytes


DERIVED_SPECS: tuple[DerivedSpec, ...] = (
    DerivedSpec(
        DerivedKind.MANPAGE,
        ("support", "mangen"),
        lambda artifact: PurePosixPath("share/man/man1") / f"{artifact.binary}.1",
    ),
    DerivedSpec(
        DerivedKind.BASH,
        ("support", "completion", "--bash"),
        lambda artifact: PurePosixPath("share/bash-completion/completions") / f"{artifact.pname}.bash",
    ),
    DerivedSpec(
        DerivedKind.FISH,
        ("support", "completion", "--fish"),
        lambda artifact: PurePosixPath("share/fish/vendor_completions.d") / f"{artifact.pname}.fish",
    ),
    DerivedSpec(
        DerivedKind.ZSH,
        ("support", "completion", "--zsh"),
        lambda artifact: PurePosixPath("share/zsh/site-functions") / f"_{artifact.pname}",
    ),
)


class ArtifactDeriver:
    """Runs the four introspection commands and installs their output.

    Every output is generated before anything is written, so a failing
    generator leaves the install prefix untouched.
    """

    def __init__(
        self,
        *,
        command_runner: CommandRunner,
        console: Console | None = None,
        timeout: float | None = 60.0,
        parallel: bool = False,
        specs: Sequence[DerivedSpec] = DERIVED_SPECS,
    ) -> None:
        self._command_runner = command_runner
        self._console = console or Console("none")
        self._timeout = timeout
        self._parallel = parallel
        self._specs = tuple(specs)

    def generate(self, artifact: BuildArtifact) -> List[DerivedArtifact]:
        """Run every generator; raise the first failure in the fixed order."""
        if self._parallel and len(self._specs) > 1:
            with ThreadPoolExecutor(max_workers=len(self._specs)) as pool:
                futures = [pool.submit(self._generate_one, artifact, spec) for spec in self._specs]
                # Collected in submission order, not completion order.
                return [future.result() for future in futures]
        return [self._generate_one(artifact, spec) for spec in self._specs]

    def derive(self, artifact: BuildArtifact, install_prefix: Path, *, dry_run: bool = False) -> List[DerivedArtifact]:
        derived = self.generate(artifact)
        if dry_run:
            for item in derived:
                self._console.dry(f"Would install {item.kind.value} to {install_prefix / item.install_path}")
            return derived
        for item in derived:
            target = install_prefix.joinpath(*item.install_path.parts)
            try:
                self._write(target, item.content)
            except OSError as exc:
                raise FilesystemError.from_os_error(exc, target, action=f"install {item.kind.value}") from exc
            self._console.info(f"Installed {item.kind.value} to {target}")
        return derived

    def _generate_one(self, artifact: BuildArtifact, spec: DerivedSpec) -> DerivedArtifact:
        command = (str(artifact.path), *spec.arguments)
        self._console.debug(f"Generating {spec.kind.value}: {self._command_runner.format_command(command)}")
        try:
            result = self._command_runner.run(
                list(command),
                check=False,
                binary=True,
                timeout=self._timeout,
                note=f"Generate {spec.kind.value}",
            )
        except CommandTimeout as exc:
            raise DerivationError(
                spec.kind.value, exit_code=None, stderr=exc.result.stderr, timed_out=True
            ) from exc
        except OSError as exc:
            raise DerivationError(spec.kind.value, exit_code=None, stderr=str(exc)) from exc
        if result.returncode != 0:
            raise DerivationError(spec.kind.value, exit_code=result.returncode, stderr=result.stderr)
        content = result.stdout if isinstance(result.stdout, bytes) else result.stdout.encode("utf-8")
        return DerivedArtifact(
            kind=spec.kind,
            command=command,
            install_path=spec.install_path(artifact),
            content=content,
        )

    @staticmethod
    def _write(target: Path, content: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=target.parent, prefix=f".{target.name}.", delete=False) as handle:
            handle.write(content)
            temp_path = Path(handle.name)
        try:
            os.chmod(temp_path, 0o644)
            os.replace(temp_path, target)
        except OSError:
            temp_path.unlink(missing_ok=True)
            raise
