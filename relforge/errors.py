"""Error taxonomy for the release pipeline.

Every stage raises a :class:`ReleaseError` subclass and lets it propagate;
the CLI is the only place that turns one into an exit code.
"""
from __future__ import annotations

from pathlib import Path


class ReleaseError(RuntimeError):
    """Base class for fatal pipeline failures."""


class ConfigurationError(ReleaseError):
    """Raised when ``relforge`` configuration is malformed."""


class FilesystemError(ReleaseError):
    """Raised when a file the pipeline reads or writes is unusable."""

    def __init__(self, path: Path, reason: str, *, action: str = "read source tree"):
        super().__init__(f"Cannot {action} at '{path}': {reason}")
        self.path = path
        self.reason = reason
        self.action = action

    @classmethod
    def from_os_error(cls, exc: OSError, path: Path, *, action: str = "read source tree") -> "FilesystemError":
        return cls(Path(exc.filename) if exc.filename else path, exc.strerror or str(exc), action=action)


class LockError(ReleaseError):
    """Base class for dependency lock failures."""


class LockMissingError(LockError):
    def __init__(self, path: Path):
        super().__init__(f"Lock file not found: {path}")
        self.path = path


class LockParseError(LockError):
    def __init__(self, path: Path, reason: str):
        super().__init__(f"Malformed lock file '{path}': {reason}")
        self.path = path
        self.reason = reason


class CompileError(ReleaseError):
    """Raised when the compiler rejects the source tree.

    ``diagnostics`` holds the compiler's error output verbatim.
    """

    def __init__(self, diagnostics: str, *, returncode: int | None = None):
        header = "Compilation failed"
        if returncode is not None:
            header = f"{header} with exit code {returncode}"
        super().__init__(f"{header}\n{diagnostics}".rstrip())
        self.diagnostics = diagnostics
        self.returncode = returncode


class CheckError(ReleaseError):
    """Raised when the test suite of a verification build fails."""

    def __init__(self, diagnostics: str, *, returncode: int | None = None):
        super().__init__(f"Checks failed with exit code {returncode}\n{diagnostics}".rstrip())
        self.diagnostics = diagnostics
        self.returncode = returncode


class DerivationError(ReleaseError):
    """Raised when the built binary fails to emit a derived artifact."""

    def __init__(
        self,
        which: str,
        *,
        exit_code: int | None,
        stderr: str,
        timed_out: bool = False,
    ):
        if timed_out:
            message = f"Generating {which} timed out"
        else:
            message = f"Generating {which} failed with exit code {exit_code}"
        if stderr:
            message = f"{message}\n{stderr}".rstrip()
        super().__init__(message)
        self.which = which
        self.exit_code = exit_code
        self.stderr = stderr
        self.timed_out = timed_out


__all__ = [
    "CheckError",
    "CompileError",
    "ConfigurationError",
    "DerivationError",
    "FilesystemError",
    "LockError",
    "LockMissingError",
    "LockParseError",
    "ReleaseError",
]
