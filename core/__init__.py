"""Shared core utilities for build orchestration and packaging."""

from .archive import ArchiveArtifact, ArchiveConsole, ArchiveManager
from .command_runner import (
    CommandError,
    CommandResult,
    CommandRunner,
    CommandTimeout,
    RecordingCommandRunner,
    SubprocessCommandRunner,
)
from .config_loader import (
    ConfigLoader,
    FILE_LOADERS,
    find_config_file,
    load_config_file,
    normalize_string_list,
)

__all__ = [
    "ArchiveArtifact",
    "ArchiveConsole",
    "ArchiveManager",
    "CommandError",
    "CommandResult",
    "CommandRunner",
    "CommandTimeout",
    "RecordingCommandRunner",
    "SubprocessCommandRunner",
    "ConfigLoader",
    "FILE_LOADERS",
    "find_config_file",
    "load_config_file",
    "normalize_string_list",
]
