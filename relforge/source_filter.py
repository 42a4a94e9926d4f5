"""Deterministic filtering of the build input.

Paths are matched relative to the source root using POSIX separators. A
pattern must match the whole relative path. Directories are tested both as
``dir`` and as ``dir/``, so ``^docs$`` and ``^target/`` each prune the
directory and everything below it.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Iterator, Sequence
import hashlib
import os
import re
import shutil

from .errors import FilesystemError


DEFAULT_EXCLUDES: tuple[str, ...] = (
    r".*\.nix$",
    r"^.jj/",
    r"^flake\.lock$",
    r"^target/",
)


@dataclass(frozen=True, slots=True)
class ExclusionPatternSet:
    """Ordered regular expressions; a path is excluded when any matches."""

    patterns: tuple[re.Pattern[str], ...] = ()

    @classmethod
    def compile(cls, sources: Iterable[str]) -> "ExclusionPatternSet":
        compiled: list[re.Pattern[str]] = []
        for source in sources:
            try:
                compiled.append(re.compile(source))
            except re.error as exc:
                raise ValueError(f"Invalid exclusion pattern {source!r}: {exc}") from exc
        return cls(tuple(compiled))

    @classmethod
    def default(cls) -> "ExclusionPatternSet":
        return cls.compile(DEFAULT_EXCLUDES)

    @property
    def sources(self) -> tuple[str, ...]:
        return tuple(pattern.pattern for pattern in self.patterns)

    def excludes(self, relative_path: str) -> bool:
        return any(pattern.fullmatch(relative_path) for pattern in self.patterns)

    def __len__(self) -> int:
        return len(self.patterns)


class EntryKind(str, Enum):
    FILE = "file"
    SYMLINK = "symlink"


@dataclass(frozen=True, slots=True)
class SourceEntry:
    path: str
    absolute: Path
    kind: EntryKind = EntryKind.FILE


@dataclass(frozen=True, slots=True)
class SourceTree:
    """Immutable, path-sorted view of the files that make up the build input."""

    root: Path
    entries: tuple[SourceEntry, ...]

    def __iter__(self) -> Iterator[SourceEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, relative_path: object) -> bool:
        return any(entry.path == relative_path for entry in self.entries)

    @property
    def paths(self) -> tuple[str, ...]:
        return tuple(entry.path for entry in self.entries)

    def digest(self) -> str:
        """Content hash over every path and its bytes, in path order."""
        hasher = hashlib.sha256()
        for entry in self.entries:
            hasher.update(entry.kind.value.encode())
            hasher.update(b"\0")
            hasher.update(entry.path.encode("utf-8"))
            hasher.update(b"\0")
            try:
                if entry.kind is EntryKind.SYMLINK:
                    hasher.update(os.readlink(entry.absolute).encode("utf-8"))
                else:
                    with entry.absolute.open("rb") as handle:
                        for chunk in iter(lambda: handle.read(1 << 16), b""):
                            hasher.update(chunk)
            except OSError as exc:
                raise FilesystemError.from_os_error(exc, entry.absolute) from exc
            hasher.update(b"\0")
        return hasher.hexdigest()

    def materialize(self, destination: Path) -> Path:
        """Copy the filtered view into ``destination``, replacing its contents."""
        try:
            if destination.exists():
                shutil.rmtree(destination)
            destination.mkdir(parents=True)
            for entry in self.entries:
                target = destination / entry.path
                target.parent.mkdir(parents=True, exist_ok=True)
                if entry.kind is EntryKind.SYMLINK:
                    os.symlink(os.readlink(entry.absolute), target)
                else:
                    shutil.copy2(entry.absolute, target)
        except OSError as exc:
            raise FilesystemError.from_os_error(exc, destination, action="stage source tree") from exc
        return destination


def _relative(root: Path, path: Path) -> str:
    return path.relative_to(root).as_posix()


def filter_source(root: Path, patterns: ExclusionPatternSet) -> SourceTree:
    """Walk ``root`` and keep every entry no pattern excludes."""

    root = Path(root)
    if not root.exists():
        raise FilesystemError(root, "directory does not exist")
    if not root.is_dir():
        raise FilesystemError(root, "not a directory")
    if not os.access(root, os.R_OK | os.X_OK):
        raise FilesystemError(root, "permission denied")

    def _on_error(exc: OSError) -> None:
        raise FilesystemError.from_os_error(exc, root) from exc

    entries: list[SourceEntry] = []
    for dirpath, dirnames, filenames in os.walk(root, topdown=True, onerror=_on_error):
        current = Path(dirpath)
        kept_dirs: list[str] = []
        for name in sorted(dirnames):
            path = current / name
            relative = _relative(root, path)
            if path.is_symlink():
                # os.walk does not follow directory symlinks; keep the link itself.
                if not patterns.excludes(relative):
                    entries.append(SourceEntry(relative, path, EntryKind.SYMLINK))
                continue
            if _excludes_directory(patterns, relative):
                continue
            kept_dirs.append(name)
        dirnames[:] = kept_dirs

        for name in filenames:
            path = current / name
            relative = _relative(root, path)
            if patterns.excludes(relative):
                continue
            kind = EntryKind.SYMLINK if path.is_symlink() else EntryKind.FILE
            entries.append(SourceEntry(relative, path, kind))

    entries.sort(key=lambda entry: entry.path)
    return SourceTree(root=root, entries=tuple(entries))


def _excludes_directory(patterns: ExclusionPatternSet, relative: str) -> bool:
    return patterns.excludes(relative) or patterns.excludes(relative + "/")


def _ancestors(relative_path: str) -> Sequence[str]:
    parts = relative_path.split("/")[:-1]
    return ["/".join(parts[: index + 1]) for index in range(len(parts))]


def filter_tree(tree: SourceTree, patterns: ExclusionPatternSet) -> SourceTree:
    """Apply ``patterns`` to an already filtered tree without touching disk."""

    kept = [
        entry
        for entry in tree.entries
        if not patterns.excludes(entry.path)
        and not any(_excludes_directory(patterns, ancestor) for ancestor in _ancestors(entry.path))
    ]
    return SourceTree(root=tree.root, entries=tuple(kept))
