"""Read the pinned dependency graph from a ``Cargo.lock`` file.

Nothing here resolves versions: the lock is taken as the complete answer
and cargo is later invoked with ``--locked`` so it cannot drift from it.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterator, Mapping
import hashlib
import tomllib

from .errors import LockMissingError, LockParseError


REGISTRY_PREFIX = "registry+"


@dataclass(frozen=True, slots=True)
class LockedPackage:
    name: str
    version: str
    source: str | None = None
    checksum: str | None = None

    @property
    def key(self) -> str:
        return f"{self.name}@{self.version}"

    @property
    def identity(self) -> tuple[str, str, str]:
        """Cargo may pin one ``name@version`` from several sources."""
        return (self.name, self.version, self.source or "")

    @property
    def is_registry(self) -> bool:
        return bool(self.source and self.source.startswith(REGISTRY_PREFIX))

    @property
    def is_local(self) -> bool:
        return self.source is None


@dataclass(frozen=True, slots=True)
class DependencyLock:
    """Immutable snapshot of every locked package keyed by (name, version, source)."""

    path: Path
    version: int | None
    packages: Mapping[tuple[str, str, str], LockedPackage]
    digest: str

    def __iter__(self) -> Iterator[LockedPackage]:
        return iter(self.packages.values())

    def __len__(self) -> int:
        return len(self.packages)

    def get(self, name: str) -> list[LockedPackage]:
        """Return every locked version of ``name`` (cargo allows several)."""
        return [package for package in self.packages.values() if package.name == name]

    @property
    def external(self) -> list[LockedPackage]:
        return [package for package in self.packages.values() if not package.is_local]


def _require_string(entry: Mapping[str, Any], key: str, *, path: Path, index: int, required: bool) -> str | None:
    value = entry.get(key)
    if value is None:
        if required:
            raise LockParseError(path, f"package #{index} is missing '{key}'")
        return None
    if not isinstance(value, str) or not value.strip():
        raise LockParseError(path, f"package #{index} field '{key}' must be a non-empty string")
    return value


def _legacy_checksums(metadata: Any) -> dict[tuple[str, str, str], str]:
    # Version 1 lock files keep checksums in [metadata] as
    # "checksum <name> <version> (<source>)" = "<sha256>".
    checksums: dict[tuple[str, str, str], str] = {}
    if not isinstance(metadata, Mapping):
        return checksums
    for key, value in metadata.items():
        if not isinstance(key, str) or not key.startswith("checksum ") or not isinstance(value, str):
            continue
        parts = key.split(" ", 3)
        if len(parts) >= 3 and value != "<none>":
            source = parts[3].strip("()") if len(parts) == 4 else ""
            checksums[(parts[1], parts[2], source)] = value
    return checksums


def parse_lock(data: bytes, *, path: Path) -> DependencyLock:
    try:
        document = tomllib.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, tomllib.TOMLDecodeError) as exc:
        raise LockParseError(path, str(exc)) from exc

    lock_version = document.get("version")
    if lock_version is not None and not isinstance(lock_version, int):
        raise LockParseError(path, "'version' must be an integer")

    raw_packages = document.get("package")
    if not isinstance(raw_packages, list):
        raise LockParseError(path, "no [[package]] entries found")

    legacy_checksums = _legacy_checksums(document.get("metadata"))

    packages: dict[tuple[str, str, str], LockedPackage] = {}
    for index, entry in enumerate(raw_packages):
        if not isinstance(entry, Mapping):
            raise LockParseError(path, f"package #{index} is not a table")
        name = _require_string(entry, "name", path=path, index=index, required=True)
        version = _require_string(entry, "version", path=path, index=index, required=True)
        source = _require_string(entry, "source", path=path, index=index, required=False)
        checksum = _require_string(entry, "checksum", path=path, index=index, required=False)
        if checksum is None:
            checksum = legacy_checksums.get((name, version, source or ""))
        package = LockedPackage(name=name, version=version, source=source, checksum=checksum)
        if package.is_registry and not package.checksum:
            raise LockParseError(path, f"registry package '{package.key}' has no checksum")
        if package.identity in packages:
            origin = package.source or "local"
            raise LockParseError(path, f"duplicate package '{package.key}' from {origin}")
        packages[package.identity] = package

    ordered = dict(sorted(packages.items()))
    return DependencyLock(
        path=path,
        version=lock_version,
        packages=MappingProxyType(ordered),
        digest=hashlib.sha256(data).hexdigest(),
    )


def resolve_lock(path: Path) -> DependencyLock:
    """Load the lock artifact at ``path``."""

    path = Path(path)
    if not path.is_file():
        raise LockMissingError(path)
    return parse_lock(path.read_bytes(), path=path)
