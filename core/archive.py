"""Reproducible release archives for an install prefix."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable
import gzip
import io
import os
import tarfile
import tempfile

import zstandard as zstd

_SUFFIX_FORMATS: list[tuple[str, str]] = [
    (".tar.zst", "zst"),
    (".tzst", "zst"),
    (".tar.gz", "gztar"),
    (".tgz", "gztar"),
    (".tar", "tar"),
]

_FORMAT_ALIASES: dict[str, str] = {
    "zst": "zst",
    "tar.zst": "zst",
    "tzst": "zst",
    "gztar": "gztar",
    "gz": "gztar",
    "tar.gz": "gztar",
    "tgz": "gztar",
    "tar": "tar",
}


@runtime_checkable
class ArchiveConsole(Protocol):
    """Minimal console interface required by :class:`ArchiveManager`."""

    dry_run: bool

    def info(self, message: str) -> None:
        ...

    def error(self, message: str) -> None:
        ...

    def dry(self, message: str) -> None:
        ...


@dataclass(slots=True)
class ArchiveArtifact:
    """Description of filesystem content to package into an archive."""

    source_dir: Path
    label: str | None = None
    prefix: str | None = None


class ArchiveManager:
    """Create byte-reproducible archives from directories.

    Entries are added in sorted order with zeroed timestamps and ownership so
    two archives of the same tree are identical regardless of when or by whom
    they were produced.
    """

    def __init__(
        self,
        console: ArchiveConsole,
    ) -> None:
        self._console = console

    @staticmethod
    def _zstd_window_log(source_size: int) -> int:
        if source_size <= 0:
            return 10
        return max(10, min(27, (source_size - 1).bit_length()))

    @classmethod
    def _zstd_compression_params(
            cls, source_size: int) -> zstd.ZstdCompressionParameters:
        size = max(1, source_size)
        window_log = cls._zstd_window_log(size)
        # Single-threaded output only; zstd worker frames depend on the
        # thread count and would make the archive host dependent.
        return zstd.ZstdCompressionParameters(
            compression_level=19,
            threads=0,
            write_checksum=True,
            write_content_size=True,
            window_log=window_log,
        )

    def create_archive(
        self,
        *,
        artifact: ArchiveArtifact,
        target_path: Path | str,
        format_hint: str | None = None,
        overwrite: bool = True,
    ) -> Path:
        """Create an archive for *artifact* at *target_path*.

        Parameters
        ----------
        artifact:
            Data describing the directory to archive.
        target_path:
            Exact path (including filename) for the archive that should be created.
        format_hint:
            Optional explicit archive format such as ``"zst"`` or ``"tar"``. When
            omitted, the format is inferred from *target_path*'s suffix.
        overwrite:
            When ``False`` and the target already exists, a :class:`FileExistsError`
            is raised instead of replacing the file.
        """

        target = Path(target_path).expanduser()
        source_dir = Path(artifact.source_dir).expanduser()

        if not source_dir.exists():
            raise FileNotFoundError(
                f"Archive source directory '{source_dir}' does not exist")

        archive_format = self._resolve_archive_format(
            target=target, format_hint=format_hint)

        if self._console.dry_run:
            label = artifact.label or source_dir.name
            self._console.dry(f"Would archive {label} to {target}")
            return target

        if target.exists() and not overwrite:
            raise FileExistsError(f"Archive target '{target}' already exists")

        target.parent.mkdir(parents=True, exist_ok=True)

        tar_bytes = self._create_pax_tar(root_dir=source_dir, prefix=artifact.prefix)
        if archive_format == "zst":
            params = self._zstd_compression_params(len(tar_bytes))
            payload = zstd.ZstdCompressor(compression_params=params).compress(tar_bytes)
        elif archive_format == "gztar":
            buffer = io.BytesIO()
            with gzip.GzipFile(fileobj=buffer, mode="wb", compresslevel=9, mtime=0, filename="") as dst:
                dst.write(tar_bytes)
            payload = buffer.getvalue()
        elif archive_format == "tar":
            payload = tar_bytes
        else:
            raise RuntimeError(f"Unsupported archive format '{archive_format}'")

        self._write_atomic(target, payload)
        self._console.info(f"Archived {artifact.label or source_dir.name} to {target}")
        return target

    def _resolve_archive_format(
            self,
            *,
            target: Path,
            format_hint: str | None) -> str:
        if format_hint:
            normalized = format_hint.strip().lower()
            if normalized in _FORMAT_ALIASES:
                return _FORMAT_ALIASES[normalized]
            raise ValueError(
                f"Unsupported archive format hint '{format_hint}'")

        filename = target.name.lower()
        for suffix, fmt in sorted(
            _SUFFIX_FORMATS, key=lambda item: len(
                item[0]), reverse=True):
            if filename.endswith(suffix):
                return fmt

        raise ValueError(
            "Unable to determine archive format from target path. "
            "Provide an explicit format_hint or use a supported suffix."
        )

    @staticmethod
    def _normalize(info: tarfile.TarInfo) -> tarfile.TarInfo:
        info.mtime = 0
        info.uid = 0
        info.gid = 0
        info.uname = ""
        info.gname = ""
        if info.isdir():
            info.mode = 0o755
        elif info.isfile():
            info.mode = 0o755 if info.mode & 0o111 else 0o644
        return info

    def _create_pax_tar(self, *, root_dir: Path, prefix: str | None) -> bytes:
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w", format=tarfile.PAX_FORMAT) as tar:
            for dirpath, dirnames, filenames in os.walk(root_dir, topdown=True):
                dirnames.sort()
                current_dir = Path(dirpath)
                relative_dir = current_dir.relative_to(root_dir)
                names = sorted([*dirnames, *filenames])
                for name in names:
                    path = current_dir / name
                    arcname = (relative_dir / name).as_posix()
                    if prefix:
                        arcname = f"{prefix.rstrip('/')}/{arcname}"
                    info = self._normalize(tar.gettarinfo(str(path), arcname=arcname))
                    if info.isfile():
                        with path.open("rb") as handle:
                            tar.addfile(info, handle)
                    else:
                        tar.addfile(info)
        return buffer.getvalue()

    @staticmethod
    def _write_atomic(target: Path, payload: bytes) -> None:
        with tempfile.NamedTemporaryFile(dir=target.parent, suffix=".part", delete=False) as handle:
            handle.write(payload)
            temp_path = Path(handle.name)
        try:
            os.replace(temp_path, target)
        except OSError:
            temp_path.unlink(missing_ok=True)
            raise


__all__ = [
    "ArchiveConsole",
    "ArchiveManager",
    "ArchiveArtifact",
]
