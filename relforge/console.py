"""Console output for the release pipeline."""
from __future__ import annotations

import sys
import traceback

from core.archive import ArchiveConsole


class Console(ArchiveConsole):
    """Simple console output handler with configurable log level.

    Levels: none < error < info < debug
    Default: 'info'
    """

    LEVELS = {
        "none": 0,
        "error": 1,
        "info": 2,
        "debug": 3,
    }

    def __init__(self, level: str = "info", dry_run: bool = False):
        if level not in self.LEVELS:
            raise ValueError(f"Unknown log level '{level}'. Expected one of: {', '.join(self.LEVELS)}")
        self.level_name = level
        self.level = self.LEVELS[level]
        self.dry_run = dry_run

    def info(self, message: str) -> None:
        if self.level >= self.LEVELS["info"]:
            print(f"[INFO] {message}")

    def error(self, message: str) -> None:
        if self.level >= self.LEVELS["error"]:
            print(f"[ERROR] {message}", file=sys.stderr)

    def dry(self, message: str) -> None:
        if self.dry_run:
            print(f"[DRY] {message}")

    def debug(self, message: str) -> None:
        if self.level >= self.LEVELS["debug"]:
            print(f"[DEBUG] {message}")

    def exception(self, exc: BaseException) -> None:
        """Report ``exc``; the traceback is only shown at debug level."""
        self.error(str(exc))
        if self.level >= self.LEVELS["debug"]:
            traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
