"""Process-wide logging configuration for the CLI entrypoint."""

from __future__ import annotations

import logging
import sys
from pathlib import Path


class _ConsoleNoiseFilter(logging.Filter):
    """Keep our own records; let third-party libraries through only on errors."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name.startswith("boomerang_flow."):
            return True
        return record.levelno >= logging.ERROR


def setup_logging(
    *,
    log_file: Path | None = None,
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
) -> None:
    """Install a console handler on stderr and, optionally, a full file log.

    Call once, before the first record is emitted. Existing root handlers are
    replaced.
    """

    root = logging.getLogger()
    root.setLevel(min(console_level, file_level) if log_file else console_level)

    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(formatter)
    console.addFilter(_ConsoleNoiseFilter())
    root.addHandler(console)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(str(log_file), encoding="utf-8")
        file_handler.setLevel(file_level)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    logging.captureWarnings(True)
