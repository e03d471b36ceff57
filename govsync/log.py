"""Logging setup shared by the CLI and the HTTP service."""

from __future__ import annotations

import logging

from rich.logging import RichHandler


def setup_logging(level: str | int = "INFO") -> None:
    """Route stdlib logging through rich. Safe to call more than once."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)
