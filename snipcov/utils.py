"""
This module contains generic, reusable helpers for snipcov.

It includes utilities for logging setup, mirroring console output to a log
file, and timing the phases of a coverage run.
"""

import logging
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, TextIO

import psutil

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False, stream: TextIO | None = None) -> None:
    """Route snipcov log records to ``stream`` (stderr by default)."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        stream=stream if stream is not None else sys.stderr,
        force=True,
    )


class TeeLogger:
    """
    A file-like object that writes to both a file and another stream
    (like the original stdout), and flushes immediately.

    When verbose is False, per-test and per-phase chatter is kept out of
    both the console and the file.
    """

    _QUIET_SUPPRESS_PREFIXES: tuple[str, ...] = (
        "[TEST:START]",
        "[TEST:PASS]",
        "[~]",
    )

    def __init__(self, file_path: str | Path, original_stream: TextIO, verbose: bool = True) -> None:
        self.original_stream = original_stream
        self.log_file = open(file_path, "w", encoding="utf-8")
        self.verbose = verbose
        self._last_was_suppressed = False

    def _is_suppressed(self, message: str) -> bool:
        if self.verbose:
            return False
        return message.lstrip().startswith(self._QUIET_SUPPRESS_PREFIXES) or message.startswith(
            self._QUIET_SUPPRESS_PREFIXES
        )

    def write(self, message: str) -> None:
        # print() sends the trailing newline as a separate write.
        if message == "\n" and self._last_was_suppressed:
            self._last_was_suppressed = False
            return
        if self._is_suppressed(message):
            self._last_was_suppressed = True
            return
        self._last_was_suppressed = False
        self.original_stream.write(message)
        self.log_file.write(message)
        self.flush()

    def flush(self) -> None:
        self.original_stream.flush()
        self.log_file.flush()

    def close(self) -> None:
        self.flush()
        self.log_file.close()

    @property
    def encoding(self) -> str:
        return getattr(self.original_stream, "encoding", "utf-8")

    def isatty(self) -> bool:
        return hasattr(self.original_stream, "isatty") and self.original_stream.isatty()


def process_rss_mb() -> float:
    return round(psutil.Process().memory_info().rss / (1024 * 1024), 2)


@dataclass
class PhaseTimings:
    """Elapsed seconds and resident memory recorded per named phase."""

    elapsed: dict[str, float] = field(default_factory=dict)
    rss_mb: dict[str, float] = field(default_factory=dict)

    @property
    def total(self) -> float:
        return sum(self.elapsed.values())


@contextmanager
def phase_timer(name: str, timings: PhaseTimings | None = None) -> Iterator[None]:
    """Log how long the enclosed block took and the process RSS afterwards."""
    start = time.monotonic()
    try:
        yield
    finally:
        elapsed = time.monotonic() - start
        rss = process_rss_mb()
        if timings is not None:
            timings.elapsed[name] = elapsed
            timings.rss_mb[name] = rss
        logger.info(f"[~] {name} took {elapsed:.3f}s (rss {rss:.1f} MB)")
