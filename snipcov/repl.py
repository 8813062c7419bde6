"""
One-shot snippet execution with opcode coverage.

``run`` parses a snippet, registers its declarations into a fresh machine,
invokes the entry function and returns the captured output together with
the coverage bitmap filled in while the entry function ran.

Usage:
    from snipcov import repl

    result = repl.run(source, "anomFunc")
    print(result.output)
    result.coverage.print_bitmap()
"""

import io
import logging
import os
import traceback
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

from snipcov.bitmap import CoverageBitmap
from snipcov.loader import default_resolvers
from snipcov.machine import (
    DEFAULT_PKG_PATH,
    EntryNotFoundError,
    InstrumentationError,
    Machine,
    MachineOptions,
    parse_file,
)
from snipcov.store import DynamicStore, ResolutionError, Resolver, minimal_context

logger = logging.getLogger(__name__)

DEFAULT_ENTRY = "anomFunc"
SNIPPET_FILENAME = "input.py"
ROOT_ENV_VAR = "SNIPCOV_ROOT"


def root_dir() -> Path:
    """Return the directory searched for on-disk packages.

    ``$SNIPCOV_ROOT`` wins when set; otherwise the installed snipcov package
    directory, which ships the bundled ``stdlibs`` tree.
    """
    override = os.environ.get(ROOT_ENV_VAR)
    if override:
        return Path(override)
    return Path(__file__).resolve().parent


@dataclass(frozen=True)
class Fault:
    """An exception raised by the entry function, converted to data."""

    type_name: str
    message: str
    traceback: str

    def __str__(self) -> str:
        return f"{self.type_name}: {self.message}"


@dataclass
class RunResult:
    output: str
    value: Any = None
    fault: Fault | None = None
    coverage: CoverageBitmap | None = None

    @property
    def ok(self) -> bool:
        return self.fault is None


def run(
    snippet: str,
    entry_name: str = DEFAULT_ENTRY,
    *,
    args: Sequence[Any] = (),
    root: str | Path | None = None,
    pkg_path: str = DEFAULT_PKG_PATH,
    coverage: CoverageBitmap | None = None,
    resolvers: Sequence[Resolver] | None = None,
) -> RunResult:
    """Execute ``entry_name`` from ``snippet`` and collect output and coverage.

    Raises ParseError before any machine exists when the snippet does not
    parse. ResolutionError from an unsatisfied import, EntryNotFoundError for a
    missing entry function and InstrumentationError when no monitoring tool
    id is free all propagate unchanged.
    Any other exception raised by the entry function is returned as
    ``RunResult.fault``.
    """
    if coverage is None:
        coverage = CoverageBitmap()
    coverage.reset()

    file_node = parse_file(SNIPPET_FILENAME, snippet)

    if resolvers is None:
        resolvers = default_resolvers(root if root is not None else root_dir())
    dynamic_store = DynamicStore(resolvers)
    ctx = minimal_context(pkg_path)

    output_buffer = io.StringIO()
    options = MachineOptions(
        pkg_path=pkg_path,
        output=output_buffer,
        store=dynamic_store.store,
        context=ctx,
        coverage=coverage,
    )
    fault = None
    value = None
    with Machine(options) as m:
        m.run_files(file_node)
        try:
            value = m.run_func(entry_name, *args)
        except (ResolutionError, EntryNotFoundError, InstrumentationError):
            raise
        except (Exception, SystemExit) as e:
            fault = Fault(
                type_name=type(e).__name__,
                message=str(e),
                traceback="".join(traceback.format_exception(e)),
            )
            logger.warning(f"[!] Entry function '{entry_name}' faulted: {fault}")

    return RunResult(output=output_buffer.getvalue(), value=value, fault=fault, coverage=coverage)


def run_file_with_coverage(snippet: str) -> str:
    """Run the snippet's ``anomFunc``, print the coverage bitmap, return the output."""
    result = run(snippet, DEFAULT_ENTRY)
    result.coverage.print_bitmap()
    if result.fault is not None:
        print(f"[!] {result.fault}")
    print("=== run complete ===")
    return result.output
