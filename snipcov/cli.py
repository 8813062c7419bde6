"""
Command-line entry point for snipcov.

Usage:
    snipcov run snippet.py [--entry anomFunc] [--show-coverage]
    snipcov cov snippet.py
"""

import argparse
import sys
from pathlib import Path

from snipcov import cov, repl
from snipcov.machine import DEFAULT_PKG_PATH, EntryNotFoundError, InstrumentationError, ParseError
from snipcov.store import ResolutionError
from snipcov.utils import TeeLogger, setup_logging


def _read_source(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        print(f"Error: Could not read {path}: {e}", file=sys.stderr)
        sys.exit(1)


def cmd_run(args: argparse.Namespace) -> int:
    source = _read_source(args.file)
    try:
        result = repl.run(
            source,
            args.entry,
            root=args.root,
            pkg_path=args.pkg_path,
        )
    except (ParseError, ResolutionError, EntryNotFoundError, InstrumentationError) as e:
        print(f"[!] {e}", file=sys.stderr)
        return 1

    sys.stdout.write(result.output)
    if args.show_coverage:
        result.coverage.print_bitmap()
    if result.fault is not None:
        print(f"[!] {args.entry} faulted: {result.fault}", file=sys.stderr)
        if args.verbose:
            print(result.fault.traceback, file=sys.stderr)
        return 1
    if result.value is not None:
        print(f"[+] {args.entry} returned: {result.value!r}", file=sys.stderr)
    return 0


def cmd_cov(args: argparse.Namespace) -> int:
    source = _read_source(args.file)
    try:
        report = cov.get_cov_of_source(source)
    except cov.CoverageRunError as e:
        print(f"[!] {e}", file=sys.stderr)
        return 1
    print(report)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Run code snippets with opcode coverage, or collect line coverage out of process."
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging.")
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Also write all console output to this file.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Execute a snippet in-process.")
    run_parser.add_argument("file", type=Path, help="Snippet source file.")
    run_parser.add_argument(
        "--entry",
        default=repl.DEFAULT_ENTRY,
        help=f"Entry function to invoke (default: {repl.DEFAULT_ENTRY}).",
    )
    run_parser.add_argument(
        "--root",
        type=Path,
        default=None,
        help=f"Root directory holding stdlibs/ (default: ${repl.ROOT_ENV_VAR} or the snipcov package).",
    )
    run_parser.add_argument("--pkg-path", default=DEFAULT_PKG_PATH, help="Package path of the snippet.")
    run_parser.add_argument(
        "--show-coverage",
        action="store_true",
        help="Print the coverage bitmap after the run.",
    )
    run_parser.set_defaults(func=cmd_run)

    cov_parser = subparsers.add_parser(
        "cov", help="Collect line coverage of the machine through a test binary."
    )
    cov_parser.add_argument("file", type=Path, help="Snippet source file defining anomFunc.")
    cov_parser.set_defaults(func=cmd_cov)

    args = parser.parse_args(argv)

    original_stdout = sys.stdout
    original_stderr = sys.stderr
    tee_logger = None
    if args.log_file is not None:
        tee_logger = TeeLogger(args.log_file, original_stdout, verbose=args.verbose)
        sys.stdout = tee_logger
        sys.stderr = tee_logger

    setup_logging(args.verbose, stream=sys.stderr)
    try:
        return args.func(args)
    finally:
        if tee_logger is not None:
            tee_logger.close()
            sys.stdout = original_stdout
            sys.stderr = original_stderr
            setup_logging(args.verbose, stream=original_stderr)


if __name__ == "__main__":
    sys.exit(main())
