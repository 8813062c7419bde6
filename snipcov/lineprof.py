"""
Test-binary builder and line-profiling test runner for snipcov.

``build`` packs a generated unittest module into a self-contained zipapp
(the "test binary"). Running that zipapp drops into ``test`` mode, which
imports the embedded module, runs its test cases on a thread pool under
coverage.py, and optionally writes a line-coverage profile.

Usage:
    python -m snipcov.lineprof build --coverpkg snipcov -o testbinary.pyz cov_test.py
    python testbinary.pyz -v --parallel 4 --count 1 --coverprofile coverage.out

Output Protocol:
    [TEST:START] <test id>             - Emitted before each test (with -v)
    [TEST:PASS] <test id> (<secs>s)    - Emitted after a passing test (with -v)
    [TEST:FAIL] <test id> (<secs>s)    - Emitted after a failing test (always)

Profile format:
    mode: set
    <package>/<relative path>:<line> <statements> <hit: 1 or 0>
"""

from __future__ import annotations

import argparse
import importlib
import importlib.util
import os
import re
import secrets
import sys
import tempfile
import time
import unittest
import zipapp
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from textwrap import dedent

import coverage
from coverage.exceptions import CoverageException

PROFILE_MODE_LINE = "mode: set"

MAIN_TEMPLATE = dedent("""\
    # generated by snipcov.lineprof build
    import sys

    from snipcov import lineprof

    sys.exit(lineprof.main(["test", "--module", {module!r}, {coverpkg_args}*sys.argv[1:]]))
""")


def build_binary(test_file: Path, output: Path, cover_packages: list[str]) -> None:
    """Compile-check ``test_file`` and pack it into a zipapp at ``output``.

    Raises SyntaxError if the test module does not compile.
    """
    source = test_file.read_text(encoding="utf-8")
    compile(source, str(test_file), "exec")

    module_name = test_file.stem
    coverpkg_args = "".join(f'"--coverpkg", {pkg!r}, ' for pkg in cover_packages)
    main_source = MAIN_TEMPLATE.format(module=module_name, coverpkg_args=coverpkg_args)

    output.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = output.with_name(f"{output.name}.tmp.{secrets.token_hex(4)}")
    with tempfile.TemporaryDirectory() as staging:
        staging_dir = Path(staging)
        (staging_dir / f"{module_name}.py").write_text(source, encoding="utf-8")
        (staging_dir / "__main__.py").write_text(main_source, encoding="utf-8")
        try:
            zipapp.create_archive(staging_dir, target=tmp_path)
            os.replace(tmp_path, output)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()


def collect_tests(module, pattern: str) -> list[unittest.TestCase]:
    """Return the module's test cases whose method name matches ``pattern``."""
    regex = re.compile(pattern)
    cases: list[unittest.TestCase] = []

    def _flatten(suite):
        for item in suite:
            if isinstance(item, unittest.TestSuite):
                _flatten(item)
            elif regex.search(getattr(item, "_testMethodName", "")):
                cases.append(item)

    _flatten(unittest.defaultTestLoader.loadTestsFromModule(module))
    return cases


def _run_case(case: unittest.TestCase, verbose: bool) -> bool:
    if verbose:
        print(f"[TEST:START] {case.id()}", flush=True)
    result = unittest.TestResult()
    start = time.monotonic()
    case.run(result)
    elapsed = time.monotonic() - start
    ok = result.wasSuccessful()
    if verbose or not ok:
        print(f"[TEST:{'PASS' if ok else 'FAIL'}] {case.id()} ({elapsed:.2f}s)", flush=True)
    for _, formatted in result.errors + result.failures:
        print(formatted, file=sys.stderr)
    return ok


def run_tests(
    cases: list[unittest.TestCase], count: int, parallel: int, verbose: bool
) -> bool:
    jobs = [case for _ in range(count) for case in cases]
    if not jobs:
        return True
    with ThreadPoolExecutor(max_workers=max(1, parallel)) as pool:
        results = list(pool.map(lambda case: _run_case(case, verbose), jobs))
    return all(results)


def cover_files(package: str) -> list[tuple[str, Path]]:
    """List ``(location prefix, path)`` for every module file in ``package``."""
    spec = importlib.util.find_spec(package)
    if spec is None or not spec.submodule_search_locations:
        return []
    files = []
    for base in spec.submodule_search_locations:
        base_path = Path(base)
        for path in sorted(base_path.rglob("*.py")):
            files.append((f"{package}/{path.relative_to(base_path).as_posix()}", path))
    return files


def format_profile(cov: coverage.Coverage, cover_packages: list[str]) -> str:
    """Render measured data as a profile listing every statement of the packages.

    Each statement gets a hit field of 1 when it ran and 0 when it did not.
    Files coverage.py cannot analyse are left out.
    """
    lines = [PROFILE_MODE_LINE]
    for package in cover_packages:
        for location, path in cover_files(package):
            try:
                _, statements, _, missing, _ = cov.analysis2(str(path))
            except CoverageException:
                continue
            missing = set(missing)
            for lineno in sorted(statements):
                lines.append(f"{location}:{lineno} 1 {0 if lineno in missing else 1}")
    return "\n".join(lines) + "\n"


def write_profile(path: Path, content: str) -> None:
    tmp_path = path.with_name(f"{path.name}.tmp.{secrets.token_hex(4)}")
    try:
        tmp_path.write_text(content, encoding="utf-8")
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def run_test_binary(args: argparse.Namespace) -> int:
    module = importlib.import_module(args.module)
    cases = collect_tests(module, args.run)
    if args.verbose and not cases:
        print(f"[TEST:INFO] no tests match '{args.run}'", flush=True)

    if not args.coverprofile:
        return 0 if run_tests(cases, args.count, args.parallel, args.verbose) else 1

    cov = coverage.Coverage(data_file=None, source=args.coverpkg, config_file=False)
    # The cover packages are imported before measurement starts.
    cov.set_option("run:disable_warnings", ["already-imported", "module-not-measured"])
    cov.start()
    try:
        ok = run_tests(cases, args.count, args.parallel, args.verbose)
    finally:
        cov.stop()

    write_profile(Path(args.coverprofile), format_profile(cov, args.coverpkg))
    return 0 if ok else 1


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Build and run line-profiled snipcov test binaries."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    build_parser = subparsers.add_parser("build", help="Pack a test module into a test binary.")
    build_parser.add_argument("test_file", type=Path, help="Generated unittest module.")
    build_parser.add_argument("-o", "--output", type=Path, required=True, help="Binary path.")
    build_parser.add_argument(
        "--coverpkg",
        action="append",
        default=[],
        help="Package whose lines are profiled (repeatable).",
    )

    test_parser = subparsers.add_parser("test", help="Run the tests of an embedded module.")
    test_parser.add_argument("--module", required=True, help="Test module to import.")
    test_parser.add_argument("--coverpkg", action="append", default=[])
    test_parser.add_argument("--run", default=".*", help="Regex selecting test method names.")
    test_parser.add_argument("--count", type=int, default=1, help="Run each test N times.")
    test_parser.add_argument("--parallel", type=int, default=1, help="Worker threads.")
    test_parser.add_argument("--coverprofile", help="Write a line-coverage profile here.")
    test_parser.add_argument("--verbose", "-v", action="store_true")

    args = parser.parse_args(argv)

    if args.command == "build":
        try:
            build_binary(args.test_file, args.output, args.coverpkg)
        except (OSError, SyntaxError) as e:
            print(f"[!] Could not build {args.output} from {args.test_file}: {e}", file=sys.stderr)
            return 1
        print(f"[+] Built test binary {args.output}", file=sys.stderr)
        return 0

    return run_test_binary(args)


if __name__ == "__main__":
    sys.exit(main())
