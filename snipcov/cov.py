"""
Out-of-process, line-granularity coverage for snippets.

The snippet is embedded in a generated unittest module, packed into a test
binary keyed by the module's content hash, and run under the line profiler
from ``snipcov.lineprof``. The resulting profile is reduced to the executed
lines of one target source file (the machine).

All artifacts live at fixed paths relative to the working directory, so two
runs in the same directory must not overlap.
"""

import hashlib
import logging
import subprocess
import sys
from pathlib import Path

from snipcov.utils import PhaseTimings, phase_timer

logger = logging.getLogger(__name__)

COV_TEST_FILE = Path("cov_test.py")
COVERAGE_PROFILE = Path("coverage.out")
TEST_BINARY_PREFIX = "testbinary"
TEST_BINARY_SUFFIX = ".pyz"

COVER_PACKAGES = ["snipcov"]
TARGET_PREFIX = "snipcov/machine.py:"
TEST_PARALLELISM = 4

COV_TEST_TEMPLATE = """\
# generated file
import unittest

from snipcov import repl


class TestGet(unittest.TestCase):
    def test_get(self):
        a = repl.run_file_with_coverage(r'''{source}''')
        print("returned value:", a)
"""


class CoverageRunError(Exception):
    """Building, running, or reading the output of the test binary failed."""


def render_cov_test(source: str) -> str:
    """Embed ``source`` verbatim in the test module template.

    The source must not contain ``'''`` or end in a backslash, which would
    close the raw string early.
    """
    return COV_TEST_TEMPLATE.replace("{source}", source)


def write_cov_test_file(source: str, path: Path = COV_TEST_FILE) -> bool:
    """Write the generated test module unless identical content is already there.

    Returns True when the file was (re)written.
    """
    content = render_cov_test(source)
    try:
        existing = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        existing = None
    if existing == content:
        logger.info(f"[~] {path} is already up to date; skipping write.")
        return False
    logger.info(f"[+] Writing {path}.")
    path.write_text(content, encoding="utf-8")
    return True


def binary_path_for(test_file: Path = COV_TEST_FILE, cover_packages: list[str] = COVER_PACKAGES) -> Path:
    """Return the cache path of the test binary built from ``test_file``.

    The name carries a hash of the module content and the cover packages, so
    a regenerated module never reuses a binary built from older content.
    """
    digest = hashlib.sha256(test_file.read_bytes())
    digest.update("\0".join(cover_packages).encode("utf-8"))
    return test_file.parent / f"{TEST_BINARY_PREFIX}-{digest.hexdigest()[:16]}{TEST_BINARY_SUFFIX}"


def _prune_stale_binaries(keep: Path) -> None:
    for stale in keep.parent.glob(f"{TEST_BINARY_PREFIX}-*{TEST_BINARY_SUFFIX}"):
        if stale != keep:
            try:
                stale.unlink()
                logger.info(f"[~] Removed stale test binary {stale}.")
            except OSError as e:
                logger.warning(f"[!] Could not remove stale test binary {stale}: {e}")


def build_test_binary(
    test_file: Path = COV_TEST_FILE, cover_packages: list[str] = COVER_PACKAGES
) -> Path:
    """Build the test binary for ``test_file`` unless a cached one exists."""
    binary = binary_path_for(test_file, cover_packages)
    if binary.exists():
        logger.info(f"[+] Using cached test binary {binary}.")
        return binary

    logger.info(f"[*] Building test binary {binary}...")
    cmd = [sys.executable, "-m", "snipcov.lineprof", "build"]
    for pkg in cover_packages:
        cmd += ["--coverpkg", pkg]
    cmd += ["-o", str(binary), str(test_file)]
    try:
        subprocess.run(cmd, check=True)
    except (OSError, subprocess.CalledProcessError) as e:
        raise CoverageRunError(f"failed to build test binary: {e}") from e

    _prune_stale_binaries(binary)
    return binary


def get_coverage(binary: Path, profile: Path = COVERAGE_PROFILE) -> None:
    """Warm up, then run ``binary`` with line profiling into ``profile``."""
    # Warm-up run: imports everything, runs no tests. Its outcome is ignored.
    try:
        subprocess.run(
            [sys.executable, str(binary), "--run", "^$", "--count", "1"],
            capture_output=True,
        )
    except OSError as e:
        logger.warning(f"[!] Warm-up run of {binary} failed to start: {e}")

    cmd = [
        sys.executable,
        str(binary),
        "-v",
        "--parallel",
        str(TEST_PARALLELISM),
        "--count",
        "1",
        "--coverprofile",
        str(profile),
    ]
    try:
        subprocess.run(cmd, check=True)
    except (OSError, subprocess.CalledProcessError) as e:
        raise CoverageRunError(f"failed to run test binary: {e}") from e


def filter_nonzero_lines(text: str) -> str:
    """Keep profile records whose third field (the count) is not ``0``."""
    kept = []
    for line in text.split("\n"):
        line = line.strip()
        if not line:
            continue
        fields = line.split()
        if len(fields) < 3:
            continue
        if fields[2] != "0":
            kept.append(line)
    return "\n".join(kept)


def filter_target_coverage(text: str, target_prefix: str = TARGET_PREFIX) -> str:
    """Keep records whose location starts with ``target_prefix``."""
    kept = []
    for line in text.split("\n"):
        line = line.strip()
        if line and line.startswith(target_prefix):
            kept.append(line)
    return "\n".join(kept)


def get_cov_of_source(source: str, timings: PhaseTimings | None = None) -> str:
    """Return the executed lines of the machine while running ``source``.

    Raises CoverageRunError when the test binary cannot be built or run, or
    its profile cannot be read.
    """
    if timings is None:
        timings = PhaseTimings()

    with phase_timer("write cov_test.py", timings):
        write_cov_test_file(source, COV_TEST_FILE)

    with phase_timer("build test binary", timings):
        binary = build_test_binary(COV_TEST_FILE, COVER_PACKAGES)

    with phase_timer("run test binary", timings):
        get_coverage(binary, COVERAGE_PROFILE)

    with phase_timer("read and filter profile", timings):
        try:
            data = COVERAGE_PROFILE.read_text(encoding="utf-8")
        except OSError as e:
            raise CoverageRunError(f"failed to read coverage profile: {e}") from e
        target_coverage = filter_target_coverage(filter_nonzero_lines(data))

    logger.info(f"[+] Coverage run finished in {timings.total:.3f}s.")
    return target_coverage
