"""
Package resolvers for the snipcov store.

Three kinds of resolver live here, all with the signature
``resolver(pkg_path, store) -> PackageDescriptor | None``:

- ``native_packages``: a fixed registry of host-backed packages.
- ``load_packages(root_dir)``: reads ``root_dir/stdlibs/<pkg_path>/*.py`` and
  compiles the files through a throwaway nested machine.
- ``memory_resolver(packages)``: compiles packages held in a dict, mainly
  for tests.
"""

import json
import logging
import sys
from pathlib import Path
from types import ModuleType
from typing import Any, Callable, Iterable, Mapping

from snipcov.machine import Machine, MachineOptions
from snipcov.store import (
    MemFile,
    MemPackage,
    PackageDescriptor,
    PackageNode,
    Resolver,
    Store,
)

logger = logging.getLogger(__name__)

SOURCE_SUFFIX = ".py"
STDLIBS_DIR = "stdlibs"

# Package path given to the nested machines that compile on-disk packages.
NESTED_PKG_PATH = "stdlibdynamic"


def _native_package(pkg_path: str, values: dict[str, Any]) -> PackageDescriptor:
    name = pkg_path.rsplit("/", 1)[-1]
    module = ModuleType(name)
    module.__dict__.update(values)
    module.__dict__["__package_path__"] = pkg_path
    node = PackageNode(name=name, path=pkg_path, names=tuple(sorted(values)))
    return PackageDescriptor(node=node, value=module)


def _os_package() -> dict[str, Any]:
    return {"stdin": sys.stdin, "stdout": sys.stdout, "stderr": sys.stderr}


def _fmt_package() -> dict[str, Any]:
    def println(*args: Any) -> int:
        """Write the arguments space-separated on one line to stdout."""
        line = " ".join(str(a) for a in args) + "\n"
        return sys.stdout.write(line)

    return {"println": println}


def _json_package() -> dict[str, Any]:
    def marshal(value: Any) -> bytes:
        return json.dumps(value, separators=(",", ":")).encode("utf-8")

    def unmarshal(data: bytes | str) -> Any:
        return json.loads(data)

    return {"marshal": marshal, "unmarshal": unmarshal}


NATIVE_PACKAGES: dict[str, Callable[[], dict[str, Any]]] = {
    "os": _os_package,
    "fmt": _fmt_package,
    "encoding/json": _json_package,
}


def native_packages(pkg_path: str, store: Store | None = None) -> PackageDescriptor | None:
    """Look ``pkg_path`` up in the native registry; unknown paths give None."""
    factory = NATIVE_PACKAGES.get(pkg_path)
    if factory is None:
        return None
    return _native_package(pkg_path, factory())


def read_mem_package_from_list(files: Iterable[Path], pkg_path: str) -> MemPackage:
    mem_files = tuple(
        MemFile(name=path.name, body=path.read_text(encoding="utf-8")) for path in files
    )
    return MemPackage(name=pkg_path.rsplit("/", 1)[-1], path=pkg_path, files=mem_files)


def compile_package(mem_package: MemPackage, store: Store) -> PackageDescriptor | None:
    """Evaluate a package's top-level declarations and return its descriptor.

    A nested machine bound to ``store`` does the work, so packages imported
    along the way are cached in the same store. The nested machine is
    released before returning. A package with no statements yields None.
    """
    if mem_package.is_empty():
        return None
    options = MachineOptions(pkg_path=NESTED_PKG_PATH, output=sys.stdout, store=store)
    with Machine(options) as nested:
        descriptor = nested.run_mem_package(mem_package, save=False)
    if not any(file_node.decls for file_node in descriptor.node.files):
        return None
    logger.debug(
        f"[+] Compiled package '{mem_package.path}' ({len(mem_package.files)} file(s))."
    )
    return descriptor


def package_dir(root_dir: str | Path, pkg_path: str) -> Path | None:
    """Map an import path to its directory under ``root_dir``, or None if malformed."""
    segments = pkg_path.split("/")
    if any(segment in ("", ".", "..") for segment in segments):
        return None
    return Path(root_dir, STDLIBS_DIR, *segments)


def load_packages(root_dir: str | Path) -> Resolver:
    """Return a resolver that compiles source packages found under ``root_dir``."""

    def load_package(pkg_path: str, store: Store) -> PackageDescriptor | None:
        directory = package_dir(root_dir, pkg_path)
        if directory is None:
            return None
        try:
            entries = sorted(directory.iterdir())
        except OSError:
            return None

        files = [e for e in entries if e.is_file() and e.suffix == SOURCE_SUFFIX]
        if not files:
            return None

        return compile_package(read_mem_package_from_list(files, pkg_path), store)

    return load_package


def memory_resolver(packages: Mapping[str, Mapping[str, str]]) -> Resolver:
    """Return a resolver serving ``{pkg_path: {filename: source}}`` fixtures."""

    def resolve_from_memory(pkg_path: str, store: Store) -> PackageDescriptor | None:
        files = packages.get(pkg_path)
        if not files:
            return None
        mem_package = MemPackage(
            name=pkg_path.rsplit("/", 1)[-1],
            path=pkg_path,
            files=tuple(MemFile(name=n, body=b) for n, b in sorted(files.items())),
        )
        return compile_package(mem_package, store)

    return resolve_from_memory


def default_resolvers(root_dir: str | Path) -> list[Resolver]:
    """The standard chain: native registry first, on-disk packages second."""
    return [native_packages, load_packages(root_dir)]
