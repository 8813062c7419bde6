"""
Package store and resolver chain for the snipcov harness.

A ``Store`` caches resolved packages by import path and hands unknown paths
to a package getter. ``DynamicStore`` installs a getter that walks an ordered
list of resolvers and returns the first descriptor any of them produces.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import CodeType, ModuleType
from typing import TYPE_CHECKING, Callable, Optional, Sequence

if TYPE_CHECKING:
    from snipcov.machine import FileNode

logger = logging.getLogger(__name__)

DEV_CHAIN_ID = "dev-chain"


class ResolutionError(ModuleNotFoundError):
    """An import path could not be satisfied by the store."""


@dataclass(frozen=True)
class MemFile:
    name: str
    body: str


@dataclass(frozen=True)
class MemPackage:
    """Source files of one package, read into memory."""

    name: str
    path: str
    files: tuple[MemFile, ...] = ()

    def is_empty(self) -> bool:
        return not any(f.body.strip() for f in self.files)


@dataclass(frozen=True)
class PackageNode:
    """Declaration side of a resolved package."""

    name: str
    path: str
    files: tuple[FileNode, ...] = ()
    names: tuple[str, ...] = ()


@dataclass(frozen=True)
class PackageDescriptor:
    """A fully resolved package: its declarations and its runtime value."""

    node: PackageNode
    value: ModuleType

    @property
    def path(self) -> str:
        return self.node.path


@dataclass(frozen=True)
class ExecutionContext:
    """Opaque context handed to a machine; the harness never looks inside."""

    pkg_path: str
    chain_id: str = DEV_CHAIN_ID


def minimal_context(pkg_path: str) -> ExecutionContext:
    return ExecutionContext(pkg_path=pkg_path, chain_id=DEV_CHAIN_ID)


PackageGetter = Callable[[str, "Store"], Optional[PackageDescriptor]]
Resolver = Callable[[str, "Store"], Optional[PackageDescriptor]]
CodeListener = Callable[[CodeType], None]


@dataclass
class Store:
    """In-memory package cache shared by a machine and its nested machines."""

    getter: PackageGetter | None = None
    _packages: dict[str, PackageDescriptor] = field(default_factory=dict)
    _loading: list[str] = field(default_factory=list)
    code_objects: list[CodeType] = field(default_factory=list)
    code_listeners: list[CodeListener] = field(default_factory=list)

    def set_package_getter(self, getter: PackageGetter | None) -> None:
        self.getter = getter

    def get_package(self, pkg_path: str) -> PackageDescriptor | None:
        """Return the cached descriptor for ``pkg_path``, resolving it if needed.

        Returns None when nothing can resolve the path. Raises ResolutionError
        when the path is already being resolved further up the stack.
        """
        cached = self._packages.get(pkg_path)
        if cached is not None:
            return cached
        if self.getter is None:
            return None
        if pkg_path in self._loading:
            cycle = " -> ".join(self._loading[self._loading.index(pkg_path):] + [pkg_path])
            raise ResolutionError(f"import cycle: {cycle}", name=pkg_path)

        self._loading.append(pkg_path)
        try:
            descriptor = self.getter(pkg_path, self)
        finally:
            self._loading.pop()

        if descriptor is not None:
            self._packages[pkg_path] = descriptor
        return descriptor

    def add_package(self, descriptor: PackageDescriptor) -> None:
        self._packages[descriptor.path] = descriptor

    def has_package(self, pkg_path: str) -> bool:
        return pkg_path in self._packages

    def register_code(self, code: CodeType) -> None:
        """Remember a code object compiled against this store for instrumentation."""
        self.code_objects.append(code)
        for listener in list(self.code_listeners):
            listener(code)


class DynamicStore:
    """A ``Store`` whose packages come from an ordered chain of resolvers.

    Resolvers are tried in the order given; the first one to return a
    descriptor wins, so a native shim placed first shadows an on-disk package
    with the same path.
    """

    def __init__(self, resolvers: Sequence[Resolver]) -> None:
        self.resolvers: tuple[Resolver, ...] = tuple(resolvers)
        self.store = Store()
        self.store.set_package_getter(self.get_package)

    def get_package(self, pkg_path: str, store: Store) -> PackageDescriptor | None:
        for resolver in self.resolvers:
            descriptor = resolver(pkg_path, store)
            if descriptor is not None:
                logger.debug(
                    f"[+] Resolved '{pkg_path}' via {getattr(resolver, '__name__', resolver)!s}."
                )
                return descriptor
        logger.debug(f"[-] No resolver could satisfy '{pkg_path}'.")
        return None
