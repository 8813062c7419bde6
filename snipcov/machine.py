"""
The interpreter instance used by the snipcov harness.

A ``Machine`` owns one package namespace. Source is parsed into ``FileNode``
objects, their top-level declarations are registered into the namespace with
``run_files``, and functions are invoked with ``run_func``. Imports made by
executing code are resolved through the machine's ``Store`` instead of
``sys.modules``.

While ``run_func`` executes, every code object compiled against the store is
instrumented through ``sys.monitoring`` INSTRUCTION events, and each executed
opcode is marked in the machine's ``CoverageBitmap``.
"""

from __future__ import annotations

import ast
import builtins
import collections.abc
import logging
import sys
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from types import CodeType, ModuleType
from typing import Any, TextIO

from snipcov.bitmap import CoverageBitmap
from snipcov.store import (
    ExecutionContext,
    MemPackage,
    PackageDescriptor,
    PackageNode,
    ResolutionError,
    Store,
)

logger = logging.getLogger(__name__)

DEFAULT_PKG_PATH = "main"

_TOOL_NAME = "snipcov"
_tool_lock = threading.Lock()


class ParseError(Exception):
    """Source text could not be parsed."""

    def __init__(self, filename: str, error: SyntaxError) -> None:
        self.filename = filename
        self.error = error
        location = f"{filename}:{error.lineno}" if error.lineno else filename
        super().__init__(f"ParseFile error in {location}: {error.msg}")


class EntryNotFoundError(LookupError):
    """The requested function is not defined in the machine's package."""


class MachineReleasedError(RuntimeError):
    """A released machine was asked to do more work."""


class InstrumentationError(RuntimeError):
    """Coverage instrumentation could not be set up for a run."""


@dataclass(frozen=True)
class FileNode:
    """One parsed source file."""

    name: str
    source: str
    tree: ast.Module

    @property
    def decls(self) -> tuple[ast.stmt, ...]:
        return tuple(self.tree.body)


def parse_file(name: str, source: str) -> FileNode:
    """Parse ``source`` into a FileNode, raising ParseError on bad syntax."""
    try:
        tree = ast.parse(source, filename=name)
    except SyntaxError as e:
        raise ParseError(name, e) from e
    return FileNode(name=name, source=source, tree=tree)


def walk_code_objects(
    code_obj: CodeType, visited: set | None = None
) -> collections.abc.Generator[CodeType, None, None]:
    """Recursively yield a code object and all its nested code objects."""
    if visited is None:
        visited = set()
    if code_obj in visited:
        return
    visited.add(code_obj)
    yield code_obj
    for const in code_obj.co_consts:
        if isinstance(const, CodeType):
            yield from walk_code_objects(const, visited)


def make_builtins(store: Store, output: TextIO, input_stream: TextIO | None) -> dict[str, Any]:
    """Build the builtins table seen by code running inside a machine.

    ``print`` writes to ``output`` unless a file is given, ``input`` reads
    from ``input_stream``, and ``__import__`` resolves through ``store``.
    The returned table holds no reference to the machine that built it.
    """
    namespaces: dict[str, ModuleType] = {}

    def _namespace(dotted: str) -> ModuleType:
        module = namespaces.get(dotted)
        if module is None:
            module = ModuleType(dotted)
            namespaces[dotted] = module
        return module

    def _require(pkg_path: str, name: str) -> PackageDescriptor:
        descriptor = store.get_package(pkg_path)
        if descriptor is None:
            raise ResolutionError(f"unknown import path '{pkg_path}'", name=name)
        return descriptor

    def _import(name, globals=None, locals=None, fromlist=(), level=0):
        if level != 0:
            raise ResolutionError(f"relative import of '{name}' is not supported", name=name)
        pkg_path = name.replace(".", "/")

        if fromlist:
            descriptor = store.get_package(pkg_path)
            if descriptor is not None:
                return descriptor.value
            # `from encoding import json` names sub-packages of a bare prefix.
            module = _namespace(name)
            for item in fromlist:
                if item == "*":
                    raise ResolutionError(f"unknown import path '{pkg_path}'", name=name)
                child = _require(f"{pkg_path}/{item}", f"{name}.{item}")
                setattr(module, item, child.value)
            return module

        descriptor = _require(pkg_path, name)
        if "." not in name:
            return descriptor.value
        # `import encoding.json` binds `encoding` with `json` reachable from it.
        parts = name.split(".")
        for i in range(1, len(parts)):
            parent = _namespace(".".join(parts[:i]))
            if i == len(parts) - 1:
                setattr(parent, parts[i], descriptor.value)
            else:
                setattr(parent, parts[i], _namespace(".".join(parts[: i + 1])))
        return _namespace(parts[0])

    def _print(*args, sep=" ", end="\n", file=None, flush=False):
        builtins.print(*args, sep=sep, end=end, file=output if file is None else file, flush=flush)

    def _input(prompt=""):
        if prompt:
            output.write(str(prompt))
        if input_stream is None:
            raise EOFError("machine has no input stream")
        line = input_stream.readline()
        if not line:
            raise EOFError("EOF when reading a line")
        return line.rstrip("\n")

    table = dict(vars(builtins))
    table["__import__"] = _import
    table["print"] = _print
    table["input"] = _input
    return table


@dataclass
class MachineOptions:
    pkg_path: str = DEFAULT_PKG_PATH
    output: TextIO | None = None
    input: TextIO | None = None
    store: Store | None = None
    context: ExecutionContext | None = None
    coverage: CoverageBitmap | None = None
    debug: bool = False


def _claim_tool_id() -> int:
    """Reserve a free sys.monitoring tool id, preferring the unnamed slots.

    Only six ids exist, so at most six machines can record coverage at once.
    Raises InstrumentationError when none is free.
    """
    with _tool_lock:
        for tool_id in (3, 4, 5, 2, 1, 0):
            if sys.monitoring.get_tool(tool_id) is not None:
                continue
            try:
                sys.monitoring.use_tool_id(tool_id, _TOOL_NAME)
            except ValueError:
                continue
            return tool_id
    raise InstrumentationError("no free sys.monitoring tool id for coverage instrumentation")


class Machine:
    """One interpreter instance bound to a store, an output sink and a bitmap."""

    def __init__(self, options: MachineOptions | None = None) -> None:
        options = options or MachineOptions()
        self.pkg_path = options.pkg_path
        self.output: TextIO = options.output if options.output is not None else sys.stdout
        self.input = options.input
        self.store = options.store if options.store is not None else Store()
        self.context = options.context
        self.coverage = options.coverage
        self.debug = options.debug

        self.package = ModuleType(self.pkg_path.rsplit("/", 1)[-1])
        self.package.__dict__["__builtins__"] = make_builtins(self.store, self.output, self.input)
        self.files: list[FileNode] = []
        self._opcodes: dict[CodeType, bytes] = {}
        self._released = False

    @property
    def globals(self) -> dict[str, Any]:
        return self.package.__dict__

    def __enter__(self) -> "Machine":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def _check_live(self) -> None:
        if self._released:
            raise MachineReleasedError(f"machine for '{self.pkg_path}' has been released")

    def _compile(self, file_node: FileNode, filename: str | None = None) -> CodeType:
        code = compile(file_node.tree, filename or file_node.name, "exec")
        self.store.register_code(code)
        return code

    def run_files(self, *files: FileNode) -> None:
        """Register the top-level declarations of each file into the package."""
        self._check_live()
        for file_node in files:
            if self.debug:
                logger.debug(f"[*] Registering {len(file_node.decls)} declarations from {file_node.name}")
            exec(self._compile(file_node), self.globals)
            self.files.append(file_node)

    def run_mem_package(self, mem_package: MemPackage, save: bool = True) -> PackageDescriptor:
        """Evaluate a package's files into a fresh module and describe the result.

        The module is independent of this machine's own package, so it stays
        usable after the machine is released.
        """
        self._check_live()
        module = ModuleType(mem_package.name)
        module.__dict__["__builtins__"] = make_builtins(self.store, self.output, self.input)
        module.__dict__["__package_path__"] = mem_package.path

        file_nodes = []
        for mem_file in mem_package.files:
            file_node = parse_file(mem_file.name, mem_file.body)
            code = self._compile(file_node, f"{mem_package.path}/{mem_file.name}")
            exec(code, module.__dict__)
            file_nodes.append(file_node)

        names = tuple(sorted(n for n in module.__dict__ if not n.startswith("_")))
        node = PackageNode(
            name=mem_package.name, path=mem_package.path, files=tuple(file_nodes), names=names
        )
        descriptor = PackageDescriptor(node=node, value=module)
        if save:
            self.store.add_package(descriptor)
        return descriptor

    def run_func(self, name: str, *args: Any) -> Any:
        """Call the package-level function ``name`` with coverage recording."""
        self._check_live()
        func = self.globals.get(name)
        if func is None or not callable(func):
            raise EntryNotFoundError(
                f"function '{name}' is not declared in package '{self.pkg_path}'"
            )
        with self._instrumented():
            return func(*args)

    def _on_instruction(self, code: CodeType, offset: int) -> None:
        opcodes = self._opcodes.get(code)
        if opcodes is None:
            opcodes = self._opcodes[code] = code.co_code
        self.coverage.mark(opcodes[offset])

    @contextmanager
    def _instrumented(self):
        if self.coverage is None:
            yield
            return

        monitoring = sys.monitoring
        tool_id = _claim_tool_id()
        instruction = monitoring.events.INSTRUCTION
        instrumented: list[CodeType] = []

        def _instrument(code: CodeType) -> None:
            for nested in walk_code_objects(code):
                monitoring.set_local_events(tool_id, nested, instruction)
                instrumented.append(nested)

        monitoring.register_callback(tool_id, instruction, self._on_instruction)
        try:
            for code in list(self.store.code_objects):
                _instrument(code)
            self.store.code_listeners.append(_instrument)
            yield
        finally:
            if _instrument in self.store.code_listeners:
                self.store.code_listeners.remove(_instrument)
            for code in instrumented:
                monitoring.set_local_events(tool_id, code, 0)
            monitoring.register_callback(tool_id, instruction, None)
            monitoring.free_tool_id(tool_id)

    def release(self) -> None:
        """Drop the package namespace and instrumentation caches; idempotent."""
        if self._released:
            return
        self._released = True
        self.globals.clear()
        self.files.clear()
        self._opcodes.clear()
        if self.debug:
            logger.debug(f"[*] Released machine for '{self.pkg_path}'.")

