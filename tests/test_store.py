#!/usr/bin/env python3
"""
Unit tests for snipcov/store.py: the store cache and the resolver chain.
"""

import tempfile
import unittest
from pathlib import Path
from types import ModuleType
from unittest.mock import MagicMock

from snipcov.loader import load_packages, memory_resolver, native_packages
from snipcov.repl import root_dir
from snipcov.store import (
    DEV_CHAIN_ID,
    DynamicStore,
    ExecutionContext,
    MemFile,
    MemPackage,
    PackageDescriptor,
    PackageNode,
    ResolutionError,
    Store,
    minimal_context,
)


def _descriptor(path: str) -> PackageDescriptor:
    return PackageDescriptor(node=PackageNode(name=path, path=path), value=ModuleType(path))


class TestStore(unittest.TestCase):
    """Test caching and cycle detection in Store."""

    def test_no_getter_resolves_nothing(self):
        self.assertIsNone(Store().get_package("fmt"))

    def test_descriptors_are_cached(self):
        getter = MagicMock(side_effect=lambda path, store: _descriptor(path))
        store = Store(getter=getter)

        first = store.get_package("a")
        second = store.get_package("a")

        self.assertIs(first, second)
        getter.assert_called_once_with("a", store)
        self.assertTrue(store.has_package("a"))

    def test_misses_are_not_cached(self):
        getter = MagicMock(return_value=None)
        store = Store(getter=getter)
        self.assertIsNone(store.get_package("missing"))
        self.assertIsNone(store.get_package("missing"))
        self.assertEqual(getter.call_count, 2)
        self.assertFalse(store.has_package("missing"))

    def test_cycle_raises_resolution_error(self):
        def getter(path, store):
            return store.get_package("b" if path == "a" else "a")

        store = Store(getter=getter)
        with self.assertRaises(ResolutionError) as ctx:
            store.get_package("a")
        self.assertIn("a -> b -> a", str(ctx.exception))

    def test_register_code_notifies_listeners(self):
        store = Store()
        seen = []
        store.code_listeners.append(seen.append)
        code = compile("x = 1", "<test>", "exec")
        store.register_code(code)
        self.assertEqual(store.code_objects, [code])
        self.assertEqual(seen, [code])


class TestMemPackage(unittest.TestCase):
    def test_is_empty(self):
        self.assertTrue(MemPackage(name="p", path="p").is_empty())
        self.assertTrue(MemPackage(name="p", path="p", files=(MemFile("a.py", "  \n"),)).is_empty())
        self.assertFalse(MemPackage(name="p", path="p", files=(MemFile("a.py", "x = 1"),)).is_empty())


class TestExecutionContext(unittest.TestCase):
    def test_minimal_context_uses_dev_chain(self):
        ctx = minimal_context("gno.land/r/test")
        self.assertEqual(ctx, ExecutionContext(pkg_path="gno.land/r/test", chain_id="dev-chain"))
        self.assertEqual(DEV_CHAIN_ID, "dev-chain")


class TestResolverChain(unittest.TestCase):
    """Test precedence and fallback of DynamicStore."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)

    def tearDown(self):
        self.temp_dir.cleanup()

    def _write_package(self, pkg_path: str, files: dict[str, str]) -> Path:
        directory = self.root / "stdlibs" / pkg_path
        directory.mkdir(parents=True, exist_ok=True)
        for name, body in files.items():
            (directory / name).write_text(body)
        return directory

    def test_native_wins_over_file(self):
        """A path both resolvers know resolves to the native package."""
        self._write_package("fmt", {"fmt.py": "SOURCE = 'file'\n"})
        ds = DynamicStore([native_packages, load_packages(self.root)])

        descriptor = ds.store.get_package("fmt")

        native = native_packages("fmt")
        self.assertEqual(descriptor.node.names, native.node.names)
        self.assertTrue(hasattr(descriptor.value, "println"))
        self.assertFalse(hasattr(descriptor.value, "SOURCE"))

    def test_file_used_when_native_unknown(self):
        self._write_package("mathx", {"mathx.py": "def double(x):\n    return 2 * x\n"})
        ds = DynamicStore([native_packages, load_packages(self.root)])

        descriptor = ds.store.get_package("mathx")

        self.assertIsNotNone(descriptor)
        self.assertEqual(descriptor.value.double(21), 42)
        self.assertEqual(descriptor.node.names, ("double",))

    def test_unknown_everywhere_is_absent(self):
        ds = DynamicStore([native_packages, load_packages(self.root)])
        self.assertIsNone(ds.store.get_package("no/such/pkg"))

    def test_directory_without_sources_is_absent(self):
        """Empty or non-source directories look exactly like unknown packages."""
        self._write_package("docs", {"README.txt": "not code"})
        (self.root / "stdlibs" / "hollow").mkdir(parents=True)
        self._write_package("blank", {"blank.py": "\n\n"})
        self._write_package("commented", {"commented.py": "# nothing here yet\n"})
        ds = DynamicStore([native_packages, load_packages(self.root)])

        for path in ("docs", "hollow", "blank", "commented"):
            self.assertIsNone(ds.store.get_package(path), path)

    def test_resolver_order_is_respected(self):
        first = MagicMock(return_value=None)
        second = MagicMock(side_effect=lambda path, store: _descriptor(path))
        third = MagicMock(side_effect=lambda path, store: _descriptor("never"))
        ds = DynamicStore([first, second, third])

        descriptor = ds.store.get_package("x")

        self.assertEqual(descriptor.path, "x")
        first.assert_called_once()
        second.assert_called_once()
        third.assert_not_called()

    def test_memory_resolver_in_front_shadows_native(self):
        ds = DynamicStore([memory_resolver({"fmt": {"fmt.py": "MARK = 1\n"}}), native_packages])
        self.assertEqual(ds.store.get_package("fmt").value.MARK, 1)

    def test_transitive_dependencies_share_the_store(self):
        """Resolving a package caches the packages it imports."""
        ds = DynamicStore([native_packages, load_packages(root_dir())])

        descriptor = ds.store.get_package("reverse")

        self.assertEqual(descriptor.value.reverse_runes("abc"), "cba")
        self.assertTrue(ds.store.has_package("unicode/utf8"))

    def test_import_cycle_between_packages(self):
        ds = DynamicStore(
            [memory_resolver({"a": {"a.py": "import b\n"}, "b": {"b.py": "import a\n"}})]
        )
        with self.assertRaises(ResolutionError):
            ds.store.get_package("a")


if __name__ == "__main__":
    unittest.main()
