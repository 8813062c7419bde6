#!/usr/bin/env python3
"""
Unit tests for snipcov/loader.py
"""

import io
import json
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from snipcov.loader import (
    NATIVE_PACKAGES,
    compile_package,
    default_resolvers,
    load_packages,
    memory_resolver,
    native_packages,
    package_dir,
    read_mem_package_from_list,
)
from snipcov.machine import Machine, ParseError
from snipcov.store import DynamicStore, MemFile, MemPackage, Store


class TestNativePackages(unittest.TestCase):
    """Test the hardcoded native registry."""

    def test_registry_keys(self):
        self.assertEqual(set(NATIVE_PACKAGES), {"os", "fmt", "encoding/json"})

    def test_unknown_path_is_none(self):
        self.assertIsNone(native_packages("strings"))
        self.assertIsNone(native_packages("encoding"))

    def test_os_exposes_standard_streams(self):
        descriptor = native_packages("os")
        self.assertEqual(descriptor.node.names, ("stderr", "stdin", "stdout"))
        self.assertIs(descriptor.value.stdout, sys.stdout)

    def test_fmt_println_writes_to_stdout(self):
        println = native_packages("fmt").value.println
        with patch("sys.stdout", new_callable=io.StringIO) as mock_stdout:
            written = println("a", 1, None)
        self.assertEqual(mock_stdout.getvalue(), "a 1 None\n")
        self.assertEqual(written, len("a 1 None\n"))

    def test_json_marshal_and_unmarshal(self):
        package = native_packages("encoding/json")
        self.assertEqual(package.node.name, "json")
        self.assertEqual(package.value.marshal({"a": [1, 2]}), b'{"a":[1,2]}')
        self.assertEqual(package.value.unmarshal(b'{"b": true}'), {"b": True})
        with self.assertRaises(json.JSONDecodeError):
            package.value.unmarshal("{not json")

    def test_each_lookup_builds_a_new_module(self):
        self.assertIsNot(native_packages("fmt").value, native_packages("fmt").value)


class TestFileResolver(unittest.TestCase):
    """Test on-disk package loading."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)

    def tearDown(self):
        self.temp_dir.cleanup()

    def _write(self, rel: str, body: str) -> Path:
        path = self.root / "stdlibs" / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(body)
        return path

    def test_package_dir_layout(self):
        self.assertEqual(
            package_dir(self.root, "encoding/xml"), self.root / "stdlibs" / "encoding" / "xml"
        )

    def test_package_dir_rejects_malformed_paths(self):
        for bad in ("../etc", "a//b", "a/./b", "", "a/"):
            self.assertIsNone(package_dir(self.root, bad), bad)

    def test_files_of_a_package_share_one_namespace(self):
        self._write("shapes/square.py", "def area(side):\n    return side * side\n")
        self._write("shapes/total.py", "def total(sides):\n    return sum(area(s) for s in sides)\n")
        self._write("shapes/notes.txt", "ignored")
        self._write("shapes/sub/inner.py", "raise RuntimeError('subdirectories are separate')\n")

        descriptor = load_packages(self.root)("shapes", Store())

        self.assertEqual(descriptor.value.total([1, 2, 3]), 14)
        self.assertEqual([f.name for f in descriptor.node.files], ["square.py", "total.py"])
        self.assertEqual(descriptor.node.path, "shapes")
        self.assertEqual(descriptor.node.name, "shapes")

    def test_nested_package_name_is_last_segment(self):
        self._write("encoding/hexa/hexa.py", "def encode(b):\n    return b.hex()\n")
        descriptor = load_packages(self.root)("encoding/hexa", Store())
        self.assertEqual(descriptor.node.name, "hexa")
        self.assertEqual(descriptor.value.encode(b"\x01"), "01")

    def test_missing_directory_is_none(self):
        self.assertIsNone(load_packages(self.root)("nothing", Store()))

    def test_parse_error_in_package_propagates(self):
        self._write("broken/broken.py", "def oops(:\n")
        with self.assertRaises(ParseError):
            load_packages(self.root)("broken", Store())

    def test_read_mem_package_from_list(self):
        path = self._write("p/a.py", "x = 1\n")
        mem = read_mem_package_from_list([path], "deep/p")
        self.assertEqual(mem, MemPackage(name="p", path="deep/p", files=(MemFile("a.py", "x = 1\n"),)))

    def test_default_resolvers_order(self):
        resolvers = default_resolvers(self.root)
        self.assertIs(resolvers[0], native_packages)
        self.assertEqual(len(resolvers), 2)


class TestCompilePackage(unittest.TestCase):
    """Test the nested-machine compilation step."""

    def test_empty_package_is_none(self):
        self.assertIsNone(compile_package(MemPackage(name="e", path="e"), Store()))

    def test_package_without_statements_is_none(self):
        """Comments and blank lines alone do not make a package."""
        mem = MemPackage(
            name="c",
            path="c",
            files=(MemFile("a.py", "# only a comment\n"), MemFile("b.py", "\n# another\n\n")),
        )
        self.assertIsNone(compile_package(mem, Store()))
        resolver = memory_resolver({"c": {"c.py": "# only a comment\n"}})
        self.assertIsNone(DynamicStore([resolver]).store.get_package("c"))

    def test_nested_machine_is_released(self):
        mem = MemPackage(name="k", path="k", files=(MemFile("k.py", "VALUE = 3\n"),))
        with patch.object(Machine, "release", autospec=True, side_effect=Machine.release) as release:
            descriptor = compile_package(mem, Store())
        release.assert_called_once()
        self.assertEqual(descriptor.value.VALUE, 3)

    def test_compiled_code_is_registered_in_store(self):
        store = Store()
        mem = MemPackage(name="k", path="k", files=(MemFile("k.py", "def f():\n    return 1\n"),))
        compile_package(mem, store)
        self.assertEqual([c.co_filename for c in store.code_objects], ["k/k.py"])

    def test_compile_does_not_add_to_store_itself(self):
        """Caching is the store's job when resolving; compilation alone does not cache."""
        store = Store()
        mem = MemPackage(name="k", path="k", files=(MemFile("k.py", "A = 1\n"),))
        compile_package(mem, store)
        self.assertFalse(store.has_package("k"))

    def test_memory_resolver(self):
        resolver = memory_resolver({"greet": {"greet.py": "def hello(n):\n    return 'hi ' + n\n"}})
        self.assertIsNone(resolver("other", Store()))
        self.assertEqual(resolver("greet", Store()).value.hello("bob"), "hi bob")


if __name__ == "__main__":
    unittest.main()
