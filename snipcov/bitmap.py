"""
Fixed-size coverage bitmap for the snipcov execution harness.

Each slot counts how many times one instrumentation site ran. Sites are
opcode numbers of the running interpreter, so the index space is far larger
than what any single run touches (AFL style).
"""

import dis
import sys
import threading
from typing import TextIO

COVERAGE_BITMAP_SIZE = 65536

# Opcodes worth a human-readable label when printing a bitmap. Names missing
# from the running interpreter's opcode table are skipped.
_LABELLED_OPCODES = (
    "CALL",
    "CALL_FUNCTION_EX",
    "CALL_KW",
    "RAISE_VARARGS",
    "RERAISE",
    "PUSH_EXC_INFO",
    "CHECK_EXC_MATCH",
    "POP_JUMP_IF_FALSE",
    "POP_JUMP_IF_TRUE",
    "POP_JUMP_IF_NONE",
    "POP_JUMP_IF_NOT_NONE",
    "JUMP_FORWARD",
    "JUMP_BACKWARD",
    "FOR_ITER",
    "GET_ITER",
    "MATCH_CLASS",
    "MATCH_MAPPING",
    "MATCH_SEQUENCE",
    "RETURN_VALUE",
    "RETURN_CONST",
    "YIELD_VALUE",
)

OPCODE_NAMES: dict[int, str] = {
    dis.opmap[name]: name for name in _LABELLED_OPCODES if name in dis.opmap
}

UNKNOWN_OP = "unknown op"


class CoverageBitmap:
    """Counter array indexed by instrumentation site.

    Marking is safe from several threads. Snapshots are not: ``dump()``
    reads slot by slot, so a dump taken while another thread marks may be
    inconsistent across slots.
    """

    def __init__(self, size: int = COVERAGE_BITMAP_SIZE) -> None:
        self.size = size
        self._slots = [0] * size
        self._lock = threading.Lock()

    def mark(self, index: int) -> None:
        """Increment the slot at ``index``; out-of-range indices are ignored."""
        if index < 0 or index >= self.size:
            return
        with self._lock:
            self._slots[index] += 1

    def dump(self) -> dict[int, int]:
        """Return ``{index: count}`` for every slot with a non-zero count."""
        result = {}
        for index in range(self.size):
            count = self._slots[index]
            if count > 0:
                result[index] = count
        return result

    def reset(self) -> None:
        with self._lock:
            for index in range(self.size):
                self._slots[index] = 0

    def hit_count(self) -> int:
        return len(self.dump())

    def __getitem__(self, index: int) -> int:
        if index < 0 or index >= self.size:
            return 0
        return self._slots[index]

    def print_bitmap(self, dump: dict[int, int] | None = None, file: TextIO | None = None) -> None:
        """Print a header followed by one rendered line per non-zero slot."""
        stream = file if file is not None else sys.stdout
        if dump is None:
            dump = self.dump()
        print("=== Coverage Bitmap ===", file=stream)
        for line in render(dump):
            print(f"  - {line}", file=stream)


def label_for(index: int) -> str:
    return OPCODE_NAMES.get(index, UNKNOWN_OP)


def render(dump: dict[int, int]) -> list[str]:
    """Format each (index, count) pair of a dump, ordered by index."""
    return [
        f"index={index} ({label_for(index)}), count={count}"
        for index, count in sorted(dump.items())
    ]
