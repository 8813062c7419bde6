"""snipcov: run code snippets with opcode coverage, in or out of process."""

__version__ = "0.1.0"
