"""Backend implementations."""

from notebook_transfer.backends.jsonfile import JsonFileStore, open_directory
from notebook_transfer.backends.memory import MemoryStore

__all__ = ["JsonFileStore", "MemoryStore", "open_directory"]
