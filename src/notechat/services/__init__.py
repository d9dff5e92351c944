"""Service layer helpers (persistence, settings, message API)."""

from .persistence import JsonFileStore, KeyValueStore, MemoryStore

__all__ = ["JsonFileStore", "KeyValueStore", "MemoryStore"]
