"""Key-value backends for the workflow store."""

from .base import KeyValueBackend
from .inmemory import InMemoryBackend
from .sqlite import SQLiteBackend

__all__ = ["KeyValueBackend", "InMemoryBackend", "SQLiteBackend"]
