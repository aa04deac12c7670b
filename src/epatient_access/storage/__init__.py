"""Storage backends for the access-control core."""

from .base import AccessStore
from .memory import MemoryStore
from .postgres import PostgresStore
from .retry import RetryPolicy

__all__ = [
    "AccessStore",
    "MemoryStore",
    "PostgresStore",
    "RetryPolicy",
]
