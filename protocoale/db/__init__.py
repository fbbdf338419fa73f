"""
Stores for Protocoale.

    from protocoale.db import PostgresStore, MemoryStore

PostgresStore is the durable default; MemoryStore backs tests and dry runs.
"""

from .base import ProtocolStore, StoreTransaction
from .memory import MemoryStore
from .postgres import PostgresStore, get_pg_pool, close_pool

__all__ = [
    "ProtocolStore",
    "StoreTransaction",
    "MemoryStore",
    "PostgresStore",
    "get_pg_pool",
    "close_pool",
]
