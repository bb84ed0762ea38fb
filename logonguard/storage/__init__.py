"""Storage modules for LogonGuard."""

from .kv import KeyValueStore, MemoryStore, SQLiteStore
from .policy import FilePolicySource, PolicySource, StaticPolicySource

__all__ = [
    "FilePolicySource",
    "KeyValueStore",
    "MemoryStore",
    "PolicySource",
    "SQLiteStore",
    "StaticPolicySource",
]
