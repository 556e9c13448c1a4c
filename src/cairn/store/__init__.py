"""Resource state storage backends."""

from cairn.store.base import ResourceState, StateStatus, StateStore, StoreStats
from cairn.store.disk import DiskStore
from cairn.store.memory import MemoryStore

__all__ = [
    "DiskStore",
    "MemoryStore",
    "ResourceState",
    "StateStatus",
    "StateStore",
    "StoreStats",
]
