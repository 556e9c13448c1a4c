"""Base class for StateStore implementations."""

import copy
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class StateStatus(str, Enum):
    """Persisted status of a managed resource."""

    ABSENT = "absent"
    PENDING = "pending"
    APPLIED = "applied"
    FAILED = "failed"


@dataclass
class ResourceState:
    """Everything remembered about one resource between runs.

    Attributes:
        name: Global logical name.
        kind: Driver key, needed to delete or re-read the resource after its
            declaration is gone.
        status: Persisted status.
        remote_id: Provider-assigned identifier, if any.
        attributes: The desired attributes last applied successfully.
        outputs: The driver snapshot returned by the last successful apply.
        digest: Hash of `attributes`, compared to decide no-ops.
        dependencies: Global names this resource depended on when applied.
        pending_attributes: Desired attributes of an in-flight operation. Set
            before the remote call and cleared by the commit that follows it.
        error: Message of the last failure.
        updated_at: ISO-8601 timestamp of the last write.
    """

    name: str
    kind: str
    status: StateStatus = StateStatus.ABSENT
    remote_id: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    digest: str | None = None
    dependencies: list[str] = field(default_factory=list)
    pending_attributes: dict[str, Any] | None = None
    error: str | None = None
    updated_at: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == StateStatus.PENDING

    def touch(self) -> "ResourceState":
        self.updated_at = datetime.now(timezone.utc).isoformat()
        return self

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResourceState":
        values = dict(data)
        values["status"] = StateStatus(values.get("status", StateStatus.ABSENT.value))
        return cls(**values)


@dataclass
class StoreStats:
    """Access statistics tracking reads, writes and deletes."""

    gets: int = 0
    puts: int = 0
    deletes: int = 0


class StateStore(ABC):
    """Abstract base class for resource state storage.

    Maps logical resource names to their ResourceState. Every public operation
    holds a per-name lock, so reads and writes of one name are linearizable and
    `update` is an atomic read-modify-write. Distinct names never contend.
    Callers always receive copies; mutating a returned state has no effect
    until it is written back.
    """

    def __init__(self) -> None:
        """Initialize the store with access statistics."""
        self.stats = StoreStats()
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._stats_lock = threading.Lock()

    def reset_stats(self) -> None:
        """Reset access statistics to zero."""
        with self._stats_lock:
            self.stats = StoreStats()

    def _count(self, counter: str) -> None:
        # Per-name locks do not serialize updates of different names.
        with self._stats_lock:
            setattr(self.stats, counter, getattr(self.stats, counter) + 1)

    def _lock(self, name: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = self._locks[name] = threading.Lock()
            return lock

    def get(self, name: str) -> ResourceState | None:
        """Return the state of a resource, or None if it was never stored."""
        with self._lock(name):
            self._count("gets")
            state = self._read(name)
            return copy.deepcopy(state) if state is not None else None

    def put(self, state: ResourceState) -> None:
        """Store the state of a resource, replacing any previous state."""
        with self._lock(state.name):
            self._count("puts")
            self._write(copy.deepcopy(state).touch())

    def update(
        self,
        name: str,
        mutate: Callable[[ResourceState | None], ResourceState | None],
    ) -> ResourceState | None:
        """Atomically read, transform and write the state of one resource.

        Args:
            name: The resource name.
            mutate: Receives a copy of the current state (or None) and returns
                the new state, or None to remove the entry.

        Returns:
            The state that was written, or None if the entry was removed.
        """
        with self._lock(name):
            current = self._read(name)
            new = mutate(copy.deepcopy(current) if current is not None else None)
            if new is None:
                if current is not None:
                    self._count("deletes")
                    self._remove(name)
                return None
            if new.name != name:
                raise ValueError(f"update of '{name}' returned state for '{new.name}'")
            self._count("puts")
            new.touch()
            self._write(copy.deepcopy(new))
            return new

    def delete(self, name: str) -> None:
        """Remove the state of a resource (no-op if absent)."""
        with self._lock(name):
            if self._read(name) is not None:
                self._count("deletes")
                self._remove(name)

    def all(self) -> dict[str, ResourceState]:
        """Return a snapshot of every stored state, keyed by name."""
        result = {}
        for name in self.names():
            state = self.get(name)
            if state is not None:
                result[name] = state
        return result

    @abstractmethod
    def names(self) -> list[str]:
        """Return the names of all stored resources, sorted."""
        ...

    @abstractmethod
    def _read(self, name: str) -> ResourceState | None:
        """Read a state without locking. Called with the name's lock held."""
        ...

    @abstractmethod
    def _write(self, state: ResourceState) -> None:
        """Write a state without locking. Called with the name's lock held."""
        ...

    @abstractmethod
    def _remove(self, name: str) -> None:
        """Remove a state without locking. Called with the name's lock held."""
        ...
