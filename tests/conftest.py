"""Pytest configuration and fixtures."""

import logging
import threading
from typing import Any

import pytest
import structlog

from cairn.drivers.base import ApplyResult, Driver
from cairn.errors import PermanentDriverError, ResourceNotFound, TransientDriverError
from cairn.registry import DriverRegistry
from cairn.settings import Settings
from cairn.store.memory import MemoryStore


def pytest_configure(config):
    """Keep test output readable: console rendering, warnings and above."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.WARNING),
        cache_logger_on_first_use=False,
    )


class FakeProvider:
    """A shared in-memory "cloud": remote objects plus a journal of calls."""

    def __init__(self) -> None:
        self.objects: dict[str, dict[str, Any]] = {}
        self.journal: list[tuple[str, str, dict[str, Any]]] = []
        self.lock = threading.Lock()
        self._ids = 0

    def next_id(self, kind: str) -> str:
        with self.lock:
            self._ids += 1
            return f"{kind}-{self._ids}"

    def record(self, op: str, kind: str, payload: dict[str, Any]) -> None:
        with self.lock:
            self.journal.append((op, kind, dict(payload)))

    def calls(self, op: str | None = None, kind: str | None = None) -> list[dict[str, Any]]:
        return [
            payload
            for call_op, call_kind, payload in self.journal
            if (op is None or call_op == op) and (kind is None or call_kind == kind)
        ]


class RecordingDriver(Driver):
    """Driver backed by a FakeProvider that records every call.

    Args:
        kind: Resource kind.
        provider: Shared fake provider.
        outputs: Declared output fields (None = open-ended).
        produce: desired -> extra outputs added to the snapshot.
        fail_when: desired -> True to raise PermanentDriverError.
        transient_failures: Number of TransientDriverErrors raised before the
            first success.
        natural_key: Attribute whose value is the remote id (enables identify).
    """

    def __init__(
        self,
        kind,
        provider,
        outputs=None,
        produce=None,
        fail_when=None,
        transient_failures=0,
        natural_key=None,
        idempotent=True,
    ):
        self.kind = kind
        self.provider = provider
        self.outputs = frozenset(outputs) if outputs is not None else None
        self.produce = produce or (lambda desired: {})
        self.fail_when = fail_when or (lambda desired: False)
        self.transient_failures = transient_failures
        self.natural_key = natural_key
        self.idempotent = idempotent
        self.attempts = 0

    def identify(self, desired):
        if self.natural_key is None:
            return None
        return f"{self.kind}/{desired[self.natural_key]}"

    def apply(self, desired, previous, config):
        self.attempts += 1
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise TransientDriverError(f"{self.kind}: throttled")
        if self.fail_when(desired):
            self.provider.record("fail", self.kind, desired)
            raise PermanentDriverError(f"{self.kind}: rejected")

        if previous is not None and previous.remote_id is not None:
            remote_id = previous.remote_id
            self.provider.record("update", self.kind, desired)
        else:
            remote_id = self.identify(desired) or self.provider.next_id(self.kind)
            self.provider.record("create", self.kind, desired)

        snapshot = {"id": remote_id, **desired, **self.produce(desired)}
        with self.provider.lock:
            self.provider.objects[remote_id] = snapshot
        return ApplyResult(snapshot=snapshot, remote_id=remote_id)

    def read(self, remote_id, config):
        self.provider.record("read", self.kind, {"id": remote_id})
        with self.provider.lock:
            if remote_id not in self.provider.objects:
                raise ResourceNotFound(remote_id)
            return dict(self.provider.objects[remote_id])

    def delete(self, remote_id, previous, config):
        self.provider.record("delete", self.kind, {"id": remote_id})
        with self.provider.lock:
            self.provider.objects.pop(remote_id, None)


@pytest.fixture
def registry():
    """Create a fresh DriverRegistry instance."""
    return DriverRegistry()


@pytest.fixture
def store():
    """Create an empty MemoryStore."""
    return MemoryStore()


@pytest.fixture
def settings(tmp_path):
    """Settings with no retry backoff and a temporary state directory."""
    return Settings(
        max_concurrency=4,
        max_attempts=3,
        backoff_multiplier=0,
        backoff_min=0,
        backoff_max=0,
        state_dir=tmp_path / "state",
        region="eu-west-1",
    )


@pytest.fixture
def provider():
    """Create an empty FakeProvider."""
    return FakeProvider()


@pytest.fixture
def make_driver(registry, provider):
    """Factory registering a RecordingDriver for a kind and returning it."""

    def factory(kind, **kwargs):
        driver = RecordingDriver(kind, provider, **kwargs)
        registry.register(driver)
        return driver

    return factory


@pytest.fixture
def driver_class():
    """The RecordingDriver class, for tests that subclass it."""
    return RecordingDriver
