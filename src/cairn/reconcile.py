"""Recovery of interrupted operations and refresh of drifted state."""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from cairn.errors import ResourceNotFound
from cairn.snapshot import to_snapshot
from cairn.store.base import ResourceState, StateStatus

if TYPE_CHECKING:
    from cairn.registry import DriverRegistry
    from cairn.settings import ProviderConfig
    from cairn.store.base import StateStore

logger = structlog.get_logger()


@dataclass
class ReconcileResult:
    """Names of the state entries changed by a reconcile or refresh pass."""

    recovered: list[str] = field(default_factory=list)
    reset: list[str] = field(default_factory=list)
    drifted: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)


def reconcile_pending(
    store: "StateStore", registry: "DriverRegistry", config: "ProviderConfig"
) -> ReconcileResult:
    """Resolve every pending marker left by an interrupted run.

    A pending entry whose remote object can be read is committed as applied
    with the pending attributes and the observed outputs. Its digest is
    cleared, so the next apply re-sends the attributes as an update rather
    than a create. An entry whose object is missing, or that has no remote id
    to read, is reset to absent.
    """
    result = ReconcileResult()
    for name in store.names():
        state = store.get(name)
        if state is None or not state.is_pending:
            continue

        driver = registry.get(state.kind) if registry.has(state.kind) else None
        if driver is None or not driver.remote or state.remote_id is None:
            logger.warning(
                "pending_reset",
                resource=name,
                reason="unknown kind" if driver is None else "no remote id",
            )
            store.update(name, _reset)
            result.reset.append(name)
            continue

        try:
            snapshot = to_snapshot(driver.read(state.remote_id, config))
        except ResourceNotFound:
            logger.warning("pending_reset", resource=name, reason="not found")
            store.update(name, _reset)
            result.reset.append(name)
            continue

        store.update(name, lambda s, snapshot=snapshot: _recover(s, snapshot))
        result.recovered.append(name)
        logger.info("pending_recovered", resource=name, remote_id=state.remote_id)
    return result


def refresh_state(
    store: "StateStore", registry: "DriverRegistry", config: "ProviderConfig"
) -> ReconcileResult:
    """Re-read every applied remote resource and record drift.

    Changed outputs are written back. A resource that no longer exists is
    reset to absent, so the next apply creates it again. Local kinds and
    kinds without a registered driver are left as they are.
    """
    result = ReconcileResult()
    for name in store.names():
        state = store.get(name)
        if state is None or state.status != StateStatus.APPLIED or state.remote_id is None:
            continue
        if not registry.has(state.kind) or not registry.get(state.kind).remote:
            continue

        try:
            snapshot = to_snapshot(registry.get(state.kind).read(state.remote_id, config))
        except ResourceNotFound:
            logger.warning("resource_vanished", resource=name, remote_id=state.remote_id)
            store.update(name, _reset)
            result.reset.append(name)
            continue

        if snapshot == state.outputs:
            result.unchanged.append(name)
            continue

        store.update(name, lambda s, snapshot=snapshot: _refreshed(s, snapshot))
        result.drifted.append(name)
        logger.info("resource_drifted", resource=name)
    return result


def _reset(state: ResourceState | None) -> ResourceState | None:
    if state is None:
        return None
    state.status = StateStatus.ABSENT
    state.remote_id = None
    state.outputs = {}
    state.digest = None
    state.pending_attributes = None
    return state


def _recover(state: ResourceState | None, snapshot: dict) -> ResourceState | None:
    if state is None:
        return None
    state.status = StateStatus.APPLIED
    if state.pending_attributes is not None:
        state.attributes = state.pending_attributes
    state.outputs = snapshot
    state.digest = None
    state.pending_attributes = None
    state.error = None
    return state


def _refreshed(state: ResourceState | None, snapshot: dict) -> ResourceState | None:
    if state is None:
        return None
    state.outputs = snapshot
    return state
