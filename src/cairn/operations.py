"""Operation diffing: which driver call, if any, a resource needs."""

from dataclasses import dataclass
from enum import Enum
from typing import Any

from cairn.hashing import hash_attributes
from cairn.store.base import ResourceState, StateStatus


class OperationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    NOOP = "noop"
    DELETE = "delete"
    # Plan only: desired attributes depend on outputs that do not exist yet
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Operation:
    """The operation chosen for one resource.

    Attributes:
        name: Global resource name.
        kind: What will be done.
        digest: Digest of the desired attributes (None for deletes).
    """

    name: str
    kind: OperationKind
    digest: str | None = None


def exists(state: ResourceState | None) -> bool:
    """Whether a stored state stands for something that may exist remotely."""
    if state is None or state.status == StateStatus.ABSENT:
        return False
    return state.status == StateStatus.APPLIED or state.remote_id is not None


def diff(name: str, desired: dict[str, Any] | None, stored: ResourceState | None) -> Operation:
    """Compare desired attributes with the stored state.

    Args:
        name: Global resource name.
        desired: Resolved attributes, or None if the resource is no longer
            declared.
        stored: The stored state, or None.

    Returns:
        DELETE for an undeclared resource that exists, NOOP when an applied
        resource's digest matches, UPDATE when something exists, else CREATE.
    """
    if desired is None:
        if exists(stored):
            return Operation(name, OperationKind.DELETE)
        return Operation(name, OperationKind.NOOP)

    digest = hash_attributes(desired)
    if stored is not None and stored.status == StateStatus.APPLIED and stored.digest == digest:
        return Operation(name, OperationKind.NOOP, digest)
    if exists(stored):
        return Operation(name, OperationKind.UPDATE, digest)
    return Operation(name, OperationKind.CREATE, digest)
