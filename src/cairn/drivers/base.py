"""Driver interface: the uniform seam between the scheduler and resource kinds."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from cairn.errors import ResourceNotFound

if TYPE_CHECKING:
    from cairn.settings import ProviderConfig
    from cairn.store.base import ResourceState


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of a successful apply.

    Attributes:
        snapshot: The outputs of the resource as the provider reports them.
            Exposed to dependents as `<resource>.<output>`.
        remote_id: Provider-assigned identifier, if the kind has one.
    """

    snapshot: dict[str, Any] = field(default_factory=dict)
    remote_id: str | None = None


class Driver(ABC):
    """Create/read/update/delete semantics for one resource kind.

    Drivers signal failures by raising TransientDriverError (retried with
    backoff) or PermanentDriverError (fails the resource immediately).

    Class attributes:
        kind: The resource kind this driver handles.
        outputs: The output fields the kind exposes, or None if open-ended.
            Used to reject references to outputs that cannot exist.
        idempotent: Whether a failed apply may be retried safely.
        remote: Whether the kind has remote state that `read` can query.
    """

    kind: str = ""
    outputs: frozenset[str] | None = None
    idempotent: bool = True
    remote: bool = True

    @abstractmethod
    def apply(
        self,
        desired: dict[str, Any],
        previous: "ResourceState | None",
        config: "ProviderConfig",
    ) -> ApplyResult:
        """Create the resource, or update it when `previous` holds a remote id.

        Args:
            desired: Resolved attributes.
            previous: Last known state, or None on first creation.
            config: Immutable provider context.
        """
        ...

    @abstractmethod
    def read(self, remote_id: str, config: "ProviderConfig") -> dict[str, Any]:
        """Return the current snapshot of a remote object.

        Raises:
            ResourceNotFound: If the object does not exist.
        """
        ...

    def delete(
        self, remote_id: str | None, previous: "ResourceState", config: "ProviderConfig"
    ) -> None:
        """Delete the remote object. Deleting a missing object is not an error."""

    def identify(self, desired: dict[str, Any]) -> str | None:
        """Return the remote id an apply of `desired` would produce, if knowable.

        Kinds with a natural key (e.g. a cluster name) override this, which
        lets an interrupted create be recovered by `read` instead of repeated.
        """
        return None


class LocalDriver(Driver):
    """Base for kinds with no remote state (waits, commands, passthroughs)."""

    remote = False

    def read(self, remote_id: str, config: "ProviderConfig") -> dict[str, Any]:
        raise ResourceNotFound(remote_id, f"{self.kind} resources have no remote state")
