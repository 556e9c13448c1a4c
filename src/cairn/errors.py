"""Error taxonomy for the orchestrator.

Configuration errors are raised while building the graph, before anything is
executed. Resolution and driver errors are raised while a cycle runs and are
fatal only to the owning resource and its dependents.
"""

from typing import Any


class CairnError(Exception):
    """Base exception for cairn."""


class ConfigurationError(CairnError):
    """The declaration set cannot be turned into a valid graph."""


class CycleDetected(ConfigurationError):
    """The dependency graph contains a cycle."""

    def __init__(self, members: list[str]) -> None:
        self.members = list(members)
        path = " -> ".join(self.members + self.members[:1])
        super().__init__(f"Dependency cycle detected: {path}")


class UnknownReference(ConfigurationError):
    """An expression or depends_on entry names something that does not exist."""

    def __init__(self, resource: str, attribute: str, reference: str) -> None:
        self.resource = resource
        self.attribute = attribute
        self.reference = reference
        super().__init__(
            f"Resource '{resource}' attribute '{attribute}' references "
            f"unknown '{reference}'"
        )


class DuplicateResource(ConfigurationError):
    """Two declarations share the same logical name."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Resource '{name}' is declared more than once")


class UnknownResourceKind(ConfigurationError):
    """No driver is registered for a resource kind."""

    def __init__(self, resource: str, kind: str) -> None:
        self.resource = resource
        self.kind = kind
        super().__init__(
            f"Resource '{resource}' has kind '{kind}' with no registered driver"
        )


class MissingVariable(ConfigurationError):
    """A variable has neither a default nor a caller-supplied value."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Variable '{name}' has no default and no value was given")


class ResolutionError(CairnError):
    """An attribute expression could not be evaluated."""

    def __init__(
        self,
        reason: str,
        *,
        resource: str | None = None,
        attribute: str | None = None,
        expression: Any = None,
    ) -> None:
        self.reason = reason
        self.resource = resource
        self.attribute = attribute
        self.expression = expression
        super().__init__(self._format())

    def _format(self) -> str:
        where = []
        if self.resource is not None:
            where.append(f"resource '{self.resource}'")
        if self.attribute is not None:
            where.append(f"attribute '{self.attribute}'")
        prefix = ", ".join(where)
        expr = f" in expression {self.expression!r}" if self.expression is not None else ""
        if prefix:
            return f"Failed to resolve {prefix}{expr}: {self.reason}"
        return f"Failed to resolve{expr}: {self.reason}"

    def located(self, resource: str, attribute: str | None = None) -> "ResolutionError":
        """Return a copy of this error tagged with the owning resource."""
        return type(self)(
            self.reason,
            resource=resource,
            attribute=attribute if attribute is not None else self.attribute,
            expression=self.expression,
        )


class UnresolvedReference(ResolutionError):
    """A reference names a resource that is not in the environment.

    The scheduler only resolves a resource once all of its dependencies are
    applied, so this signals a broken ordering contract rather than a
    condition to retry.
    """


class DriverError(CairnError):
    """Base class for failures reported by resource drivers."""


class TransientDriverError(DriverError):
    """Retryable driver failure (timeout, throttling, connection reset)."""


class PermanentDriverError(DriverError):
    """Non-retryable driver failure (validation, permission, conflict)."""


class ResourceNotFound(DriverError):
    """The remote object does not exist."""

    def __init__(self, remote_id: str | None, message: str | None = None) -> None:
        self.remote_id = remote_id
        super().__init__(message or f"Remote object '{remote_id}' not found")
