"""Result types for plan, apply and destroy runs."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from cairn.operations import OperationKind


class NodeStatus(str, Enum):
    """Per-cycle status of a graph node."""

    PENDING = "pending"
    RESOLVING = "resolving"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (NodeStatus.APPLIED, NodeStatus.FAILED, NodeStatus.SKIPPED)


# Skip reason for nodes never dispatched because the run was cancelled
CANCELLED = "cancelled"


@dataclass
class NodeOutcome:
    """What happened to one node during a run."""

    name: str
    status: NodeStatus = NodeStatus.PENDING
    operation: OperationKind | None = None
    outputs: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    error_type: str | None = None
    attempts: int = 0
    skip_reason: str | None = None
    duration_seconds: float = 0.0


@dataclass
class ApplyReport:
    """Result of an apply or delete run.

    Resources applied before a failure stay committed; the report lists what
    failed and what was skipped because of it.
    """

    outcomes: dict[str, NodeOutcome] = field(default_factory=dict)
    deleted: list[str] = field(default_factory=list)
    cancelled: bool = False
    duration_seconds: float = 0.0

    @property
    def applied(self) -> list[str]:
        return self._with(NodeStatus.APPLIED)

    @property
    def failed(self) -> dict[str, str]:
        """Failed resources mapped to their error message."""
        return {
            name: outcome.error or ""
            for name, outcome in self.outcomes.items()
            if outcome.status == NodeStatus.FAILED
        }

    @property
    def skipped(self) -> dict[str, str]:
        """Skipped resources mapped to the failed ancestor, or "cancelled"."""
        return {
            name: outcome.skip_reason or ""
            for name, outcome in self.outcomes.items()
            if outcome.status == NodeStatus.SKIPPED
        }

    @property
    def success(self) -> bool:
        """Whether every node was applied."""
        return all(o.status == NodeStatus.APPLIED for o in self.outcomes.values())

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def operations(self, kind: OperationKind) -> list[str]:
        """Names of the applied nodes that performed `kind`."""
        return [
            name
            for name, outcome in self.outcomes.items()
            if outcome.status == NodeStatus.APPLIED and outcome.operation == kind
        ]

    def outputs(self, name: str) -> dict[str, Any]:
        return self.outcomes[name].outputs

    def _with(self, status: NodeStatus) -> list[str]:
        return [name for name, outcome in self.outcomes.items() if outcome.status == status]

    def summary(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "applied": len(self.applied),
            "failed": sorted(self.failed),
            "skipped": sorted(self.skipped),
            "deleted": list(self.deleted),
            "cancelled": self.cancelled,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class PlanResult:
    """Result of planning (dry-run) a declaration set.

    `operations` maps each declared node, in topological order, to the
    operation an apply would perform; orphaned state entries map to DELETE.
    """

    operations: dict[str, OperationKind] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    def names(self, kind: OperationKind) -> list[str]:
        return [name for name, op in self.operations.items() if op == kind]

    @property
    def has_changes(self) -> bool:
        return any(op != OperationKind.NOOP for op in self.operations.values())

    @property
    def success(self) -> bool:
        """Whether plan succeeded without errors."""
        return len(self.errors) == 0

    def counts(self) -> dict[str, int]:
        counts = {kind.value: 0 for kind in OperationKind}
        for op in self.operations.values():
            counts[op.value] += 1
        return counts
