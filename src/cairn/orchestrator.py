"""Orchestrator: plan, apply, refresh and destroy a declaration set."""

import uuid
from pathlib import Path
from typing import Any

import structlog

from cairn.declaration import MODULE_KIND, Declaration
from cairn.drivers.stdlib import register_builtins
from cairn.errors import ResolutionError, UnresolvedReference
from cairn.expressions import resolve_attributes
from cairn.graph import GraphBuilder, ResourceGraph
from cairn.logging import bind_cycle
from cairn.operations import OperationKind, diff, exists
from cairn.reconcile import ReconcileResult, reconcile_pending, refresh_state
from cairn.registry import DriverRegistry
from cairn.results import ApplyReport, PlanResult
from cairn.scheduler import Scheduler
from cairn.serialization import load_declaration
from cairn.settings import Settings, get_settings
from cairn.snapshot import to_snapshot
from cairn.store.base import StateStore
from cairn.store.disk import DiskStore

logger = structlog.get_logger()


class Orchestrator:
    """Entry point tying the graph builder, scheduler and state store together.

    The provider config is built once, when the orchestrator is created, and
    handed unchanged to every driver call of every run.
    """

    def __init__(
        self,
        declaration: Declaration,
        variables: dict[str, Any] | None = None,
        registry: DriverRegistry | None = None,
        store: StateStore | None = None,
        settings: Settings | None = None,
    ) -> None:
        """Initialize Orchestrator.

        Args:
            declaration: Resources, modules and variables to manage.
            variables: Caller-supplied variable values.
            registry: Drivers by kind. The built-in kinds (wait, command,
                module) are added when missing.
            store: State store. Defaults to a DiskStore under settings.state_dir.
            settings: Defaults to get_settings().
        """
        self.declaration = declaration
        self.variables = dict(variables or {})
        self.settings = settings or get_settings()
        self.registry = registry if registry is not None else DriverRegistry()
        register_builtins(self.registry, self.settings)
        self.store = store if store is not None else DiskStore(self.settings.state_dir)
        self.config = self.settings.provider_config()
        self._graph: ResourceGraph | None = None
        self._scheduler: Scheduler | None = None

    @classmethod
    def from_file(cls, path: str | Path, **kwargs: Any) -> "Orchestrator":
        """Create an orchestrator from a JSON declaration file."""
        return cls(load_declaration(Path(path).read_text()), **kwargs)

    def build(self) -> ResourceGraph:
        """Build (once) and return the validated graph.

        Raises:
            ConfigurationError: If the declaration set is invalid.
        """
        if self._graph is None:
            self._graph = GraphBuilder(self.registry).build(self.declaration, self.variables)
        return self._graph

    def plan(self) -> PlanResult:
        """Compute the operation each resource would undergo, without driver calls.

        A resource whose attributes read outputs that only an apply would
        produce is planned as UNKNOWN.
        """
        graph = self.build()
        result = PlanResult()
        known: dict[str, dict[str, Any]] = {}

        for name in graph.order:
            node = graph[name]
            stored = self.store.get(name)
            try:
                desired = to_snapshot(
                    resolve_attributes(
                        node.attributes, graph.environment(name, known), resource=name
                    )
                )
            except UnresolvedReference:
                result.operations[name] = OperationKind.UNKNOWN
                continue
            except (ResolutionError, TypeError) as e:
                result.operations[name] = OperationKind.UNKNOWN
                result.errors[name] = str(e)
                continue

            operation = diff(name, desired, stored).kind
            result.operations[name] = operation
            if node.kind == MODULE_KIND:
                known[name] = desired
            elif operation == OperationKind.NOOP and stored is not None:
                known[name] = stored.outputs

        for name in self._orphans(graph):
            result.operations[name] = OperationKind.DELETE

        logger.info("plan_computed", **result.counts())
        return result

    def apply(self) -> ApplyReport:
        """Converge remote state to the declarations.

        Builds the graph (configuration errors raise before anything runs),
        recovers pending markers from interrupted runs, optionally refreshes,
        applies the graph and finally deletes orphaned resources.
        """
        graph = self.build()
        bind_cycle(cycle_id=uuid.uuid4().hex[:12], operation="apply")
        logger.info("apply_started", resources=len(graph))

        reconcile_pending(self.store, self.registry, self.config)
        if self.settings.refresh_before_apply:
            refresh_state(self.store, self.registry, self.config)

        scheduler = self._scheduler = self._new_scheduler()
        report = scheduler.run(graph)

        undeclared = [name for name in self.store.names() if name not in graph]
        if undeclared and not scheduler.cancelled:
            deletes = scheduler.run_deletes(undeclared)
            report.outcomes.update(deletes.outcomes)
            report.deleted = deletes.deleted
            report.duration_seconds += deletes.duration_seconds
        report.cancelled = scheduler.cancelled

        logger.info("apply_finished", **report.summary())
        return report

    def refresh(self) -> ReconcileResult:
        """Re-read applied resources and record drifted outputs."""
        bind_cycle(cycle_id=uuid.uuid4().hex[:12], operation="refresh")
        return refresh_state(self.store, self.registry, self.config)

    def destroy(self) -> ApplyReport:
        """Delete every managed resource, dependents first."""
        bind_cycle(cycle_id=uuid.uuid4().hex[:12], operation="destroy")
        reconcile_pending(self.store, self.registry, self.config)

        scheduler = self._scheduler = self._new_scheduler()
        report = scheduler.run_deletes(self.store.names())
        logger.info("destroy_finished", **report.summary())
        return report

    def cancel(self) -> None:
        """Cancel the run in progress, if any."""
        if self._scheduler is not None:
            self._scheduler.cancel()

    def _new_scheduler(self) -> Scheduler:
        return Scheduler(self.registry, self.store, self.settings, self.config)

    def _orphans(self, graph: ResourceGraph) -> list[str]:
        """Stored resources that are no longer declared but may still exist."""
        orphans = []
        for name in self.store.names():
            if name in graph:
                continue
            state = self.store.get(name)
            if exists(state):
                orphans.append(name)
        return orphans
