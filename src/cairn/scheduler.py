"""Scheduler: the runtime engine that applies a resource graph."""

import contextvars
import heapq
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import TYPE_CHECKING, Any

import structlog
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_when_event_set,
    wait_exponential,
)

from cairn.errors import (
    CairnError,
    PermanentDriverError,
    ResolutionError,
    ResourceNotFound,
    TransientDriverError,
)
from cairn.expressions import ValueResolver
from cairn.operations import OperationKind, diff, exists
from cairn.results import CANCELLED, ApplyReport, NodeOutcome, NodeStatus
from cairn.settings import Settings, get_settings
from cairn.snapshot import to_snapshot
from cairn.store.base import ResourceState, StateStatus

if TYPE_CHECKING:
    from cairn.drivers.base import Driver
    from cairn.graph import ResourceGraph
    from cairn.registry import DriverRegistry
    from cairn.settings import ProviderConfig
    from cairn.store.base import StateStore

logger = structlog.get_logger()


class Scheduler:
    """Runtime engine for applying graphs.

    Runs each node once its dependencies are terminal, with at most
    `max_concurrency` driver operations in flight. A node whose dependency
    did not apply is skipped without being resolved. Every driver call is
    bracketed by a pending marker in the store and the commit of its result.
    """

    def __init__(
        self,
        registry: "DriverRegistry",
        store: "StateStore",
        settings: Settings | None = None,
        config: "ProviderConfig | None" = None,
    ) -> None:
        """Initialize Scheduler.

        Args:
            registry: DriverRegistry for looking up drivers by kind.
            store: StateStore holding resource state between runs.
            settings: Concurrency and retry settings. Defaults to get_settings().
            config: Provider context for driver calls. Defaults to the one
                derived from settings.
        """
        self.registry = registry
        self.store = store
        self.settings = settings or get_settings()
        self.config = config or self.settings.provider_config()
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Stop dispatching. In-flight operations finish and are committed."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def run(self, graph: "ResourceGraph") -> ApplyReport:
        """Apply every node of the graph.

        Returns:
            An ApplyReport with one outcome per node. Failures never raise;
            they are recorded on the failed node and its skipped dependents.
        """
        resolver = ValueResolver()
        outputs: dict[str, dict[str, Any]] = {}

        def work(name: str, outcome: NodeOutcome, environment: dict[str, Any]) -> None:
            self._apply_node(graph, resolver, name, outcome, environment)

        def prepare(name: str) -> tuple[Any, ...]:
            return (graph.environment(name, outputs),)

        def finished(name: str, outcome: NodeOutcome) -> None:
            if outcome.status == NodeStatus.APPLIED:
                outputs[name] = outcome.outputs

        return self._execute(
            graph.order,
            {name: set(graph.dependencies[name]) for name in graph.order},
            work,
            prepare=prepare,
            finished=finished,
        )

    def run_deletes(self, names: Iterable[str]) -> ApplyReport:
        """Delete the given stored resources, dependents before dependencies.

        Ordering uses the dependencies recorded in each state entry, with the
        edges reversed: a resource is deleted only after everything that
        depended on it is gone.
        """
        states = {}
        for name in sorted(names):
            state = self.store.get(name)
            if state is not None:
                states[name] = state

        blockers: dict[str, set[str]] = {name: set() for name in states}
        for name, state in states.items():
            for dep in state.dependencies:
                if dep in blockers:
                    blockers[dep].add(name)

        report = self._execute(list(states), blockers, self._delete_node)
        report.deleted = [
            name
            for name, outcome in report.outcomes.items()
            if outcome.status == NodeStatus.APPLIED
            and outcome.operation == OperationKind.DELETE
        ]
        return report

    def _execute(
        self,
        order: list[str],
        dependencies: dict[str, set[str]],
        work: Callable[..., None],
        prepare: Callable[[str], tuple[Any, ...]] | None = None,
        finished: Callable[[str, NodeOutcome], None] | None = None,
    ) -> ApplyReport:
        """Event-driven dispatch loop shared by apply and delete runs.

        Ready nodes are dispatched in `order` position, so ties between nodes
        that become ready together are broken the same way on every run.
        """
        start = time.monotonic()
        position = {name: i for i, name in enumerate(order)}
        outcomes = {name: NodeOutcome(name) for name in order}
        waiting = {name: set(deps) for name, deps in dependencies.items()}
        dependents: dict[str, list[str]] = {name: [] for name in order}
        for name, deps in dependencies.items():
            for dep in deps:
                dependents[dep].append(name)

        ready = [(position[name], name) for name in order if not waiting[name]]
        heapq.heapify(ready)
        in_flight: dict[Future[None], str] = {}

        def guarded(name: str, outcome: NodeOutcome, *args: Any) -> None:
            began = time.monotonic()
            try:
                work(name, outcome, *args)
            except Exception as e:
                # Store errors and other failures outside the driver call
                self._fail(outcome, e, began)

        def complete(name: str) -> None:
            if finished:
                finished(name, outcomes[name])
            for dependent in dependents[name]:
                waiting[dependent].discard(name)
                if not waiting[dependent]:
                    heapq.heappush(ready, (position[dependent], dependent))

        with ThreadPoolExecutor(
            max_workers=self.settings.max_concurrency, thread_name_prefix="cairn"
        ) as pool:
            while ready or in_flight:
                while ready and len(in_flight) < self.settings.max_concurrency:
                    _, name = heapq.heappop(ready)
                    outcome = outcomes[name]
                    reason = self._skip_reason(dependencies[name], outcomes)
                    if reason is not None:
                        self._skip(outcome, reason)
                        complete(name)
                        continue

                    args = prepare(name) if prepare else ()
                    ctx = contextvars.copy_context()
                    future = pool.submit(ctx.run, guarded, name, outcome, *args)
                    in_flight[future] = name

                if not in_flight:
                    continue
                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in sorted(done, key=lambda f: position[in_flight[f]]):
                    name = in_flight.pop(future)
                    future.result()
                    complete(name)

        for name, outcome in outcomes.items():
            if not outcome.status.terminal:
                # Only reachable when stored dependencies form a cycle
                outcome.status = NodeStatus.FAILED
                outcome.error = "Dependency cycle among stored resources"
                outcome.error_type = "CycleDetected"

        return ApplyReport(
            outcomes=outcomes,
            cancelled=self.cancelled,
            duration_seconds=time.monotonic() - start,
        )

    def _skip_reason(
        self, dependencies: set[str], outcomes: dict[str, NodeOutcome]
    ) -> str | None:
        for dep in sorted(dependencies):
            outcome = outcomes[dep]
            if outcome.status == NodeStatus.FAILED:
                return dep
            if outcome.status == NodeStatus.SKIPPED:
                return outcome.skip_reason
        if self.cancelled:
            return CANCELLED
        return None

    def _skip(self, outcome: NodeOutcome, reason: str) -> None:
        outcome.status = NodeStatus.SKIPPED
        outcome.skip_reason = reason
        logger.warning("resource_skipped", resource=outcome.name, reason=reason)

    def _apply_node(
        self,
        graph: "ResourceGraph",
        resolver: ValueResolver,
        name: str,
        outcome: NodeOutcome,
        environment: dict[str, Any],
    ) -> None:
        node = graph[name]
        start = time.monotonic()
        log = logger.bind(resource=name, kind=node.kind)

        outcome.status = NodeStatus.RESOLVING
        try:
            desired = to_snapshot(resolver.resolve_node(node, environment))
        except ResolutionError as e:
            self._fail(outcome, e, start)
            return
        except TypeError as e:
            self._fail(outcome, ResolutionError(str(e), resource=name), start)
            return

        driver = self.registry.get(node.kind)
        stored = self.store.get(name)
        operation = diff(name, desired, stored)
        outcome.operation = operation.kind

        if operation.kind == OperationKind.NOOP:
            assert stored is not None
            outcome.outputs = stored.outputs
            outcome.status = NodeStatus.APPLIED
            outcome.duration_seconds = time.monotonic() - start
            log.debug("resource_unchanged")
            return

        outcome.status = NodeStatus.APPLYING
        try:
            remote_id = driver.identify(desired)
        except Exception as e:
            self._fail(outcome, e, start)
            return
        self.store.update(
            name,
            lambda state: _mark_pending(state, name, node.kind, desired, remote_id),
        )

        previous = stored if exists(stored) else None
        try:
            result = self._call(driver, outcome, driver.apply, desired, previous, self.config)
            snapshot = to_snapshot(result.snapshot)
        except Exception as e:
            restored = stored.remote_id if stored else None
            self.store.update(name, lambda state: _mark_failed(state, e, restored))
            self._fail(outcome, e, start)
            return

        dependencies = sorted(graph.dependencies[name])
        self.store.update(
            name,
            lambda state: _mark_applied(
                state,
                result.remote_id or (state.remote_id if state else None),
                desired,
                snapshot,
                operation.digest,
                dependencies,
            ),
        )
        outcome.outputs = snapshot
        outcome.status = NodeStatus.APPLIED
        outcome.duration_seconds = time.monotonic() - start
        log.info(
            "resource_applied",
            operation=operation.kind.value,
            attempts=outcome.attempts,
            duration_seconds=round(outcome.duration_seconds, 3),
        )

    def _delete_node(self, name: str, outcome: NodeOutcome) -> None:
        start = time.monotonic()
        state = self.store.get(name)
        if state is None or not exists(state):
            self.store.delete(name)
            outcome.operation = OperationKind.NOOP
            outcome.status = NodeStatus.APPLIED
            return

        outcome.operation = OperationKind.DELETE
        outcome.status = NodeStatus.APPLYING
        try:
            driver = self.registry.get(state.kind)
        except KeyError as e:
            self._fail(outcome, e, start)
            return

        self.store.update(
            name,
            lambda current: _mark_pending(current, name, state.kind, None, state.remote_id),
        )
        try:
            self._call(driver, outcome, driver.delete, state.remote_id, state, self.config)
        except ResourceNotFound:
            logger.info("resource_already_gone", resource=name)
        except Exception as e:
            self.store.update(name, lambda current: _mark_failed(current, e, state.remote_id))
            self._fail(outcome, e, start)
            return

        self.store.delete(name)
        outcome.status = NodeStatus.APPLIED
        outcome.duration_seconds = time.monotonic() - start
        logger.info("resource_deleted", resource=name, kind=state.kind)

    def _call(
        self,
        driver: "Driver",
        outcome: NodeOutcome,
        fn: Callable[..., Any],
        *args: Any,
    ) -> Any:
        """Call a driver method, retrying transient failures with backoff.

        Drivers that are not idempotent get a single attempt. A transient
        failure that survives every attempt is escalated to a permanent one.
        """
        attempts = self.settings.max_attempts if driver.idempotent else 1
        retrying = Retrying(
            retry=retry_if_exception_type(TransientDriverError),
            stop=stop_after_attempt(attempts) | stop_when_event_set(self._cancel),
            wait=wait_exponential(
                multiplier=self.settings.backoff_multiplier,
                min=self.settings.backoff_min,
                max=self.settings.backoff_max,
            ),
            sleep=self._cancel.wait,
            before_sleep=_log_retry(outcome.name),
            reraise=True,
        )

        def attempt() -> Any:
            outcome.attempts += 1
            return fn(*args)

        try:
            return retrying(attempt)
        except TransientDriverError as e:
            raise PermanentDriverError(
                f"Gave up after {outcome.attempts} attempt(s): {e}"
            ) from e

    def _fail(self, outcome: NodeOutcome, error: Exception, start: float) -> None:
        outcome.status = NodeStatus.FAILED
        outcome.error = str(error)
        outcome.error_type = type(error).__name__
        outcome.duration_seconds = time.monotonic() - start
        if isinstance(error, CairnError):
            logger.error(
                "resource_failed",
                resource=outcome.name,
                error=outcome.error,
                error_type=outcome.error_type,
                attempts=outcome.attempts,
            )
        else:
            logger.error(
                "resource_failed_unexpectedly",
                resource=outcome.name,
                error=outcome.error,
                error_type=outcome.error_type,
                exc_info=error,
            )


def _log_retry(name: str) -> Callable[[Any], None]:
    def before_sleep(retry_state: Any) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "resource_retrying",
            resource=name,
            attempt=retry_state.attempt_number,
            wait_seconds=retry_state.next_action.sleep if retry_state.next_action else 0,
            error=str(error),
        )

    return before_sleep


def _mark_pending(
    state: ResourceState | None,
    name: str,
    kind: str,
    desired: dict[str, Any] | None,
    remote_id: str | None,
) -> ResourceState:
    state = state or ResourceState(name=name, kind=kind)
    state.kind = kind
    state.status = StateStatus.PENDING
    state.pending_attributes = desired
    if state.remote_id is None:
        state.remote_id = remote_id
    return state


def _mark_applied(
    state: ResourceState | None,
    remote_id: str | None,
    desired: dict[str, Any],
    outputs: dict[str, Any],
    digest: str | None,
    dependencies: list[str],
) -> ResourceState:
    assert state is not None
    state.status = StateStatus.APPLIED
    state.remote_id = remote_id
    state.attributes = desired
    state.outputs = outputs
    state.digest = digest
    state.dependencies = dependencies
    state.pending_attributes = None
    state.error = None
    return state


def _mark_failed(
    state: ResourceState | None, error: Exception, remote_id: str | None
) -> ResourceState:
    assert state is not None
    state.status = StateStatus.FAILED
    state.remote_id = remote_id
    state.pending_attributes = None
    state.error = str(error)
    return state
