"""GraphBuilder for flattening, validating, and sorting resource graphs."""

import heapq
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import celpy

from cairn.declaration import MODULE_KIND, Declaration, Module, Resource
from cairn.errors import (
    ConfigurationError,
    CycleDetected,
    DuplicateResource,
    UnknownReference,
    UnknownResourceKind,
)
from cairn.references import collect_references

if TYPE_CHECKING:
    from cairn.registry import DriverRegistry

# Scope target for top-level `var`: bound variables rather than a graph node.
VARIABLES = "var"


@dataclass(frozen=True)
class ResourceNode:
    """A vertex of the flattened graph.

    Attributes:
        name: Global logical name. Module children are "<module>.<child>", a
            module's input node is "<module>.var" and its output node is
            "<module>".
        kind: Driver key.
        attributes: Attribute name -> expression (unresolved).
        depends_on: Explicit dependencies, as global names.
        scope: Identifier visible to the expressions -> global name.
        index: Declaration order, used to break ties between ready nodes.
    """

    name: str
    kind: str
    attributes: dict[str, Any]
    depends_on: tuple[str, ...]
    scope: dict[str, str]
    index: int


@dataclass(frozen=True)
class ResourceGraph:
    """An immutable, validated DAG of resource nodes."""

    nodes: dict[str, ResourceNode]
    dependencies: dict[str, frozenset[str]]
    dependents: dict[str, frozenset[str]]
    order: list[str]
    variables: dict[str, Any] = field(default_factory=dict)

    def __iter__(self) -> Iterator[str]:
        return iter(self.nodes)

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, name: object) -> bool:
        return name in self.nodes

    def __getitem__(self, name: str) -> ResourceNode:
        return self.nodes[name]

    def descendants(self, name: str) -> set[str]:
        """Every node that transitively depends on `name`."""
        seen: set[str] = set()
        stack = list(self.dependents[name])
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.dependents[current])
        return seen

    def environment(self, name: str, outputs: dict[str, dict[str, Any]]) -> dict[str, Any]:
        """Build the resolution environment for a node.

        Only identifiers whose targets are dependencies of the node (plus
        variables) are exposed, so a node never observes anything it does not
        depend on.

        Args:
            name: The node being resolved.
            outputs: Global name -> output snapshot of applied nodes.
        """
        node = self.nodes[name]
        deps = self.dependencies[name]
        env: dict[str, Any] = {}
        for local, target in node.scope.items():
            if target == VARIABLES:
                env[local] = self.variables
            elif target in deps and target in outputs:
                env[local] = outputs[target]
        return env


class GraphBuilder:
    """Responsible for turning declarations into a valid DAG.

    Handles:
    - Module flattening
    - Dependency inference from attribute references
    - Validation (duplicates, unknown references, unknown kinds)
    - Cycle detection
    - Topological sorting (ties broken by declaration order)
    """

    def __init__(self, registry: "DriverRegistry | None" = None) -> None:
        """Initialize GraphBuilder.

        Args:
            registry: Optional DriverRegistry for validating that kinds have a
                driver and that referenced outputs exist. If None, those checks
                are skipped.
        """
        self.registry = registry

    def build(
        self, declaration: Declaration, variables: dict[str, Any] | None = None
    ) -> ResourceGraph:
        """Flatten, validate and sort a declaration set.

        Pure: nothing is resolved and no driver is called.

        Raises:
            ConfigurationError: DuplicateResource, UnknownReference,
                UnknownResourceKind, MissingVariable or CycleDetected.
        """
        bound = declaration.bind_variables(variables)
        nodes = self.flatten(declaration)
        self.validate_kinds(nodes)
        dependencies = self.infer_dependencies(nodes, bound)

        cycle = self.find_cycle(nodes, dependencies)
        if cycle:
            raise CycleDetected(cycle)

        order = self.topological_sort(nodes, dependencies)
        dependents: dict[str, set[str]] = {name: set() for name in nodes}
        for name, deps in dependencies.items():
            for dep in deps:
                dependents[dep].add(name)

        return ResourceGraph(
            nodes=nodes,
            dependencies={n: frozenset(d) for n, d in dependencies.items()},
            dependents={n: frozenset(d) for n, d in dependents.items()},
            order=order,
            variables=bound,
        )

    def flatten(self, declaration: Declaration) -> dict[str, ResourceNode]:
        """Expand modules into plain nodes keyed by global name."""
        nodes: dict[str, ResourceNode] = {}
        self._flatten(declaration.resources, "", VARIABLES, (), nodes)
        return nodes

    def _scope(
        self, declarations: list[Resource | Module], prefix: str, var_target: str
    ) -> dict[str, str]:
        scope = {VARIABLES: var_target}
        for decl in declarations:
            if decl.name in scope:
                raise DuplicateResource(prefix + decl.name)
            scope[decl.name] = prefix + decl.name
        return scope

    def _flatten(
        self,
        declarations: list[Resource | Module],
        prefix: str,
        var_target: str,
        implicit_deps: tuple[str, ...],
        nodes: dict[str, ResourceNode],
    ) -> None:
        scope = self._scope(declarations, prefix, var_target)

        for decl in declarations:
            name = prefix + decl.name
            explicit = tuple(
                self._scoped_dep(dep, scope, name) for dep in decl.depends_on
            ) + implicit_deps

            if isinstance(decl, Resource):
                self._add(nodes, name, decl.kind, decl.attributes, explicit, scope)
                continue

            inputs_name = f"{name}.{VARIABLES}"
            self._add(nodes, inputs_name, MODULE_KIND, decl.inputs, explicit, scope)

            child_prefix = f"{name}."
            self._flatten(decl.resources, child_prefix, inputs_name, (inputs_name,), nodes)

            children = tuple(child_prefix + child.name for child in decl.resources)
            child_scope = self._scope(decl.resources, child_prefix, inputs_name)
            self._add(
                nodes,
                name,
                MODULE_KIND,
                decl.outputs,
                (inputs_name,) + children,
                child_scope,
            )

    def _scoped_dep(self, dep: str, scope: dict[str, str], name: str) -> str:
        if dep == VARIABLES or dep not in scope:
            raise UnknownReference(name, "depends_on", dep)
        return scope[dep]

    def _add(
        self,
        nodes: dict[str, ResourceNode],
        name: str,
        kind: str,
        attributes: dict[str, Any],
        depends_on: tuple[str, ...],
        scope: dict[str, str],
    ) -> None:
        if name in nodes:
            raise DuplicateResource(name)
        nodes[name] = ResourceNode(
            name=name,
            kind=kind,
            attributes=attributes,
            depends_on=depends_on,
            scope=scope,
            index=len(nodes),
        )

    def validate_kinds(self, nodes: dict[str, ResourceNode]) -> None:
        """Check every kind has a registered driver (if a registry was given)."""
        if not self.registry:
            return
        for name, node in nodes.items():
            if node.kind != MODULE_KIND and not self.registry.has(node.kind):
                raise UnknownResourceKind(name, node.kind)

    def infer_dependencies(
        self, nodes: dict[str, ResourceNode], variables: dict[str, Any] | None = None
    ) -> dict[str, set[str]]:
        """Compute each node's dependencies: explicit ones plus every referenced node.

        Raises:
            UnknownReference: If an expression reads an identifier that is not in
                scope, or an output the target does not expose.
            ConfigurationError: If an expression is not valid CEL.
        """
        variables = variables or {}
        dependencies: dict[str, set[str]] = {}
        for name, node in nodes.items():
            deps = set(node.depends_on)
            try:
                refs = collect_references(node.attributes)
            except celpy.CELParseError as e:
                raise ConfigurationError(
                    f"Resource '{name}' has an invalid expression: {e}"
                ) from e

            for reference in refs:
                target = node.scope.get(reference.name)
                if target is None:
                    raise UnknownReference(name, reference.attribute, reference.text)
                if target == VARIABLES:
                    if reference.field is not None and reference.field not in variables:
                        raise UnknownReference(
                            name, reference.attribute, f"var.{reference.field}"
                        )
                    continue
                if reference.field is not None and not self._exposes(
                    nodes[target], reference.field
                ):
                    raise UnknownReference(
                        name, reference.attribute, f"{reference.name}.{reference.field}"
                    )
                deps.add(target)
            dependencies[name] = deps
        return dependencies

    def _exposes(self, target: ResourceNode, output: str) -> bool:
        if target.kind == MODULE_KIND:
            return output in target.attributes
        if self.registry and self.registry.has(target.kind):
            declared = self.registry.get(target.kind).outputs
            if declared is not None:
                return output in declared
        return True

    def find_cycle(
        self, nodes: dict[str, ResourceNode], dependencies: dict[str, set[str]]
    ) -> list[str] | None:
        """Detect a cycle using DFS.

        Returns:
            The members of one cycle in dependency order, or None if the graph
            is acyclic.
        """
        WHITE = 0  # Unvisited
        GRAY = 1  # Currently in DFS path
        BLACK = 2  # Fully processed

        color: dict[str, int] = {name: WHITE for name in nodes}
        path: list[str] = []

        def ordered(deps: set[str]) -> list[str]:
            return sorted(deps, key=lambda d: nodes[d].index)

        def dfs(name: str) -> list[str] | None:
            color[name] = GRAY
            path.append(name)
            for dep in ordered(dependencies[name]):
                if color[dep] == GRAY:
                    # Back edge: the cycle is the path suffix starting at dep
                    return path[path.index(dep) :]
                if color[dep] == WHITE:
                    found = dfs(dep)
                    if found:
                        return found
            path.pop()
            color[name] = BLACK
            return None

        for name in nodes:
            if color[name] == WHITE:
                found = dfs(name)
                if found:
                    return found
        return None

    def topological_sort(
        self, nodes: dict[str, ResourceNode], dependencies: dict[str, set[str]]
    ) -> list[str]:
        """Topologically sort using Kahn's algorithm.

        Among nodes that are ready at the same time, the one declared first
        comes first, so the order is stable across runs.

        Raises:
            CycleDetected: If the graph contains cycles.
        """
        dependents: dict[str, list[str]] = {name: [] for name in nodes}
        in_degree: dict[str, int] = {}
        for name, deps in dependencies.items():
            in_degree[name] = len(deps)
            for dep in deps:
                dependents[dep].append(name)

        ready = [(node.index, name) for name, node in nodes.items() if in_degree[name] == 0]
        heapq.heapify(ready)
        result: list[str] = []

        while ready:
            _, name = heapq.heappop(ready)
            result.append(name)
            for dependent in dependents[name]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(ready, (nodes[dependent].index, dependent))

        if len(result) != len(nodes):
            cycle = self.find_cycle(nodes, dependencies)
            raise CycleDetected(cycle or sorted(set(nodes) - set(result)))

        return result
