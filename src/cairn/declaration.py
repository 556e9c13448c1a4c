"""Declarations: the resources, modules and variables a graph is built from."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from cairn.errors import ConfigurationError, MissingVariable
from cairn.references import CEL_TYPE_NAMES

_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Identifiers with a fixed meaning inside expressions.
RESERVED_NAMES = frozenset({"var", "true", "false", "null", "in"}) | CEL_TYPE_NAMES

# Kind of the passthrough nodes that carry module inputs and outputs.
MODULE_KIND = "module"

_MISSING = object()


def validate_name(name: str, what: str = "Resource") -> None:
    """Check that a declaration name can be used as an expression identifier."""
    if not isinstance(name, str) or not _NAME_RE.match(name):
        raise ValueError(
            f"{what} name {name!r} must start with a letter or underscore and "
            f"contain only letters, digits and underscores"
        )
    if name in RESERVED_NAMES:
        raise ValueError(f"{what} name {name!r} is reserved")


@dataclass(frozen=True)
class Resource:
    """A single managed object, handled by the driver registered for its kind.

    Attributes:
        name: Logical name, unique within its scope.
        kind: Driver key (e.g. "network", "cluster", "helm_release", "wait").
        attributes: Attribute name -> expression. Expressions may be literals,
            lists, maps, ref() and cel() markers, or ${...} templates.
        depends_on: Names of resources that must be applied first, in addition
            to the ones referenced by the attributes.
    """

    name: str
    kind: str
    attributes: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        validate_name(self.name)
        if not self.kind:
            raise ValueError(f"Resource '{self.name}': kind cannot be empty")
        if not isinstance(self.attributes, dict):
            raise ValueError(f"Resource '{self.name}': attributes must be a dictionary")
        if not isinstance(self.depends_on, list):
            raise ValueError(f"Resource '{self.name}': depends_on must be a list")


@dataclass(frozen=True)
class Module:
    """A named group of declarations with its own inputs and outputs.

    Inputs are evaluated in the enclosing scope and are visible inside the
    module as `var.<input>`. Outputs are evaluated inside the module and are
    visible outside as `<module>.<output>`.
    """

    name: str
    resources: list[Resource | Module]
    inputs: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        validate_name(self.name, what="Module")
        if not isinstance(self.resources, list):
            raise ValueError(f"Module '{self.name}': resources must be a list")
        if not isinstance(self.inputs, dict):
            raise ValueError(f"Module '{self.name}': inputs must be a dictionary")
        if not isinstance(self.outputs, dict):
            raise ValueError(f"Module '{self.name}': outputs must be a dictionary")
        if not isinstance(self.depends_on, list):
            raise ValueError(f"Module '{self.name}': depends_on must be a list")


@dataclass(frozen=True)
class Variable:
    """An input of the declaration set, with an optional default."""

    default: Any = _MISSING
    description: str = ""

    @property
    def required(self) -> bool:
        return self.default is _MISSING


@dataclass(frozen=True)
class Declaration:
    """A complete declaration set: top-level resources/modules plus variables."""

    resources: list[Resource | Module]
    variables: dict[str, Variable] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.resources, list):
            raise ValueError("resources must be a list")
        if not isinstance(self.variables, dict):
            raise ValueError("variables must be a dictionary")

    def bind_variables(self, values: dict[str, Any] | None = None) -> dict[str, Any]:
        """Merge caller-supplied values over variable defaults.

        Raises:
            ConfigurationError: If a value is given for an undeclared variable.
            MissingVariable: If a required variable has no value.
        """
        values = values or {}
        unknown = sorted(set(values) - set(self.variables))
        if unknown:
            raise ConfigurationError(f"Values given for undeclared variables: {unknown}")

        bound: dict[str, Any] = {}
        for name, variable in self.variables.items():
            if name in values:
                bound[name] = values[name]
            elif not variable.required:
                bound[name] = variable.default
            else:
                raise MissingVariable(name)
        return bound
