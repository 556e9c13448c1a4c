"""Attribute markers for references and expressions.

This module provides two marker types for resource attributes:
- ref(path): References an output of another resource directly
- cel(expr): Evaluates a CEL expression against the outputs of other resources

Plain strings may also carry ${...} interpolations, which are CEL expressions
embedded in a template.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class ref:
    """Reference to an output of another resource.

    The path is "<resource>.<output>[.<field>...]". Numeric segments index
    into lists. A bare "<resource>" resolves to the whole output map.

    Example:
        Resource(
            name="clu",
            kind="cluster",
            attributes={"subnet_ids": ref("net.subnet_ids")},
        )
    """

    path: str

    def __post_init__(self) -> None:
        if not self.path or any(not part for part in self.path.split(".")):
            raise ValueError(f"Invalid reference path: {self.path!r}")

    @property
    def resource(self) -> str:
        """The logical name the reference points at."""
        return self.path.split(".", 1)[0]

    @property
    def segments(self) -> list[str]:
        """The output path below the resource (may be empty)."""
        return self.path.split(".")[1:]


@dataclass(frozen=True)
class cel:
    """CEL expression to evaluate against the outputs of other resources.

    Resources in scope are exposed as CEL maps of their outputs; declared
    variables are exposed as the `var` map.

    Example:
        Resource(
            name="kubeconfig",
            kind="command",
            attributes={"ca": cel("base64decode(clu.certificate_authority)")},
        )
    """

    expr: str
