"""Cairn: a dependency-ordered provisioning orchestrator."""

from importlib.metadata import PackageNotFoundError, version

from cairn.declaration import Declaration, Module, Resource, Variable
from cairn.drivers.base import ApplyResult, Driver, LocalDriver
from cairn.graph import GraphBuilder, ResourceGraph, ResourceNode
from cairn.orchestrator import Orchestrator
from cairn.params import cel, ref
from cairn.registry import DriverRegistry
from cairn.results import ApplyReport, NodeStatus, PlanResult
from cairn.scheduler import Scheduler
from cairn.serialization import (
    dump_declaration,
    dump_declaration_to_dict,
    load_declaration,
    load_declaration_from_dict,
)
from cairn.settings import ProviderConfig, Settings

try:
    __version__ = version("cairn-core")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

__all__ = [
    "ApplyReport",
    "ApplyResult",
    "Declaration",
    "Driver",
    "DriverRegistry",
    "GraphBuilder",
    "LocalDriver",
    "Module",
    "NodeStatus",
    "Orchestrator",
    "PlanResult",
    "ProviderConfig",
    "Resource",
    "ResourceGraph",
    "ResourceNode",
    "Scheduler",
    "Settings",
    "Variable",
    "cel",
    "dump_declaration",
    "dump_declaration_to_dict",
    "load_declaration",
    "load_declaration_from_dict",
    "ref",
    "__version__",
]
