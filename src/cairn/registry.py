"""DriverRegistry for mapping resource kinds to drivers."""

import types
from importlib.metadata import entry_points
from typing import Any

import structlog

from cairn.drivers.base import Driver

logger = structlog.get_logger()

# Type alias for driver packages: dict mapping short kind names to drivers
DriverPackage = dict[str, Driver]

ENTRY_POINT_GROUP = "cairn.drivers"


class DriverRegistry:
    """Registry mapping resource kinds to Driver instances.

    Decouples the "kind" string in a declaration from the code that talks to
    the provider. Each orchestrator owns its registry; there is no process-wide
    instance.
    """

    def __init__(self) -> None:
        self._drivers: dict[str, Driver] = {}

    def register(self, driver: Driver, kind: str | None = None) -> None:
        """Register a driver.

        Args:
            driver: The driver instance.
            kind: The kind to register it under. Defaults to `driver.kind`.

        Raises:
            ValueError: If the kind is empty or already registered.
            TypeError: If driver is not a Driver.
        """
        if not isinstance(driver, Driver):
            raise TypeError(f"Expected a Driver, got {type(driver).__name__}")
        kind = kind or driver.kind
        if not kind:
            raise ValueError("Driver kind cannot be empty")
        if kind in self._drivers:
            raise ValueError(f"Kind '{kind}' is already registered")
        self._drivers[kind] = driver

    def get(self, kind: str) -> Driver:
        """Get the driver for a kind.

        Raises:
            KeyError: If no driver is registered for the kind.
        """
        if kind not in self._drivers:
            raise KeyError(f"Kind '{kind}' is not registered")
        return self._drivers[kind]

    def has(self, kind: str) -> bool:
        """Check if a kind has a registered driver."""
        return kind in self._drivers

    def kinds(self) -> list[str]:
        """Return the registered kinds, sorted."""
        return sorted(self._drivers)

    def clear(self) -> None:
        """Clear all registered drivers (mainly for testing)."""
        self._drivers.clear()

    def register_package(self, prefix: str, drivers: DriverPackage | Any) -> None:
        """Register all drivers from a package under a common prefix.

        Args:
            prefix: The namespace prefix (e.g. "aws").
            drivers: Either a dict mapping short kind names to drivers, or a
                module (or object) with a DRIVERS dict attribute.

        Raises:
            ValueError: If prefix is empty, drivers is invalid, or any kind is
                already registered.
        """
        if not prefix:
            raise ValueError("Package prefix cannot be empty")

        if isinstance(drivers, dict):
            package = drivers
        elif isinstance(drivers, types.ModuleType) or hasattr(drivers, "DRIVERS"):
            package = getattr(drivers, "DRIVERS", None)
            if not isinstance(package, dict):
                raise ValueError(
                    f"{drivers!r} must have a DRIVERS dict, got {type(package).__name__}"
                )
        else:
            raise ValueError(
                f"drivers must be a dict or module with DRIVERS attribute, got {type(drivers)}"
            )

        for name, driver in package.items():
            self.register(driver, f"{prefix}:{name}")

    def auto_discover(self) -> None:
        """Discover and register driver packages from entry points.

        Scans the 'cairn.drivers' entry point group. Each entry point should
        resolve to a dict[str, Driver] or a callable returning one; the entry
        point name becomes the package prefix. Entry points that fail to load
        or resolve to something else are logged and skipped.
        """
        for ep in entry_points(group=ENTRY_POINT_GROUP):
            try:
                loaded = ep.load()
                package = loaded() if callable(loaded) else loaded
            except Exception as e:
                logger.warning("driver_package_load_failed", entry_point=ep.name, error=str(e))
                continue

            if not isinstance(package, dict):
                logger.warning(
                    "driver_package_invalid",
                    entry_point=ep.name,
                    type=type(package).__name__,
                )
                continue
            self.register_package(ep.name, package)
