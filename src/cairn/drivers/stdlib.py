"""Built-in drivers for kinds that need no provider: waits, commands, modules."""

import os
import re
import subprocess
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import structlog

from cairn.declaration import MODULE_KIND
from cairn.drivers.base import ApplyResult, LocalDriver
from cairn.errors import PermanentDriverError, TransientDriverError

if TYPE_CHECKING:
    from cairn.registry import DriverRegistry
    from cairn.settings import ProviderConfig, Settings
    from cairn.store.base import ResourceState

logger = structlog.get_logger()

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}


def parse_duration(value: Any) -> float:
    """Parse a duration given as seconds or as a string like "30s", "2m", "500ms".

    Raises:
        ValueError: If the value is negative or not a duration.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        match = _DURATION_RE.match(value)
        if not match:
            raise ValueError(f"Invalid duration: {value!r}")
        seconds = float(match.group(1)) * _UNITS[match.group(2)]
    else:
        raise ValueError(f"Invalid duration: {value!r}")
    if seconds < 0:
        raise ValueError(f"Duration cannot be negative: {value!r}")
    return seconds


class WaitDriver(LocalDriver):
    """A settle period: sleeps for `duration` and has no remote effect.

    Attributes:
        duration: Seconds, or a string such as "30s" or "2m".
        triggers: Optional map; changing it makes the wait run again.
    """

    kind = "wait"
    outputs = frozenset({"duration", "triggers"})

    def __init__(
        self, max_seconds: float = 600.0, sleep: Callable[[float], None] = time.sleep
    ) -> None:
        self.max_seconds = max_seconds
        self._sleep = sleep

    def apply(
        self,
        desired: dict[str, Any],
        previous: "ResourceState | None",
        config: "ProviderConfig",
    ) -> ApplyResult:
        try:
            seconds = parse_duration(desired.get("duration", 0))
        except ValueError as e:
            raise PermanentDriverError(str(e)) from e
        if seconds > self.max_seconds:
            raise PermanentDriverError(
                f"Wait of {seconds}s exceeds the limit of {self.max_seconds}s"
            )

        self._sleep(seconds)
        return ApplyResult(
            snapshot={"duration": seconds, "triggers": desired.get("triggers") or {}}
        )


class CommandDriver(LocalDriver):
    """Runs a local command with an environment mapping.

    The command's output is not captured into the graph; only success or
    failure is recorded.

    Attributes:
        command: A string (run through the shell or `interpreter`) or an argv list.
        environment: Extra environment variables.
        interpreter: Optional argv prefix, e.g. ["/bin/bash", "-c"].
        working_dir: Optional working directory.
    """

    kind = "command"
    outputs = frozenset({"exit_code"})

    def __init__(
        self,
        timeout: float = 600.0,
        idempotent: bool = False,
        inherit_environment: bool = True,
    ) -> None:
        self.timeout = timeout
        self.idempotent = idempotent
        self.inherit_environment = inherit_environment

    def apply(
        self,
        desired: dict[str, Any],
        previous: "ResourceState | None",
        config: "ProviderConfig",
    ) -> ApplyResult:
        args, shell = self._argv(desired)
        env = self._environment(desired.get("environment") or {})

        try:
            completed = subprocess.run(
                args,
                shell=shell,
                env=env,
                cwd=desired.get("working_dir"),
                timeout=self.timeout,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise TransientDriverError(
                f"Command timed out after {self.timeout}s"
            ) from e
        except OSError as e:
            raise PermanentDriverError(f"Command could not be started: {e}") from e

        if completed.returncode != 0:
            stderr = (completed.stderr or "").strip()[-2000:]
            raise PermanentDriverError(
                f"Command exited with status {completed.returncode}: {stderr}"
            )

        logger.debug("command_completed", command=desired.get("command"))
        return ApplyResult(snapshot={"exit_code": 0})

    def _argv(self, desired: dict[str, Any]) -> tuple[str | list[str], bool]:
        command = desired.get("command")
        if not command:
            raise PermanentDriverError("command resources require a 'command' attribute")

        interpreter = desired.get("interpreter")
        if interpreter:
            if not isinstance(interpreter, list) or not isinstance(command, str):
                raise PermanentDriverError(
                    "'interpreter' must be a list and 'command' a string when both are set"
                )
            return [str(part) for part in interpreter] + [command], False
        if isinstance(command, list):
            return [str(part) for part in command], False
        if isinstance(command, str):
            return command, True
        raise PermanentDriverError(
            f"'command' must be a string or list, got {type(command).__name__}"
        )

    def _environment(self, extra: Any) -> dict[str, str]:
        if not isinstance(extra, dict):
            raise PermanentDriverError("'environment' must be a map")
        env = dict(os.environ) if self.inherit_environment else {}
        env.update({str(k): "" if v is None else str(v) for k, v in extra.items()})
        return env


class PassthroughDriver(LocalDriver):
    """Carries module inputs and outputs: the snapshot is the attributes."""

    kind = MODULE_KIND

    def apply(
        self,
        desired: dict[str, Any],
        previous: "ResourceState | None",
        config: "ProviderConfig",
    ) -> ApplyResult:
        return ApplyResult(snapshot=dict(desired))


def register_builtins(registry: "DriverRegistry", settings: "Settings") -> None:
    """Register the built-in kinds that are not registered yet."""
    builtins = [
        WaitDriver(max_seconds=settings.max_wait_seconds),
        CommandDriver(timeout=settings.command_timeout),
        PassthroughDriver(),
    ]
    for driver in builtins:
        if not registry.has(driver.kind):
            registry.register(driver)
