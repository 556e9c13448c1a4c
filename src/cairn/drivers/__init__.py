"""Resource drivers."""

from cairn.drivers.base import ApplyResult, Driver, LocalDriver
from cairn.drivers.stdlib import (
    CommandDriver,
    PassthroughDriver,
    WaitDriver,
    parse_duration,
    register_builtins,
)

__all__ = [
    "ApplyResult",
    "CommandDriver",
    "Driver",
    "LocalDriver",
    "PassthroughDriver",
    "WaitDriver",
    "parse_duration",
    "register_builtins",
]
