"""Exception hierarchy for aumai-stackkeeper."""

from __future__ import annotations

__all__ = [
    "AssetDirectoryError",
    "DriverError",
    "StackKeeperError",
]


class StackKeeperError(Exception):
    """Base class for every error raised by this package."""


class AssetDirectoryError(StackKeeperError):
    """No asset directory could be found or created."""


class DriverError(StackKeeperError):
    """An external system (runtime, engine, registry, feed) call failed."""

    def __init__(self, operation: str, reason: object) -> None:
        super().__init__(f"{operation}: {reason}")
        self.operation = operation
        self.reason = str(reason)
