"""Exception types raised by the tiled attention kernels."""

from __future__ import annotations

from typing import Optional


class FlashTileError(Exception):
    """Base class for all flashtile errors."""


class ResourceExceeded(FlashTileError):
    """The staging buffers of a tiling do not fit the on-chip budget.

    Raised before any tile is staged. There is no fallback to a smaller tile
    width than the planner derived.
    """

    def __init__(self, message: str, *, required_bytes: Optional[int] = None, budget_bytes: Optional[int] = None) -> None:
        super().__init__(message)
        self.required_bytes = required_bytes
        self.budget_bytes = budget_bytes


class DeviceFault(FlashTileError):
    """The execution substrate reported a fault while the kernel was running.

    The original error is chained as ``__cause__``. Faults are never retried.
    """


class StagingProtocolError(FlashTileError):
    """A staging buffer was read or overwritten without an intervening barrier."""


__all__ = [
    "FlashTileError",
    "ResourceExceeded",
    "DeviceFault",
    "StagingProtocolError",
]
