"""
Tiled attention kernels.

Components, leaves first:
1. device - on-chip budget and group width for a device
2. tile_planner - tile widths that fit the budget
3. staging - named shared tiles with barrier bookkeeping
4. tiled_forward / tiled_backward - the tiled passes
5. interface - validated entry points and autograd wrapper
"""

from .device import (
    DeviceLimits,
    detect_device_limits,
    clear_device_limits_cache,
)
from .tile_planner import (
    BACKWARD_TILE_WIDTH,
    TilePlan,
    forward_footprint,
    backward_footprint,
    plan_forward_tiles,
    plan_backward_tiles,
)
from .staging import SharedTile, StagingArea
from .interface import (
    forward,
    backward,
    FlashAttentionFunction,
    flash_attention,
    reference_attention,
)

__all__ = [
    # Limits and planning
    "DeviceLimits",
    "detect_device_limits",
    "clear_device_limits_cache",
    "BACKWARD_TILE_WIDTH",
    "TilePlan",
    "forward_footprint",
    "backward_footprint",
    "plan_forward_tiles",
    "plan_backward_tiles",
    # Staging
    "SharedTile",
    "StagingArea",
    # Entry points
    "forward",
    "backward",
    "FlashAttentionFunction",
    "flash_attention",
    "reference_attention",
]
