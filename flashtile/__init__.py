"""
flashtile: tiled scaled dot-product attention

Computes attention without materialising the N x N score matrix:
- forward: online softmax over K/V column tiles, saving the per-row
  running max and running sum
- backward: per-tile recomputation of the softmax from the saved
  statistics, accumulating dQ, dK and dV

Reference: Dao et al., FlashAttention, arXiv:2205.14135
"""

__version__ = "0.1.0"

from .errors import (
    FlashTileError,
    ResourceExceeded,
    DeviceFault,
    StagingProtocolError,
)

from .kernels import (
    DeviceLimits,
    detect_device_limits,
    TilePlan,
    plan_forward_tiles,
    plan_backward_tiles,
    forward,
    backward,
    flash_attention,
    reference_attention,
)

__all__ = [
    # Errors
    "FlashTileError",
    "ResourceExceeded",
    "DeviceFault",
    "StagingProtocolError",
    # Planning
    "DeviceLimits",
    "detect_device_limits",
    "TilePlan",
    "plan_forward_tiles",
    "plan_backward_tiles",
    # Attention
    "forward",
    "backward",
    "flash_attention",
    "reference_attention",
]
