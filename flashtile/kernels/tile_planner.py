"""
Tile size selection for the tiled attention kernels.

Row tiles (``block_rows``, Br) run along the query axis, column tiles
(``block_cols``, Bc) along the key/value axis. Every staging buffer a pass
needs for one tile pair must fit the on-chip budget at once:

    forward:  Q_i[Br,d] + K_j[Bc,d] + V_j[Bc,d] + S[Br,Bc]
    backward: Q_i, O_i, dO_i [Br,d] + K_j, V_j, dK_j, dV_j [Bc,d] + S, dS [Br,Bc]

The forward pass derives asymmetric tiles from the budget. The backward pass
holds more buffers and uses a fixed width instead.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from ..errors import ResourceExceeded
from .device import DeviceLimits

_log = logging.getLogger(__name__)

BACKWARD_TILE_WIDTH = 32


@dataclass(frozen=True)
class TilePlan:
    """Tile widths and counts for one sequence length."""

    block_rows: int
    block_cols: int
    num_row_tiles: int
    num_col_tiles: int

    @classmethod
    def for_sizes(cls, seq_len: int, block_rows: int, block_cols: int) -> "TilePlan":
        """Build a plan with explicit tile widths."""
        if seq_len < 1:
            raise ValueError(f"sequence length must be >= 1, got {seq_len}")
        if block_rows < 1 or block_cols < 1:
            raise ValueError(
                f"tile widths must be >= 1, got block_rows={block_rows}, block_cols={block_cols}"
            )
        return cls(
            block_rows=block_rows,
            block_cols=block_cols,
            num_row_tiles=math.ceil(seq_len / block_rows),
            num_col_tiles=math.ceil(seq_len / block_cols),
        )


def forward_footprint(block_rows: int, block_cols: int, head_dim: int, element_size: int) -> int:
    """Bytes of staging memory the forward pass needs for one tile pair."""
    return (block_rows * head_dim + 2 * block_cols * head_dim + block_rows * block_cols) * element_size


def backward_footprint(block_rows: int, block_cols: int, head_dim: int, element_size: int) -> int:
    """Bytes of staging memory the backward pass needs for one tile pair."""
    return (
        3 * block_rows * head_dim + 4 * block_cols * head_dim + 2 * block_rows * block_cols
    ) * element_size


def _check_budget(kind: str, required: int, limits: DeviceLimits, plan: TilePlan) -> None:
    if required > limits.sram_bytes:
        raise ResourceExceeded(
            f"{kind} tiling Br={plan.block_rows}, Bc={plan.block_cols} needs {required} bytes "
            f"of on-chip memory, budget is {limits.sram_bytes} bytes",
            required_bytes=required,
            budget_bytes=limits.sram_bytes,
        )


def _check_sequence(plan: TilePlan, seq_len: int) -> None:
    expected_rows = math.ceil(seq_len / plan.block_rows)
    expected_cols = math.ceil(seq_len / plan.block_cols)
    if plan.num_row_tiles != expected_rows or plan.num_col_tiles != expected_cols:
        raise ValueError(
            f"tile plan with Tr={plan.num_row_tiles}, Tc={plan.num_col_tiles} does not cover "
            f"seq_len={seq_len} (expected Tr={expected_rows}, Tc={expected_cols})"
        )


def _check_width(kind: str, plan: TilePlan, limits: DeviceLimits) -> None:
    widest = max(plan.block_rows, plan.block_cols)
    if widest > limits.max_group_width:
        raise ResourceExceeded(
            f"{kind} tile width {widest} exceeds the group width limit {limits.max_group_width}"
        )


def plan_forward_tiles(seq_len: int, head_dim: int, element_size: int, limits: DeviceLimits) -> TilePlan:
    """Derive forward tile sizes from the on-chip budget.

    ``Bc = floor(M / 4d)`` and ``Br = min(Bc, d)`` with ``M`` the budget in
    elements; both are bounded by the group width and the sequence length.

    Raises:
        ResourceExceeded: if not even a single row/column tile fits.
    """
    if seq_len < 1 or head_dim < 1:
        raise ValueError(f"seq_len and head_dim must be >= 1, got N={seq_len}, d={head_dim}")

    budget_elems = limits.sram_bytes // element_size
    block_cols = budget_elems // (4 * head_dim)
    if block_cols < 1:
        raise ResourceExceeded(
            f"on-chip budget of {limits.sram_bytes} bytes cannot hold a single tile "
            f"for head_dim={head_dim} ({element_size}-byte elements)",
            required_bytes=forward_footprint(1, 1, head_dim, element_size),
            budget_bytes=limits.sram_bytes,
        )
    block_rows = min(block_cols, head_dim)

    block_cols = min(block_cols, limits.max_group_width, seq_len)
    block_rows = min(block_rows, limits.max_group_width, seq_len)

    plan = TilePlan.for_sizes(seq_len, block_rows, block_cols)
    _check_budget("forward", forward_footprint(block_rows, block_cols, head_dim, element_size), limits, plan)
    _log.debug("forward plan N=%d d=%d: %s", seq_len, head_dim, plan)
    return plan


def plan_backward_tiles(seq_len: int, head_dim: int, element_size: int, limits: DeviceLimits) -> TilePlan:
    """Fixed-width tiles for the backward pass.

    Raises:
        ResourceExceeded: if the nine backward staging buffers do not fit.
    """
    if seq_len < 1 or head_dim < 1:
        raise ValueError(f"seq_len and head_dim must be >= 1, got N={seq_len}, d={head_dim}")

    width = min(BACKWARD_TILE_WIDTH, limits.max_group_width, seq_len)
    plan = TilePlan.for_sizes(seq_len, width, width)
    _check_budget("backward", backward_footprint(width, width, head_dim, element_size), limits, plan)
    _log.debug("backward plan N=%d d=%d: %s", seq_len, head_dim, plan)
    return plan


def validate_forward_plan(
    plan: TilePlan, seq_len: int, head_dim: int, element_size: int, limits: DeviceLimits
) -> None:
    """Check an explicit forward plan against the sequence length and device limits."""
    _check_sequence(plan, seq_len)
    _check_width("forward", plan, limits)
    _check_budget(
        "forward",
        forward_footprint(plan.block_rows, plan.block_cols, head_dim, element_size),
        limits,
        plan,
    )


def validate_backward_plan(
    plan: TilePlan, seq_len: int, head_dim: int, element_size: int, limits: DeviceLimits
) -> None:
    """Check an explicit backward plan against the sequence length and device limits."""
    _check_sequence(plan, seq_len)
    _check_width("backward", plan, limits)
    _check_budget(
        "backward",
        backward_footprint(plan.block_rows, plan.block_cols, head_dim, element_size),
        limits,
        plan,
    )


__all__ = [
    "BACKWARD_TILE_WIDTH",
    "TilePlan",
    "forward_footprint",
    "backward_footprint",
    "plan_forward_tiles",
    "plan_backward_tiles",
    "validate_forward_plan",
    "validate_backward_plan",
]
