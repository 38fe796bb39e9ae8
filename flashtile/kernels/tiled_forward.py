"""
Tiled attention forward pass with online softmax.

Column tiles of K/V form the outer loop and row tiles of Q the inner loop.
Each row carries ``(running_max, running_sum, O_row)`` across column tiles;
when a new tile raises the row maximum, the previously accumulated output is
rescaled so that after the last column tile ``O`` is the exact softmax
attention output and ``running_sum`` the exact softmax denominator.
"""

from __future__ import annotations

from typing import Tuple

import torch

from .staging import StagingArea
from .tile_planner import TilePlan


def tiled_attention_forward(
    q: torch.Tensor,
    k: torch.Tensor,
    v: torch.Tensor,
    plan: TilePlan,
    softmax_scale: float,
    budget_bytes: int,
) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """Run the forward kernel over every (batch, head) group.

    Args:
        q, k, v: ``[B, H, N, d]``
        plan: tile widths/counts for ``N``
        softmax_scale: multiplier applied to ``q . k``
        budget_bytes: on-chip budget per group

    Returns:
        out ``[B, H, N, d]``, running_max ``[B, H, N]``, running_sum ``[B, H, N]``
    """
    B, H, N, D = q.shape
    groups = B * H
    block_rows, block_cols = plan.block_rows, plan.block_cols

    # Groups never interact, so they share one leading dimension.
    q3 = q.reshape(groups, N, D)
    k3 = k.reshape(groups, N, D)
    v3 = v.reshape(groups, N, D)

    out = torch.zeros(groups, N, D, dtype=q.dtype, device=q.device)
    running_max = torch.full((groups, N), float("-inf"), dtype=q.dtype, device=q.device)
    running_sum = torch.zeros(groups, N, dtype=q.dtype, device=q.device)

    area = StagingArea(groups, budget_bytes, dtype=q.dtype, device=q.device)
    q_tile = area.allocate("q", block_rows, D)
    k_tile = area.allocate("k", block_cols, D)
    v_tile = area.allocate("v", block_cols, D)
    s_tile = area.allocate("scores", block_rows, block_cols, private=True)

    for j in range(plan.num_col_tiles):
        col_start = j * block_cols
        col_end = min(col_start + block_cols, N)

        k_tile.stage(k3[:, col_start:col_end])
        v_tile.stage(v3[:, col_start:col_end])
        area.barrier()

        for i in range(plan.num_row_tiles):
            row_start = i * block_rows
            row_end = min(row_start + block_rows, N)

            q_tile.stage(q3[:, row_start:row_end])
            area.barrier()

            q_i = q_tile.view()
            k_j = k_tile.view()
            v_j = v_tile.view()

            s_tile.stage(torch.matmul(q_i, k_j.transpose(1, 2)) * softmax_scale)
            probs = s_tile.view()
            tile_max = probs.amax(dim=-1)
            # Shift and exponentiate in place: the score tile now holds P~.
            probs.sub_(tile_max.unsqueeze(-1)).exp_()
            tile_sum = probs.sum(dim=-1)

            prev_max = running_max[:, row_start:row_end]
            prev_sum = running_sum[:, row_start:row_end]
            prev_out = out[:, row_start:row_end]

            new_max = torch.maximum(prev_max, tile_max)
            prev_scale = torch.exp(prev_max - new_max)
            tile_scale = torch.exp(tile_max - new_max)
            new_sum = prev_scale * prev_sum + tile_scale * tile_sum

            # prev_out is normalised by prev_sum; undo that before merging.
            new_out = (
                (prev_sum * prev_scale).unsqueeze(-1) * prev_out
                + tile_scale.unsqueeze(-1) * torch.matmul(probs, v_j)
            ) / new_sum.unsqueeze(-1)

            out[:, row_start:row_end] = new_out
            running_max[:, row_start:row_end] = new_max
            running_sum[:, row_start:row_end] = new_sum

            # Retire reads of q/k/v before q is restaged or the sweep ends.
            area.barrier()

    return (
        out.reshape(B, H, N, D),
        running_max.reshape(B, H, N),
        running_sum.reshape(B, H, N),
    )


__all__ = ["tiled_attention_forward"]
