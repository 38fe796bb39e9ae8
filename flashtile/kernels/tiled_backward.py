"""
Tiled attention backward pass.

Probabilities are recomputed tile by tile from the forward pass's saved
running statistics, ``P = exp(S - m) / l``, so no N x N matrix is ever held.
For each column tile, dK_j and dV_j accumulate on-chip over every row tile
and are written once; dQ receives one contribution per column tile and is
accumulated in place.
"""

from __future__ import annotations

from typing import Tuple

import torch

from .staging import StagingArea
from .tile_planner import TilePlan


def tiled_attention_backward(
    q: torch.Tensor,
    k: torch.Tensor,
    v: torch.Tensor,
    out: torch.Tensor,
    grad_out: torch.Tensor,
    running_max: torch.Tensor,
    running_sum: torch.Tensor,
    plan: TilePlan,
    softmax_scale: float,
    budget_bytes: int,
) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """Run the backward kernel over every (batch, head) group.

    Returns:
        dq, dk, dv, each ``[B, H, N, d]``
    """
    B, H, N, D = q.shape
    groups = B * H
    block_rows, block_cols = plan.block_rows, plan.block_cols

    q3 = q.reshape(groups, N, D)
    k3 = k.reshape(groups, N, D)
    v3 = v.reshape(groups, N, D)
    o3 = out.reshape(groups, N, D)
    do3 = grad_out.reshape(groups, N, D)
    m2 = running_max.reshape(groups, N)
    l2 = running_sum.reshape(groups, N)

    dq = torch.zeros(groups, N, D, dtype=q.dtype, device=q.device)
    dk = torch.zeros(groups, N, D, dtype=q.dtype, device=q.device)
    dv = torch.zeros(groups, N, D, dtype=q.dtype, device=q.device)

    area = StagingArea(groups, budget_bytes, dtype=q.dtype, device=q.device)
    q_tile = area.allocate("q", block_rows, D)
    o_tile = area.allocate("o", block_rows, D)
    do_tile = area.allocate("do", block_rows, D)
    k_tile = area.allocate("k", block_cols, D)
    v_tile = area.allocate("v", block_cols, D)
    dk_tile = area.allocate("dk", block_cols, D, private=True)
    dv_tile = area.allocate("dv", block_cols, D, private=True)
    p_tile = area.allocate("probs", block_rows, block_cols, private=True)
    ds_tile = area.allocate("dscores", block_rows, block_cols, private=True)

    for j in range(plan.num_col_tiles):
        col_start = j * block_cols
        col_end = min(col_start + block_cols, N)
        n_cols = col_end - col_start

        k_tile.stage(k3[:, col_start:col_end])
        v_tile.stage(v3[:, col_start:col_end])
        dk_tile.fill_(0.0, rows=n_cols)
        dv_tile.fill_(0.0, rows=n_cols)
        area.barrier()

        for i in range(plan.num_row_tiles):
            row_start = i * block_rows
            row_end = min(row_start + block_rows, N)

            q_tile.stage(q3[:, row_start:row_end])
            o_tile.stage(o3[:, row_start:row_end])
            do_tile.stage(do3[:, row_start:row_end])
            area.barrier()

            q_i = q_tile.view()
            o_i = o_tile.view()
            do_i = do_tile.view()
            k_j = k_tile.view()
            v_j = v_tile.view()

            # Saved statistics, never recomputed.
            m_i = m2[:, row_start:row_end].unsqueeze(-1)
            l_i = l2[:, row_start:row_end].unsqueeze(-1)

            p_tile.stage(torch.matmul(q_i, k_j.transpose(1, 2)) * softmax_scale)
            probs = p_tile.view()
            probs.sub_(m_i).exp_().div_(l_i)

            dv_tile.accumulate_(torch.matmul(probs.transpose(1, 2), do_i))

            grad_probs = torch.matmul(do_i, v_j.transpose(1, 2))
            row_delta = (do_i * o_i).sum(dim=-1, keepdim=True)
            ds_tile.stage(probs * (grad_probs - row_delta))
            grad_scores = ds_tile.view()

            # dQ for these rows is revisited by every column tile.
            dq[:, row_start:row_end] += softmax_scale * torch.matmul(grad_scores, k_j)
            dk_tile.accumulate_(softmax_scale * torch.matmul(grad_scores.transpose(1, 2), q_i))

            area.barrier()

        dk[:, col_start:col_end] = dk_tile.view()
        dv[:, col_start:col_end] = dv_tile.view()

    return (
        dq.reshape(B, H, N, D),
        dk.reshape(B, H, N, D),
        dv.reshape(B, H, N, D),
    )


__all__ = ["tiled_attention_backward"]
