"""
Tiled (flash) attention entry points.

    O, m, l = forward(q, k, v)
    dq, dk, dv = backward(q, k, v, O, dO, m, l)

Tiles are planned before anything is staged, so an on-chip budget that is
too small fails with ResourceExceeded before any work is done. Errors raised
by the device while the tiled loops run surface as DeviceFault and are not
retried.
"""

from __future__ import annotations

import logging
import math
from typing import Optional, Tuple

import torch

from ..errors import DeviceFault, FlashTileError
from .device import DeviceLimits, detect_device_limits
from .tiled_backward import tiled_attention_backward
from .tiled_forward import tiled_attention_forward
from .tile_planner import (
    TilePlan,
    plan_backward_tiles,
    plan_forward_tiles,
    validate_backward_plan,
    validate_forward_plan,
)

_log = logging.getLogger(__name__)


def _check_inputs(**tensors: torch.Tensor) -> Tuple[int, int, int, int]:
    names = list(tensors)
    ref_name = names[0]
    ref = tensors[ref_name]
    if ref.dim() != 4:
        raise ValueError(f"{ref_name} must be [batch, heads, seq_len, head_dim], got shape {tuple(ref.shape)}")
    if not ref.is_floating_point():
        raise ValueError(f"{ref_name} must be a floating point tensor, got {ref.dtype}")
    for name in names[1:]:
        t = tensors[name]
        if t.shape != ref.shape:
            raise ValueError(f"{name} shape {tuple(t.shape)} does not match {ref_name} shape {tuple(ref.shape)}")
        if t.dtype != ref.dtype:
            raise ValueError(f"{name} dtype {t.dtype} does not match {ref_name} dtype {ref.dtype}")
        if t.device != ref.device:
            raise ValueError(f"{name} is on {t.device}, {ref_name} is on {ref.device}")
    B, H, N, D = ref.shape
    if N < 1 or D < 1:
        raise ValueError(f"seq_len and head_dim must be >= 1, got N={N}, d={D}")
    return B, H, N, D


def _check_stats(ref: torch.Tensor, **stats: torch.Tensor) -> None:
    expected = tuple(ref.shape[:3])
    for name, t in stats.items():
        if tuple(t.shape) != expected:
            raise ValueError(f"{name} must have shape {expected}, got {tuple(t.shape)}")
        if t.device != ref.device:
            raise ValueError(f"{name} is on {t.device}, expected {ref.device}")


def _resolve_scale(softmax_scale: Optional[float], head_dim: int) -> float:
    return 1.0 / math.sqrt(head_dim) if softmax_scale is None else float(softmax_scale)


def _launch(kind: str, kernel, *args):
    try:
        return kernel(*args)
    except FlashTileError:
        raise
    except RuntimeError as exc:
        _log.error("%s kernel fault: %s", kind, exc)
        raise DeviceFault(f"{kind} attention kernel failed: {exc}") from exc


def forward(
    q: torch.Tensor,
    k: torch.Tensor,
    v: torch.Tensor,
    *,
    softmax_scale: Optional[float] = None,
    limits: Optional[DeviceLimits] = None,
    plan: Optional[TilePlan] = None,
) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """Tiled attention forward pass.

    Args:
        q, k, v: ``[B, H, N, d]`` tensors of one floating point dtype
        softmax_scale: score multiplier, ``1/sqrt(d)`` by default
        limits: on-chip limits; detected from ``q.device`` when omitted
        plan: explicit tiling, validated against ``N`` and ``limits``

    Returns:
        (out, running_max, running_sum); the statistics are ``[B, H, N]``.

    Raises:
        ValueError: malformed inputs, tile widths, or a plan built for another ``N``
        ResourceExceeded: the tiling does not fit the on-chip budget
        DeviceFault: the device failed while the kernel ran
    """
    B, H, N, D = _check_inputs(q=q, k=k, v=v)
    limits = limits if limits is not None else detect_device_limits(q.device)
    element_size = q.element_size()

    if plan is None:
        plan = plan_forward_tiles(N, D, element_size, limits)
    else:
        validate_forward_plan(plan, N, D, element_size, limits)

    scale = _resolve_scale(softmax_scale, D)
    _log.debug(
        "flash forward B=%d H=%d N=%d d=%d Br=%d Bc=%d Tr=%d Tc=%d",
        B, H, N, D, plan.block_rows, plan.block_cols, plan.num_row_tiles, plan.num_col_tiles,
    )
    with torch.no_grad():
        return _launch(
            "forward", tiled_attention_forward,
            q.detach(), k.detach(), v.detach(), plan, scale, limits.sram_bytes,
        )


def backward(
    q: torch.Tensor,
    k: torch.Tensor,
    v: torch.Tensor,
    out: torch.Tensor,
    grad_out: torch.Tensor,
    running_max: torch.Tensor,
    running_sum: torch.Tensor,
    *,
    softmax_scale: Optional[float] = None,
    limits: Optional[DeviceLimits] = None,
    plan: Optional[TilePlan] = None,
) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """Tiled attention backward pass.

    ``running_max``/``running_sum`` must come from :func:`forward` on the same
    ``q, k, v`` (and the same ``softmax_scale``).

    Returns:
        (dq, dk, dv), each ``[B, H, N, d]``
    """
    B, H, N, D = _check_inputs(q=q, k=k, v=v, out=out, grad_out=grad_out)
    _check_stats(q, running_max=running_max, running_sum=running_sum)
    limits = limits if limits is not None else detect_device_limits(q.device)
    element_size = q.element_size()

    if plan is None:
        plan = plan_backward_tiles(N, D, element_size, limits)
    else:
        validate_backward_plan(plan, N, D, element_size, limits)

    scale = _resolve_scale(softmax_scale, D)
    _log.debug(
        "flash backward B=%d H=%d N=%d d=%d Br=%d Bc=%d",
        B, H, N, D, plan.block_rows, plan.block_cols,
    )
    with torch.no_grad():
        return _launch(
            "backward", tiled_attention_backward,
            q.detach(), k.detach(), v.detach(), out.detach(), grad_out.detach(),
            running_max.detach().to(q.dtype), running_sum.detach().to(q.dtype),
            plan, scale, limits.sram_bytes,
        )


class FlashAttentionFunction(torch.autograd.Function):
    @staticmethod
    def forward(ctx, q, k, v, softmax_scale=None, limits=None):
        out, running_max, running_sum = forward(q, k, v, softmax_scale=softmax_scale, limits=limits)
        ctx.save_for_backward(q, k, v, out, running_max, running_sum)
        ctx.softmax_scale = softmax_scale
        ctx.limits = limits
        return out

    @staticmethod
    def backward(ctx, grad_out):
        q, k, v, out, running_max, running_sum = ctx.saved_tensors
        dq, dk, dv = backward(
            q, k, v, out, grad_out.contiguous(), running_max, running_sum,
            softmax_scale=ctx.softmax_scale,
            limits=ctx.limits,
        )
        return dq, dk, dv, None, None


def flash_attention(
    q: torch.Tensor,
    k: torch.Tensor,
    v: torch.Tensor,
    softmax_scale: Optional[float] = None,
    limits: Optional[DeviceLimits] = None,
) -> torch.Tensor:
    """
    Differentiable tiled attention.

    Args:
        q: Query [B, H, N, D]
        k: Key [B, H, N, D]
        v: Value [B, H, N, D]
        softmax_scale: Score multiplier (default 1/sqrt(D))
        limits: On-chip limits (default: detected from q.device)

    Returns:
        out: Attention output [B, H, N, D]
    """
    return FlashAttentionFunction.apply(q, k, v, softmax_scale, limits)


def reference_attention(q, k, v, softmax_scale=None, return_stats=False):
    """Dense softmax attention, materialising the full score matrix.

    With ``return_stats`` also returns the per-row maximum score and softmax
    denominator, matching what the tiled forward pass reports.
    """
    scale = _resolve_scale(softmax_scale, q.shape[-1])
    scores = torch.matmul(q, k.transpose(-2, -1)) * scale
    row_max = scores.amax(dim=-1)
    weights = torch.exp(scores - row_max.unsqueeze(-1))
    row_sum = weights.sum(dim=-1)
    out = torch.matmul(weights / row_sum.unsqueeze(-1), v)
    if return_stats:
        return out, row_max, row_sum
    return out


__all__ = [
    "forward",
    "backward",
    "FlashAttentionFunction",
    "flash_attention",
    "reference_attention",
]
