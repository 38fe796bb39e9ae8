"""flashtile diagnostics.

Checks the tiled kernels against dense attention on random inputs and
reports errors, the chosen tilings and timings.

Usage:
    python -m flashtile.diagnostics --batch 2 --heads 4 --seq-len 256 --head-dim 64
    python -m flashtile.diagnostics --sram-bytes 32768 --dtype float64 --verbose
"""
from __future__ import annotations

import argparse
import logging
import sys
import time
from typing import Dict, List, Optional

import numpy as np
import torch

from .errors import FlashTileError
from .kernels import (
    DeviceLimits,
    backward,
    detect_device_limits,
    forward,
    plan_backward_tiles,
    plan_forward_tiles,
    reference_attention,
)
from .logging import FlashTileLogger

__all__ = ["build_argument_parser", "run_check", "main"]

_CHECKED_ERRORS = ("out_err", "max_err", "sum_err", "dq_err", "dk_err", "dv_err")

_DTYPES = {
    "float32": torch.float32,
    "float64": torch.float64,
}


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m flashtile.diagnostics",
        description="Compare tiled attention against dense attention.",
    )
    parser.add_argument("--batch", type=int, default=2)
    parser.add_argument("--heads", type=int, default=4)
    parser.add_argument("--seq-len", type=int, default=256)
    parser.add_argument("--head-dim", type=int, default=64)
    parser.add_argument("--dtype", choices=sorted(_DTYPES), default="float32")
    parser.add_argument("--device", default="cuda" if torch.cuda.is_available() else "cpu")
    parser.add_argument("--sram-bytes", type=int, default=None,
                        help="Override the detected on-chip budget per group")
    parser.add_argument("--max-group-width", type=int, default=None)
    parser.add_argument("--repeats", type=int, default=3, help="Timed repetitions per pass")
    parser.add_argument("--atol", type=float, default=1e-4)
    parser.add_argument("--seed", type=int, default=0)
    parser.add_argument("--log-dir", default=None)
    parser.add_argument("--verbose", action="store_true", help="Log tiling decisions")
    return parser


def _resolve_limits(args: argparse.Namespace) -> DeviceLimits:
    detected = detect_device_limits(args.device)
    return DeviceLimits(
        sram_bytes=detected.sram_bytes if args.sram_bytes is None else args.sram_bytes,
        max_group_width=detected.max_group_width if args.max_group_width is None else args.max_group_width,
        name=detected.name,
    )


def _median_ms(fn, repeats: int, device: torch.device) -> float:
    times: List[float] = []
    for _ in range(max(repeats, 1)):
        if device.type == "cuda":
            torch.cuda.synchronize()
        start = time.perf_counter()
        fn()
        if device.type == "cuda":
            torch.cuda.synchronize()
        times.append((time.perf_counter() - start) * 1000.0)
    return float(np.median(np.asarray(times)))


def run_check(args: argparse.Namespace) -> Dict[str, float]:
    """Run forward and backward once against the dense reference.

    Returns a flat dict of metrics (errors, tile widths, timings).
    """
    device = torch.device(args.device)
    dtype = _DTYPES[args.dtype]
    limits = _resolve_limits(args)
    shape = (args.batch, args.heads, args.seq_len, args.head_dim)
    element_size = torch.empty((), dtype=dtype).element_size()

    fwd_plan = plan_forward_tiles(args.seq_len, args.head_dim, element_size, limits)
    bwd_plan = plan_backward_tiles(args.seq_len, args.head_dim, element_size, limits)

    gen = torch.Generator().manual_seed(args.seed)
    q, k, v, grad_out = (torch.randn(shape, generator=gen, dtype=dtype).to(device) for _ in range(4))

    out, running_max, running_sum = forward(q, k, v, limits=limits)
    dq, dk, dv = backward(q, k, v, out, grad_out, running_max, running_sum, limits=limits)

    q_ref, k_ref, v_ref = (t.clone().requires_grad_(True) for t in (q, k, v))
    out_ref, max_ref, sum_ref = reference_attention(q_ref, k_ref, v_ref, return_stats=True)
    out_ref.backward(grad_out)

    metrics = {
        "block_rows": float(fwd_plan.block_rows),
        "block_cols": float(fwd_plan.block_cols),
        "bwd_block": float(bwd_plan.block_cols),
        "out_err": (out - out_ref.detach()).abs().max().item(),
        "max_err": (running_max - max_ref.detach()).abs().max().item(),
        "sum_err": ((running_sum - sum_ref.detach()).abs() / sum_ref.detach()).max().item(),
        "dq_err": (dq - q_ref.grad).abs().max().item(),
        "dk_err": (dk - k_ref.grad).abs().max().item(),
        "dv_err": (dv - v_ref.grad).abs().max().item(),
    }
    metrics["forward_ms"] = _median_ms(lambda: forward(q, k, v, limits=limits), args.repeats, device)
    metrics["backward_ms"] = _median_ms(
        lambda: backward(q, k, v, out, grad_out, running_max, running_sum, limits=limits),
        args.repeats,
        device,
    )
    return metrics


def main(argv: Optional[List[str]] = None) -> int:
    args = build_argument_parser().parse_args(argv)
    logger = FlashTileLogger(log_dir=args.log_dir, level=logging.DEBUG if args.verbose else logging.INFO)

    try:
        logger.info(
            "shape B=%d H=%d N=%d d=%d dtype=%s device=%s",
            args.batch, args.heads, args.seq_len, args.head_dim, args.dtype, args.device,
        )
        try:
            metrics = run_check(args)
        except (FlashTileError, ValueError) as exc:
            logger.error("%s: %s", type(exc).__name__, exc)
            return 2

        logger.log_metrics(metrics)
        errors = [metrics[key] for key in _CHECKED_ERRORS]
        if max(errors) > args.atol:
            logger.warning("max error %.3e exceeds atol %.1e", max(errors), args.atol)
            return 1
        logger.info("tiled attention matches dense attention (atol %.1e)", args.atol)
        return 0
    finally:
        logger.close()


if __name__ == "__main__":
    sys.exit(main())
