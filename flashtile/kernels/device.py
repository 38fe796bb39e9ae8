"""
On-chip memory limits used to size attention tiles.

The tile planner only needs two numbers from the hardware: how many bytes of
fast shared memory one execution group may use, and how many execution units
a group may have. Both are read from the device properties when running on
CUDA and can be overridden from the environment.

Environment Variables:
    FLASHTILE_SRAM_BYTES: on-chip budget per execution group, in bytes
    FLASHTILE_MAX_GROUP_WIDTH: maximum execution units per group
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional, Union

import torch

_log = logging.getLogger(__name__)

# Opt-in shared memory of most Ampere/Hopper parts; used off-GPU.
DEFAULT_SRAM_BYTES = 163_840
DEFAULT_MAX_GROUP_WIDTH = 1024

_LIMITS_CACHE: Dict[str, "DeviceLimits"] = {}


@dataclass(frozen=True)
class DeviceLimits:
    """Hardware limits relevant to tiling."""

    sram_bytes: int = DEFAULT_SRAM_BYTES
    max_group_width: int = DEFAULT_MAX_GROUP_WIDTH
    name: str = "generic"

    def __post_init__(self):
        if self.sram_bytes < 0:
            raise ValueError(f"sram_bytes must be non-negative, got {self.sram_bytes}")
        if self.max_group_width < 1:
            raise ValueError(f"max_group_width must be >= 1, got {self.max_group_width}")


def _env_int(name: str) -> Optional[int]:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _query_cuda_limits(device: torch.device) -> DeviceLimits:
    props = torch.cuda.get_device_properties(device)
    # Prefer the opt-in extended shared memory, as the fused kernels do.
    sram = getattr(props, "shared_memory_per_block_optin", 0) or getattr(
        props, "shared_memory_per_block", 0
    )
    return DeviceLimits(
        sram_bytes=int(sram) or DEFAULT_SRAM_BYTES,
        max_group_width=DEFAULT_MAX_GROUP_WIDTH,
        name=props.name,
    )


def detect_device_limits(device: Union[str, torch.device, None] = None) -> DeviceLimits:
    """Detect the on-chip budget and group width for ``device``.

    Environment overrides are applied on every call; the hardware query is
    cached per device.
    """
    device = torch.device(device) if device is not None else torch.device("cpu")
    key = str(device)

    base = _LIMITS_CACHE.get(key)
    if base is None:
        if device.type == "cuda" and torch.cuda.is_available():
            base = _query_cuda_limits(device)
        else:
            base = DeviceLimits(name=device.type)
        _LIMITS_CACHE[key] = base
        _log.debug("device limits for %s: %s", key, base)

    sram = _env_int("FLASHTILE_SRAM_BYTES")
    width = _env_int("FLASHTILE_MAX_GROUP_WIDTH")
    if sram is None and width is None:
        return base

    return DeviceLimits(
        sram_bytes=base.sram_bytes if sram is None else sram,
        max_group_width=base.max_group_width if width is None else width,
        name=base.name,
    )


def clear_device_limits_cache() -> None:
    _LIMITS_CACHE.clear()


__all__ = [
    "DEFAULT_SRAM_BYTES",
    "DEFAULT_MAX_GROUP_WIDTH",
    "DeviceLimits",
    "detect_device_limits",
    "clear_device_limits_cache",
]
