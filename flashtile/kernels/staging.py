"""
Shared staging buffers for tiled attention.

Each execution group (one batch/head pair) owns a fixed on-chip budget that
is split into named, independently sized tiles. All groups are processed
together, so every tile carries a leading group dimension; the budget is
accounted per group.

Operand tiles follow a two-phase protocol. All units write (``stage``), then
``StagingArea.barrier()``, then all units read (``view``). Reading a tile
written since the last barrier, or overwriting a tile read since the last
barrier, raises ``StagingProtocolError``. Private tiles hold per-row scratch
or per-column accumulators owned by a single unit and skip the protocol.
"""

from __future__ import annotations

from typing import Dict, Optional

import torch

from ..errors import ResourceExceeded, StagingProtocolError


class SharedTile:
    """One named staging buffer of shape ``[groups, rows, cols]``."""

    def __init__(self, name: str, groups: int, rows: int, cols: int, *, dtype: torch.dtype,
                 device: torch.device, private: bool = False) -> None:
        self.name = name
        self.rows = rows
        self.cols = cols
        self.private = private
        self.data = torch.zeros(groups, rows, cols, dtype=dtype, device=device)
        self.valid_rows = 0
        self.valid_cols = 0
        self._written = False
        self._read = False

    @property
    def nbytes(self) -> int:
        """Bytes per group."""
        return self.rows * self.cols * self.data.element_size()

    def _begin_write(self) -> None:
        if self.private:
            return
        if self._read:
            raise StagingProtocolError(
                f"staging tile '{self.name}' overwritten while units may still be reading it; "
                "a barrier must separate reads from the next write"
            )
        self._written = True

    def _begin_read(self) -> None:
        if self.private:
            return
        if self._written:
            raise StagingProtocolError(
                f"staging tile '{self.name}' read before the barrier that publishes it"
            )
        self._read = True

    def _end_phase(self) -> None:
        self._written = False
        self._read = False

    def stage(self, src: torch.Tensor) -> None:
        """Collaboratively load ``src`` of shape ``[groups, n, m]`` into the tile.

        Only the ``n <= rows`` valid rows are copied, so a ragged final tile
        never touches memory past the end of the sequence.
        """
        n, m = src.shape[1], src.shape[2]
        if n > self.rows or m > self.cols:
            raise ValueError(
                f"tile '{self.name}' is {self.rows}x{self.cols}, cannot stage {n}x{m}"
            )
        self._begin_write()
        self.data[:, :n, :m].copy_(src)
        self.valid_rows = n
        self.valid_cols = m

    def fill_(self, value: float, rows: Optional[int] = None, cols: Optional[int] = None) -> None:
        self._begin_write()
        self.data.fill_(value)
        self.valid_rows = self.rows if rows is None else rows
        self.valid_cols = self.cols if cols is None else cols

    def view(self) -> torch.Tensor:
        """Valid extent of the tile, ``[groups, valid_rows, valid_cols]``."""
        self._begin_read()
        return self.data[:, : self.valid_rows, : self.valid_cols]

    def accumulate_(self, delta: torch.Tensor) -> None:
        """Add ``delta`` into the valid extent (owner-exclusive update)."""
        self.data[:, : self.valid_rows, : self.valid_cols].add_(delta)

    def __repr__(self) -> str:
        return f"SharedTile({self.name!r}, {self.rows}x{self.cols}, private={self.private})"


class StagingArea:
    """Per-group on-chip memory partitioned into named tiles."""

    def __init__(self, groups: int, budget_bytes: int, *, dtype: torch.dtype, device: torch.device) -> None:
        self.groups = groups
        self.budget_bytes = budget_bytes
        self.dtype = dtype
        self.device = device
        self.tiles: Dict[str, SharedTile] = {}
        self.barriers = 0

    @property
    def used_bytes(self) -> int:
        return sum(tile.nbytes for tile in self.tiles.values())

    def allocate(self, name: str, rows: int, cols: int, *, private: bool = False) -> SharedTile:
        if name in self.tiles:
            raise ValueError(f"staging tile '{name}' already allocated")
        tile = SharedTile(name, self.groups, rows, cols, dtype=self.dtype, device=self.device, private=private)
        required = self.used_bytes + tile.nbytes
        if required > self.budget_bytes:
            raise ResourceExceeded(
                f"staging tile '{name}' ({rows}x{cols}) brings on-chip usage to {required} bytes, "
                f"budget is {self.budget_bytes} bytes",
                required_bytes=required,
                budget_bytes=self.budget_bytes,
            )
        self.tiles[name] = tile
        return tile

    def barrier(self) -> None:
        """Full-group barrier: publishes pending writes and retires reads."""
        for tile in self.tiles.values():
            tile._end_phase()
        self.barriers += 1


__all__ = ["SharedTile", "StagingArea"]
