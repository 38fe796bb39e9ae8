"""Tests for flashtile/kernels/staging.py - shared tiles and barrier protocol."""

import pytest
import torch

from flashtile.errors import ResourceExceeded, StagingProtocolError
from flashtile.kernels.staging import StagingArea


@pytest.fixture
def area():
    return StagingArea(groups=2, budget_bytes=4096, dtype=torch.float32, device=torch.device("cpu"))


class TestAllocation:
    def test_named_tiles_are_disjoint(self, area):
        a = area.allocate("a", 4, 8)
        b = area.allocate("b", 4, 8)
        a.fill_(1.0)
        b.fill_(2.0)
        area.barrier()
        assert torch.all(a.view() == 1.0)
        assert torch.all(b.view() == 2.0)
        assert a.data.data_ptr() != b.data.data_ptr()

    def test_used_bytes_is_per_group(self, area):
        area.allocate("a", 4, 8)
        area.allocate("s", 4, 4, private=True)
        assert area.used_bytes == (32 + 16) * 4

    def test_over_budget_raises(self, area):
        area.allocate("a", 16, 32)  # 2048 bytes
        with pytest.raises(ResourceExceeded) as excinfo:
            area.allocate("b", 16, 33)
        assert excinfo.value.budget_bytes == 4096
        assert "b" not in area.tiles

    def test_duplicate_name(self, area):
        area.allocate("a", 2, 2)
        with pytest.raises(ValueError):
            area.allocate("a", 2, 2)


class TestBarrierProtocol:
    def test_read_before_barrier_raises(self, area):
        tile = area.allocate("k", 4, 3)
        tile.stage(torch.randn(2, 4, 3))
        with pytest.raises(StagingProtocolError):
            tile.view()

    def test_overwrite_before_barrier_raises(self, area):
        tile = area.allocate("k", 4, 3)
        tile.stage(torch.randn(2, 4, 3))
        area.barrier()
        tile.view()
        with pytest.raises(StagingProtocolError):
            tile.stage(torch.randn(2, 4, 3))

    def test_write_barrier_read_barrier_write(self, area):
        tile = area.allocate("k", 4, 3)
        first = torch.randn(2, 4, 3)
        second = torch.randn(2, 4, 3)
        tile.stage(first)
        area.barrier()
        assert torch.equal(tile.view(), first)
        area.barrier()
        tile.stage(second)
        area.barrier()
        assert torch.equal(tile.view(), second)
        assert area.barriers == 3

    def test_repeated_reads_within_phase(self, area):
        tile = area.allocate("k", 4, 3)
        tile.stage(torch.ones(2, 4, 3))
        area.barrier()
        tile.view()
        tile.view()

    def test_private_tiles_skip_protocol(self, area):
        scratch = area.allocate("scores", 4, 4, private=True)
        scratch.stage(torch.ones(2, 4, 4))
        scratch.view().mul_(3.0)
        scratch.stage(scratch.view() + 1.0)
        assert torch.all(scratch.view() == 4.0)


class TestRaggedTiles:
    def test_partial_stage_leaves_tail_untouched(self, area):
        tile = area.allocate("k", 4, 3)
        tile.fill_(float("nan"))
        area.barrier()
        tile.stage(torch.ones(2, 2, 3))
        area.barrier()
        view = tile.view()
        assert view.shape == (2, 2, 3)
        assert torch.all(view == 1.0)
        assert torch.isnan(tile.data[:, 2:]).all()

    def test_stage_larger_than_tile(self, area):
        tile = area.allocate("k", 4, 3)
        with pytest.raises(ValueError):
            tile.stage(torch.ones(2, 5, 3))

    def test_accumulate_into_valid_extent(self, area):
        acc = area.allocate("dk", 4, 3, private=True)
        acc.fill_(0.0, rows=2)
        acc.accumulate_(torch.ones(2, 2, 3))
        acc.accumulate_(torch.ones(2, 2, 3))
        assert torch.all(acc.view() == 2.0)
        assert torch.all(acc.data[:, 2:] == 0.0)
