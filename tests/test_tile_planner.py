"""Tests for flashtile/kernels/tile_planner.py - tile size selection."""

import pytest

from flashtile.errors import ResourceExceeded
from flashtile.kernels.device import DeviceLimits
from flashtile.kernels.tile_planner import (
    BACKWARD_TILE_WIDTH,
    TilePlan,
    backward_footprint,
    forward_footprint,
    plan_backward_tiles,
    plan_forward_tiles,
    validate_backward_plan,
    validate_forward_plan,
)


class TestTilePlan:
    def test_counts_round_up(self):
        plan = TilePlan.for_sizes(70, 32, 32)
        assert plan.num_row_tiles == 3
        assert plan.num_col_tiles == 3

    def test_exact_multiple(self):
        plan = TilePlan.for_sizes(64, 16, 32)
        assert (plan.num_row_tiles, plan.num_col_tiles) == (4, 2)

    @pytest.mark.parametrize("rows,cols", [(0, 8), (8, 0), (-1, 4)])
    def test_zero_width_is_precondition_violation(self, rows, cols):
        with pytest.raises(ValueError):
            TilePlan.for_sizes(16, rows, cols)

    def test_empty_sequence_rejected(self):
        with pytest.raises(ValueError):
            TilePlan.for_sizes(0, 8, 8)


class TestFootprints:
    def test_forward_footprint(self):
        # Q_i + K_j + V_j + scores
        assert forward_footprint(2, 3, 4, 4) == (2 * 4 + 2 * 3 * 4 + 2 * 3) * 4

    def test_backward_footprint(self):
        # 3 row operands, 4 column operands, 2 score tiles
        assert backward_footprint(2, 3, 4, 8) == (3 * 2 * 4 + 4 * 3 * 4 + 2 * 2 * 3) * 8


class TestPlanForward:
    def test_square_tiles_from_budget(self):
        plan = plan_forward_tiles(256, 64, 4, DeviceLimits(sram_bytes=49_152))
        # 12288 elements / (4 * 64) = 48, Br = min(48, 64)
        assert plan.block_cols == 48
        assert plan.block_rows == 48
        assert plan.num_col_tiles == 6
        assert plan.num_row_tiles == 6

    def test_asymmetric_tiles_for_small_head_dim(self):
        plan = plan_forward_tiles(256, 16, 4, DeviceLimits(sram_bytes=49_152))
        assert plan.block_cols == 192
        assert plan.block_rows == 16
        assert plan.num_col_tiles == 2
        assert plan.num_row_tiles == 16

    def test_plan_fits_budget(self):
        limits = DeviceLimits(sram_bytes=30_000)
        for head_dim in (1, 7, 16, 64, 128):
            plan = plan_forward_tiles(500, head_dim, 4, limits)
            assert forward_footprint(plan.block_rows, plan.block_cols, head_dim, 4) <= limits.sram_bytes

    def test_clamped_to_sequence_length(self):
        plan = plan_forward_tiles(10, 16, 4, DeviceLimits(sram_bytes=49_152))
        assert plan.block_cols == 10
        assert plan.block_rows == 10
        assert plan.num_col_tiles == plan.num_row_tiles == 1

    def test_clamped_to_group_width(self):
        plan = plan_forward_tiles(100, 16, 4, DeviceLimits(sram_bytes=49_152, max_group_width=8))
        assert plan.block_cols == 8
        assert plan.block_rows == 8

    def test_budget_too_small_raises(self):
        with pytest.raises(ResourceExceeded) as excinfo:
            plan_forward_tiles(64, 64, 4, DeviceLimits(sram_bytes=100))
        assert excinfo.value.budget_bytes == 100
        assert excinfo.value.required_bytes > 100

    def test_invalid_sizes(self):
        with pytest.raises(ValueError):
            plan_forward_tiles(0, 16, 4, DeviceLimits())
        with pytest.raises(ValueError):
            plan_forward_tiles(16, 0, 4, DeviceLimits())


class TestPlanBackward:
    def test_fixed_width(self):
        plan = plan_backward_tiles(100, 16, 4, DeviceLimits())
        assert plan.block_rows == plan.block_cols == BACKWARD_TILE_WIDTH
        assert plan.num_col_tiles == 4

    def test_bounded_by_group_width_and_sequence(self):
        assert plan_backward_tiles(100, 16, 4, DeviceLimits(max_group_width=8)).block_cols == 8
        assert plan_backward_tiles(5, 16, 4, DeviceLimits()).block_cols == 5

    def test_budget_exceeded_is_not_clamped(self):
        with pytest.raises(ResourceExceeded):
            plan_backward_tiles(256, 128, 8, DeviceLimits(sram_bytes=163_840))


class TestValidatePlans:
    def test_forward_plan_over_budget(self):
        plan = TilePlan.for_sizes(256, 128, 128)
        with pytest.raises(ResourceExceeded):
            validate_forward_plan(plan, 256, 64, 4, DeviceLimits(sram_bytes=49_152))

    def test_forward_plan_over_group_width(self):
        plan = TilePlan.for_sizes(256, 4, 64)
        with pytest.raises(ResourceExceeded):
            validate_forward_plan(plan, 256, 8, 4, DeviceLimits(max_group_width=32))

    def test_backward_plan_within_limits(self):
        plan = TilePlan.for_sizes(70, 16, 8)
        validate_backward_plan(plan, 70, 8, 8, DeviceLimits())

    def test_plan_for_shorter_sequence_rejected(self):
        plan = TilePlan.for_sizes(10, 4, 4)
        with pytest.raises(ValueError, match="seq_len=70"):
            validate_forward_plan(plan, 70, 8, 8, DeviceLimits())

    def test_plan_for_longer_sequence_rejected(self):
        plan = TilePlan.for_sizes(100, 8, 8)
        with pytest.raises(ValueError, match="seq_len=20"):
            validate_backward_plan(plan, 20, 8, 8, DeviceLimits())

    def test_plan_with_same_tile_counts_accepted(self):
        # 69 and 70 positions both need three 32-wide tiles.
        validate_forward_plan(TilePlan.for_sizes(69, 32, 32), 70, 8, 8, DeviceLimits())
