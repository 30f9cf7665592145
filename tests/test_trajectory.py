"""Tests for trajectory integration."""

import pytest
import numpy as np
from py_vocc.core.errors import DimensionMismatchError, InvalidConfigurationError
from py_vocc.core.gradient import EARTH_KM_PER_DEGREE
from py_vocc.core.grid import Grid, Layer
from py_vocc.core.trajectory import (
    integrate,
    seed_points,
    trajectories_to_frame,
)
from py_vocc.core.velocity import VelocityField


def uniform_field(grid, magnitude, angle):
    """Velocity field with the same magnitude and bearing everywhere."""
    return VelocityField(
        magnitude=Layer(grid, np.full(grid.shape, magnitude), "voccMag"),
        angle=Layer(grid, np.full(grid.shape, angle), "voccAng"),
    )


def zeros(grid):
    return Layer(grid, np.zeros(grid.shape), "mean")


class TestAdvection:
    """Test particle displacement through the velocity field."""

    @pytest.fixture
    def grid(self):
        """5x5 projected grid of unit cells, north-west corner at (0, 5)."""
        return Grid(5, 5, xmin=0.0, ymax=5.0)

    def test_eastward_steps(self, grid):
        trajs = integrate([[0.5, 2.5]], uniform_field(grid, 1.0, 90.0), zeros(grid), 3, projected=True)
        assert len(trajs) == 1
        np.testing.assert_allclose(trajs[0].points[:, 0], [0.5, 1.5, 2.5, 3.5])
        np.testing.assert_allclose(trajs[0].points[:, 1], 2.5)
        assert trajs[0].n_steps == 3

    def test_northward_steps(self, grid):
        trajs = integrate([[2.5, 0.5]], uniform_field(grid, 2.0, 0.0), zeros(grid), 2, projected=True)
        np.testing.assert_allclose(trajs[0].points[:, 1], [0.5, 2.5, 4.5])

    def test_negative_magnitude_uses_bearing(self, grid):
        trajs = integrate([[0.5, 2.5]], uniform_field(grid, -1.0, 90.0), zeros(grid), 2, projected=True)
        np.testing.assert_allclose(trajs[0].end, [2.5, 2.5])

    def test_stops_at_grid_edge(self, grid):
        trajs = integrate([[0.5, 2.5]], uniform_field(grid, 1.0, 90.0), zeros(grid), 10, projected=True)
        np.testing.assert_allclose(trajs[0].points[:, 0], [0.5, 1.5, 2.5, 3.5, 4.5])

    def test_stops_before_no_data(self, grid):
        mag = np.ones(grid.shape)
        mag[:, 3] = np.nan
        ang = np.where(np.isnan(mag), np.nan, 90.0)
        field = VelocityField(Layer(grid, mag), Layer(grid, ang))
        trajs = integrate([[0.5, 2.5]], field, zeros(grid), 10, projected=True)
        np.testing.assert_allclose(trajs[0].end, [2.5, 2.5])

    def test_missing_mean_state_ends_domain(self, grid):
        mean = np.zeros(grid.shape)
        mean[:, 2] = np.nan
        trajs = integrate(
            [[0.5, 2.5]], uniform_field(grid, 1.0, 90.0), Layer(grid, mean), 10, projected=True
        )
        np.testing.assert_allclose(trajs[0].end, [1.5, 2.5])

    def test_zero_velocity_stays_in_seed_cell(self, grid):
        trajs = integrate([[1.3, 3.7]], uniform_field(grid, 0.0, 45.0), zeros(grid), 5, projected=True)
        points = trajs[0].points
        assert len(points) == 6
        np.testing.assert_allclose(points, [[1.3, 3.7]] * 6)
        cells = grid.cell_from_xy(points[:, 0], points[:, 1])
        assert np.all(cells == cells[0])

    def test_seed_outside_domain(self, grid):
        mag = np.ones(grid.shape)
        mag[0, 0] = np.nan
        field = VelocityField(Layer(grid, mag), Layer(grid, np.where(np.isnan(mag), np.nan, 90.0)))
        trajs = integrate([[0.5, 4.5], [12.0, 2.0], [1.5, 4.5]], field, zeros(grid), 2, projected=True)
        assert trajs[0].n_steps == 0
        assert trajs[1].n_steps == 0
        np.testing.assert_allclose(trajs[1].points, [[12.0, 2.0]])
        assert trajs[2].n_steps == 2

    def test_zero_years(self, grid):
        trajs = integrate([[0.5, 2.5]], uniform_field(grid, 1.0, 90.0), zeros(grid), 0, projected=True)
        assert trajs[0].n_steps == 0


class TestGeographicAdvection:
    """Test latitude-corrected displacement on unprojected grids."""

    @pytest.fixture
    def grid(self):
        """Rows centred on 1N, 0 and 1S."""
        return Grid(3, 4, xmin=0.0, ymax=1.5)

    def test_one_degree_east_at_equator(self, grid):
        field = uniform_field(grid, EARTH_KM_PER_DEGREE, 90.0)
        trajs = integrate([[0.5, 0.0]], field, zeros(grid), 1)
        np.testing.assert_allclose(trajs[0].end, [1.5, 0.0], atol=1e-12)

    def test_one_degree_north(self, grid):
        field = uniform_field(grid, EARTH_KM_PER_DEGREE, 0.0)
        trajs = integrate([[0.5, -1.0]], field, zeros(grid), 1)
        np.testing.assert_allclose(trajs[0].end, [0.5, 0.0], atol=1e-12)

    def test_longitude_step_grows_with_latitude(self):
        grid = Grid(2, 20, xmin=0.0, ymax=61.0)
        field = uniform_field(grid, 10.0, 90.0)
        trajs = integrate([[0.5, 60.0]], field, zeros(grid), 1)
        expected = 10.0 / (EARTH_KM_PER_DEGREE * np.cos(np.radians(60.0)))
        assert trajs[0].end[0] - 0.5 == pytest.approx(expected)

    def test_wraps_across_date_line(self):
        grid = Grid(1, 4, xmin=-180.0, ymax=45.0, res_x=90.0, res_y=90.0, wrap=True)
        field = uniform_field(grid, 90.0, 90.0)
        trajs = integrate([[135.0, 0.0]], field, zeros(grid), 1, projected=True)
        np.testing.assert_allclose(trajs[0].end, [-135.0, 0.0], atol=1e-9)


class TestConvergenceCorrection:
    """Test the cusp correction for opposing vectors."""

    @pytest.fixture
    def cusp_field(self):
        """One row: eastward vectors in the west half, westward in the east half."""
        grid = Grid(1, 4, xmin=0.0, ymax=1.0)
        ang = np.array([[90.0, 90.0, 270.0, 270.0]])
        return grid, VelocityField(Layer(grid, np.ones(grid.shape)), Layer(grid, ang))

    def test_ping_pong_without_correction(self, cusp_field):
        grid, field = cusp_field
        trajs = integrate([[1.5, 0.5]], field, zeros(grid), 4, projected=True)
        np.testing.assert_allclose(trajs[0].points[:, 0], [1.5, 2.5, 1.5, 2.5, 1.5])

    def test_stops_at_cusp(self, cusp_field):
        grid, field = cusp_field
        trajs = integrate(
            [[1.5, 0.5]], field, zeros(grid), 4, correct_for_convergence=True, projected=True
        )
        np.testing.assert_allclose(trajs[0].points[:, 0], [1.5, 2.5])

    def test_correction_keeps_free_flow(self):
        grid = Grid(1, 4, xmin=0.0, ymax=1.0)
        field = uniform_field(grid, 1.0, 90.0)
        trajs = integrate(
            [[0.5, 0.5]], field, zeros(grid), 3, correct_for_convergence=True, projected=True
        )
        assert trajs[0].n_steps == 3


class TestSeedsAndBatches:
    """Test seeding, identifiers and the worker pool."""

    @pytest.fixture
    def grid(self):
        return Grid(4, 4, xmin=0.0, ymax=4.0)

    def test_seed_points_per_cell(self, grid):
        values = np.ones(grid.shape)
        values[0, 0] = np.nan
        seeds = seed_points(Layer(grid, values), per_side=2)
        assert seeds.shape == (15 * 4, 2)
        cells = grid.cell_from_xy(seeds[:, 0], seeds[:, 1])
        counts = np.bincount(cells, minlength=grid.ncell)
        assert counts[0] == 0
        assert np.all(counts[1:] == 4)

    def test_seed_points_centres(self):
        grid = Grid(1, 1, xmin=0.0, ymax=1.0)
        seeds = seed_points(Layer(grid, [[1.0]]), per_side=1)
        np.testing.assert_allclose(seeds, [[0.5, 0.5]])

    def test_invalid_per_side(self, grid):
        with pytest.raises(InvalidConfigurationError):
            seed_points(zeros(grid), per_side=0)

    def test_default_seeds_every_valid_cell(self, grid):
        mag = np.zeros(grid.shape)
        mag[1, 1] = np.nan
        field = VelocityField(Layer(grid, mag), Layer(grid, np.where(np.isnan(mag), np.nan, 0.0)))
        trajs = integrate(None, field, zeros(grid), 2, projected=True)
        assert len(trajs) == 15
        assert [t.traj_id for t in trajs] == list(range(1, 16))

    def test_custom_ids(self, grid):
        trajs = integrate(
            [[0.5, 0.5], [1.5, 1.5]],
            uniform_field(grid, 0.0, 0.0),
            zeros(grid),
            1,
            traj_ids=[10, 20],
            projected=True,
        )
        assert [t.traj_id for t in trajs] == [10, 20]

    def test_id_count_mismatch(self, grid):
        with pytest.raises(InvalidConfigurationError):
            integrate([[0.5, 0.5]], uniform_field(grid, 0.0, 0.0), zeros(grid), 1, traj_ids=[1, 2])

    def test_batches_match_single_batch(self, grid):
        field = uniform_field(grid, 0.7, 135.0)
        seeds = seed_points(zeros(grid), per_side=2)
        single = integrate(seeds, field, zeros(grid), 4, projected=True, n_jobs=1, batch_size=1000)
        pooled = integrate(seeds, field, zeros(grid), 4, projected=True, n_jobs=2, batch_size=7)

        assert [t.traj_id for t in pooled] == [t.traj_id for t in single]
        for a, b in zip(single, pooled):
            np.testing.assert_allclose(a.points, b.points)

    def test_negative_years(self, grid):
        with pytest.raises(InvalidConfigurationError):
            integrate(None, uniform_field(grid, 1.0, 0.0), zeros(grid), -1)

    def test_misaligned_mean_state(self, grid):
        with pytest.raises(DimensionMismatchError):
            integrate(None, uniform_field(grid, 1.0, 0.0), zeros(Grid(3, 3)), 1)


class TestTrajectoryFrame:
    """Test the long-table export."""

    def test_columns_and_rows(self):
        grid = Grid(1, 4, xmin=0.0, ymax=1.0)
        trajs = integrate(
            [[0.5, 0.5], [3.5, 0.5]], uniform_field(grid, 1.0, 90.0), zeros(grid), 2, projected=True
        )
        frame = trajectories_to_frame(trajs)
        assert list(frame.columns) == ["x", "y", "traj_id", "step"]
        assert len(frame) == 3 + 1
        assert frame[frame.traj_id == 1].step.tolist() == [0, 1, 2]

    def test_empty(self):
        frame = trajectories_to_frame([])
        assert list(frame.columns) == ["x", "y", "traj_id", "step"]
        assert len(frame) == 0
