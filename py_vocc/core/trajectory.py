"""
Climate velocity trajectories.

Particles are advected through the velocity field in annual steps: each step
reads the velocity at the particle's current cell and moves the particle by
that distance along the velocity bearing. A particle stops when its next
position falls outside the valid-data region (no data or off the grid).

Seeds are split into batches which are advected independently by a joblib
worker pool and concatenated back in seed order.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd
import structlog
from joblib import Parallel, delayed

from ..config import settings
from .errors import InvalidConfigurationError
from .gradient import EARTH_KM_PER_DEGREE
from .grid import Grid, Layer, check_aligned
from .velocity import VelocityField

logger = structlog.get_logger()


@dataclass(frozen=True, eq=False)
class Trajectory:
    """Visited positions of one particle, seed first."""

    traj_id: int
    points: np.ndarray  # (n_points, 2) x, y

    @property
    def n_steps(self) -> int:
        return len(self.points) - 1

    @property
    def end(self) -> np.ndarray:
        return self.points[-1]


def seed_points(layer: Layer, per_side: int = 1) -> np.ndarray:
    """
    Evenly spaced seeds inside every valid cell of ``layer``.

    Each valid cell is split into ``per_side`` x ``per_side`` sub-cells and a
    seed placed at every sub-cell centre, so ``per_side ** 2`` trajectories
    start from each cell.
    """
    if per_side < 1:
        raise InvalidConfigurationError(f"per_side must be positive, got {per_side}")

    grid = layer.grid
    cells = np.flatnonzero(layer.valid.ravel())
    row, col = grid.rowcol_from_cell(cells)
    frac = (np.arange(per_side) + 0.5) / per_side
    fx, fy = np.meshgrid(frac, frac)

    xs = (grid.xmin + col * grid.res_x)[:, None] + fx.ravel()[None, :] * grid.res_x
    ys = (grid.ymax - row * grid.res_y)[:, None] - fy.ravel()[None, :] * grid.res_y
    return np.column_stack([xs.ravel(), ys.ravel()])


def _advect_batch(
    seeds: np.ndarray,
    traj_ids: np.ndarray,
    grid: Grid,
    magnitude: np.ndarray,
    angle: np.ndarray,
    region: np.ndarray,
    years: int,
    projected: bool,
    correct: bool,
) -> List[Trajectory]:
    """Advect one batch of seeds; all arrays are flattened grid layers."""
    n = len(seeds)
    x = seeds[:, 0].astype(np.float64)
    y = seeds[:, 1].astype(np.float64)
    xs = np.full((years + 1, n), np.nan)
    ys = np.full((years + 1, n), np.nan)
    xs[0], ys[0] = x, y
    n_points = np.ones(n, dtype=np.int64)

    cells = grid.cell_from_xy(x, y)
    active = (cells >= 0) & region[np.clip(cells, 0, None)]

    for step in range(1, years + 1):
        idx = np.flatnonzero(active)
        if idx.size == 0:
            break

        here = cells[idx]
        speed = np.abs(magnitude[here])
        theta = np.radians(angle[here])
        east = speed * np.sin(theta)
        north = speed * np.cos(theta)

        with np.errstate(invalid="ignore", divide="ignore", over="ignore"):
            if projected:
                dx, dy = east, north
            else:
                dy = north / EARTH_KM_PER_DEGREE
                dx = east / (EARTH_KM_PER_DEGREE * np.cos(np.radians(y[idx])))
            nx = grid.wrap_x(x[idx] + dx)
            ny = y[idx] + dy

        target = grid.cell_from_xy(nx, ny)
        safe = np.clip(target, 0, None)
        inside = (target >= 0) & region[safe]

        stop = ~inside
        if correct:
            # Stop in a cell whose vector points back across the edge just crossed
            back = np.radians(angle[safe])
            opposing = east * np.sin(back) + north * np.cos(back) < 0
            cusp = inside & (target != here) & opposing & (magnitude[safe] != 0)
            stop = stop | cusp

        moved = idx[inside]
        x[moved] = nx[inside]
        y[moved] = ny[inside]
        xs[step, moved] = nx[inside]
        ys[step, moved] = ny[inside]
        n_points[moved] += 1
        cells[moved] = target[inside]
        active[idx[stop]] = False

    return [
        Trajectory(
            traj_id=int(traj_ids[i]),
            points=np.column_stack([xs[: n_points[i], i], ys[: n_points[i], i]]),
        )
        for i in range(n)
    ]


def integrate(
    seeds: Optional[np.ndarray],
    velocity: VelocityField,
    mean_state: Layer,
    years: int,
    correct_for_convergence: bool = False,
    *,
    projected: bool = False,
    traj_ids: Optional[Sequence[int]] = None,
    n_jobs: Optional[int] = None,
    batch_size: Optional[int] = None,
) -> List[Trajectory]:
    """
    Calculate climate velocity trajectories.

    Args:
        seeds: ``(n, 2)`` array of seed x/y coordinates, or None to start one
            trajectory from every valid cell centre
        velocity: Velocity field (km/yr, or grid units/yr when projected)
        mean_state: Mean climatic state; cells without it are outside the
            valid-data region
        years: Number of annual steps
        correct_for_convergence: Stop particles at cusps where adjacent
            velocity vectors point at each other
        projected: True for projected grids (no degree conversion)
        traj_ids: Identifier per seed, defaults to 1..n
        n_jobs: Worker processes, defaults to ``settings.n_jobs``
        batch_size: Seeds per worker task, defaults to ``settings.batch_size``

    Returns:
        One Trajectory per seed, in seed order
    """
    if years < 0:
        raise InvalidConfigurationError(f"years must be non-negative, got {years}")
    grid = check_aligned(velocity.magnitude, velocity.angle, mean_state)

    region = (velocity.valid & mean_state.valid).ravel()
    if seeds is None:
        cells = np.flatnonzero(region)
        seeds = np.column_stack(grid.xy_from_cell(cells))
    seeds = np.asarray(seeds, dtype=np.float64).reshape(-1, 2)

    if traj_ids is None:
        traj_ids = np.arange(1, len(seeds) + 1)
    traj_ids = np.asarray(traj_ids)
    if traj_ids.shape != (len(seeds),):
        raise InvalidConfigurationError(
            f"{traj_ids.size} trajectory ids for {len(seeds)} seeds"
        )

    n_jobs = settings.n_jobs if n_jobs is None else n_jobs
    batch_size = settings.batch_size if batch_size is None else batch_size
    if batch_size < 1:
        raise InvalidConfigurationError(f"batch_size must be positive, got {batch_size}")

    logger.info(
        "Integrating trajectories",
        seeds=len(seeds),
        years=years,
        correct=correct_for_convergence,
        n_jobs=n_jobs,
    )

    magnitude = velocity.magnitude.values.ravel()
    angle = velocity.angle.values.ravel()
    batches = [
        slice(start, start + batch_size) for start in range(0, len(seeds), batch_size)
    ]
    results = Parallel(n_jobs=n_jobs)(
        delayed(_advect_batch)(
            seeds[b],
            traj_ids[b],
            grid,
            magnitude,
            angle,
            region,
            years,
            projected,
            correct_for_convergence,
        )
        for b in batches
    )
    trajectories = [traj for batch in results for traj in batch]

    logger.info(
        "Trajectories integrated",
        trajectories=len(trajectories),
        outside_seeds=sum(1 for t in trajectories if t.n_steps == 0 and years > 0),
        completed=sum(1 for t in trajectories if t.n_steps == years),
    )
    return trajectories


def trajectories_to_frame(trajectories: Sequence[Trajectory]) -> pd.DataFrame:
    """Long table of trajectory points with columns x, y, traj_id, step."""
    if not trajectories:
        return pd.DataFrame(
            {
                "x": pd.Series(dtype=float),
                "y": pd.Series(dtype=float),
                "traj_id": pd.Series(dtype=int),
                "step": pd.Series(dtype=int),
            }
        )
    return pd.DataFrame(
        {
            "x": np.concatenate([t.points[:, 0] for t in trajectories]),
            "y": np.concatenate([t.points[:, 1] for t in trajectories]),
            "traj_id": np.concatenate(
                [np.full(len(t.points), t.traj_id) for t in trajectories]
            ),
            "step": np.concatenate([np.arange(len(t.points)) for t in trajectories]),
        }
    )
