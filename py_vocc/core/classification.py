"""
Trajectory-based classification of climate velocity flow topology.

Hierarchical classification after Burrows et al. (2014). Cells are first
split by the distance their velocity covers over the projection period
(non-moving, slow-moving, fast-moving). Two kinds of climate sink are then
detected: internal sinks, 2x2 blocks whose velocity bearings all point at
the shared corner, and boundary sinks, cells next to no data that have no
neighbour offering an escape in the direction of change. The remaining cells
are labelled from the proportions of trajectories starting in, ending in and
flowing through them.
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Dict, Mapping, Sequence, Tuple, Union

import numpy as np
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from ..config import settings
from .errors import InvalidConfigurationError
from .grid import NEIGHBOR_OFFSETS, Grid, Layer, check_aligned
from .trajectory import Trajectory
from .velocity import VelocityField

logger = structlog.get_logger()


class FlowClass(IntEnum):
    """Final trajectory classes (``TrajClas``)."""

    NON_MOVING = 1
    SLOW_MOVING = 2
    INTERNAL_SINK = 3
    BOUNDARY_SINK = 4
    SOURCE = 5
    RELATIVE_SINK = 6
    CORRIDOR = 7
    DIVERGENCE = 8
    CONVERGENCE = 9


class MovementClass(IntEnum):
    """Classes by distance covered over the period (``ClassL``)."""

    NON_MOVING = 1
    SLOW_MOVING = 2
    FAST_MOVING = 3


# (r1, r2) per block member: inward when (angle - r1) * (r2 - angle) > 0
INWARD_BEARINGS = np.array(
    [
        [180.0, 90.0],  # NW member points south-east
        [270.0, 180.0],  # NE member points south-west
        [90.0, 0.0],  # SW member points north-east
        [360.0, 270.0],  # SE member points north-west
    ]
)


class ClassificationConfig(BaseModel):
    """Thresholds of the trajectory classification."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    trajectories_per_seed: float = Field(
        ..., gt=0, description="Trajectories starting from each cell"
    )
    years: int = Field(..., gt=0, description="Length of the projection period")
    non_moving_distance: float = Field(
        ..., ge=0, description="Distance over the period up to which a cell is non-moving"
    )
    slow_moving_distance: float = Field(
        ..., ge=0, description="Distance over the period up to which a cell is slow-moving"
    )
    ending_percent: float = Field(
        ..., ge=0, le=100, description="Percentage of trajectories ending (relative sinks)"
    )
    starting_percent: float = Field(
        ..., ge=0, le=100, description="Percentage of trajectories starting (relative sinks)"
    )
    through_flow_percent: float = Field(
        ..., ge=0, le=100, description="Percentage of trajectories flowing through (corridors)"
    )
    date_line_crossing: bool = Field(
        default=False, description="Grid columns wrap across the date line"
    )
    sink_offset: float = Field(
        default_factory=lambda: settings.sink_offset,
        gt=0,
        lt=0.5,
        description="Fraction of a cell used to locate internal sink blocks",
    )

    @model_validator(mode="after")
    def _check_distances(self):
        if self.slow_moving_distance < self.non_moving_distance:
            raise ValueError(
                "slow_moving_distance must not be smaller than non_moving_distance"
            )
        return self


@dataclass(frozen=True, eq=False)
class CellStatistics:
    """Per-cell inputs of the classification rules; NaN/False outside ``valid``."""

    valid: np.ndarray
    traj_start: np.ndarray
    traj_end: np.ndarray
    traj_through: np.ndarray
    prop_start: np.ndarray
    prop_end: np.ndarray
    prop_through: np.ndarray
    movement: np.ndarray
    internal_sink: np.ndarray
    boundary_sink: np.ndarray


Rule = Callable[[CellStatistics, ClassificationConfig], np.ndarray]


def _non_moving(s: CellStatistics, c: ClassificationConfig) -> np.ndarray:
    return s.movement == MovementClass.NON_MOVING


def _slow_moving(s: CellStatistics, c: ClassificationConfig) -> np.ndarray:
    return s.movement == MovementClass.SLOW_MOVING


def _internal_sink(s: CellStatistics, c: ClassificationConfig) -> np.ndarray:
    return s.internal_sink


def _boundary_sink(s: CellStatistics, c: ClassificationConfig) -> np.ndarray:
    return s.boundary_sink


def _source(s: CellStatistics, c: ClassificationConfig) -> np.ndarray:
    return s.prop_end == 0


def _relative_sink(s: CellStatistics, c: ClassificationConfig) -> np.ndarray:
    return (s.prop_end > c.ending_percent) & (s.prop_start < c.starting_percent)


def _corridor(s: CellStatistics, c: ClassificationConfig) -> np.ndarray:
    return s.prop_through > c.through_flow_percent


def _divergence(s: CellStatistics, c: ClassificationConfig) -> np.ndarray:
    return s.prop_end < s.prop_start


def _convergence(s: CellStatistics, c: ClassificationConfig) -> np.ndarray:
    return np.ones_like(s.valid, dtype=bool)


# First match wins
CLASSIFICATION_RULES: Tuple[Tuple[FlowClass, Rule], ...] = (
    (FlowClass.NON_MOVING, _non_moving),
    (FlowClass.SLOW_MOVING, _slow_moving),
    (FlowClass.INTERNAL_SINK, _internal_sink),
    (FlowClass.BOUNDARY_SINK, _boundary_sink),
    (FlowClass.SOURCE, _source),
    (FlowClass.RELATIVE_SINK, _relative_sink),
    (FlowClass.CORRIDOR, _corridor),
    (FlowClass.DIVERGENCE, _divergence),
    (FlowClass.CONVERGENCE, _convergence),
)


@dataclass(frozen=True, eq=False)
class Classification:
    """Classification layer together with the statistics behind it."""

    grid: Grid
    stats: CellStatistics
    classes: np.ndarray

    def layers(self) -> Dict[str, np.ndarray]:
        valid = self.stats.valid
        return {
            "PropEnd": self.stats.prop_end,
            "PropFT": self.stats.prop_through,
            "PropSt": self.stats.prop_start,
            "ClassL": self.stats.movement,
            "IntS": np.where(valid, self.stats.internal_sink, np.nan),
            "BounS": np.where(valid, self.stats.boundary_sink, np.nan),
            "TrajClas": self.classes,
        }

    def class_counts(self) -> Dict[FlowClass, int]:
        return {fc: int((self.classes == fc).sum()) for fc in FlowClass}


def movement_classes(
    magnitude: np.ndarray, years: int, non_moving: float, slow_moving: float
) -> np.ndarray:
    """Movement class from the distance ``|v| * years``; NaN where undefined."""
    distance = np.abs(magnitude) * years
    movement = np.where(
        distance <= non_moving,
        MovementClass.NON_MOVING,
        np.where(distance <= slow_moving, MovementClass.SLOW_MOVING, MovementClass.FAST_MOVING),
    ).astype(np.float64)
    return np.where(np.isnan(magnitude), np.nan, movement)


def internal_sinks(angle: Layer, offset: float = 0.1) -> np.ndarray:
    """
    Flag the members of every 2x2 block whose bearings all point inwards.

    Each cell centre is moved ``offset`` cells north-east and the four cells
    surrounding that point form the block tested, so every cell anchors the
    block in which it is the south-west member. Blocks run across the date
    line when the angle layer's grid wraps.
    """
    grid = angle.grid
    x, y = grid.xy_from_cell(np.arange(grid.ncell))
    blocks = grid.four_cells_from_xy(x + offset * grid.res_x, y + offset * grid.res_y)
    bearings = angle.at(blocks)

    with np.errstate(invalid="ignore"):
        inward = (bearings - INWARD_BEARINGS[:, 0]) * (INWARD_BEARINGS[:, 1] - bearings) > 0
    sinks = inward.all(axis=1)

    flags = np.zeros(grid.ncell, dtype=bool)
    flags[np.unique(blocks[sinks])] = True
    return flags.reshape(grid.shape)


def boundary_sinks(velocity: Layer, mean_state: Layer) -> np.ndarray:
    """
    Flag boundary cells that offer no escape in the direction of change.

    Boundary cells are valid cells with at least one no-data 8-neighbour in
    the grid. A warming cell is a sink when no neighbour is cooler, a cooling
    cell when no neighbour is warmer. Neighbours without a mean state are
    ignored and cells with zero velocity are never sinks.
    """
    grid = velocity.grid
    mag = velocity.values
    valid = ~np.isnan(mag)

    missing = np.where(valid, 0.0, 1.0)
    boundary = valid & np.any(
        [grid.shift(missing, dr, dc) == 1.0 for dr, dc in NEIGHBOR_OFFSETS.values()], axis=0
    )

    mn = mean_state.values
    around = np.stack(list(grid.neighborhood(mn).values()))
    unknown = np.isnan(around)
    with np.errstate(invalid="ignore"):
        no_cooler = np.all(unknown | (around >= mn), axis=0)
        no_warmer = np.all(unknown | (around <= mn), axis=0)
        trapped = np.where(mag > 0, no_cooler, no_warmer)

    return boundary & ~np.isnan(mn) & (mag != 0) & trapped


def trajectory_counts(
    trajectories: Sequence[Trajectory], grid: Grid
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Count trajectories ending in and touching every cell.

    Returns:
        (ending, touching) arrays shaped like the grid
    """
    ending = np.zeros(grid.ncell, dtype=np.int64)
    touching = np.zeros(grid.ncell, dtype=np.int64)
    if not trajectories:
        return ending.reshape(grid.shape), touching.reshape(grid.shape)

    last = np.array([t.end for t in trajectories])
    end_cells = grid.cell_from_xy(last[:, 0], last[:, 1])
    ending += np.bincount(end_cells[end_cells >= 0], minlength=grid.ncell)

    points = np.concatenate([t.points for t in trajectories])
    owner = np.repeat(np.arange(len(trajectories)), [len(t.points) for t in trajectories])
    cells = grid.cell_from_xy(points[:, 0], points[:, 1])
    keep = cells >= 0
    visits = np.unique(owner[keep] * grid.ncell + cells[keep])
    touching += np.bincount(visits % grid.ncell, minlength=grid.ncell)

    return ending.reshape(grid.shape), touching.reshape(grid.shape)


def apply_rules(stats: CellStatistics, config: ClassificationConfig) -> np.ndarray:
    """Label every valid cell with the first matching rule; NaN elsewhere."""
    classes = np.full(stats.valid.shape, np.nan)
    pending = stats.valid.copy()
    for flow_class, rule in CLASSIFICATION_RULES:
        hit = pending & rule(stats, config)
        classes[hit] = flow_class
        pending &= ~hit
    return classes


def classify(
    trajectories: Sequence[Trajectory],
    velocity: VelocityField,
    mean_state: Layer,
    config: Union[ClassificationConfig, Mapping],
) -> Classification:
    """
    Classify cells by their role in the trajectory flow.

    Args:
        trajectories: Output of ``integrate`` for the same velocity field
        velocity: Velocity magnitude and bearing
        mean_state: Mean climatic state for the period
        config: Thresholds; a mapping is validated into ClassificationConfig
            and raises InvalidConfigurationError when invalid

    Returns:
        Classification with the ``TrajClas`` labels and intermediate layers
    """
    if not isinstance(config, ClassificationConfig):
        try:
            config = ClassificationConfig(**config)
        except ValidationError as exc:
            logger.error("Invalid classification config", errors=exc.error_count())
            raise InvalidConfigurationError(str(exc)) from exc
    grid = check_aligned(velocity.magnitude, velocity.angle, mean_state)
    if config.date_line_crossing and not grid.wrap:
        grid = grid.wrapped()

    logger.info(
        "Classifying trajectories",
        trajectories=len(trajectories),
        years=config.years,
        date_line=grid.wrap,
    )

    valid = velocity.valid
    magnitude = velocity.magnitude.values

    ending, touching = trajectory_counts(trajectories, grid)
    start = np.where(valid, float(config.trajectories_per_seed), np.nan)
    end = np.where(valid, ending, np.nan)
    # seed cells that are also end cells would otherwise go negative
    through = np.where(valid, np.maximum(touching - ending - start, 0.0), np.nan)
    total = start + through + end

    angle = Layer(grid, velocity.angle.values, velocity.angle.name)
    mag = Layer(grid, magnitude, velocity.magnitude.name)
    mean = Layer(grid, mean_state.values, mean_state.name)

    stats = CellStatistics(
        valid=valid,
        traj_start=start,
        traj_end=end,
        traj_through=through,
        prop_start=start / total * 100.0,
        prop_end=end / total * 100.0,
        prop_through=through / total * 100.0,
        movement=movement_classes(
            magnitude, config.years, config.non_moving_distance, config.slow_moving_distance
        ),
        internal_sink=internal_sinks(angle, config.sink_offset) & valid,
        boundary_sink=boundary_sinks(mag, mean) & valid,
    )
    classes = apply_rules(stats, config)
    result = Classification(grid=grid, stats=stats, classes=classes)

    logger.info(
        "Trajectory classification completed",
        internal_sink_cells=int(stats.internal_sink.sum()),
        boundary_sink_cells=int(stats.boundary_sink.sum()),
        classes={fc.name: n for fc, n in result.class_counts().items() if n},
    )
    return result
