"""Regular grid indexing and immutable raster layers.

All stages work on the same abstraction:

- ``Grid`` maps cells (row-major ids, row 0 is the northern-most row) to
  centre coordinates and back, and answers 8-neighbour queries. Columns wrap
  around when the grid spans the date line.
- ``Layer`` is a read-only float array aligned to a grid; NaN marks no data.
- ``TimeSeriesStack`` holds one layer per time step.
"""

import warnings
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Tuple

import numpy as np
import structlog

from .errors import DimensionMismatchError, InvalidConfigurationError

logger = structlog.get_logger()

# (row offset, column offset); rows grow southwards
NEIGHBOR_OFFSETS: Dict[str, Tuple[int, int]] = {
    "N": (-1, 0),
    "S": (1, 0),
    "E": (0, 1),
    "W": (0, -1),
    "NE": (-1, 1),
    "NW": (-1, -1),
    "SE": (1, 1),
    "SW": (1, -1),
}


@dataclass(frozen=True)
class Grid:
    """Regular grid geometry.

    ``xmin``/``ymax`` locate the outer north-west corner of the grid and
    ``res_x``/``res_y`` are the cell sizes in grid units (degrees for
    unprojected grids).
    """

    nrows: int
    ncols: int
    xmin: float = 0.0
    ymax: float = 0.0
    res_x: float = 1.0
    res_y: float = 1.0
    wrap: bool = False  # columns wrap across the date line

    def __post_init__(self):
        if self.nrows < 1 or self.ncols < 1:
            raise InvalidConfigurationError(
                f"Grid needs at least one row and column, got {self.nrows}x{self.ncols}"
            )
        if not (self.res_x > 0 and self.res_y > 0):
            raise InvalidConfigurationError(
                f"Grid resolution must be positive, got ({self.res_x}, {self.res_y})"
            )

    @classmethod
    def from_bounds(
        cls,
        xmin: float,
        xmax: float,
        ymin: float,
        ymax: float,
        nrows: int,
        ncols: int,
        wrap: bool = False,
    ) -> "Grid":
        """Build a grid from its outer extent."""
        return cls(
            nrows=nrows,
            ncols=ncols,
            xmin=xmin,
            ymax=ymax,
            res_x=(xmax - xmin) / ncols,
            res_y=(ymax - ymin) / nrows,
            wrap=wrap,
        )

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.nrows, self.ncols)

    @property
    def ncell(self) -> int:
        return self.nrows * self.ncols

    @property
    def xmax(self) -> float:
        return self.xmin + self.ncols * self.res_x

    @property
    def ymin(self) -> float:
        return self.ymax - self.nrows * self.res_y

    @property
    def x_centers(self) -> np.ndarray:
        """Centre x coordinate of every column."""
        return self.xmin + (np.arange(self.ncols) + 0.5) * self.res_x

    @property
    def y_centers(self) -> np.ndarray:
        """Centre y coordinate of every row."""
        return self.ymax - (np.arange(self.nrows) + 0.5) * self.res_y

    def wrapped(self, wrap: bool = True) -> "Grid":
        return replace(self, wrap=wrap)

    def matches(self, other: "Grid") -> bool:
        """True when both grids describe the same cells.

        Origins may differ by at most a millionth of a cell, whatever the
        magnitude of the coordinates.
        """
        return bool(
            self.shape == other.shape
            and self.wrap == other.wrap
            and np.isclose(self.res_x, other.res_x, rtol=1e-9, atol=0.0)
            and np.isclose(self.res_y, other.res_y, rtol=1e-9, atol=0.0)
            and abs(self.xmin - other.xmin) <= 1e-6 * self.res_x
            and abs(self.ymax - other.ymax) <= 1e-6 * self.res_y
        )

    # Index algebra

    def cell_from_rowcol(self, row, col):
        """Cell id for row/column pairs, -1 where outside the grid.

        Columns are taken modulo ``ncols`` on wrapping grids.
        """
        row = np.asarray(row, dtype=np.int64)
        col = np.asarray(col, dtype=np.int64)
        if self.wrap:
            col = np.mod(col, self.ncols)
        inside = (row >= 0) & (row < self.nrows) & (col >= 0) & (col < self.ncols)
        return np.where(inside, row * self.ncols + col, -1)

    def rowcol_from_cell(self, cell):
        cell = np.asarray(cell, dtype=np.int64)
        return cell // self.ncols, cell % self.ncols

    def xy_from_cell(self, cell):
        row, col = self.rowcol_from_cell(cell)
        return self.x_centers[col], self.y_centers[row]

    def wrap_x(self, x):
        """Fold x coordinates back into the extent on wrapping grids."""
        x = np.asarray(x, dtype=np.float64)
        if not self.wrap:
            return x
        return self.xmin + np.mod(x - self.xmin, self.ncols * self.res_x)

    def cell_from_xy(self, x, y):
        """Cell containing each point, -1 for points outside the grid."""
        x = self.wrap_x(x)
        y = np.asarray(y, dtype=np.float64)
        with np.errstate(invalid="ignore"):
            col = np.floor((x - self.xmin) / self.res_x)
            row = np.floor((self.ymax - y) / self.res_y)
        inside = (
            np.isfinite(col)
            & np.isfinite(row)
            & (row >= 0)
            & (row < self.nrows)
            & (col >= 0)
            & (col < self.ncols)
        )
        row = np.where(inside, row, 0).astype(np.int64)
        col = np.where(inside, col, 0).astype(np.int64)
        return np.where(inside, row * self.ncols + col, -1)

    def four_cells_from_xy(self, x, y) -> np.ndarray:
        """The four cells whose centres surround each point.

        Returns an ``(n, 4)`` array ordered NW, NE, SW, SE with -1 for members
        falling outside the grid. On wrapping grids a point east of the last
        column centre pairs the last column with column 0.
        """
        x = self.wrap_x(np.atleast_1d(x))
        y = np.asarray(np.atleast_1d(y), dtype=np.float64)
        west = np.floor((x - self.xmin) / self.res_x - 0.5).astype(np.int64)
        north = np.floor((self.ymax - y) / self.res_y - 0.5).astype(np.int64)
        east = west + 1
        south = north + 1
        return np.stack(
            [
                self.cell_from_rowcol(north, west),
                self.cell_from_rowcol(north, east),
                self.cell_from_rowcol(south, west),
                self.cell_from_rowcol(south, east),
            ],
            axis=1,
        )

    # Neighbourhoods

    def shift(self, values: np.ndarray, drow: int, dcol: int) -> np.ndarray:
        """Value of the neighbour at ``(drow, dcol)`` for every cell.

        Neighbours beyond the grid edge are NaN; on wrapping grids the
        columns roll over instead.
        """
        values = np.asarray(values, dtype=np.float64)
        if values.shape != self.shape:
            raise DimensionMismatchError(
                f"Array shape {values.shape} does not match grid {self.shape}"
            )
        out = np.full(self.shape, np.nan)
        if self.wrap and dcol:
            values = np.roll(values, -dcol, axis=1)
            dcol = 0

        nr, nc = self.shape
        dst_r = slice(max(0, -drow), nr - max(0, drow))
        src_r = slice(max(0, drow), nr + min(0, drow))
        dst_c = slice(max(0, -dcol), nc - max(0, dcol))
        src_c = slice(max(0, dcol), nc + min(0, dcol))
        out[dst_r, dst_c] = values[src_r, src_c]
        return out

    def neighborhood(self, values: np.ndarray) -> Dict[str, np.ndarray]:
        """All eight shifted copies of ``values`` keyed by compass direction."""
        return {
            name: self.shift(values, dr, dc)
            for name, (dr, dc) in NEIGHBOR_OFFSETS.items()
        }

    def neighbors(self, cell: int) -> List[int]:
        """Ids of the in-grid 8-neighbours of a cell."""
        row, col = self.rowcol_from_cell(cell)
        result = []
        for dr, dc in NEIGHBOR_OFFSETS.values():
            n = int(self.cell_from_rowcol(row + dr, col + dc))
            if n >= 0 and n != cell and n not in result:
                result.append(n)
        return result


@dataclass(frozen=True, eq=False)
class Layer:
    """Read-only scalar layer aligned to a grid; NaN is no data."""

    grid: Grid
    values: np.ndarray
    name: str = "layer"

    def __post_init__(self):
        values = np.array(self.values, dtype=np.float64)
        if values.shape != self.grid.shape:
            raise DimensionMismatchError(
                f"Layer '{self.name}' has shape {values.shape}, grid is {self.grid.shape}"
            )
        values.setflags(write=False)
        object.__setattr__(self, "values", values)

    @property
    def valid(self) -> np.ndarray:
        return ~np.isnan(self.values)

    @property
    def n_valid(self) -> int:
        return int(np.count_nonzero(self.valid))

    def at(self, cells) -> np.ndarray:
        """Values for cell ids; NaN for ids < 0."""
        cells = np.asarray(cells, dtype=np.int64)
        flat = self.values.ravel()
        return np.where(cells >= 0, flat[np.clip(cells, 0, None)], np.nan)


@dataclass(frozen=True, eq=False)
class TimeSeriesStack:
    """One layer per time step, shape ``(nt, nrows, ncols)``."""

    grid: Grid
    values: np.ndarray
    times: Optional[np.ndarray] = field(default=None)

    def __post_init__(self):
        values = np.array(self.values, dtype=np.float64)
        if values.ndim != 3 or values.shape[1:] != self.grid.shape:
            raise DimensionMismatchError(
                f"Time series shape {values.shape} does not match grid {self.grid.shape}"
            )
        times = self.times
        if times is None:
            times = np.arange(1, values.shape[0] + 1, dtype=np.float64)
        times = np.array(times, dtype=np.float64)
        if times.shape != (values.shape[0],):
            raise DimensionMismatchError(
                f"{times.size} time stamps for {values.shape[0]} layers"
            )
        values.setflags(write=False)
        times.setflags(write=False)
        object.__setattr__(self, "values", values)
        object.__setattr__(self, "times", times)

    @property
    def nt(self) -> int:
        return self.values.shape[0]

    def mean_layer(self, name: str = "mean") -> Layer:
        """Temporal mean of every cell ignoring missing samples."""
        with warnings.catch_warnings():
            # all-NaN cells stay NaN
            warnings.simplefilter("ignore", RuntimeWarning)
            mean = np.nanmean(self.values, axis=0)
        return Layer(self.grid, mean, name)


def check_aligned(*layers: Layer) -> Grid:
    """Return the shared grid or raise ``DimensionMismatchError``."""
    grid = layers[0].grid
    for layer in layers[1:]:
        if not grid.matches(layer.grid):
            logger.error(
                "Layer grids are not aligned",
                expected=grid.shape,
                layer=layer.name,
                got=layer.grid.shape,
            )
            raise DimensionMismatchError(
                f"Layer '{layer.name}' is not aligned with '{layers[0].name}'"
            )
    return grid
