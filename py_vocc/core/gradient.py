"""
Local spatial gradients of a climatic variable.

Each valid cell gets a gradient vector estimated from its 8 neighbours
after Burrows et al. (2011): six west-east and six south-north finite
differences, weighted 1-2-1 per axis, are converted to a magnitude and a
compass bearing (0 = north, 90 = east) pointing towards increasing values.
"""

from dataclasses import dataclass
from typing import Dict, Union

import numpy as np
import structlog

from .grid import Layer, TimeSeriesStack

logger = structlog.get_logger()

EARTH_KM_PER_DEGREE = 111.325  # km per degree of latitude
GRADIENT_WEIGHTS = np.array([1.0, 2.0, 1.0, 1.0, 2.0, 1.0])


@dataclass(frozen=True)
class GradientField:
    """Gradient magnitude (``Grad``) and bearing in degrees (``Ang``)."""

    grad: Layer
    angle: Layer

    def layers(self) -> Dict[str, np.ndarray]:
        return {"Grad": self.grad.values, "Ang": self.angle.values}


def bearing(dx, dy) -> np.ndarray:
    """
    Compass bearing of vectors with components ``dx`` (east) and ``dy`` (north).

    Quadrants are resolved explicitly so that 0 is north and 90 is east.
    Zero vectors get bearing 0; NaN components give NaN.
    """
    dx = np.asarray(dx, dtype=np.float64)
    dy = np.asarray(dy, dtype=np.float64)
    with np.errstate(invalid="ignore", divide="ignore"):
        base = np.degrees(np.arctan(dx / dy))
    angle = np.where(dy < 0, 180.0 + base, np.where(dx < 0, 360.0 + base, base))

    # atan is undefined on the east-west axis
    east_west = dy == 0
    angle = np.where(east_west & (dx > 0), 90.0, angle)
    angle = np.where(east_west & (dx < 0), 270.0, angle)
    angle = np.where(east_west & (dx == 0), 0.0, angle)

    # -0.0 and tiny negative bases round onto the limits
    angle = np.where(angle >= 360.0, angle - 360.0, angle)
    return np.where(angle == 0.0, 0.0, angle)


def _weighted_axis(estimates) -> np.ndarray:
    """Weighted mean of six directional estimates ignoring missing terms."""
    est = np.stack(estimates)
    present = ~np.isnan(est)
    w = GRADIENT_WEIGHTS[:, None, None] * present
    total = w.sum(axis=0)
    with np.errstate(invalid="ignore", divide="ignore"):
        mean = (np.where(present, est, 0.0) * w).sum(axis=0) / total
    return np.where(total > 0, mean, np.nan)


def spatial_gradient(
    layer: Union[Layer, TimeSeriesStack],
    lower_threshold: float = -np.inf,
    projected: bool = False,
) -> GradientField:
    """
    Calculate the magnitude and direction of the local spatial gradient.

    Args:
        layer: Mean climatic state, or a time series that is averaged first
        lower_threshold: Magnitudes below this value are raised to it; guards
            later velocity divisions against near-flat gradients
        projected: True for projected grids (differences divided by the cell
            size directly). Otherwise cell sizes are converted to km with a
            cos(latitude) correction along the west-east axis.

    Returns:
        GradientField with ``Grad`` in units per km (per grid unit when
        projected) and ``Ang`` in degrees
    """
    if isinstance(layer, TimeSeriesStack):
        layer = layer.mean_layer()

    grid = layer.grid
    logger.info(
        "Calculating spatial gradients",
        shape=grid.shape,
        valid_cells=layer.n_valid,
        projected=projected,
    )

    focal = layer.values
    nb = grid.neighborhood(focal)

    if projected:
        dist_we_n = dist_we = dist_we_s = grid.res_x
        dist_ns = grid.res_y
    else:
        lat = grid.y_centers[:, None]
        km_x = EARTH_KM_PER_DEGREE * grid.res_x
        dist_we_n = np.cos(np.radians(lat + grid.res_y)) * km_x
        dist_we = np.cos(np.radians(lat)) * km_x
        dist_we_s = np.cos(np.radians(lat - grid.res_y)) * km_x
        dist_ns = EARTH_KM_PER_DEGREE * grid.res_y

    # Positive values increase towards the east / north
    with np.errstate(invalid="ignore", divide="ignore"):
        we_grad = _weighted_axis(
            [
                (nb["N"] - nb["NW"]) / dist_we_n,
                (focal - nb["W"]) / dist_we,
                (nb["S"] - nb["SW"]) / dist_we_s,
                (nb["NE"] - nb["N"]) / dist_we_n,
                (nb["E"] - focal) / dist_we,
                (nb["SE"] - nb["S"]) / dist_we_s,
            ]
        )
        ns_grad = _weighted_axis(
            [
                (nb["NW"] - nb["W"]) / dist_ns,
                (nb["N"] - focal) / dist_ns,
                (nb["NE"] - nb["E"]) / dist_ns,
                (nb["W"] - nb["SW"]) / dist_ns,
                (focal - nb["S"]) / dist_ns,
                (nb["E"] - nb["SE"]) / dist_ns,
            ]
        )

    # A single defined axis is kept with the other set to zero
    we_grad = np.where(np.isnan(we_grad) & ~np.isnan(ns_grad), 0.0, we_grad)
    ns_grad = np.where(np.isnan(ns_grad) & ~np.isnan(we_grad), 0.0, ns_grad)

    no_data = np.isnan(focal) | np.isnan(we_grad)
    we_grad = np.where(no_data, np.nan, we_grad)
    ns_grad = np.where(no_data, np.nan, ns_grad)

    grad = np.hypot(we_grad, ns_grad)
    angle = bearing(we_grad, ns_grad)
    grad = np.where(grad < lower_threshold, lower_threshold, grad)

    isolated = int((~np.isnan(focal) & no_data).sum())
    logger.info(
        "Spatial gradients calculated",
        gradient_cells=int((~no_data).sum()),
        isolated_cells=isolated,
        clamped_cells=int((grad == lower_threshold).sum()),
    )

    return GradientField(
        grad=Layer(grid, grad, "Grad"),
        angle=Layer(grid, angle, "Ang"),
    )
