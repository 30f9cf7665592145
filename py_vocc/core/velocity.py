"""Gradient-based climate velocity (temporal trend / spatial gradient)."""

from dataclasses import dataclass
from typing import Dict

import numpy as np
import structlog

from .gradient import GradientField, spatial_gradient
from .grid import Layer, TimeSeriesStack, check_aligned
from .trend import TrendResult, temporal_trend

logger = structlog.get_logger()


@dataclass(frozen=True)
class VelocityField:
    """Signed velocity magnitude (``voccMag``) and bearing (``voccAng``).

    The bearing is only defined where the magnitude is.
    """

    magnitude: Layer
    angle: Layer

    @property
    def grid(self):
        return self.magnitude.grid

    @property
    def valid(self) -> np.ndarray:
        return self.magnitude.valid & self.angle.valid

    def layers(self) -> Dict[str, np.ndarray]:
        return {"voccMag": self.magnitude.values, "voccAng": self.angle.values}


@dataclass(frozen=True)
class VelocityResult:
    """Every intermediate layer of the velocity chain."""

    mean_state: Layer
    trend: TrendResult
    gradient: GradientField
    velocity: VelocityField


def gradient_velocity(trend: Layer, gradient: GradientField) -> VelocityField:
    """
    Combine a temporal trend with a spatial gradient into a velocity field.

    Magnitude is ``trend / Grad`` and keeps the sign of the trend. The bearing
    follows the gradient where the trend is non-negative and is reversed
    (+180) where it is negative. No data in either input, or a zero gradient,
    gives no data.
    """
    grid = check_aligned(trend, gradient.grad, gradient.angle)

    with np.errstate(invalid="ignore", divide="ignore"):
        magnitude = trend.values / gradient.grad.values
    magnitude = np.where(np.isfinite(magnitude), magnitude, np.nan)

    angle = np.where(
        trend.values < 0,
        np.mod(gradient.angle.values + 180.0, 360.0),
        gradient.angle.values,
    )
    angle = np.where(np.isnan(magnitude), np.nan, angle)
    magnitude = np.where(np.isnan(angle), np.nan, magnitude)

    logger.info(
        "Velocity field calculated",
        velocity_cells=int((~np.isnan(magnitude)).sum()),
        negative_cells=int((magnitude < 0).sum()),
    )

    return VelocityField(
        magnitude=Layer(grid, magnitude, "voccMag"),
        angle=Layer(grid, angle, "voccAng"),
    )


def climate_velocity(
    stack: TimeSeriesStack,
    min_obs: int = 2,
    lower_threshold: float = -np.inf,
    projected: bool = False,
) -> VelocityResult:
    """Run trend, gradient and combination on a climatic time series."""
    mean_state = stack.mean_layer()
    trend = temporal_trend(stack, min_obs=min_obs)
    gradient = spatial_gradient(mean_state, lower_threshold, projected)
    return VelocityResult(
        mean_state=mean_state,
        trend=trend,
        gradient=gradient,
        velocity=gradient_velocity(trend.slope, gradient),
    )
