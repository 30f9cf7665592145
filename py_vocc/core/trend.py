"""Per-cell linear temporal trends of a climatic variable."""

from dataclasses import dataclass

import numpy as np
import structlog
from scipy import stats

from .errors import InvalidConfigurationError
from .grid import Layer, TimeSeriesStack

logger = structlog.get_logger()


@dataclass(frozen=True)
class TrendResult:
    """Slope of value against time with its standard error and p-value."""

    slope: Layer
    std_error: Layer
    p_value: Layer


def temporal_trend(stack: TimeSeriesStack, min_obs: int = 2) -> TrendResult:
    """
    Fit an ordinary least-squares trend through every cell's time series.

    Missing samples are dropped cell by cell. Cells with fewer than
    ``min_obs`` valid samples, or whose valid samples share a single time
    stamp, are NaN in every output layer.

    Args:
        stack: Time series of the climatic variable
        min_obs: Minimum number of valid samples needed to fit a trend

    Returns:
        TrendResult with ``slope`` (units per time unit), ``std_error`` and
        two-sided ``p_value`` layers
    """
    if min_obs < 2:
        raise InvalidConfigurationError(f"min_obs must be at least 2, got {min_obs}")

    logger.info("Calculating temporal trends", layers=stack.nt, min_obs=min_obs)

    y = stack.values.reshape(stack.nt, -1)
    t = np.broadcast_to(stack.times[:, None], y.shape)
    ok = ~np.isnan(y)
    n = ok.sum(axis=0)

    with np.errstate(invalid="ignore", divide="ignore"):
        t_mean = np.where(ok, t, 0.0).sum(axis=0) / n
        y_mean = np.where(ok, y, 0.0).sum(axis=0) / n
        dt = np.where(ok, t - t_mean, 0.0)
        dy = np.where(ok, y - y_mean, 0.0)
        sxx = (dt * dt).sum(axis=0)
        slope = (dt * dy).sum(axis=0) / sxx

        dof = n - 2
        resid = np.where(ok, dy - slope * dt, 0.0)
        std_error = np.sqrt((resid * resid).sum(axis=0) / dof / sxx)
        t_stat = slope / std_error
        p_value = 2.0 * stats.t.sf(np.abs(t_stat), np.maximum(dof, 1))

    fitted = (n >= min_obs) & (sxx > 0)
    slope = np.where(fitted, slope, np.nan)
    std_error = np.where(fitted & (dof > 0), std_error, np.nan)
    p_value = np.where(fitted & (dof > 0), p_value, np.nan)

    logger.info(
        "Temporal trends calculated",
        fitted_cells=int(fitted.sum()),
        insufficient_cells=int(((n > 0) & ~fitted).sum()),
    )

    grid = stack.grid
    return TrendResult(
        slope=Layer(grid, slope.reshape(grid.shape), "slpTrends"),
        std_error=Layer(grid, std_error.reshape(grid.shape), "seTrends"),
        p_value=Layer(grid, p_value.reshape(grid.shape), "sigTrends"),
    )
