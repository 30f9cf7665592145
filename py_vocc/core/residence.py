"""Climatic residence time of regions after Loarie et al. (2009)."""

from typing import Mapping

import numpy as np
import pandas as pd
import structlog

from .errors import DimensionMismatchError, InvalidConfigurationError
from .grid import Layer

logger = structlog.get_logger()


def residence_time(
    velocity: Layer,
    regions: Mapping[str, np.ndarray],
    areas: Mapping[str, float],
) -> pd.DataFrame:
    """
    Time an isotherm needs to cross each region at the local climate velocity.

    The region is treated as a circle of equal area; residence time is its
    diameter divided by the region's mean velocity.

    Args:
        velocity: Velocity magnitude (km/yr)
        regions: Boolean cell mask per region id
        areas: Region area in km2 per region id

    Returns:
        DataFrame with columns region, velocity, diameter, residence_time
    """
    rows = []
    for region_id, mask in regions.items():
        mask = np.asarray(mask, dtype=bool)
        if mask.shape != velocity.grid.shape:
            raise DimensionMismatchError(
                f"Region '{region_id}' mask {mask.shape} does not match grid {velocity.grid.shape}"
            )
        area = areas[region_id]
        if not area > 0:
            raise InvalidConfigurationError(f"Region '{region_id}' area must be positive")

        values = velocity.values[mask]
        values = values[~np.isnan(values)]
        mean_velocity = float(values.mean()) if values.size else np.nan
        diameter = 2.0 * np.sqrt(area / np.pi)
        with np.errstate(divide="ignore"):
            res_time = float(np.abs(np.divide(diameter, mean_velocity)))

        rows.append(
            {
                "region": region_id,
                "velocity": mean_velocity,
                "diameter": diameter,
                "residence_time": res_time,
            }
        )

    logger.info("Residence times calculated", regions=len(rows))
    return pd.DataFrame(rows, columns=["region", "velocity", "diameter", "residence_time"])
