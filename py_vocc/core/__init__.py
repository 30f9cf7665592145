"""
Core climate velocity functionality.
"""

from .errors import VoccError, InvalidConfigurationError, DimensionMismatchError
from .grid import Grid, Layer, TimeSeriesStack, check_aligned
from .trend import TrendResult, temporal_trend
from .gradient import GradientField, bearing, spatial_gradient
from .velocity import VelocityField, VelocityResult, gradient_velocity, climate_velocity
from .trajectory import Trajectory, integrate, seed_points, trajectories_to_frame
from .classification import (
    ClassificationConfig,
    Classification,
    FlowClass,
    MovementClass,
    classify,
)
from .residence import residence_time

__all__ = ['VoccError', 'InvalidConfigurationError', 'DimensionMismatchError',
           'Grid', 'Layer', 'TimeSeriesStack', 'check_aligned',
           'TrendResult', 'temporal_trend',
           'GradientField', 'bearing', 'spatial_gradient',
           'VelocityField', 'VelocityResult', 'gradient_velocity', 'climate_velocity',
           'Trajectory', 'integrate', 'seed_points', 'trajectories_to_frame',
           'ClassificationConfig', 'Classification', 'FlowClass', 'MovementClass', 'classify',
           'residence_time']
