"""Exceptions raised by the climate velocity core.

Missing data is never an error here: cells without enough samples, isolated
cells and seeds outside the domain all surface as NaN or short trajectories.
Only non-physical parameters and misaligned layers are fatal.
"""


class VoccError(Exception):
    """Base class for py_vocc errors."""


class InvalidConfigurationError(VoccError, ValueError):
    """A threshold or option is outside its physical range."""


class DimensionMismatchError(VoccError, ValueError):
    """Input layers do not share the same grid."""
