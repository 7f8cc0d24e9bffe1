"""Exceptions raised by the spatial calibration optimizer."""


class SpatialCalibrationError(Exception):
    """Base class for every failure reported by the optimizer."""
    pass


class ConfigurationError(SpatialCalibrationError, ValueError):
    """Raised when the optimization method or scale mode cannot be configured."""
    pass


class StateError(SpatialCalibrationError, RuntimeError):
    """Raised when an operation is called before its inputs have been provided."""
    pass


class DataIntegrityError(SpatialCalibrationError, ValueError):
    """Raised when correspondence data or phantom geometry is malformed."""
    pass


class NumericDivergenceError(SpatialCalibrationError, ArithmeticError):
    """Raised when the solver produces a degenerate or non-finite transform."""
    pass
