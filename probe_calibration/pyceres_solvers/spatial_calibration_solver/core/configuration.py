"""Optimization method enumeration, configuration attributes and solver settings."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from probe_calibration.pyceres_solvers.spatial_calibration_solver.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

OPTIMIZATION_METHOD_ATTRIBUTE = "OptimizationMethod"
ISOTROPIC_PIXEL_SPACING_ATTRIBUTE = "IsotropicPixelSpacing"

DEFAULT_MAX_ITERATIONS = 200

_TRUE_STRINGS = frozenset({"TRUE", "1", "YES", "ON"})
_FALSE_STRINGS = frozenset({"FALSE", "0", "NO", "OFF"})


class OptimizationMethod(str, Enum):
    """Cost function minimised by the optimizer."""

    NONE = "NONE"
    MIDDLE_WIRE_DISTANCE_3D = "3D"
    ALL_WIRE_DISTANCE_2D = "2D"


def optimization_method_to_string(method: OptimizationMethod) -> str:
    """Canonical configuration string of a method."""
    match method:
        case OptimizationMethod.NONE:
            return "NONE"
        case OptimizationMethod.MIDDLE_WIRE_DISTANCE_3D:
            return "3D"
        case OptimizationMethod.ALL_WIRE_DISTANCE_2D:
            return "2D"
    raise ConfigurationError(f"Unknown optimization method: {method!r}")


def optimization_method_from_string(value: str) -> OptimizationMethod:
    """Parse a configuration string (case-insensitive) into a method."""
    if isinstance(value, OptimizationMethod):
        return value
    normalized = str(value).strip().upper()
    for method in OptimizationMethod:
        if optimization_method_to_string(method) == normalized:
            return method
    valid = [optimization_method_to_string(method) for method in OptimizationMethod]
    raise ConfigurationError(f"Unknown {OPTIMIZATION_METHOD_ATTRIBUTE} '{value}', expected one of {valid}")


def parse_boolean_attribute(*, name: str, value: Any) -> bool:
    """Parse a boolean-like configuration attribute ("TRUE"/"FALSE", "1"/"0", ...)."""
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().upper()
    if normalized in _TRUE_STRINGS:
        return True
    if normalized in _FALSE_STRINGS:
        return False
    raise ConfigurationError(f"Attribute {name}='{value}' is not a boolean")


class ConfigurationElement(Protocol):
    """Anything exposing named attributes through get(), e.g. a dict or an XML element."""

    def get(self, key: str, default: Any = None) -> Any: ...


@dataclass(frozen=True)
class OptimizerSettings:
    """Values read from a configuration element."""

    optimization_method: OptimizationMethod
    isotropic_pixel_spacing: bool


def read_optimizer_settings(*, element: ConfigurationElement) -> OptimizerSettings:
    """
    Read OptimizationMethod and IsotropicPixelSpacing from a configuration element.

    Missing attributes default to NONE and anisotropic spacing.

    Raises:
        ConfigurationError: an attribute is present but not recognised
    """
    if element is None:
        raise ConfigurationError("Configuration element is missing")

    method_value = element.get(OPTIMIZATION_METHOD_ATTRIBUTE)
    if method_value is None:
        logger.debug(f"{OPTIMIZATION_METHOD_ATTRIBUTE} not set, optimization disabled")
        method = OptimizationMethod.NONE
    else:
        method = optimization_method_from_string(method_value)

    isotropic_value = element.get(ISOTROPIC_PIXEL_SPACING_ATTRIBUTE)
    if isotropic_value is None:
        isotropic = False
    else:
        isotropic = parse_boolean_attribute(name=ISOTROPIC_PIXEL_SPACING_ATTRIBUTE, value=isotropic_value)

    return OptimizerSettings(optimization_method=method, isotropic_pixel_spacing=isotropic)


@dataclass
class SolverConfig:
    """Configuration for the Levenberg-Marquardt solve."""
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    function_tolerance: float = 1e-12
    gradient_tolerance: float = 1e-14
    parameter_tolerance: float = 1e-12
    finite_difference_step: float = 1e-8
    log_progress: bool = False

    def __post_init__(self) -> None:
        if self.max_iterations <= 0:
            raise ConfigurationError(f"max_iterations must be positive, got {self.max_iterations}")
        if self.finite_difference_step <= 0:
            raise ConfigurationError(
                f"finite_difference_step must be positive, got {self.finite_difference_step}"
            )
