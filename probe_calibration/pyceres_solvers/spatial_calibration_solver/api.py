"""One-call image-to-probe refinement API."""

import logging
from dataclasses import dataclass, field

import numpy as np

from probe_calibration.pyceres_solvers.spatial_calibration_solver.core.configuration import (
    OptimizationMethod,
    SolverConfig,
    optimization_method_from_string,
    optimization_method_to_string,
)
from probe_calibration.pyceres_solvers.spatial_calibration_solver.core.correspondence import (
    PointCorrespondenceDataset,
    WireCorrespondenceDataset,
)
from probe_calibration.pyceres_solvers.spatial_calibration_solver.core.metrics import ErrorStatistics
from probe_calibration.pyceres_solvers.spatial_calibration_solver.core.optimization import (
    OptimizationSummary,
    ProbeCalibrationContext,
    SpatialCalibrationOptimizer,
)

logger = logging.getLogger(__name__)


@dataclass
class SpatialCalibrationConfig:
    """Complete configuration for image-to-probe refinement."""

    optimization_method: OptimizationMethod | str = OptimizationMethod.NONE
    """NONE, 3D (middle-wire points) or 2D (all wires)"""

    isotropic_pixel_spacing: bool = False
    """Share one pixel spacing between image x and y"""

    solver: SolverConfig = field(default_factory=SolverConfig)
    """Ceres solver settings"""

    def __post_init__(self) -> None:
        self.optimization_method = optimization_method_from_string(self.optimization_method)


@dataclass
class CalibrationOptimizationReport:
    """Seed and refined transforms with their error statistics."""
    seed_transform: np.ndarray  # (4, 4)
    optimized_transform: np.ndarray  # (4, 4)
    seed_error: ErrorStatistics
    optimized_error: ErrorStatistics
    summary: OptimizationSummary | None = None

    @property
    def optimized(self) -> bool:
        """False when the method was NONE and the seed was passed through."""
        return self.summary is not None

    @property
    def rms_improvement(self) -> float:
        return self.seed_error.rms - self.optimized_error.rms


def optimize_image_to_probe(
    *,
    config: SpatialCalibrationConfig,
    dataset: PointCorrespondenceDataset | WireCorrespondenceDataset,
    seed_transform: np.ndarray,
    probe_calibration_algo: ProbeCalibrationContext | None = None
) -> CalibrationOptimizationReport:
    """
    Refine a seed image-to-probe transform and report errors before and after.

    Pipeline:
    1. Configure optimizer
    2. Evaluate seed
    3. Optimize (skipped when the method is NONE)
    4. Evaluate result

    Args:
        config: SpatialCalibrationConfig
        dataset: Correspondences matching config.optimization_method
        seed_transform: (4, 4) initial image-to-probe transform
        probe_calibration_algo: Optional owner of the wire catalogue

    Returns:
        CalibrationOptimizationReport
    """
    logger.info("=" * 80)
    logger.info("IMAGE-TO-PROBE CALIBRATION REFINEMENT")
    logger.info("=" * 80)
    logger.info(f"Method:    {optimization_method_to_string(config.optimization_method)}")
    logger.info(f"Isotropic: {config.isotropic_pixel_spacing}")
    logger.info(f"Points:    {dataset.num_correspondences} ({len(dataset.outlier_indices)} outliers)")

    # =========================================================================
    # STEP 1: CONFIGURE
    # =========================================================================
    logger.info(f"\n{'=' * 80}")
    logger.info("STEP 1: CONFIGURE OPTIMIZER")
    logger.info("=" * 80)

    optimizer = SpatialCalibrationOptimizer(solver_config=config.solver)
    optimizer.optimization_method = config.optimization_method
    optimizer.isotropic_pixel_spacing = config.isotropic_pixel_spacing
    if probe_calibration_algo is not None:
        optimizer.set_probe_calibration_algo(probe_calibration_algo)
    optimizer.set_correspondence_data(dataset)
    optimizer.set_seed_transform(seed_transform)

    # =========================================================================
    # STEP 2: EVALUATE SEED
    # =========================================================================
    logger.info(f"\n{'=' * 80}")
    logger.info("STEP 2: EVALUATE SEED")
    logger.info("=" * 80)

    seed_error = optimizer.compute_error(seed_transform)
    seed_error.log(label="Seed error")

    # =========================================================================
    # STEP 3: OPTIMIZE
    # =========================================================================
    summary = None
    if optimizer.enabled():
        logger.info(f"\n{'=' * 80}")
        logger.info("STEP 3: OPTIMIZE")
        logger.info("=" * 80)
        summary = optimizer.update()
    else:
        logger.info("\nOptimization method is NONE, keeping the seed transform")

    optimized_transform = optimizer.get_optimized_transform()

    # =========================================================================
    # STEP 4: EVALUATE RESULT
    # =========================================================================
    logger.info(f"\n{'=' * 80}")
    logger.info("STEP 4: EVALUATE RESULT")
    logger.info("=" * 80)

    optimized_error = optimizer.compute_error(optimized_transform)
    optimized_error.log(label="Optimized error")

    return CalibrationOptimizationReport(
        seed_transform=optimizer.seed_transform,
        optimized_transform=optimized_transform,
        seed_error=seed_error,
        optimized_error=optimized_error,
        summary=summary,
    )
