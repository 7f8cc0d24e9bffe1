"""Nonlinear refinement of the image-to-probe transform with pyceres."""

import logging
import weakref
from typing import Any, Protocol, Sequence

import numpy as np
import pyceres
from numpydantic import NDArray, Shape
from pydantic import BaseModel, TypeAdapter, ValidationError
from scipy.spatial.transform import Rotation

from probe_calibration.pyceres_solvers.spatial_calibration_solver.core.configuration import (
    ConfigurationElement,
    OptimizationMethod,
    SolverConfig,
    optimization_method_from_string,
    optimization_method_to_string,
    read_optimizer_settings,
)
from probe_calibration.pyceres_solvers.spatial_calibration_solver.core.correspondence import (
    CorrespondenceDataset,
    NWire,
    PointCorrespondenceDataset,
    Wire,
    WireCorrespondenceDataset,
    build_point_dataset,
    build_wire_dataset,
)
from probe_calibration.pyceres_solvers.spatial_calibration_solver.core.cost_functions import (
    CorrespondenceGroupCost,
    CostFunctionEvaluator,
)
from probe_calibration.pyceres_solvers.spatial_calibration_solver.core.errors import (
    ConfigurationError,
    DataIntegrityError,
    NumericDivergenceError,
    StateError,
)
from probe_calibration.pyceres_solvers.spatial_calibration_solver.core.geometry import validate_homogeneous_matrix
from probe_calibration.pyceres_solvers.spatial_calibration_solver.core.metrics import ErrorStatistics
from probe_calibration.pyceres_solvers.spatial_calibration_solver.core.transform_parameterization import (
    CONSTANT_BLOCK_INDEX,
    TransformParameterization,
)

logger = logging.getLogger(__name__)

_DATASET_ADAPTER = TypeAdapter(CorrespondenceDataset)


class ProbeCalibrationContext(Protocol):
    """The calibration algorithm that owns the phantom wire catalogue."""

    nwires: Sequence[NWire | Wire]


class OptimizationSummary(BaseModel):
    """Outcome of one successful update()."""

    model_config = {"arbitrary_types_allowed": True, "frozen": True}

    method: OptimizationMethod
    isotropic_pixel_spacing: bool
    optimized_transform: NDArray[Shape["4, 4"], float]
    initial_cost: float
    final_cost: float
    converged: bool
    iterations: int
    time_seconds: float
    num_residual_blocks: int
    num_free_parameters: int


class SpatialCalibrationOptimizer:
    """
    Refines an image-to-probe transform from a seed by nonlinear least squares.

    Usage:
        optimizer = SpatialCalibrationOptimizer()
        optimizer.read_configuration({"OptimizationMethod": "2D"})
        optimizer.set_wire_correspondences(...)
        optimizer.set_seed_transform(seed)
        optimizer.update()
        image_to_probe = optimizer.get_optimized_transform()
    """

    def __init__(self, *, solver_config: SolverConfig | None = None) -> None:
        self.solver_config = solver_config if solver_config is not None else SolverConfig()
        self._optimization_method = OptimizationMethod.NONE
        self._isotropic_pixel_spacing = False
        self._dataset: PointCorrespondenceDataset | WireCorrespondenceDataset | None = None
        self._seed_transform: np.ndarray | None = None
        self._optimized_transform: np.ndarray | None = None
        self._probe_calibration_algo: weakref.ref | None = None
        self._last_summary: OptimizationSummary | None = None

    # =========================================================================
    # CONFIGURATION
    # =========================================================================

    def read_configuration(self, element: ConfigurationElement) -> None:
        """
        Read OptimizationMethod and IsotropicPixelSpacing from a configuration element.

        Nothing is changed if either attribute is invalid.
        """
        settings = read_optimizer_settings(element=element)
        self._optimization_method = settings.optimization_method
        self._isotropic_pixel_spacing = settings.isotropic_pixel_spacing
        logger.info(
            f"Spatial calibration optimizer configured: method={self.optimization_method_as_string()}, "
            f"isotropic_pixel_spacing={self._isotropic_pixel_spacing}"
        )

    @property
    def optimization_method(self) -> OptimizationMethod:
        return self._optimization_method

    @optimization_method.setter
    def optimization_method(self, value: OptimizationMethod | str) -> None:
        self._optimization_method = optimization_method_from_string(value)

    def optimization_method_as_string(self) -> str:
        return optimization_method_to_string(self._optimization_method)

    @property
    def isotropic_pixel_spacing(self) -> bool:
        return self._isotropic_pixel_spacing

    @isotropic_pixel_spacing.setter
    def isotropic_pixel_spacing(self, value: bool) -> None:
        self._isotropic_pixel_spacing = bool(value)

    @property
    def parameterization(self) -> TransformParameterization:
        return TransformParameterization(isotropic_pixel_spacing=self._isotropic_pixel_spacing)

    def enabled(self) -> bool:
        """True unless the optimization method is NONE."""
        return self._optimization_method != OptimizationMethod.NONE

    # =========================================================================
    # INPUTS
    # =========================================================================

    def set_seed_transform(self, transform: np.ndarray) -> None:
        """Store a private copy of the initial image-to-probe estimate."""
        self._seed_transform = validate_homogeneous_matrix(matrix=transform, name="seed_transform")

    @property
    def seed_transform(self) -> np.ndarray | None:
        return None if self._seed_transform is None else self._seed_transform.copy()

    def set_probe_calibration_algo(self, context: ProbeCalibrationContext | None) -> None:
        """Keep a non-owning reference to the calibration algorithm (source of the wire catalogue)."""
        self._probe_calibration_algo = None if context is None else weakref.ref(context)

    def _get_probe_calibration_algo(self) -> ProbeCalibrationContext:
        if self._probe_calibration_algo is None:
            raise StateError("No probe calibration algorithm has been set")
        context = self._probe_calibration_algo()
        if context is None:
            raise StateError("The probe calibration algorithm no longer exists")
        return context

    @property
    def dataset(self) -> PointCorrespondenceDataset | WireCorrespondenceDataset | None:
        return self._dataset

    def set_correspondence_data(
        self,
        dataset: PointCorrespondenceDataset | WireCorrespondenceDataset | dict[str, Any]
    ) -> None:
        """
        Replace the correspondence data.

        While the method is NONE data for either method is accepted; the
        method check is then made by update().

        Args:
            dataset: A dataset model, or a dict carrying a "method" tag

        Raises:
            DataIntegrityError: the data fails structural validation
            ConfigurationError: the dataset does not feed the configured method
        """
        try:
            dataset = _DATASET_ADAPTER.validate_python(dataset)
        except ValidationError as e:
            raise DataIntegrityError(f"Invalid correspondence data: {e}") from e

        if self.enabled() and dataset.method != self._optimization_method:
            raise ConfigurationError(
                f"Correspondence data is for method {optimization_method_to_string(dataset.method)}, "
                f"optimizer is configured for {self.optimization_method_as_string()}"
            )

        self._dataset = dataset
        logger.info(
            f"Correspondence data set: {dataset.num_correspondences} points "
            f"({len(dataset.outlier_indices)} outliers) for method "
            f"{optimization_method_to_string(dataset.method)}"
        )

    def set_point_correspondences(
        self,
        *,
        image_points: np.ndarray,
        probe_points: np.ndarray,
        outlier_indices: Sequence[int] | None = None
    ) -> None:
        """Set middle-wire image points and their probe-frame positions (3D method)."""
        try:
            dataset = build_point_dataset(
                image_points=image_points,
                probe_points=probe_points,
                outlier_indices=outlier_indices,
            )
        except ValidationError as e:
            raise DataIntegrityError(f"Invalid point correspondences: {e}") from e
        self.set_correspondence_data(dataset)

    def set_wire_correspondences(
        self,
        *,
        image_points: np.ndarray,
        probe_to_phantom_transforms: np.ndarray,
        wires: Sequence[Wire | NWire] | None = None,
        outlier_indices: Sequence[int] | None = None
    ) -> None:
        """
        Set all-wire image points with per-frame probe poses (2D method).

        Args:
            image_points: (n_frames * n_wires, 2) points, frame-major in wire catalogue order
            probe_to_phantom_transforms: (n_frames, 4, 4) tracker poses
            wires: Wire catalogue; taken from the probe calibration algorithm when omitted
            outlier_indices: Indices into the flattened point sequence
        """
        if wires is None:
            wires = self._get_probe_calibration_algo().nwires

        try:
            dataset = build_wire_dataset(
                image_points=image_points,
                wires=wires,
                probe_to_phantom_transforms=probe_to_phantom_transforms,
                outlier_indices=outlier_indices,
            )
        except ValidationError as e:
            raise DataIntegrityError(f"Invalid wire correspondences: {e}") from e
        self.set_correspondence_data(dataset)

    # =========================================================================
    # SOLVE
    # =========================================================================

    def update(self) -> OptimizationSummary:
        """
        Run the optimization from the seed transform.

        Returns:
            Summary of the solve; the result is read with get_optimized_transform()

        Raises:
            StateError: method is NONE, or data or seed is missing
            ConfigurationError: data does not match the configured method
            DataIntegrityError: the data cannot be evaluated at the seed
            NumericDivergenceError: the solver failed; the previous result is kept
        """
        if not self.enabled():
            raise StateError("Optimization method is NONE, nothing to optimize")
        if self._dataset is None:
            raise StateError("No correspondence data has been set")
        if self._seed_transform is None:
            raise StateError("No seed transform has been set")
        if self._dataset.method != self._optimization_method:
            raise ConfigurationError(
                f"Correspondence data is for method {optimization_method_to_string(self._dataset.method)}, "
                f"optimizer is configured for {self.optimization_method_as_string()}"
            )

        parameterization = self.parameterization
        evaluator = CostFunctionEvaluator(dataset=self._dataset, parameterization=parameterization)

        initial_parameters = parameterization.encode(self._seed_transform)
        groups = evaluator.residual_groups()
        if not groups:
            raise DataIntegrityError("Every correspondence is marked as an outlier")

        seed_residuals = evaluator.residuals(initial_parameters)
        if not np.all(np.isfinite(seed_residuals)):
            raise NumericDivergenceError("Residuals at the seed transform are not finite")

        logger.info("=" * 80)
        logger.info("SPATIAL CALIBRATION OPTIMIZATION")
        logger.info("=" * 80)
        logger.info(
            f"Method: {self.optimization_method_as_string()}, "
            f"isotropic pixel spacing: {self._isotropic_pixel_spacing}"
        )
        logger.info(
            f"Correspondences: {len(seed_residuals)} used, "
            f"{len(self._dataset.outlier_indices)} outliers"
        )
        self.log_transform(self._seed_transform, label="Seed image-to-probe transform")

        # =====================================================================
        # BUILD PROBLEM
        # =====================================================================
        logger.info("\nBuilding optimization problem...")
        blocks = parameterization.split(initial_parameters)
        problem = pyceres.Problem()
        for block, block_size in zip(blocks, parameterization.parameter_block_sizes):
            problem.add_parameter_block(block, block_size)
        problem.set_parameter_block_constant(blocks[CONSTANT_BLOCK_INDEX])

        costs = []
        for indices in groups:
            cost = CorrespondenceGroupCost(
                evaluator=evaluator,
                indices=indices,
                finite_difference_step=self.solver_config.finite_difference_step
            )
            costs.append(cost)
            problem.add_residual_block(cost, None, blocks)

        logger.info(f"  Residual blocks: {problem.num_residual_blocks()}")
        logger.info(f"  Free parameters: {parameterization.num_free_parameters}")

        # =====================================================================
        # SOLVE
        # =====================================================================
        options = pyceres.SolverOptions()
        options.linear_solver_type = pyceres.LinearSolverType.DENSE_QR
        options.minimizer_progress_to_stdout = self.solver_config.log_progress
        options.max_num_iterations = self.solver_config.max_iterations
        options.function_tolerance = self.solver_config.function_tolerance
        options.gradient_tolerance = self.solver_config.gradient_tolerance
        options.parameter_tolerance = self.solver_config.parameter_tolerance
        options.num_threads = 1

        summary = pyceres.SolverSummary()
        pyceres.solve(options, problem, summary)

        if summary.termination_type in (pyceres.TerminationType.FAILURE, pyceres.TerminationType.USER_FAILURE):
            raise NumericDivergenceError(f"Solver failed: {summary.BriefReport()}")
        if not np.isfinite(summary.final_cost):
            raise NumericDivergenceError(f"Solver produced a non-finite cost: {summary.final_cost}")

        # Ceres counts the evaluation at the seed as iteration 0
        iterations = max(summary.num_successful_steps + summary.num_unsuccessful_steps - 1, 0)

        converged = summary.termination_type == pyceres.TerminationType.CONVERGENCE
        if not converged:
            logger.warning(
                f"Solver stopped without convergence after {iterations} iterations "
                f"({summary.termination_type}), accepting best iterate"
            )

        optimized_transform = parameterization.decode(parameterization.join(blocks))
        self._optimized_transform = optimized_transform

        logger.info("\n" + "=" * 80)
        logger.info("OPTIMIZATION COMPLETE")
        logger.info("=" * 80)
        logger.info(f"  Status: {summary.termination_type}")
        logger.info(f"  Initial cost: {summary.initial_cost:.6f}")
        logger.info(f"  Final cost: {summary.final_cost:.6f}")
        logger.info(f"  Iterations: {iterations}")
        logger.info(f"  Time: {summary.total_time_in_seconds:.2f}s")
        self.log_transform(optimized_transform, label="Optimized image-to-probe transform")

        self._last_summary = OptimizationSummary(
            method=self._optimization_method,
            isotropic_pixel_spacing=self._isotropic_pixel_spacing,
            optimized_transform=optimized_transform.copy(),
            initial_cost=summary.initial_cost,
            final_cost=summary.final_cost,
            converged=converged,
            iterations=iterations,
            time_seconds=summary.total_time_in_seconds,
            num_residual_blocks=len(costs),
            num_free_parameters=parameterization.num_free_parameters,
        )
        return self._last_summary

    @property
    def last_summary(self) -> OptimizationSummary | None:
        return self._last_summary

    # =========================================================================
    # RESULTS
    # =========================================================================

    def get_optimized_transform(self) -> np.ndarray:
        """
        Result of the last successful update().

        Before any successful update() this is a copy of the seed transform.
        """
        if self._optimized_transform is not None:
            return self._optimized_transform.copy()
        if self._seed_transform is None:
            raise StateError("No seed transform has been set and no optimization has run")
        return self._seed_transform.copy()

    def compute_error(self, transform: np.ndarray) -> ErrorStatistics:
        """Residual statistics of a transform against the current (non-outlier) data."""
        if self._dataset is None:
            raise StateError("No correspondence data has been set")
        transform = validate_homogeneous_matrix(matrix=transform, name="transform")
        evaluator = CostFunctionEvaluator(dataset=self._dataset, parameterization=self.parameterization)
        return ErrorStatistics.compute_from_residuals(residuals=evaluator.residuals_for_transform(transform))

    def log_transform(self, transform: np.ndarray, *, label: str) -> None:
        """Log a transform as matrix, Euler angles, translation and pixel spacing."""
        parameters = TransformParameterization(isotropic_pixel_spacing=False).encode(transform)
        euler_deg = Rotation.from_rotvec(parameters[:3]).as_euler("xyz", degrees=True)
        translation = parameters[3:6]
        scales = parameters[6:9]

        logger.info(f"{label}:")
        for row in np.asarray(transform):
            logger.info(f"    [{row[0]:10.5f}, {row[1]:10.5f}, {row[2]:10.5f}, {row[3]:10.5f}]")
        logger.info(f"  Rotation (xyz, deg): [{euler_deg[0]:.3f}, {euler_deg[1]:.3f}, {euler_deg[2]:.3f}]")
        logger.info(f"  Translation: [{translation[0]:.3f}, {translation[1]:.3f}, {translation[2]:.3f}]")
        logger.info(f"  Pixel spacing: [{scales[0]:.6f}, {scales[1]:.6f}], elevation scale: {scales[2]:.6f}")
