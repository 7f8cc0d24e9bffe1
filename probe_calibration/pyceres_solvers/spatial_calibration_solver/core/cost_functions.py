"""Residuals of the 3D middle-wire and 2D all-wire calibration cost functions."""

import logging

import numpy as np
import pyceres

from probe_calibration.pyceres_solvers.spatial_calibration_solver.core.configuration import OptimizationMethod
from probe_calibration.pyceres_solvers.spatial_calibration_solver.core.correspondence import (
    PointCorrespondenceDataset,
    WireCorrespondenceDataset,
)
from probe_calibration.pyceres_solvers.spatial_calibration_solver.core.errors import (
    DataIntegrityError,
    NumericDivergenceError,
    SpatialCalibrationError,
)
from probe_calibration.pyceres_solvers.spatial_calibration_solver.core.geometry import (
    DEGENERACY_TOLERANCE,
    transform_points,
)
from probe_calibration.pyceres_solvers.spatial_calibration_solver.core.transform_parameterization import (
    TransformParameterization,
)

logger = logging.getLogger(__name__)


class CostFunctionEvaluator:
    """
    Computes calibration residuals for a candidate image-to-probe transform.

    The objective is the sum of squared residual distances over every
    non-outlier correspondence. Distances are returned in the units of the
    input geometry (typically mm).
    """

    def __init__(
        self,
        *,
        dataset: PointCorrespondenceDataset | WireCorrespondenceDataset,
        parameterization: TransformParameterization
    ) -> None:
        if not isinstance(dataset, (PointCorrespondenceDataset, WireCorrespondenceDataset)):
            raise TypeError(f"Unsupported dataset type: {type(dataset).__name__}")
        self.dataset = dataset
        self.parameterization = parameterization

    @property
    def method(self) -> OptimizationMethod:
        return self.dataset.method

    def residuals(self, parameters: np.ndarray) -> np.ndarray:
        """Residual distances for a parameter vector, one per non-outlier correspondence."""
        transform = self.parameterization.decode(parameters)
        return self.residuals_for_transform(transform)

    def residuals_for_transform(self, transform: np.ndarray) -> np.ndarray:
        """Residual distances for a 4x4 image-to-probe transform."""
        vectors = self.residual_vectors(transform=transform, indices=self.dataset.active_indices())
        return np.linalg.norm(vectors, axis=1)

    def residual_vectors(self, *, transform: np.ndarray, indices: np.ndarray) -> np.ndarray:
        """
        Displacement vectors whose norms are the residual distances.

        Args:
            transform: (4, 4) image-to-probe candidate
            indices: correspondence indices to evaluate

        Returns:
            (len(indices), 3) vectors in mm
        """
        indices = np.asarray(indices, dtype=int)
        match self.dataset:
            case PointCorrespondenceDataset():
                return self._point_residual_vectors(transform=transform, indices=indices)
            case WireCorrespondenceDataset():
                return self._wire_residual_vectors(transform=transform, indices=indices)
        raise TypeError(f"Unsupported dataset type: {type(self.dataset).__name__}")

    def residual_groups(self) -> list[np.ndarray]:
        """
        Index groups that become one solver residual block each.

        One group per correspondence for points, one group per frame for
        wires. Frames whose points are all outliers produce no group.
        """
        match self.dataset:
            case PointCorrespondenceDataset():
                return [np.array([index]) for index in self.dataset.active_indices()]
            case WireCorrespondenceDataset():
                groups = []
                for frame_index in range(self.dataset.num_frames):
                    indices = self.dataset.frame_indices(frame_index)
                    if len(indices) > 0:
                        groups.append(indices)
                return groups
        raise TypeError(f"Unsupported dataset type: {type(self.dataset).__name__}")

    # =========================================================================
    # 3D: MIDDLE WIRE POINT DISTANCE
    # =========================================================================

    def _point_residual_vectors(self, *, transform: np.ndarray, indices: np.ndarray) -> np.ndarray:
        image_points = self.dataset.image_points[indices]
        probe_points = self.dataset.probe_points[indices]
        return transform_points(transform=transform, points=image_points) - probe_points

    # =========================================================================
    # 2D: ALL WIRES, POINT-TO-LINE DISTANCE
    # =========================================================================

    def _wire_residual_vectors(self, *, transform: np.ndarray, indices: np.ndarray) -> np.ndarray:
        dataset = self.dataset
        vectors = np.zeros((len(indices), 3))
        frames = indices // dataset.num_wires

        for frame_index in np.unique(frames):
            image_to_phantom = dataset.probe_to_phantom_transforms[frame_index] @ transform
            try:
                phantom_to_image = np.linalg.inv(image_to_phantom)
            except np.linalg.LinAlgError as e:
                raise NumericDivergenceError(f"Image-to-phantom transform of frame {frame_index} is singular") from e
            if not np.all(np.isfinite(phantom_to_image)):
                raise NumericDivergenceError(f"Image-to-phantom transform of frame {frame_index} is not finite")

            # Maps image-frame offsets to physical (phantom) offsets
            linear = image_to_phantom[:3, :3]

            for row in np.flatnonzero(frames == frame_index):
                index = indices[row]
                wire = dataset.wire_of(index)
                end_points_image = transform_points(
                    transform=phantom_to_image,
                    points=np.stack([wire.end_point_front, wire.end_point_back])
                )
                direction_image = end_points_image[1] - end_points_image[0]
                if np.linalg.norm(direction_image) < DEGENERACY_TOLERANCE:
                    raise DataIntegrityError(
                        f"Wire '{wire.name}' has a zero-length direction in frame {frame_index}"
                    )

                direction = linear @ direction_image
                offset = linear @ (dataset.image_points[index] - end_points_image[0])
                vectors[row] = offset - (offset @ direction) / (direction @ direction) * direction

        return vectors


class CorrespondenceGroupCost(pyceres.CostFunction):
    """
    Ceres residual block for one group of correspondences.

    Residuals are the stacked 3-component displacement vectors of the group.
    Jacobians use forward differences per parameter block.
    """

    def __init__(
        self,
        *,
        evaluator: CostFunctionEvaluator,
        indices: np.ndarray,
        finite_difference_step: float = 1e-8
    ) -> None:
        super().__init__()
        self.evaluator = evaluator
        self.indices = np.asarray(indices, dtype=int)
        self.finite_difference_step = finite_difference_step
        self.block_sizes = evaluator.parameterization.parameter_block_sizes
        self.set_num_residuals(3 * len(self.indices))
        self.set_parameter_block_sizes(self.block_sizes)

    def _evaluate_flat(self, parameters: np.ndarray) -> np.ndarray:
        transform = self.evaluator.parameterization.decode(parameters)
        vectors = self.evaluator.residual_vectors(transform=transform, indices=self.indices)
        return vectors.ravel()

    def Evaluate(
        self,
        parameters: list[np.ndarray],
        residuals: np.ndarray,
        jacobians: list[np.ndarray] | None
    ) -> bool:
        flat = np.concatenate([np.asarray(block, dtype=np.float64) for block in parameters])

        # Returning False makes Ceres reject the step instead of aborting
        try:
            base = self._evaluate_flat(flat)
        except SpatialCalibrationError as e:
            logger.debug(f"Rejected solver step: {e}")
            return False
        if not np.all(np.isfinite(base)):
            return False
        residuals[:] = base

        if jacobians is None:
            return True

        offset = 0
        for block_index, block_size in enumerate(self.block_sizes):
            if jacobians[block_index] is not None:
                block_jacobian = np.zeros((len(base), block_size))
                for j in range(block_size):
                    step = self.finite_difference_step * max(1.0, abs(flat[offset + j]))
                    flat_plus = flat.copy()
                    flat_plus[offset + j] += step
                    try:
                        residual_plus = self._evaluate_flat(flat_plus)
                    except SpatialCalibrationError as e:
                        logger.debug(f"Rejected solver step: {e}")
                        return False
                    block_jacobian[:, j] = (residual_plus - base) / step
                jacobians[block_index][:] = block_jacobian.ravel()
            offset += block_size

        return True
