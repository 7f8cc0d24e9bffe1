"""Mapping between image-to-probe matrices and the solver's parameter vector.

Parameter vector layout::

    [rx, ry, rz,  tx, ty, tz,  <in-plane spacing>,  s_elevation]

- rotation vector (axis * angle, radians)
- translation (same units as the probe frame, typically mm)
- in-plane pixel spacing: one shared value (isotropic) or (sx, sy)
- elevation scale: length of the image z column. Image points lie in z = 0 so
  it is never observable; the solver holds it constant. Its sign carries the
  handedness of the image frame.
"""

import logging

import numpy as np
from scipy.spatial.transform import Rotation

from probe_calibration.pyceres_solvers.spatial_calibration_solver.core.errors import (
    DataIntegrityError,
    NumericDivergenceError,
)
from probe_calibration.pyceres_solvers.spatial_calibration_solver.core.geometry import (
    DEGENERACY_TOLERANCE,
    orthonormalize_rotation,
    validate_homogeneous_matrix,
)

logger = logging.getLogger(__name__)

ROTATION_SIZE = 3
TRANSLATION_SIZE = 3

# Index of the parameter block pyceres keeps fixed (elevation scale)
CONSTANT_BLOCK_INDEX = 3


class TransformParameterization:
    """Encode/decode 4x4 similarity transforms with isotropic or anisotropic pixel spacing."""

    def __init__(self, *, isotropic_pixel_spacing: bool) -> None:
        self.isotropic_pixel_spacing = isotropic_pixel_spacing

    def __repr__(self) -> str:
        return f"TransformParameterization(isotropic_pixel_spacing={self.isotropic_pixel_spacing})"

    @property
    def num_in_plane_scales(self) -> int:
        return 1 if self.isotropic_pixel_spacing else 2

    @property
    def parameter_block_sizes(self) -> list[int]:
        """Sizes of the rotation, translation, in-plane scale and elevation blocks."""
        return [ROTATION_SIZE, TRANSLATION_SIZE, self.num_in_plane_scales, 1]

    @property
    def num_parameters(self) -> int:
        return sum(self.parameter_block_sizes)

    @property
    def num_free_parameters(self) -> int:
        """Degrees of freedom the solver actually searches."""
        return self.num_parameters - 1

    # =========================================================================
    # ENCODE / DECODE
    # =========================================================================

    def encode(self, transform: np.ndarray) -> np.ndarray:
        """
        Convert a 4x4 image-to-probe matrix into a parameter vector.

        Args:
            transform: (4, 4) homogeneous matrix whose linear part is
                rotation @ diag(sx, sy, sz)

        Returns:
            (num_parameters,) parameter vector
        """
        matrix = validate_homogeneous_matrix(matrix=transform, name="transform")
        linear = matrix[:3, :3]

        scales = np.linalg.norm(linear, axis=0)
        if np.any(scales < DEGENERACY_TOLERANCE):
            raise DataIntegrityError(f"Transform has a zero-length axis, column norms {scales}")

        rotation = linear / scales
        if np.linalg.det(rotation) < 0:
            # Left-handed image frame: fold the reflection into the elevation axis
            rotation[:, 2] *= -1.0
            scales[2] *= -1.0
        rotation = orthonormalize_rotation(matrix=rotation)
        rotation_vector = Rotation.from_matrix(rotation).as_rotvec()

        if self.isotropic_pixel_spacing:
            if not np.isclose(scales[0], scales[1]):
                logger.debug(
                    f"Anisotropic spacing ({scales[0]:.6f}, {scales[1]:.6f}) projected to "
                    f"isotropic {np.mean(scales[:2]):.6f}"
                )
            in_plane = np.array([np.mean(scales[:2])])
        else:
            in_plane = scales[:2]

        return np.concatenate([rotation_vector, matrix[:3, 3], in_plane, scales[2:3]])

    def decode(self, parameters: np.ndarray) -> np.ndarray:
        """
        Convert a parameter vector back into a 4x4 image-to-probe matrix.

        Raises:
            NumericDivergenceError: parameters are non-finite, the rotation is
                degenerate, or a scale collapsed to zero
        """
        parameters = self._validate_parameters(parameters)
        if not np.all(np.isfinite(parameters)):
            raise NumericDivergenceError(f"Parameter vector is not finite: {parameters}")

        rotation = Rotation.from_rotvec(parameters[:ROTATION_SIZE]).as_matrix()
        rotation = orthonormalize_rotation(matrix=rotation)

        scales = self.axis_scales(parameters)
        if np.any(np.abs(scales) < DEGENERACY_TOLERANCE):
            raise NumericDivergenceError(f"Pixel spacing collapsed to zero: {scales}")

        matrix = np.eye(4)
        matrix[:3, :3] = rotation * scales
        matrix[:3, 3] = parameters[ROTATION_SIZE:ROTATION_SIZE + TRANSLATION_SIZE]
        return matrix

    # =========================================================================
    # PARAMETER ACCESS
    # =========================================================================

    def axis_scales(self, parameters: np.ndarray) -> np.ndarray:
        """(sx, sy, sz) encoded in a parameter vector."""
        parameters = self._validate_parameters(parameters)
        in_plane = self.in_plane_scales(parameters)
        return np.array([in_plane[0], in_plane[1], parameters[-1]])

    def in_plane_scales(self, parameters: np.ndarray) -> np.ndarray:
        """(sx, sy) pixel spacing; both entries are the same value when isotropic."""
        parameters = self._validate_parameters(parameters)
        start = ROTATION_SIZE + TRANSLATION_SIZE
        if self.isotropic_pixel_spacing:
            return np.array([parameters[start], parameters[start]])
        return parameters[start:start + 2].copy()

    def split(self, parameters: np.ndarray) -> list[np.ndarray]:
        """Split a parameter vector into independent contiguous pyceres parameter blocks."""
        parameters = self._validate_parameters(parameters)
        boundaries = np.cumsum(self.parameter_block_sizes)[:-1]
        return [np.array(block, dtype=np.float64) for block in np.split(parameters, boundaries)]

    def join(self, blocks: list[np.ndarray]) -> np.ndarray:
        """Inverse of split."""
        if [len(block) for block in blocks] != self.parameter_block_sizes:
            raise ValueError(
                f"Expected blocks of sizes {self.parameter_block_sizes}, "
                f"got {[len(block) for block in blocks]}"
            )
        return np.concatenate(blocks).astype(np.float64)

    def _validate_parameters(self, parameters: np.ndarray) -> np.ndarray:
        parameters = np.asarray(parameters, dtype=np.float64)
        if parameters.shape != (self.num_parameters,):
            raise ValueError(f"Expected {self.num_parameters} parameters, got shape {parameters.shape}")
        return parameters
