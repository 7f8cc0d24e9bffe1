"""Homogeneous transform helpers and wire/image-plane geometry."""

import logging
from typing import TYPE_CHECKING, Sequence

import numpy as np

from probe_calibration.pyceres_solvers.spatial_calibration_solver.core.errors import (
    DataIntegrityError,
    NumericDivergenceError,
)

if TYPE_CHECKING:
    from probe_calibration.pyceres_solvers.spatial_calibration_solver.core.correspondence import Wire

logger = logging.getLogger(__name__)

# Below this a determinant or direction length is treated as zero
DEGENERACY_TOLERANCE = 1e-12


def validate_homogeneous_matrix(*, matrix: np.ndarray, name: str = "transform") -> np.ndarray:
    """
    Check that a matrix is a finite 4x4 homogeneous transform and return a float64 copy.

    Args:
        matrix: Candidate (4, 4) matrix
        name: Name used in error messages

    Returns:
        (4, 4) float64 copy of the matrix
    """
    matrix = np.array(matrix, dtype=np.float64)
    if matrix.shape != (4, 4):
        raise DataIntegrityError(f"{name} must have shape (4, 4), got {matrix.shape}")
    if not np.all(np.isfinite(matrix)):
        raise DataIntegrityError(f"{name} contains non-finite values")
    if not np.allclose(matrix[3], [0.0, 0.0, 0.0, 1.0]):
        raise DataIntegrityError(f"{name} last row must be [0, 0, 0, 1], got {matrix[3]}")
    return matrix


def as_points_3d(*, points: np.ndarray, name: str = "points") -> np.ndarray:
    """
    Normalise a point list to (N, 3).

    (N, 2) image points get z = 0 appended, homogeneous (N, 4) points lose
    their last column.
    """
    points = np.array(points, dtype=np.float64)
    if points.ndim == 1 and points.size == 0:
        points = points.reshape(0, 3)
    if points.ndim != 2 or points.shape[1] not in (2, 3, 4):
        raise ValueError(f"{name} must have shape (N, 2), (N, 3) or (N, 4), got {points.shape}")
    if points.shape[1] == 2:
        points = np.column_stack([points, np.zeros(len(points))])
    elif points.shape[1] == 4:
        points = points[:, :3]
    if not np.all(np.isfinite(points)):
        raise ValueError(f"{name} contains non-finite values")
    return np.ascontiguousarray(points)


def transform_points(*, transform: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Apply a (4, 4) transform to (N, 3) points."""
    return points @ transform[:3, :3].T + transform[:3, 3]


def orthonormalize_rotation(*, matrix: np.ndarray) -> np.ndarray:
    """
    Project a 3x3 matrix onto the nearest proper rotation (SVD polar decomposition).

    Raises:
        NumericDivergenceError: the matrix is non-finite or singular
    """
    if not np.all(np.isfinite(matrix)):
        raise NumericDivergenceError("Rotation matrix contains non-finite values")
    if abs(np.linalg.det(matrix)) < DEGENERACY_TOLERANCE:
        raise NumericDivergenceError("Rotation matrix is singular")

    u, _, vt = np.linalg.svd(matrix)
    rotation = u @ vt
    if np.linalg.det(rotation) < 0:
        u[:, -1] *= -1.0
        rotation = u @ vt
    return rotation


def intersect_wire_with_image_plane(
    *,
    image_to_phantom: np.ndarray,
    end_point_front: np.ndarray,
    end_point_back: np.ndarray
) -> np.ndarray:
    """
    Find where a phantom wire crosses the image plane.

    The image plane is z = 0 of the image frame. Solves
    u * A[:, 0] + v * A[:, 1] + t = front + lambda * (back - front).

    Args:
        image_to_phantom: (4, 4) image-to-phantom transform
        end_point_front: (3,) wire endpoint in phantom space
        end_point_back: (3,) wire endpoint in phantom space

    Returns:
        (2,) image coordinates (u, v) of the crossing
    """
    direction = np.asarray(end_point_back, dtype=np.float64) - np.asarray(end_point_front, dtype=np.float64)
    system = np.column_stack([image_to_phantom[:3, 0], image_to_phantom[:3, 1], -direction])
    if abs(np.linalg.det(system)) < DEGENERACY_TOLERANCE:
        raise DataIntegrityError("Wire is parallel to the image plane or has zero length")

    solution = np.linalg.solve(system, np.asarray(end_point_front, dtype=np.float64) - image_to_phantom[:3, 3])
    return solution[:2]


def simulate_wire_intersections(
    *,
    wires: Sequence["Wire"],
    probe_to_phantom_transforms: np.ndarray,
    image_to_probe: np.ndarray
) -> np.ndarray:
    """
    Predict the image points where every wire crosses every frame's image plane.

    Args:
        wires: Wire catalogue in phantom space
        probe_to_phantom_transforms: (n_frames, 4, 4) per-frame tracker poses
        image_to_probe: (4, 4) image-to-probe transform

    Returns:
        (n_frames * n_wires, 2) image points, frame-major
    """
    points = []
    for probe_to_phantom in probe_to_phantom_transforms:
        image_to_phantom = probe_to_phantom @ image_to_probe
        for wire in wires:
            points.append(intersect_wire_with_image_plane(
                image_to_phantom=image_to_phantom,
                end_point_front=wire.end_point_front,
                end_point_back=wire.end_point_back
            ))
    return np.array(points, dtype=np.float64).reshape(-1, 2)
