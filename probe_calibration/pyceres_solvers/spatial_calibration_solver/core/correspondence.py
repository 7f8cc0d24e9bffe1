"""Pydantic models for the correspondence data the optimizer fits against."""

import logging
from typing import Annotated, Iterable, Literal, Sequence, Union

import numpy as np
from numpy.typing import NDArray
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from probe_calibration.pyceres_solvers.spatial_calibration_solver.core.configuration import OptimizationMethod
from probe_calibration.pyceres_solvers.spatial_calibration_solver.core.geometry import (
    as_points_3d,
    validate_homogeneous_matrix,
)

logger = logging.getLogger(__name__)


def _read_only(array: np.ndarray) -> np.ndarray:
    array = np.array(array, dtype=np.float64)
    array.setflags(write=False)
    return array


class FrozenCalibrationModel(BaseModel):
    """Immutable model that may hold numpy arrays."""

    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        extra="forbid",
        frozen=True,
    )


# =============================================================================
# PHANTOM GEOMETRY
# =============================================================================

class Wire(FrozenCalibrationModel):
    """A straight phantom wire defined by two endpoints in phantom space (mm)."""

    name: str
    end_point_front: NDArray[np.float64]  # (3,)
    end_point_back: NDArray[np.float64]  # (3,)

    @field_validator("end_point_front", "end_point_back", mode="before")
    @classmethod
    def validate_end_point(cls, v: object) -> NDArray[np.float64]:
        point = np.array(v, dtype=np.float64).reshape(-1)
        if point.shape == (4,):
            point = point[:3]
        if point.shape != (3,):
            raise ValueError(f"Wire endpoint must have 3 coordinates, got shape {point.shape}")
        if not np.all(np.isfinite(point)):
            raise ValueError("Wire endpoint contains non-finite values")
        return _read_only(point)

    @property
    def direction(self) -> NDArray[np.float64]:
        """Unnormalised front-to-back direction."""
        return self.end_point_back - self.end_point_front


class NWire(FrozenCalibrationModel):
    """A group of wires forming one 'N' fiducial of the phantom."""

    name: str
    wires: tuple[Wire, ...]

    @field_validator("wires")
    @classmethod
    def wires_not_empty(cls, v: tuple[Wire, ...]) -> tuple[Wire, ...]:
        if len(v) == 0:
            raise ValueError("NWire must contain at least one wire")
        return v


def flatten_wires(wires: Iterable[Wire | NWire]) -> tuple[Wire, ...]:
    """Flatten a mixed list of wires and NWires into catalogue order."""
    flattened: list[Wire] = []
    for item in wires:
        if isinstance(item, NWire):
            flattened.extend(item.wires)
        else:
            flattened.append(item)
    return tuple(flattened)


# =============================================================================
# DATASETS
# =============================================================================

class _CorrespondenceDatasetBase(FrozenCalibrationModel):
    image_points: NDArray[np.float64]  # (N, 3) image coordinates, z = 0 for in-plane points
    outlier_indices: frozenset[int] = frozenset()

    @field_validator("image_points", mode="before")
    @classmethod
    def validate_image_points(cls, v: object) -> NDArray[np.float64]:
        return _read_only(as_points_3d(points=v, name="image_points"))

    @field_validator("outlier_indices", mode="before")
    @classmethod
    def validate_outlier_indices(cls, v: object) -> frozenset[int]:
        if v is None:
            return frozenset()
        return frozenset(int(index) for index in v)

    @property
    def num_correspondences(self) -> int:
        return len(self.image_points)

    def active_indices(self) -> np.ndarray:
        """Sorted indices of the correspondences that take part in the cost."""
        mask = np.ones(self.num_correspondences, dtype=bool)
        if self.outlier_indices:
            mask[sorted(self.outlier_indices)] = False
        return np.flatnonzero(mask)

    def with_outliers(self, outlier_indices: Iterable[int]) -> "_CorrespondenceDatasetBase":
        """Copy of this snapshot with a different outlier set."""
        data = {name: getattr(self, name) for name in type(self).model_fields}
        data["outlier_indices"] = frozenset(int(index) for index in outlier_indices)
        return type(self)(**data)

    def _check_outliers_in_range(self) -> None:
        invalid = sorted(index for index in self.outlier_indices if not 0 <= index < self.num_correspondences)
        if invalid:
            raise ValueError(
                f"Outlier indices {invalid} out of range for {self.num_correspondences} correspondences"
            )


class PointCorrespondenceDataset(_CorrespondenceDatasetBase):
    """
    Middle-wire intersection points observed in the image and their known
    positions in the probe frame (index aligned).
    """

    method: Literal[OptimizationMethod.MIDDLE_WIRE_DISTANCE_3D] = OptimizationMethod.MIDDLE_WIRE_DISTANCE_3D
    probe_points: NDArray[np.float64]  # (N, 3) in mm

    @field_validator("probe_points", mode="before")
    @classmethod
    def validate_probe_points(cls, v: object) -> NDArray[np.float64]:
        points = as_points_3d(points=v, name="probe_points")
        return _read_only(points)

    @model_validator(mode="after")
    def validate_alignment(self) -> "PointCorrespondenceDataset":
        if len(self.image_points) != len(self.probe_points):
            raise ValueError(
                f"image_points ({len(self.image_points)}) and probe_points "
                f"({len(self.probe_points)}) must have the same length"
            )
        self._check_outliers_in_range()
        return self


class WireCorrespondenceDataset(_CorrespondenceDatasetBase):
    """
    Wire crossings observed in the image, one per wire per frame, together
    with the phantom wire catalogue and the tracked probe pose of each frame.

    Point k belongs to frame k // n_wires and wire k % n_wires.
    """

    method: Literal[OptimizationMethod.ALL_WIRE_DISTANCE_2D] = OptimizationMethod.ALL_WIRE_DISTANCE_2D
    wires: tuple[Wire, ...]
    probe_to_phantom_transforms: NDArray[np.float64]  # (n_frames, 4, 4)

    @field_validator("wires", mode="before")
    @classmethod
    def validate_wires(cls, v: object) -> tuple[Wire, ...]:
        return flatten_wires(v)

    @field_validator("probe_to_phantom_transforms", mode="before")
    @classmethod
    def validate_transforms(cls, v: object) -> NDArray[np.float64]:
        transforms = np.array(v, dtype=np.float64)
        if transforms.ndim != 3 or transforms.shape[1:] != (4, 4):
            raise ValueError(f"probe_to_phantom_transforms must have shape (n_frames, 4, 4), got {transforms.shape}")
        for frame_index, transform in enumerate(transforms):
            validate_homogeneous_matrix(matrix=transform, name=f"probe_to_phantom_transforms[{frame_index}]")
        return _read_only(transforms)

    @model_validator(mode="after")
    def validate_layout(self) -> "WireCorrespondenceDataset":
        if len(self.wires) == 0:
            raise ValueError("At least one wire is required")

        names = [wire.name for wire in self.wires]
        if len(set(names)) != len(names):
            raise ValueError(f"Wire names must be unique, got {names}")

        expected = self.num_frames * self.num_wires
        if expected != self.num_correspondences:
            raise ValueError(
                f"{self.num_frames} frames x {self.num_wires} wires = {expected} points expected, "
                f"got {self.num_correspondences} image points"
            )
        self._check_outliers_in_range()
        return self

    @property
    def num_frames(self) -> int:
        return len(self.probe_to_phantom_transforms)

    @property
    def num_wires(self) -> int:
        return len(self.wires)

    def frame_of(self, index: int) -> int:
        return index // self.num_wires

    def wire_of(self, index: int) -> Wire:
        return self.wires[index % self.num_wires]

    def frame_indices(self, frame_index: int) -> np.ndarray:
        """Active point indices of one frame (may be empty)."""
        start = frame_index * self.num_wires
        indices = np.arange(start, start + self.num_wires)
        return np.array([index for index in indices if index not in self.outlier_indices], dtype=int)


CorrespondenceDataset = Annotated[
    Union[PointCorrespondenceDataset, WireCorrespondenceDataset],
    Field(discriminator="method"),
]


def build_point_dataset(
    *,
    image_points: np.ndarray,
    probe_points: np.ndarray,
    outlier_indices: Sequence[int] | None = None
) -> PointCorrespondenceDataset:
    """Build the 3D middle-wire dataset."""
    return PointCorrespondenceDataset(
        image_points=image_points,
        probe_points=probe_points,
        outlier_indices=outlier_indices,
    )


def build_wire_dataset(
    *,
    image_points: np.ndarray,
    wires: Sequence[Wire | NWire],
    probe_to_phantom_transforms: np.ndarray,
    outlier_indices: Sequence[int] | None = None
) -> WireCorrespondenceDataset:
    """Build the 2D all-wire dataset."""
    return WireCorrespondenceDataset(
        image_points=image_points,
        wires=wires,
        probe_to_phantom_transforms=probe_to_phantom_transforms,
        outlier_indices=outlier_indices,
    )
