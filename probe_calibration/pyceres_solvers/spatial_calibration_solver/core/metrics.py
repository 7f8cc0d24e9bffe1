"""Error statistics of calibration residuals."""

import logging

import numpy as np
from numpydantic import NDArray, Shape
from pydantic import BaseModel, ConfigDict

from probe_calibration.pyceres_solvers.spatial_calibration_solver.core.errors import DataIntegrityError

logger = logging.getLogger(__name__)


class ErrorStatistics(BaseModel):
    """Mean, standard deviation and RMS of residual distances (mm)."""

    model_config = ConfigDict(frozen=True)

    mean: float
    standard_deviation: float
    rms: float
    count: int

    @classmethod
    def compute_from_residuals(
        cls,
        *,
        residuals: NDArray[Shape["* residual"], float]
    ) -> "ErrorStatistics":
        """
        Reduce residual distances to summary statistics.

        Args:
            residuals: (n,) non-negative distances, one per usable correspondence

        Returns:
            Computed statistics (population standard deviation)
        """
        residuals = np.asarray(residuals, dtype=np.float64)
        if residuals.size == 0:
            raise DataIntegrityError("No usable correspondences to compute the error from")

        return cls(
            mean=float(np.mean(residuals)),
            standard_deviation=float(np.std(residuals)),
            rms=float(np.sqrt(np.mean(residuals ** 2))),
            count=int(residuals.size),
        )

    def log(self, *, label: str) -> None:
        logger.info(
            f"  {label}: mean={self.mean:.4f}mm, std={self.standard_deviation:.4f}mm, "
            f"rms={self.rms:.4f}mm (n={self.count})"
        )
