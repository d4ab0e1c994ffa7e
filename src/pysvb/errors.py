"""Exception hierarchy for spatial VB inference."""


class SpatialVBError(Exception):
    """Base class for all inference errors."""


class ConfigurationError(SpatialVBError, ValueError):
    """Bad or inconsistent options, detected before any voxel is processed."""


class InternalConsistencyError(SpatialVBError, RuntimeError):
    """A broken invariant. Never recovered from."""


class SingularCovarianceError(InternalConsistencyError):
    """The spatial covariance matrix could not be inverted."""


class VoxelNumericalError(SpatialVBError, ArithmeticError):
    """Numerical failure while updating the posterior of a single voxel."""

    def __init__(self, voxel: int, message: str):
        super().__init__(f"Numerical error in voxel {voxel}: {message}")
        self.voxel = voxel
