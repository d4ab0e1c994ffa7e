"""Data types for spatial VB inference."""

from dataclasses import dataclass, field
from enum import Enum

import numpy as np
from numpy.typing import NDArray

from pysvb.errors import ConfigurationError
from pysvb.math.mvn import MVNDist


class FileFormat(Enum):
    """Supported file formats for saving/loading data."""

    MAT_V5 = "mat_v5"
    MAT_V73 = "mat_v73"
    NPZ = "npz"
    AUTO = "auto"


class SpatialPriorType(Enum):
    """Per-parameter prior regime, one character per model parameter."""

    NONSPATIAL = "N"
    IMAGE = "I"
    ARD = "A"
    MRF = "m"
    MRF2 = "M"
    PENNY_DIRICHLET = "p"
    PENNY = "P"
    SHRINKAGE = "S"
    SHRINKAGE_STS = "Z"
    DISTANCE_RHO = "R"
    DISTANCE = "D"
    FIXED_DISTANCE = "F"

    @classmethod
    def from_char(cls, char: str) -> "SpatialPriorType":
        try:
            return cls(char)
        except ValueError:
            raise ConfigurationError(
                f"Invalid spatial prior type '{char}' given to "
                "--param-spatial-priors") from None

    @property
    def is_shrinkage(self) -> bool:
        return self.value in "mMpPSZ"

    @property
    def is_distance(self) -> bool:
        return self.value in "RDF"

    @property
    def is_nonspatial(self) -> bool:
        return self.value in "NIA"

    @property
    def uses_sts(self) -> bool:
        """True for the shrinkage priors built from the StS matrix."""
        return self.value in "SZ"


class DistanceMeasure(Enum):
    """Pairwise voxel distance metrics."""

    EUCLIDEAN = "dist1"
    SQUARED_EUCLIDEAN = "dist2"
    MANHATTAN = "mdist"

    @classmethod
    def from_name(cls, name: "str | DistanceMeasure") -> "DistanceMeasure":
        if isinstance(name, cls):
            return name
        try:
            return cls(name)
        except ValueError:
            raise ConfigurationError(
                f"Unrecognized distance measure: {name}") from None


class EvidenceOptimization(Enum):
    """Which (if any) all-voxel evidence optimisation follows the theta update."""

    NONE = "none"
    FULL = "full"
    SIMULTANEOUS = "simultaneous"


class InferenceState(Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    ITERATING = "iterating"
    CONVERGED = "converged"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"


@dataclass
class SpatialHyperparams:
    """Global spatial hyperparameters, one entry per model parameter.

    Attributes:
        delta: Spatial smoothing scale (0 for nonspatial, -3 for shrinkage).
        rho: Log-scale multiplier on the spatial precision matrix.
        akmean: Shrinkage precision for MRF-style priors.
    """

    delta: NDArray[np.floating]
    rho: NDArray[np.floating]
    akmean: NDArray[np.floating]

    @classmethod
    def initial(cls, num_params: int, delta: float) -> "SpatialHyperparams":
        return cls(
            delta=np.full(num_params, delta, dtype=np.float64),
            rho=np.zeros(num_params, dtype=np.float64),
            akmean=np.full(num_params, 1e-8, dtype=np.float64),
        )

    def copy(self) -> "SpatialHyperparams":
        return SpatialHyperparams(
            delta=self.delta.copy(), rho=self.rho.copy(),
            akmean=self.akmean.copy())


@dataclass
class InferenceResult:
    """Output of an inference run.

    Attributes:
        posteriors: Per-voxel MVN over model parameters followed by noise
            parameters.
        posteriors_without_prior: Per-voxel likelihood-only posteriors over
            model parameters, when evidence optimisation was used.
        free_energy: Per-voxel free energy (N,) if it was calculated.
        hyperparams: Final spatial hyperparameters (spatial VB only).
        iterations: Number of outer iterations performed.
        state: Final inference state.
        resels: Per-parameter coefficient resels, (vb, eo) pairs.
        param_names: Names of the model parameters.
    """

    posteriors: list[MVNDist]
    param_names: list[str]
    posteriors_without_prior: list[MVNDist] | None = None
    free_energy: NDArray[np.floating] | None = None
    hyperparams: SpatialHyperparams | None = None
    iterations: int = 0
    state: InferenceState = InferenceState.UNINITIALIZED
    resels: list[tuple[float, float]] = field(default_factory=list)

    @property
    def num_voxels(self) -> int:
        return len(self.posteriors)

    @property
    def num_params(self) -> int:
        return len(self.param_names)

    @property
    def means(self) -> NDArray[np.floating]:
        """Posterior means of the model parameters, (N, P)."""
        P = self.num_params
        return np.array([mvn.means[:P] for mvn in self.posteriors])

    @property
    def variances(self) -> NDArray[np.floating]:
        """Posterior marginal variances of the model parameters, (N, P)."""
        P = self.num_params
        return np.array([np.diag(mvn.covariance)[:P] for mvn in self.posteriors])
