"""Distance matrices and the memoised spatial covariance cache."""

import bisect
import logging

import numpy as np

from pysvb.errors import InternalConsistencyError, SingularCovarianceError
from pysvb.logs import warn_once
from pysvb.types import DistanceMeasure

logger = logging.getLogger(__name__)

# Above this many voxels the dense N x N matrices get expensive.
LARGE_VOXEL_COUNT = 7500


def calc_distances(
    coords: np.ndarray,
    measure: DistanceMeasure | str = DistanceMeasure.EUCLIDEAN,
) -> np.ndarray:
    """Symmetric matrix of pairwise voxel distances.

    Args:
        coords: (3, N) voxel coordinates.
        measure: dist1 = Euclidean distance, dist2 = squared Euclidean
            distance raised to 0.995, mdist = Manhattan distance.

    Returns:
        (N, N) distance matrix.

    Raises:
        ConfigurationError: for an unrecognised measure.
    """
    measure = DistanceMeasure.from_name(measure)
    positions = np.asarray(coords, dtype=np.float64)
    n_voxels = positions.shape[1]

    if n_voxels > LARGE_VOXEL_COUNT:
        logger.warning(
            "Over %d GB of memory will be used just to calculate the "
            "distance matrix", int(2.5 * n_voxels * n_voxels * 8 / 1e9))

    # (3, N, N) signed coordinate differences
    rel = positions[:, :, np.newaxis] - positions[:, np.newaxis, :]

    if measure is DistanceMeasure.EUCLIDEAN:
        logger.info("Using absolute Euclidean distance")
        distances = np.sqrt(np.sum(rel ** 2, axis=0))
    elif measure is DistanceMeasure.SQUARED_EUCLIDEAN:
        logger.info("Using almost-squared (^1.99) Euclidean distance")
        distances = np.sum(rel ** 2, axis=0) ** 0.995
    else:
        logger.info("Using Manhattan distance")
        warn_once(logger, "Manhattan distance may cause numerical problems "
                          "in the covariance inversion")
        distances = np.sum(np.abs(rel), axis=0)

    # Exact symmetry regardless of rounding in the power
    return 0.5 * (distances + distances.T)


class CovarianceCache:
    """Spatial covariance matrices and derived products, keyed on delta.

    C(a, b) = exp(-0.5 * distance(a, b) / delta), or the identity for
    delta == 0. C^-1 and C^-1 (C o D) C^-1 are computed on first request per
    delta. With ``use_cache=False`` only the most recently requested delta is
    retained, which bounds memory to a handful of N x N matrices.
    """

    def __init__(self, distances: np.ndarray, use_cache: bool = True):
        distances = np.asarray(distances, dtype=np.float64)
        if distances.ndim != 2 or distances.shape[0] != distances.shape[1]:
            raise InternalConsistencyError(
                f"Distance matrix must be square, got {distances.shape}")
        self._distances = distances
        self.use_cache = use_cache
        self._cinv_cache: dict[float, np.ndarray] = {}
        self._ci_codist_ci_cache: dict[float, tuple[np.ndarray, float]] = {}
        if not use_cache:
            warn_once(logger, "Covariance cache is disabled to avoid memory "
                              "problems")

    @property
    def distances(self) -> np.ndarray:
        return self._distances

    @property
    def num_voxels(self) -> int:
        return self._distances.shape[0]

    def clear(self) -> None:
        self._cinv_cache.clear()
        self._ci_codist_ci_cache.clear()

    def get_c(self, delta: float) -> np.ndarray:
        """Covariance matrix for smoothing scale delta (not cached)."""
        if delta == 0:
            return np.eye(self.num_voxels)
        return np.exp(-0.5 * self._distances / delta)

    def get_cinv(self, delta: float) -> np.ndarray:
        """Inverse covariance matrix for smoothing scale delta.

        Raises:
            SingularCovarianceError: if C cannot be inverted.
        """
        delta = float(delta)
        cinv = self._cinv_cache.get(delta)
        if cinv is None:
            if not self.use_cache:
                self._cinv_cache.clear()
            try:
                cinv = np.linalg.inv(self.get_c(delta))
            except np.linalg.LinAlgError as exc:
                raise SingularCovarianceError(
                    f"Spatial covariance matrix is singular for "
                    f"delta={delta}") from exc
            cinv = 0.5 * (cinv + cinv.T)
            self._cinv_cache[delta] = cinv
        return cinv

    def get_ci_codist_ci(self, delta: float) -> tuple[np.ndarray, float]:
        """C^-1 (C o D) C^-1 and trace(C^-1 (C o D)) for smoothing scale delta.

        Raises:
            InternalConsistencyError: if the product is not symmetric.
        """
        delta = float(delta)
        cached = self._ci_codist_ci_cache.get(delta)
        if cached is None:
            if not self.use_cache:
                self._ci_codist_ci_cache.clear()
            cinv = self.get_cinv(delta)
            ci_codist = cinv @ (self.get_c(delta) * self._distances)
            trace = float(np.trace(ci_codist))
            product = ci_codist @ cinv
            symmetric = 0.5 * (product + product.T)

            max_abs_err = np.max(np.abs(symmetric - product)) if product.size else 0.0
            max_abs_val = np.max(np.abs(product)) if product.size else 0.0
            if max_abs_err > max_abs_val * 1e-5:
                raise InternalConsistencyError(
                    f"C^-1 (C o D) C^-1 is not symmetric for delta={delta}: "
                    f"error = {max_abs_err}, max abs value = {max_abs_val}")
            cached = (symmetric, trace)
            self._ci_codist_ci_cache[delta] = cached
        return cached

    def cached_deltas(self) -> list[float]:
        return sorted(self._cinv_cache)

    def get_cached_in_range(
        self,
        guess: float,
        lower: float,
        upper: float,
        allow_endpoints: bool = False,
    ) -> float | None:
        """Cached delta inside (lower, upper) closest to guess, if any.

        Endpoints are admissible only when ``allow_endpoints`` is set.
        """
        if not lower < guess < upper:
            raise InternalConsistencyError(
                f"Guess {guess} is not inside ({lower}, {upper})")
        keys = self.cached_deltas()
        start = bisect.bisect_left(keys, lower)
        best = None
        for key in keys[start:]:
            if key > upper:
                break
            if not allow_endpoints and (key == lower or key == upper):
                continue
            if best is None or abs(key - guess) < abs(best - guess):
                best = key
        return best
