"""Multivariate normal distribution stored by mean and precision/covariance."""

import numpy as np


class MVNDist:
    """Multivariate normal with lazily synchronised precision and covariance.

    Either the precision or the covariance matrix is authoritative at any one
    time; the other is derived by inversion on first access.
    """

    def __init__(
        self,
        means: np.ndarray,
        precisions: np.ndarray | None = None,
        covariance: np.ndarray | None = None,
    ):
        self._means = np.array(means, dtype=np.float64).ravel()
        n = self._means.size
        if precisions is None and covariance is None:
            covariance = np.eye(n)
        self._precisions = None
        self._covariance = None
        if precisions is not None:
            self.set_precisions(precisions)
        else:
            self.set_covariance(covariance)

    @classmethod
    def from_means(cls, means: np.ndarray, precision: float) -> "MVNDist":
        """Isotropic distribution with the given precision on every parameter."""
        means = np.asarray(means, dtype=np.float64).ravel()
        return cls(means, precisions=np.eye(means.size) * precision)

    @property
    def size(self) -> int:
        return self._means.size

    @property
    def means(self) -> np.ndarray:
        return self._means

    @means.setter
    def means(self, value: np.ndarray) -> None:
        value = np.array(value, dtype=np.float64).ravel()
        if value.size != self.size:
            raise ValueError(
                f"Mean vector has {value.size} entries, expected {self.size}")
        self._means = value

    @property
    def precisions(self) -> np.ndarray:
        if self._precisions is None:
            self._precisions = _sym_inv(self._covariance)
        return self._precisions

    @property
    def covariance(self) -> np.ndarray:
        if self._covariance is None:
            self._covariance = _sym_inv(self._precisions)
        return self._covariance

    def set_precisions(self, precisions: np.ndarray) -> None:
        precisions = _as_square(precisions, self.size)
        self._precisions = precisions
        self._covariance = None

    def set_covariance(self, covariance: np.ndarray) -> None:
        covariance = _as_square(covariance, self.size)
        self._covariance = covariance
        self._precisions = None

    def copy(self) -> "MVNDist":
        out = MVNDist.__new__(MVNDist)
        out._means = self._means.copy()
        out._precisions = None if self._precisions is None else self._precisions.copy()
        out._covariance = None if self._covariance is None else self._covariance.copy()
        return out

    def submatrix(self, start: int, stop: int) -> "MVNDist":
        """Marginal over parameters [start, stop)."""
        cov = self.covariance[start:stop, start:stop]
        return MVNDist(self._means[start:stop], covariance=cov.copy())

    def concat(self, other: "MVNDist") -> "MVNDist":
        """Joint distribution of two independent MVNs."""
        n1, n2 = self.size, other.size
        cov = np.zeros((n1 + n2, n1 + n2))
        cov[:n1, :n1] = self.covariance
        cov[n1:, n1:] = other.covariance
        return MVNDist(np.concatenate([self._means, other.means]), covariance=cov)

    def __repr__(self) -> str:
        return f"MVNDist(means={self._means!r})"


def _as_square(mat: np.ndarray, n: int) -> np.ndarray:
    mat = np.array(mat, dtype=np.float64)
    if mat.ndim == 1:
        mat = np.diag(mat)
    if mat.shape != (n, n):
        raise ValueError(f"Expected ({n}, {n}) matrix, got {mat.shape}")
    return mat


def _sym_inv(mat: np.ndarray) -> np.ndarray:
    inv = np.linalg.inv(mat)
    return 0.5 * (inv + inv.T)
