"""Derivatives of the free energy / evidence with respect to delta and rho.

Each functional is a Function1D whose zero crossing (it is descending in its
argument) is the optimal smoothing scale or log-scale factor for one model
parameter. All the N x N products come from the shared CovarianceCache, so a
single delta probe inverts C at most once.
"""

import logging

import numpy as np

from pysvb.errors import InternalConsistencyError, SingularCovarianceError
from pysvb.logs import warn_once
from pysvb.math.covariance import CovarianceCache
from pysvb.math.zero_finder import (
    BisectionGuesstimator,
    DescendingZeroFinder,
    Function1D,
)

logger = logging.getLogger(__name__)

RHO_SEARCH_MIN = -70.0
RHO_SEARCH_MAX = 70.0


def _gamma_prior_term(delta: float, gamma_prior: tuple[float, float] | None) -> float:
    """Derivative of log Ga(delta; b, c), or 0 with no prior on delta."""
    if gamma_prior is None:
        warn_once(logger, "Not using any prior at all on delta")
        return 0.0
    b, c = gamma_prior
    warn_once(logger, f"Using a Ga({b}, {c}) prior on delta!")
    # d/ddelta of -gammaln(c) + (c-1)*log(delta) - c*log(b) - delta/b
    return (c - 1) / delta - 1 / b


class DerivFdRho(Function1D):
    """dF/drho for fixed delta."""

    def __init__(
        self,
        covar: CovarianceCache,
        cov_ratio: np.ndarray,
        mean_diff_ratio: np.ndarray,
        delta: float,
    ):
        self.covar = covar
        self.cov_ratio = np.asarray(cov_ratio, dtype=np.float64)
        self.mean_diff_ratio = np.asarray(mean_diff_ratio, dtype=np.float64)
        self.delta = delta

    def calculate(self, rho: float) -> float:
        n_voxels = self.covar.num_voxels
        cinv = self.covar.get_cinv(self.delta)
        scale = np.exp(rho)
        out = 0.5 * n_voxels
        out -= 0.5 * scale * np.dot(self.cov_ratio, np.diag(cinv))
        out -= 0.5 * scale * self.mean_diff_ratio @ cinv @ self.mean_diff_ratio
        return float(out)


class DerivEdDelta(Function1D):
    """Evidence derivative dE/ddelta for parameter k.

    Uses the per-voxel posterior without the spatial prior: its precision
    and mean on parameter k, made dimensionless with the nonspatial prior.
    """

    def __init__(
        self,
        covar: CovarianceCache,
        prec_without_prior: np.ndarray,
        means_without_prior: np.ndarray,
        prior_mean: float,
        prior_precision: float,
        allow_rho: bool = False,
        delta_gamma_prior: tuple[float, float] | None = None,
    ):
        n_voxels = covar.num_voxels
        prec_without_prior = np.asarray(prec_without_prior, dtype=np.float64)
        means_without_prior = np.asarray(means_without_prior, dtype=np.float64)
        if prec_without_prior.shape != (n_voxels,) or means_without_prior.shape != (n_voxels,):
            raise InternalConsistencyError(
                f"Expected {n_voxels} voxel values, got "
                f"{prec_without_prior.shape} and {means_without_prior.shape}")
        self.covar = covar
        self.allow_rho = allow_rho
        self.delta_gamma_prior = delta_gamma_prior

        prior_cov = 1.0 / prior_precision
        self.xxtr = prec_without_prior * prior_cov
        self.xytr = self.xxtr * (means_without_prior - prior_mean) * np.sqrt(prior_precision)

    def _posterior(self, delta: float) -> tuple[np.ndarray, np.ndarray]:
        sigma = np.linalg.inv(np.diag(self.xxtr) + self.covar.get_cinv(delta))
        return sigma, sigma @ self.xytr

    def calculate(self, delta: float) -> float:
        try:
            ci_codist_ci, out = self.covar.get_ci_codist_ci(delta)
            sigma, mu = self._posterior(delta)
        except (np.linalg.LinAlgError, SingularCovarianceError):
            logger.debug("Singular covariance at delta=%g", delta)
            return float("nan")

        # trace(Sigma * CiCodistCi) for symmetric matrices
        out -= np.sum(sigma * ci_codist_ci)
        out -= mu @ ci_codist_ci @ mu
        # = -1/2 * d(1/delta)/ddelta
        out /= -4 * delta * delta
        out += _gamma_prior_term(delta, self.delta_gamma_prior)
        return float(out)

    def optimize_rho(self, delta: float) -> float:
        """Closed-form optimal rho for this delta (0 if rho is fixed).

        Works on the prior-scaled likelihood terms, so it also holds when the
        parameter prior precision is not 1.
        """
        if not self.allow_rho:
            return 0.0
        n_voxels = self.covar.num_voxels
        sigma, mu = self._posterior(delta)
        cinv = self.covar.get_cinv(delta)
        tmp = np.sum((sigma + np.outer(mu, mu)) * cinv) / n_voxels
        with np.errstate(divide="ignore", invalid="ignore"):
            rho = float(-np.log(tmp))
        logger.debug("rho == %g", rho)
        return rho


class DerivFdDelta(Function1D):
    """Free-energy derivative dF/ddelta, optimised over rho at every probe.

    Args:
        covar: Shared covariance cache.
        cov_ratio: Posterior variance / prior variance per voxel (N,).
        mean_diff_ratio: (posterior mean - prior mean) / prior std (N,).
        allow_rho: If False, rho is held at 0.
        exact_rho: Always use the nested zero finder for rho rather than the
            closed form that ignores the prior on rho.
    """

    MIN_DELTA = 0.05

    def __init__(
        self,
        covar: CovarianceCache,
        cov_ratio: np.ndarray,
        mean_diff_ratio: np.ndarray,
        allow_rho: bool = True,
        exact_rho: bool = False,
        delta_gamma_prior: tuple[float, float] | None = None,
    ):
        n_voxels = covar.num_voxels
        self.covar = covar
        self.cov_ratio = np.asarray(cov_ratio, dtype=np.float64)
        self.mean_diff_ratio = np.asarray(mean_diff_ratio, dtype=np.float64)
        if self.cov_ratio.shape != (n_voxels,) or self.mean_diff_ratio.shape != (n_voxels,):
            raise InternalConsistencyError(
                f"Expected {n_voxels} voxel values, got "
                f"{self.cov_ratio.shape} and {self.mean_diff_ratio.shape}")
        self.allow_rho = allow_rho
        self.exact_rho = exact_rho
        self.delta_gamma_prior = delta_gamma_prior

    def pick_faster_guess(self, guess, lower, upper, allow_endpoints=False):
        return self.covar.get_cached_in_range(guess, lower, upper, allow_endpoints)

    def optimize_rho(self, delta: float) -> float:
        if not self.allow_rho:
            return 0.0

        rho = float("nan")
        if not self.exact_rho:
            n_voxels = self.covar.num_voxels
            cinv = self.covar.get_cinv(delta)
            # Can be negative if the inversion was numerically poor; rho is
            # then NaN and the search below takes over.
            tmp = (np.dot(self.cov_ratio, np.diag(cinv))
                   + self.mean_diff_ratio @ cinv @ self.mean_diff_ratio)
            with np.errstate(divide="ignore", invalid="ignore"):
                rho = float(-np.log(tmp / n_voxels))
            logger.debug("  rho2 == %g", rho)

        if not np.isfinite(rho):
            fcn = DerivFdRho(self.covar, self.cov_ratio, self.mean_diff_ratio, delta)
            rho = DescendingZeroFinder(
                fcn,
                initial_guess=1.0,
                search_min=RHO_SEARCH_MIN,
                search_max=RHO_SEARCH_MAX,
                tol_y=1e-4,
                ratio_tol_x=1.001,
                guesstimator=BisectionGuesstimator(),
            ).find()
            logger.debug(" rho == %g", rho)
        return rho

    def calculate(self, delta: float) -> float:
        if delta < self.MIN_DELTA:
            raise InternalConsistencyError(
                f"delta={delta} is below the minimum of {self.MIN_DELTA}")
        try:
            rho = self.optimize_rho(delta)
            ci_codist_ci, out = self.covar.get_ci_codist_ci(delta)
        except SingularCovarianceError:
            logger.debug("Singular covariance at delta=%g", delta)
            return float("nan")
        scale = np.exp(rho)

        out -= scale * np.dot(self.cov_ratio, np.diag(ci_codist_ci))
        out -= scale * self.mean_diff_ratio @ ci_codist_ci @ self.mean_diff_ratio
        out /= -4 * delta * delta
        out += _gamma_prior_term(delta, self.delta_gamma_prior)
        return float(out)
