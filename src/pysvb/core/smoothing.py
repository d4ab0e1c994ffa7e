"""Per-parameter optimisation of the spatial smoothing scale delta."""

import logging

import numpy as np

from pysvb.logs import warn_once
from pysvb.math.covariance import CovarianceCache
from pysvb.math.derivatives import DerivEdDelta, DerivFdDelta
from pysvb.math.zero_finder import DescendingZeroFinder, LogBisectionGuesstimator

logger = logging.getLogger(__name__)

# Much below 0.2 the inversion becomes painfully slow
EVIDENCE_DELTA_MIN = 0.05
EVIDENCE_DELTA_MAX = 1e3
# Above 1e15, exp(-0.5 / delta) == 1 and C is singular
SMOOTHING_DELTA_MIN = 0.2
SMOOTHING_DELTA_MAX = 1e15


def optimize_evidence(
    covar: CovarianceCache,
    prec_without_prior: np.ndarray,
    means_without_prior: np.ndarray,
    prior_mean: float,
    prior_precision: float,
    guess: float,
    new_delta_iterations: int = 10,
    allow_rho: bool = False,
) -> tuple[float, float]:
    """Maximise the evidence over delta for one parameter.

    Args:
        prec_without_prior: (N,) likelihood-only posterior precision of the
            parameter at each voxel.
        means_without_prior: (N,) likelihood-only posterior mean.
        prior_mean: Nonspatial prior mean of the parameter.
        prior_precision: Nonspatial prior precision of the parameter.
        guess: Starting value of delta (normally last iteration's).
        new_delta_iterations: Evaluation budget beyond the bracketing pair.
        allow_rho: Also return the closed-form optimal rho.

    Returns:
        (delta, rho); rho is 0 unless allow_rho is set.
    """
    fcn = DerivEdDelta(covar, prec_without_prior, means_without_prior,
                       prior_mean, prior_precision, allow_rho=allow_rho)
    delta = DescendingZeroFinder(
        fcn,
        initial_guess=guess,
        search_min=EVIDENCE_DELTA_MIN,
        search_max=EVIDENCE_DELTA_MAX,
        # Two probes once settled, 7 to get from 0.05 to 1000
        initial_scale=guess * 0.009,
        scale_growth=16,
        ratio_tol_x=1.01,
        max_evaluations=2 + new_delta_iterations,
        guesstimator=LogBisectionGuesstimator(),
    ).find()
    warn_once(logger, f"Hard limits on delta: [{EVIDENCE_DELTA_MIN}, {EVIDENCE_DELTA_MAX}]")
    return delta, fcn.optimize_rho(delta)


def brute_force_delta_dump(
    covar: CovarianceCache,
    cov_ratio: np.ndarray,
    mean_diff_ratio: np.ndarray,
) -> list[tuple[float, float, float, float]]:
    """Tabulate the terms of the free energy over a grid of delta values.

    Returns:
        (delta, -0.5 log|C|, -0.5 tr(C^-1 covRatio), -0.5 m' C^-1 m) rows,
        also written to the log.
    """
    logger.info("BEGINNING BRUTE-FORCE DELTA SEARCH.")
    rows = []
    dk = 0.001
    while dk < 1e4:
        _, logdet = np.linalg.slogdet(covar.get_c(dk))
        cinv = covar.get_cinv(dk)
        row = (
            dk,
            -0.5 * logdet,
            -0.5 * float(np.dot(np.diag(cinv), cov_ratio)),
            -0.5 * float(mean_diff_ratio @ cinv @ mean_diff_ratio),
        )
        logger.info("BRUTEFORCE=%g\t%g\t%g\t%g", *row)
        rows.append(row)
        dk *= np.sqrt(2)
    logger.info("END OF BRUTE-FORCE DELTA SEARCH.")
    return rows


def optimize_smoothing_scale(
    covar: CovarianceCache,
    cov_ratio: np.ndarray,
    mean_diff_ratio: np.ndarray,
    guess: float,
    rho: float,
    new_delta_iterations: int = 10,
    allow_rho: bool = True,
    allow_delta: bool = True,
    exact_rho: bool = False,
    brute_force: bool = False,
) -> tuple[float, float]:
    """Maximise the free energy over delta (and rho) for one parameter.

    Args:
        cov_ratio: (N,) posterior variance / prior variance.
        mean_diff_ratio: (N,) (posterior mean - prior mean) / prior std.
        guess: Starting value of delta.
        rho: Current rho, returned unchanged if delta is held fixed.
        allow_delta: If False, delta stays at guess.

    Returns:
        (delta, rho).
    """
    fcn = DerivFdDelta(covar, cov_ratio, mean_diff_ratio,
                       allow_rho=allow_rho, exact_rho=exact_rho)
    if brute_force:
        brute_force_delta_dump(covar, cov_ratio, mean_diff_ratio)

    if not allow_delta:
        return guess, rho

    delta = DescendingZeroFinder(
        fcn,
        initial_guess=guess,
        search_min=SMOOTHING_DELTA_MIN,
        search_max=SMOOTHING_DELTA_MAX,
        ratio_tol_x=1.01,
        max_evaluations=2 + new_delta_iterations,
        guesstimator=LogBisectionGuesstimator(),
    ).find()
    return delta, fcn.optimize_rho(delta)


def optimize_rho(
    covar: CovarianceCache,
    cov_ratio: np.ndarray,
    mean_diff_ratio: np.ndarray,
    delta: float,
    exact_rho: bool = False,
) -> float:
    """Free-energy optimal rho for a fixed delta."""
    fcn = DerivFdDelta(covar, cov_ratio, mean_diff_ratio,
                       allow_rho=True, exact_rho=exact_rho)
    return fcn.optimize_rho(delta)
