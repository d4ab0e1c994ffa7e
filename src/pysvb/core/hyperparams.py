"""Global spatial hyperparameter updates: akmean, then delta and rho."""

import logging
from typing import assert_never

import numpy as np

from pysvb.core.options import SpatialVBOptions
from pysvb.core.smoothing import optimize_evidence, optimize_rho, optimize_smoothing_scale
from pysvb.logs import warn_always
from pysvb.math.covariance import CovarianceCache
from pysvb.math.mrf import estimate_akmean, limit_akmean
from pysvb.types import SpatialHyperparams, SpatialPriorType

logger = logging.getLogger(__name__)

# Placeholders marking shrinkage parameters; never used numerically
SHRINKAGE_DELTA = -3.0
SHRINKAGE_RHO = 1234.5678


def update_akmean(
    options: SpatialVBOptions,
    akmean: np.ndarray,
    means: np.ndarray,
    variances: np.ndarray,
    neighbours: list[list[int]],
    sts: np.ndarray | None = None,
) -> np.ndarray:
    """Re-estimate the shrinkage precision of every parameter.

    Args:
        akmean: (P,) values from the previous iteration.
        means: (N, P) posterior means.
        variances: (N, P) posterior marginal variances.

    Returns:
        (P,) new akmean, floored and rate-limited.
    """
    shrinkage = options.shrinkage_type
    new = np.array([
        estimate_akmean(shrinkage, means[:, k], variances[:, k], neighbours,
                        options.spatial_dims, sts=sts)
        for k in range(means.shape[1])
    ])
    new = limit_akmean(new, akmean, options.spatial_speed)
    logger.info("New akmean: %s", new)
    return new


def update_delta_rho(
    options: SpatialVBOptions,
    hyper: SpatialHyperparams,
    covar: CovarianceCache | None,
    means: np.ndarray,
    variances: np.ndarray,
    prior_means: np.ndarray,
    prior_precisions: np.ndarray,
    first_iteration: bool,
    wp_precisions: np.ndarray | None = None,
    wp_means: np.ndarray | None = None,
) -> None:
    """Update ``hyper.delta`` and ``hyper.rho`` in place, one parameter at a time.

    Args:
        means, variances: (N, P) posterior means and marginal variances.
        prior_means, prior_precisions: (P,) nonspatial prior.
        wp_precisions, wp_means: (N, P) likelihood-only posterior precision
            diagonal and means, needed with evidence optimisation.
    """
    for k, prior_type in enumerate(options.prior_types):
        logger.debug("Optimizing for parameter %d", k)
        match prior_type:
            case SpatialPriorType.NONSPATIAL | SpatialPriorType.IMAGE | SpatialPriorType.ARD:
                hyper.delta[k] = 0.0
                hyper.rho[k] = 0.0
                logger.info("SpatialPrior %d type %s : 0 0 0", k, prior_type.value)
            case (SpatialPriorType.MRF | SpatialPriorType.MRF2
                  | SpatialPriorType.PENNY_DIRICHLET | SpatialPriorType.PENNY
                  | SpatialPriorType.SHRINKAGE | SpatialPriorType.SHRINKAGE_STS):
                hyper.delta[k] = SHRINKAGE_DELTA
                hyper.rho[k] = SHRINKAGE_RHO
                logger.info("SpatialPrior %d type %s : %g 0 0",
                            k, prior_type.value, hyper.akmean[k])
            case (SpatialPriorType.DISTANCE_RHO | SpatialPriorType.DISTANCE
                  | SpatialPriorType.FIXED_DISTANCE):
                _update_distance_param(
                    options, hyper, k, prior_type, covar, means[:, k], variances[:, k],
                    prior_means[k], prior_precisions[k], first_iteration,
                    None if wp_precisions is None else wp_precisions[:, k],
                    None if wp_means is None else wp_means[:, k])
            case _:
                assert_never(prior_type)
        logger.debug("    delta(%d) = %g, rho(%d) = %g",
                     k, hyper.delta[k], k, hyper.rho[k])


def _update_distance_param(
    options: SpatialVBOptions,
    hyper: SpatialHyperparams,
    k: int,
    prior_type: SpatialPriorType,
    covar: CovarianceCache,
    means_k: np.ndarray,
    variances_k: np.ndarray,
    prior_mean: float,
    prior_precision: float,
    first_iteration: bool,
    wp_prec_k: np.ndarray | None,
    wp_means_k: np.ndarray | None,
) -> None:
    prior_cov = 1.0 / prior_precision
    cov_ratio = variances_k / prior_cov
    mean_diff_ratio = (means_k - prior_mean) / np.sqrt(prior_cov)
    is_fixed = prior_type is SpatialPriorType.FIXED_DISTANCE

    if first_iteration and not options.update_first_iteration:
        if is_fixed and options.brute_force_delta_search:
            logger.info("Doing calc on first iteration because the prior is F "
                        "and brute-force delta search is on")
        else:
            return

    delta_max = hyper.delta[k] * options.spatial_speed
    search = dict(new_delta_iterations=options.new_delta_iterations)

    if is_fixed:
        hyper.delta[k] = options.fixed_delta
        hyper.rho[k] = options.fixed_rho
        optimize_smoothing_scale(
            covar, cov_ratio, mean_diff_ratio, hyper.delta[k], hyper.rho[k],
            allow_rho=False, allow_delta=False, exact_rho=options.exact_rho,
            brute_force=options.brute_force_delta_search, **search)
        delta_max = hyper.delta[k]
        logger.info("SpatialPrior %d type F : %g %g 0", k, hyper.delta[k], hyper.rho[k])
    else:
        allow_rho = prior_type is SpatialPriorType.DISTANCE_RHO
        if options.always_initial_delta_guess > 0:
            hyper.delta[k] = options.always_initial_delta_guess
        if options.use_evidence_optimization:
            if allow_rho:
                warn_always(logger, "Using R... mistake??")
            delta, rho = optimize_evidence(
                covar, wp_prec_k, wp_means_k, prior_mean, prior_precision,
                hyper.delta[k], allow_rho=allow_rho, **search)
            hyper.delta[k] = delta
            if allow_rho:
                hyper.rho[k] = rho
            logger.info("SpatialPrior %d type %s eo : %g %g 0",
                        k, prior_type.value, hyper.delta[k], hyper.rho[k])
        else:
            warn_always(logger, f"Using {prior_type.value} without EO... mistake??")
            hyper.delta[k], hyper.rho[k] = optimize_smoothing_scale(
                covar, cov_ratio, mean_diff_ratio, hyper.delta[k], hyper.rho[k],
                allow_rho=allow_rho, exact_rho=options.exact_rho,
                brute_force=options.brute_force_delta_search, **search)
            logger.info("SpatialPrior %d type %s vb : %g %g 0",
                        k, prior_type.value, hyper.delta[k], hyper.rho[k])

    delta_max = max(delta_max, 0.5)
    if options.spatial_speed > 0 and hyper.delta[k] > delta_max:
        logger.info("Rate-limiting the increase on delta %d: was %g, now %g",
                    k, hyper.delta[k], delta_max)
        hyper.delta[k] = delta_max
        if prior_type is SpatialPriorType.DISTANCE_RHO:
            hyper.rho[k] = optimize_rho(covar, cov_ratio, mean_diff_ratio,
                                        delta_max, exact_rho=options.exact_rho)
