"""All-voxel evidence optimisation of the parameter posteriors.

Both variants combine the likelihood-only posterior at every voxel with the
spatial precision matrices and overwrite the per-voxel posteriors with the
marginals of the joint solution.
"""

import logging

import numpy as np

from pysvb.core.options import SpatialVBOptions
from pysvb.errors import InternalConsistencyError
from pysvb.logs import warn_always, warn_once
from pysvb.math.mvn import MVNDist

logger = logging.getLogger(__name__)


def _without_prior_terms(
    without_prior: list[MVNDist],
    prior_means: np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    """Stacked likelihood precisions (N, P, P) and X'Y terms (N, P)."""
    wp_prec = np.array([mvn.precisions for mvn in without_prior])
    wp_means = np.array([mvn.means for mvn in without_prior])
    xytr = np.einsum("vij,vj->vi", wp_prec, wp_means - prior_means)
    return wp_prec, xytr


def _check_sinvs(sinvs: list[np.ndarray | None], num_voxels: int) -> None:
    for k, sinv in enumerate(sinvs):
        if sinv is None or sinv.shape != (num_voxels, num_voxels):
            raise InternalConsistencyError(
                f"No {num_voxels}x{num_voxels} spatial precision matrix for parameter {k}")


def full_evidence_optimization(
    options: SpatialVBOptions,
    sinvs: list[np.ndarray],
    posteriors: list[MVNDist],
    without_prior: list[MVNDist],
    prior_means: np.ndarray,
) -> None:
    """Solve one N x N system per parameter and rewrite the posteriors in place.

    Parameters before ``options.first_param_for_full_eo`` keep their VB
    posterior. The other parameters' means come from the joint solution and
    their marginal precision (or covariance) replaces the diagonal of the
    voxel's posterior; off-diagonal terms are dropped unless
    ``keep_interparameter_covariances`` is set.
    """
    n_voxels = len(posteriors)
    n_params = len(sinvs)
    _check_sinvs(sinvs, n_voxels)
    warn_once(logger, "Using full evidence optimization; using " + (
        "covariances." if options.use_covariance_marginals else "precisions."))

    wp_prec, xytr = _without_prior_terms(without_prior, prior_means)
    post_means = np.array([mvn.means for mvn in posteriors])

    sigma_invs, sigmas, mus = [], [], []
    for k in range(n_params):
        mu_others = post_means - prior_means
        mu_others[:, k] = 0.0
        xxtr_mu_others = np.einsum("vj,vj->v", wp_prec[:, k, :], mu_others)

        sigma_inv = sinvs[k] + np.diag(wp_prec[:, k, k])
        sigma = np.linalg.inv(sigma_inv)
        sigma_invs.append(sigma_inv)
        sigmas.append(sigma)
        mus.append(sigma @ (xytr[:, k] - xxtr_mu_others))

    first = options.first_param_for_full_eo
    for v, posterior in enumerate(posteriors):
        means = posterior.means.copy()
        for k in range(first, n_params):
            means[k] = mus[k][v] + prior_means[k]

        if options.use_covariance_marginals:
            warn_once(logger, "Full EO writes marginal covariances back to each voxel")
            cov = np.diag(np.diag(posterior.covariance))
            for k in range(first, n_params):
                cov[k, k] = sigmas[k][v, v]
            posterior.set_covariance(cov)
        elif options.keep_interparameter_covariances:
            warn_once(logger, "Keeping inter-parameter covariances from VB!")
        else:
            warn_once(logger, "Full EO writes marginal precisions back to each voxel")
            prec = np.diag(np.diag(posterior.precisions))
            for k in range(first, n_params):
                prec[k, k] = sigma_invs[k][v, v]
            posterior.set_precisions(prec)
        posterior.means = means


def simultaneous_evidence_optimization(
    options: SpatialVBOptions,
    sinvs: list[np.ndarray],
    posteriors: list[MVNDist],
    without_prior: list[MVNDist],
    prior_means: np.ndarray,
) -> None:
    """Solve the N*P block system for all parameters at once.

    Row v + k*N of the block system belongs to parameter k at voxel v. Each
    voxel's posterior becomes the matching P x P block of the joint
    precision (or, with covariance marginals, of its inverse).
    """
    n_voxels = len(posteriors)
    n_params = len(sinvs)
    _check_sinvs(sinvs, n_voxels)
    warn_once(logger, "Using simultaneous evidence optimization")
    if np.any(prior_means != 0):
        warn_always(logger, "Simultaneous evidence optimization with non-zero prior means")

    size = n_voxels * n_params
    wp_prec, xytr = _without_prior_terms(without_prior, prior_means)

    # idx[v, k] = v + k * N
    idx = np.arange(n_voxels)[:, np.newaxis] + n_voxels * np.arange(n_params)[np.newaxis, :]

    sigma_inv = np.zeros((size, size))
    for k in range(n_params):
        block = slice(k * n_voxels, (k + 1) * n_voxels)
        sigma_inv[block, block] = sinvs[k]
    sigma_inv[idx[:, :, np.newaxis], idx[:, np.newaxis, :]] += wp_prec

    rhs = np.empty(size)
    rhs[idx] = xytr
    mu = np.linalg.solve(sigma_inv, rhs)

    sigma = np.linalg.inv(sigma_inv) if options.use_covariance_marginals else None
    for v, posterior in enumerate(posteriors):
        rows = idx[v]
        posterior_means = mu[rows] + prior_means
        block = np.ix_(rows, rows)
        if sigma is not None:
            warn_once(logger, "Simultaneous EO writes covariance blocks back to each voxel")
            posterior.set_covariance(sigma[block])
        else:
            warn_once(logger, "Simultaneous EO writes precision blocks back to each voxel")
            posterior.set_precisions(sigma_inv[block])
        posterior.means = posterior_means
