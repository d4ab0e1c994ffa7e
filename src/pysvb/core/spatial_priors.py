"""Spatial precision matrices and per-voxel prior derivation."""

import logging
from typing import assert_never

import numpy as np

from pysvb.core.options import SpatialVBOptions
from pysvb.errors import InternalConsistencyError
from pysvb.math.covariance import CovarianceCache
from pysvb.math.mrf import shrinkage_voxel_priors
from pysvb.types import SpatialHyperparams, SpatialPriorType

logger = logging.getLogger(__name__)


def assemble_precision_matrices(
    options: SpatialVBOptions,
    hyper: SpatialHyperparams,
    covar: CovarianceCache | None,
    prior_precisions: np.ndarray,
    num_voxels: int,
    shrinkage_matrix: np.ndarray | None = None,
) -> list[np.ndarray | None]:
    """Build the N x N spatial precision matrix of every parameter.

    Distance priors always get C^-1(delta) exp(rho) scaled by the nonspatial
    prior precision. Nonspatial and shrinkage parameters only need one for
    evidence optimisation: the scaled identity, or the shrinkage matrix
    (S'S for S/Z, the second-order matrix for p) times akmean. Entries that
    are not needed are None.

    Raises:
        SingularCovarianceError: if C(delta) cannot be inverted.
    """
    sinvs: list[np.ndarray | None] = []
    for k, prior_type in enumerate(options.prior_types):
        sinv = None
        if prior_type.is_distance:
            if covar is None:
                raise InternalConsistencyError("Distance priors need a covariance cache")
            sinv = covar.get_cinv(hyper.delta[k]) * (np.exp(hyper.rho[k]) * prior_precisions[k])
        elif options.save_without_prior:
            if prior_type.is_nonspatial:
                sinv = np.eye(num_voxels) * prior_precisions[k]
            else:
                if shrinkage_matrix is None or shrinkage_matrix.shape != (num_voxels, num_voxels):
                    raise InternalConsistencyError(
                        f"No spatial precision matrix for the '{prior_type.value}' prior")
                sinv = shrinkage_matrix * hyper.akmean[k]
        sinvs.append(sinv)
    return sinvs


def derive_voxel_priors(
    options: SpatialVBOptions,
    hyper: SpatialHyperparams,
    sinvs: list[np.ndarray | None],
    post_means: np.ndarray,
    post_precisions: np.ndarray,
    prior_means: np.ndarray,
    prior_precisions: np.ndarray,
    first_iteration: bool,
    image_priors: dict[int, np.ndarray] | None = None,
    neighbours: list[list[int]] | None = None,
    neighbours2: list[list[int]] | None = None,
    sts: np.ndarray | None = None,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Prior mean and precision of every parameter at every voxel.

    All voxels are computed from the same snapshot of the previous
    posteriors.

    Args:
        post_means: (N, P) posterior means from the previous iteration.
        post_precisions: (N, P) diagonal of the posterior precisions.
        prior_means, prior_precisions: (P,) nonspatial prior.
        image_priors: Parameter index -> (N,) prior mean image, for 'I'.

    Returns:
        (means, precisions, fard): (N, P), (N, P) and the per-voxel ARD
        free-energy correction (N,).
    """
    n_voxels, n_params = post_means.shape
    means = np.empty((n_voxels, n_params))
    precisions = np.empty((n_voxels, n_params))
    fard = np.zeros(n_voxels)

    shrinkage = options.shrinkage_type
    if shrinkage is not None:
        shrink_means, shrink_precs = shrinkage_voxel_priors(
            shrinkage, post_means, hyper.akmean, neighbours, neighbours2,
            options.spatial_dims, prior_means, prior_precisions, sts=sts)

    for k, prior_type in enumerate(options.prior_types):
        match prior_type:
            case SpatialPriorType.NONSPATIAL:
                precisions[:, k] = prior_precisions[k]
                means[:, k] = prior_means[k]
            case SpatialPriorType.IMAGE:
                precisions[:, k] = prior_precisions[k]
                means[:, k] = image_priors[k]
            case SpatialPriorType.ARD:
                if first_iteration:
                    precisions[:, k] = prior_precisions[k]
                else:
                    ard = 1.0 / post_precisions[:, k] + post_means[:, k] ** 2
                    precisions[:, k] = 1.0 / ard
                    fard -= 2.0 * np.log(2.0 / ard)
                means[:, k] = prior_means[k]
            case (SpatialPriorType.MRF | SpatialPriorType.MRF2
                  | SpatialPriorType.PENNY_DIRICHLET | SpatialPriorType.PENNY
                  | SpatialPriorType.SHRINKAGE | SpatialPriorType.SHRINKAGE_STS):
                means[:, k] = shrink_means[:, k]
                precisions[:, k] = shrink_precs[:, k]
            case (SpatialPriorType.DISTANCE_RHO | SpatialPriorType.DISTANCE
                  | SpatialPriorType.FIXED_DISTANCE):
                sinv = sinvs[k]
                diag = np.diag(sinv)
                deviations = post_means[:, k] - prior_means[k]
                weighted = sinv.T @ deviations - diag * deviations
                precisions[:, k] = diag
                means[:, k] = prior_means[k] - weighted / diag
            case _:
                assert_never(prior_type)
    return means, precisions, fard
