"""Discrete-neighbour (MRF / shrinkage) prior matrices and updates."""

import logging

import numpy as np
import scipy.sparse as sp

from pysvb.errors import ConfigurationError, InternalConsistencyError
from pysvb.logs import warn_once
from pysvb.types import SpatialPriorType

logger = logging.getLogger(__name__)

# Diagonal weight keeping the 'S' prior matrix non-singular
STS_TINY = 1e-6
# Hyperpriors on akmean for the 'Z' prior (noninformative)
Z_Q1 = 1e12
Z_Q2 = 1e-12
AKMEAN_FLOOR = 1e-50


def build_sparse_adjacency(neighbours: list[list[int]]) -> sp.csr_matrix:
    """Build a sparse CSR adjacency matrix from per-voxel neighbour lists.

    Args:
        neighbours: First-order neighbour indices for each of N voxels.

    Returns:
        (N, N) CSR sparse matrix with 1.0 for each neighbour entry.
    """
    N = len(neighbours)
    counts = np.array([len(nb) for nb in neighbours], dtype=np.int64)
    rows = np.repeat(np.arange(N), counts)
    cols = np.fromiter(
        (nid for nb in neighbours for nid in nb), dtype=np.int64,
        count=int(counts.sum()))
    data = np.ones(len(rows), dtype=np.float64)
    return sp.csr_matrix((data, (rows, cols)), shape=(N, N))


def neighbour_counts(neighbours: list[list[int]]) -> np.ndarray:
    return np.array([len(nb) for nb in neighbours], dtype=np.float64)


def build_sts_matrix(neighbours: list[list[int]]) -> np.ndarray:
    """S'S for S = diag(nn + tiny) - A, as a dense (N, N) matrix.

    Diagonal entries are nn + (nn + tiny)^2, first-order neighbour entries
    are -(nn_i + nn_j + 2 tiny), and every path of length two between
    distinct voxels adds 1, so duplicated second-order neighbours count
    twice.
    """
    warn_once(logger, "Using 'S' prior with fast-calculation method and "
                      f"constant diagonal weight of {STS_TINY}")
    adjacency = build_sparse_adjacency(neighbours)
    s_mat = sp.diags(neighbour_counts(neighbours) + STS_TINY) - adjacency
    logger.debug("Generating StS matrix for %d voxels", len(neighbours))
    return (s_mat.T @ s_mat).toarray()


def build_second_order_matrix(
    neighbours: list[list[int]],
    spatial_dims: int,
) -> np.ndarray:
    """Spatial precision matrix of the 'p' prior, as a dense (N, N) matrix.

    Diagonal entries are (2 D)^2 + nn, neighbour entries -4 D, and each
    appearance in the second-order list adds 1 (duplicates included).
    """
    adjacency = build_sparse_adjacency(neighbours)
    n_voxels = len(neighbours)
    s_mat = sp.identity(n_voxels, format="csr") * (2 * spatial_dims) - adjacency
    mat = (s_mat.T @ s_mat).toarray()
    if not np.array_equal(mat, mat.T):
        raise InternalConsistencyError("Second-order prior matrix is not symmetric")
    return mat


def _shrinkage_sigma_weight(
    shrinkage_type: SpatialPriorType,
    nn: np.ndarray,
    spatial_dims: int,
) -> np.ndarray:
    """Per-voxel diagonal of S'S (or S for MRF types) used in trace terms."""
    match shrinkage_type:
        case SpatialPriorType.MRF:
            return np.full_like(nn, 2.0 * spatial_dims)
        case SpatialPriorType.MRF2:
            return nn + 1e-8
        case SpatialPriorType.PENNY_DIRICHLET:
            return 4.0 * spatial_dims * spatial_dims + nn
        case SpatialPriorType.SHRINKAGE:
            return (nn + STS_TINY) ** 2 + nn
        case SpatialPriorType.PENNY:
            return nn * nn + nn
        case _:
            raise ConfigurationError(
                f"'{shrinkage_type.value}' is not a neighbour-count shrinkage prior")


def estimate_akmean(
    shrinkage_type: SpatialPriorType,
    means: np.ndarray,
    variances: np.ndarray,
    neighbours: list[list[int]],
    spatial_dims: int,
    sts: np.ndarray | None = None,
) -> float:
    """Update the shrinkage precision of one parameter (Penny et al. 2005).

    1/gk = 0.5 Tr[Sigma_k S'S] + 0.5 w_k' S'S w_k + 1/q1 and akmean = gk (N/2 + q2),
    with S'S replaced by S for the MRF variants.

    Args:
        shrinkage_type: The run's shrinkage prior type.
        means: (N,) posterior means of the parameter.
        variances: (N,) posterior variances of the parameter.
        neighbours: First-order neighbour lists.
        spatial_dims: Spatial dimensionality of the neighbourhood.
        sts: Dense S'S matrix, required for the 'Z' prior.

    Returns:
        New akmean value (before any floor or rate limit).
    """
    means = np.asarray(means, dtype=np.float64)
    variances = np.asarray(variances, dtype=np.float64)
    n_voxels = means.size

    if shrinkage_type is SpatialPriorType.SHRINKAGE_STS:
        if sts is None or sts.shape != (n_voxels, n_voxels):
            raise InternalConsistencyError("The 'Z' prior needs the StS matrix")
        warn_once(logger, f"Hyperpriors on S prior: using q1 == {Z_Q1}, q2 == {Z_Q2}")
        gk = 1.0 / (0.5 * np.dot(variances, np.diag(sts))
                    + means @ sts @ means + 1.0 / Z_Q1)
        return float(gk * (0.5 * n_voxels + Z_Q2))

    nn = neighbour_counts(neighbours)
    tmp1 = float(np.dot(variances, _shrinkage_sigma_weight(shrinkage_type, nn, spatial_dims)))

    tiny = STS_TINY if shrinkage_type is SpatialPriorType.SHRINKAGE else 0.0
    adjacency = build_sparse_adjacency(neighbours)
    swk = tiny * means + nn * means - adjacency @ means
    if shrinkage_type in (SpatialPriorType.PENNY_DIRICHLET, SpatialPriorType.MRF):
        swk += means * (2 * spatial_dims - nn)

    if shrinkage_type in (SpatialPriorType.MRF, SpatialPriorType.MRF2):
        tmp2 = float(np.dot(swk, means))
    else:
        tmp2 = float(np.dot(swk, swk))
    logger.debug("tmp1=%g, tmp2=%g", tmp1, tmp2)

    # Hyperpriors q1 == 10, q2 == 1
    gk = 1.0 / (0.5 * tmp1 + 0.5 * tmp2 + 0.1)
    return float(gk * (0.5 * n_voxels + 1.0))


def limit_akmean(akmean: np.ndarray, previous: np.ndarray, speed: float) -> np.ndarray:
    """Apply the akmean floor and the per-iteration rate limit.

    The ceiling is ``previous * speed`` (never below 0.5) and only applies
    when ``speed`` is positive.
    """
    akmean = np.array(akmean, dtype=np.float64)
    tiny = akmean < AKMEAN_FLOOR
    for k in np.flatnonzero(tiny):
        logger.warning("akmean(%d) was %g", k, akmean[k])
        warn_once(logger, "akmean value was tiny!")
    akmean[tiny] = AKMEAN_FLOOR

    ceiling = np.maximum(np.asarray(previous, dtype=np.float64) * speed, 0.5)
    if speed > 0:
        for k in np.flatnonzero(akmean > ceiling):
            logger.info("Rate-limiting the increase on akmean %d: was %g, now %g",
                        k, akmean[k], ceiling[k])
            akmean[k] = ceiling[k]
    return akmean


def shrinkage_voxel_priors(
    shrinkage_type: SpatialPriorType,
    post_means: np.ndarray,
    akmean: np.ndarray,
    neighbours: list[list[int]],
    neighbours2: list[list[int]],
    spatial_dims: int,
    prior_means: np.ndarray,
    prior_precisions: np.ndarray,
    sts: np.ndarray | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """Per-voxel prior means and (diagonal) precisions under a shrinkage prior.

    Computed for every parameter as if all were of the shrinkage type;
    callers keep only the columns whose prior type matches.

    Args:
        post_means: (N, P) posterior means from the previous iteration.
        akmean: (P,) shrinkage precisions.
        prior_means: (P,) nonspatial prior means.
        prior_precisions: (P,) diagonal of the nonspatial prior precision.
        sts: Dense S'S, required for the 'S' and 'Z' priors.

    Returns:
        (means, precisions), both (N, P).
    """
    post_means = np.asarray(post_means, dtype=np.float64)
    akmean = np.asarray(akmean, dtype=np.float64)
    n_voxels = post_means.shape[0]

    # Z shares the S per-voxel prior
    if shrinkage_type.uses_sts:
        if sts is None or sts.shape != (n_voxels, n_voxels):
            raise InternalConsistencyError(
                f"The '{shrinkage_type.value}' prior needs the StS matrix")
        warn_once(logger, "Using the StS neighbour prior for shrinkage")
        off_diag = sts - np.diag(np.diag(sts))
        weight = 1e-6 + off_diag.sum(axis=1)
        means = (off_diag @ post_means) / weight[:, np.newaxis]
        precisions = np.outer(np.diag(sts), akmean)
        return means, precisions

    nn = neighbour_counts(neighbours)
    adjacency = build_sparse_adjacency(neighbours)
    contrib8 = 8.0 * (adjacency @ post_means)
    weight8 = 8.0 * nn

    n2_counts = neighbour_counts(neighbours2)
    second = build_sparse_adjacency(neighbours2)
    contrib12 = -(second @ post_means)
    weight12 = -n2_counts

    if shrinkage_type is SpatialPriorType.PENNY_DIRICHLET:
        if np.any(nn > 2 * spatial_dims):
            raise InternalConsistencyError(
                "A voxel has more neighbours than the spatial dimensions allow")
        weight8 = np.full(n_voxels, 16.0 * spatial_dims)
        weight12 = -(4.0 * spatial_dims * spatial_dims - nn)

    scale = _shrinkage_sigma_weight(shrinkage_type, nn, spatial_dims)
    spatial_prec = np.outer(scale, akmean)

    if shrinkage_type in (SpatialPriorType.PENNY_DIRICHLET, SpatialPriorType.MRF):
        precisions = spatial_prec
    else:
        precisions = spatial_prec + prior_precisions[np.newaxis, :]

    total = (weight8 + weight12)[:, np.newaxis]
    with np.errstate(divide="ignore", invalid="ignore"):
        m_tmp = np.where(weight8[:, np.newaxis] != 0,
                         (contrib8 + contrib12) / total, 0.0)
    if shrinkage_type is SpatialPriorType.MRF:
        m_tmp = contrib8 / (16.0 * spatial_dims)
    elif shrinkage_type is SpatialPriorType.MRF2:
        m_tmp = contrib8 / (8.0 * (nn + 1e-8))[:, np.newaxis]

    if shrinkage_type in (SpatialPriorType.MRF, SpatialPriorType.MRF2):
        means = spatial_prec * m_tmp / precisions
    else:
        means = (spatial_prec * m_tmp
                 + (prior_precisions * prior_means)[np.newaxis, :]) / precisions
    return means, precisions
