"""Tests for the neighbour-based shrinkage prior matrices and updates."""

import numpy as np
import pytest

from pysvb.errors import ConfigurationError, InternalConsistencyError
from pysvb.math.mrf import (
    AKMEAN_FLOOR,
    STS_TINY,
    build_second_order_matrix,
    build_sparse_adjacency,
    build_sts_matrix,
    estimate_akmean,
    limit_akmean,
    shrinkage_voxel_priors,
)
from pysvb.math.neighbours import calc_neighbours
from pysvb.types import SpatialPriorType


@pytest.fixture
def cube_neighbours(cube_coords):
    return calc_neighbours(cube_coords, 3)


def test_sparse_adjacency_matches_lists(cube_neighbours):
    nb, _ = cube_neighbours
    adj = build_sparse_adjacency(nb).toarray()
    assert adj.shape == (27, 27)
    np.testing.assert_array_equal(adj, adj.T)
    np.testing.assert_array_equal(adj.sum(axis=1), [len(n) for n in nb])


def test_sts_matches_dense_product(cube_neighbours):
    nb, _ = cube_neighbours
    adj = build_sparse_adjacency(nb).toarray()
    s_mat = np.diag(adj.sum(axis=1) + STS_TINY) - adj
    np.testing.assert_allclose(build_sts_matrix(nb), s_mat.T @ s_mat)


def test_sts_entries(chain_coords):
    """Diagonal nn + (nn + tiny)^2, neighbours -(nn_i + nn_j + 2 tiny)."""
    nb, _ = calc_neighbours(chain_coords, 3)
    sts = build_sts_matrix(nb)
    np.testing.assert_allclose(sts[0, 0], 1 + (1 + STS_TINY) ** 2)
    np.testing.assert_allclose(sts[1, 1], 2 + (2 + STS_TINY) ** 2)
    np.testing.assert_allclose(sts[0, 1], -(1 + 2 + 2 * STS_TINY))
    np.testing.assert_allclose(sts[0, 2], 1.0)


def test_second_order_matrix(cube_neighbours):
    nb, _ = cube_neighbours
    mat = build_second_order_matrix(nb, 3)
    nn = np.array([len(n) for n in nb])
    np.testing.assert_allclose(np.diag(mat), 36 + nn)
    np.testing.assert_allclose(mat[0, 1], -12.0)
    # Two distinct paths from a corner to a face centre
    np.testing.assert_allclose(mat[0, 4], 2.0)


def test_estimate_akmean_smooth_field_is_large(cube_neighbours, rng):
    """A flat field gets far stronger shrinkage than a rough one."""
    nb, _ = cube_neighbours
    variances = np.full(27, 0.01)
    flat = estimate_akmean(SpatialPriorType.SHRINKAGE, np.ones(27), variances, nb, 3)
    rough = estimate_akmean(SpatialPriorType.SHRINKAGE, 10 * rng.standard_normal(27),
                            variances, nb, 3)
    assert flat > rough > 0


@pytest.mark.parametrize("prior_type", ["m", "M", "p", "P", "S"])
def test_estimate_akmean_positive(cube_neighbours, rng, prior_type):
    nb, _ = cube_neighbours
    akmean = estimate_akmean(SpatialPriorType(prior_type), rng.standard_normal(27),
                             np.full(27, 0.1), nb, 3)
    assert akmean > 0


def test_estimate_akmean_z_needs_sts(cube_neighbours):
    nb, _ = cube_neighbours
    with pytest.raises(InternalConsistencyError):
        estimate_akmean(SpatialPriorType.SHRINKAGE_STS, np.ones(27), np.ones(27), nb, 3)
    sts = build_sts_matrix(nb)
    assert estimate_akmean(SpatialPriorType.SHRINKAGE_STS, np.ones(27), np.ones(27),
                           nb, 3, sts=sts) > 0


def test_estimate_akmean_rejects_non_shrinkage(cube_neighbours):
    nb, _ = cube_neighbours
    with pytest.raises(ConfigurationError):
        estimate_akmean(SpatialPriorType.DISTANCE, np.ones(27), np.ones(27), nb, 3)


def test_limit_akmean_floor_and_ceiling():
    result = limit_akmean(np.array([1e-60, 10.0, 0.4]), np.array([1.0, 1.0, 0.1]), 2.0)
    np.testing.assert_allclose(result, [AKMEAN_FLOOR, 2.0, 0.4])


def test_limit_akmean_ceiling_at_least_half():
    result = limit_akmean(np.array([3.0]), np.array([0.1]), 2.0)
    np.testing.assert_allclose(result, [0.5])


def test_limit_akmean_no_speed_limit():
    result = limit_akmean(np.array([1e-60, 100.0]), np.array([1.0, 1.0]), -1.0)
    np.testing.assert_allclose(result, [AKMEAN_FLOOR, 100.0])


@pytest.mark.parametrize("prior_type", ["S", "Z"])
def test_sts_priors_preserve_flat_field(cube_neighbours, prior_type):
    nb, nb2 = cube_neighbours
    sts = build_sts_matrix(nb)
    post = np.full((27, 2), 3.0)
    means, precs = shrinkage_voxel_priors(
        SpatialPriorType(prior_type), post, np.array([2.0, 4.0]), nb, nb2, 3,
        np.zeros(2), np.full(2, 1e-12), sts=sts)
    np.testing.assert_allclose(means, 3.0, rtol=1e-5)
    np.testing.assert_allclose(precs[:, 0], 2.0 * np.diag(sts))
    np.testing.assert_allclose(precs[:, 1], 4.0 * np.diag(sts))


def test_sts_priors_need_sts(cube_neighbours):
    nb, nb2 = cube_neighbours
    with pytest.raises(InternalConsistencyError):
        shrinkage_voxel_priors(SpatialPriorType.SHRINKAGE, np.zeros((27, 1)), np.ones(1),
                               nb, nb2, 3, np.zeros(1), np.ones(1))


@pytest.mark.parametrize("prior_type", ["P", "M"])
def test_neighbour_priors_preserve_flat_field(cube_neighbours, prior_type):
    nb, nb2 = cube_neighbours
    post = np.full((27, 1), 2.0)
    means, precs = shrinkage_voxel_priors(
        SpatialPriorType(prior_type), post, np.array([1.0]), nb, nb2, 3,
        np.zeros(1), np.full(1, 1e-12))
    np.testing.assert_allclose(means, 2.0, rtol=1e-6)
    assert np.all(precs > 0)


def test_penny_precisions(cube_neighbours):
    """P precision is akmean (nn^2 + nn) plus the nonspatial precision."""
    nb, nb2 = cube_neighbours
    nn = np.array([len(n) for n in nb], dtype=float)
    _, precs = shrinkage_voxel_priors(
        SpatialPriorType.PENNY, np.zeros((27, 1)), np.array([0.5]), nb, nb2, 3,
        np.zeros(1), np.full(1, 0.25))
    np.testing.assert_allclose(precs[:, 0], 0.5 * (nn * nn + nn) + 0.25)
