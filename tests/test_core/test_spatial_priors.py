"""Tests for spatial precision assembly and per-voxel prior derivation."""

import numpy as np
import pytest

from pysvb.core.options import SpatialVBOptions
from pysvb.core.spatial_priors import assemble_precision_matrices, derive_voxel_priors
from pysvb.errors import InternalConsistencyError
from pysvb.math.covariance import CovarianceCache, calc_distances
from pysvb.math.mrf import build_sts_matrix
from pysvb.math.neighbours import calc_neighbours
from pysvb.types import SpatialHyperparams, SpatialPriorType


def _opts(priors, **kwargs):
    return SpatialVBOptions(prior_types=[SpatialPriorType(c) for c in priors], **kwargs)


def test_nonspatial_and_image_priors(rng):
    options = _opts("NI")
    hyper = SpatialHyperparams.initial(2, 0.5)
    image = rng.standard_normal(4)
    means, precs, fard = derive_voxel_priors(
        options, hyper, [None, None], rng.standard_normal((4, 2)), np.ones((4, 2)),
        np.array([1.0, 2.0]), np.array([3.0, 4.0]), first_iteration=False,
        image_priors={1: image})
    np.testing.assert_array_equal(means[:, 0], 1.0)
    np.testing.assert_array_equal(means[:, 1], image)
    np.testing.assert_array_equal(precs, np.tile([3.0, 4.0], (4, 1)))
    np.testing.assert_array_equal(fard, 0.0)


def test_ard_prior():
    options = _opts("A")
    hyper = SpatialHyperparams.initial(1, 0.5)
    post_means = np.array([[1.0], [2.0]])
    post_precs = np.array([[4.0], [0.5]])
    means, precs, _ = derive_voxel_priors(
        options, hyper, [None], post_means, post_precs,
        np.zeros(1), np.full(1, 1e-12), first_iteration=True)
    np.testing.assert_array_equal(precs, 1e-12)
    np.testing.assert_array_equal(means, 0.0)

    means, precs, fard = derive_voxel_priors(
        options, hyper, [None], post_means, post_precs,
        np.zeros(1), np.full(1, 1e-12), first_iteration=False)
    ard = np.array([0.25 + 1.0, 2.0 + 4.0])
    np.testing.assert_allclose(precs[:, 0], 1.0 / ard)
    np.testing.assert_array_equal(means, 0.0)
    np.testing.assert_allclose(fard, -2.0 * np.log(2.0 / ard))


def test_distance_prior_conditional(cube_coords, rng):
    """Each voxel's prior is the conditional of the joint Gaussian given the others."""
    options = _opts("D")
    hyper = SpatialHyperparams.initial(1, 1.0)
    covar = CovarianceCache(calc_distances(cube_coords))
    prior_prec = np.array([2.0])
    sinvs = assemble_precision_matrices(options, hyper, covar, prior_prec, 27)
    np.testing.assert_allclose(sinvs[0], covar.get_cinv(1.0) * 2.0)

    post_means = rng.standard_normal((27, 1))
    means, precs, _ = derive_voxel_priors(
        options, hyper, sinvs, post_means, np.ones((27, 1)),
        np.array([0.5]), prior_prec, first_iteration=False)
    sinv = sinvs[0]
    v = 5
    others = np.delete(np.arange(27), v)
    expected = 0.5 - sinv[v, others] @ (post_means[others, 0] - 0.5) / sinv[v, v]
    np.testing.assert_allclose(means[v, 0], expected)
    np.testing.assert_allclose(precs[:, 0], np.diag(sinv))


def test_distance_prior_rho_scaling(cube_coords):
    options = _opts("R")
    hyper = SpatialHyperparams.initial(1, 1.0)
    hyper.rho[0] = np.log(3.0)
    covar = CovarianceCache(calc_distances(cube_coords))
    sinvs = assemble_precision_matrices(options, hyper, covar, np.ones(1), 27)
    np.testing.assert_allclose(sinvs[0], 3.0 * covar.get_cinv(1.0))


def test_assembly_skips_unneeded_matrices():
    options = _opts("NS")
    hyper = SpatialHyperparams.initial(2, 0.5)
    assert assemble_precision_matrices(options, hyper, None, np.ones(2), 4) == [None, None]


def test_assembly_with_evidence_optimization(cube_coords):
    options = _opts("NS", use_evidence_optimization=True)
    hyper = SpatialHyperparams.initial(2, 0.5)
    hyper.akmean[:] = [7.0, 3.0]
    nb, _ = calc_neighbours(cube_coords, 3)
    sts = build_sts_matrix(nb)
    sinvs = assemble_precision_matrices(options, hyper, None, np.array([2.0, 1.0]), 27,
                                        shrinkage_matrix=sts)
    np.testing.assert_array_equal(sinvs[0], 2.0 * np.eye(27))
    np.testing.assert_allclose(sinvs[1], 3.0 * sts)


def test_assembly_needs_shrinkage_matrix():
    options = _opts("S", use_evidence_optimization=True)
    with pytest.raises(InternalConsistencyError):
        assemble_precision_matrices(options, SpatialHyperparams.initial(1, 0.5), None,
                                    np.ones(1), 4)


def test_distance_prior_needs_covariance():
    options = _opts("D")
    with pytest.raises(InternalConsistencyError):
        assemble_precision_matrices(options, SpatialHyperparams.initial(1, 0.5), None,
                                    np.ones(1), 4)


def test_shrinkage_prior_columns(cube_coords, rng):
    """Only shrinkage columns use the neighbourhood prior."""
    options = _opts("SN")
    hyper = SpatialHyperparams.initial(2, 0.5)
    hyper.akmean[:] = 2.0
    nb, nb2 = calc_neighbours(cube_coords, 3)
    sts = build_sts_matrix(nb)
    post_means = np.full((27, 2), 4.0)
    means, precs, _ = derive_voxel_priors(
        options, hyper, [None, None], post_means, np.ones((27, 2)),
        np.zeros(2), np.full(2, 1e-12), first_iteration=False,
        neighbours=nb, neighbours2=nb2, sts=sts)
    np.testing.assert_allclose(means[:, 0], 4.0, rtol=1e-5)
    np.testing.assert_allclose(precs[:, 0], 2.0 * np.diag(sts))
    np.testing.assert_array_equal(means[:, 1], 0.0)
    np.testing.assert_array_equal(precs[:, 1], 1e-12)
