"""Tests for the akmean, delta and rho updates."""

from unittest import mock

import numpy as np
import pytest

from pysvb.core.hyperparams import (
    SHRINKAGE_DELTA,
    SHRINKAGE_RHO,
    update_akmean,
    update_delta_rho,
)
from pysvb.core.options import SpatialVBOptions
from pysvb.math.covariance import CovarianceCache, calc_distances
from pysvb.math.neighbours import calc_neighbours
from pysvb.types import SpatialHyperparams, SpatialPriorType


def _opts(priors, **kwargs):
    return SpatialVBOptions(prior_types=[SpatialPriorType(c) for c in priors], **kwargs)


@pytest.fixture
def covar(cube_coords):
    return CovarianceCache(calc_distances(cube_coords))


def _stats(rng, n_params=1):
    means = rng.standard_normal((27, n_params))
    variances = np.full((27, n_params), 0.05)
    return means, variances


def test_nonspatial_and_shrinkage_placeholders(rng):
    options = _opts("NAS")
    hyper = SpatialHyperparams.initial(3, 0.5)
    means, variances = _stats(rng, 3)
    update_delta_rho(options, hyper, None, means, variances, np.zeros(3),
                     np.full(3, 1e-12), first_iteration=False)
    np.testing.assert_array_equal(hyper.delta, [0.0, 0.0, SHRINKAGE_DELTA])
    np.testing.assert_array_equal(hyper.rho, [0.0, 0.0, SHRINKAGE_RHO])


def test_first_iteration_keeps_initial_delta(covar, rng):
    options = _opts("D")
    hyper = SpatialHyperparams.initial(1, 0.5)
    means, variances = _stats(rng)
    with mock.patch("pysvb.core.hyperparams.optimize_smoothing_scale") as smoothing, \
            mock.patch("pysvb.core.hyperparams.optimize_evidence") as evidence:
        update_delta_rho(options, hyper, covar, means, variances, np.zeros(1),
                         np.ones(1), first_iteration=True)
    smoothing.assert_not_called()
    evidence.assert_not_called()
    assert hyper.delta[0] == 0.5


def test_fixed_delta(covar, rng):
    options = _opts("F", fixed_delta=2.0, fixed_rho=0.3)
    hyper = SpatialHyperparams.initial(1, 0.5)
    means, variances = _stats(rng)
    update_delta_rho(options, hyper, covar, means, variances, np.zeros(1),
                     np.ones(1), first_iteration=False)
    assert hyper.delta[0] == 2.0
    assert hyper.rho[0] == 0.3


def test_distance_without_eo_searches_free_energy(covar, rng):
    options = _opts("D")
    hyper = SpatialHyperparams.initial(1, 0.5)
    means, variances = _stats(rng)
    update_delta_rho(options, hyper, covar, means, variances, np.zeros(1),
                     np.ones(1), first_iteration=False)
    assert 0.2 <= hyper.delta[0] <= 1e15
    assert hyper.rho[0] == 0.0


def test_distance_rho_free_energy(covar, rng):
    options = _opts("R")
    hyper = SpatialHyperparams.initial(1, 0.5)
    means, variances = _stats(rng)
    update_delta_rho(options, hyper, covar, means, variances, np.zeros(1),
                     np.ones(1), first_iteration=False)
    assert np.isfinite(hyper.rho[0])


def test_distance_with_eo(covar, rng):
    options = _opts("D", use_evidence_optimization=True)
    hyper = SpatialHyperparams.initial(1, 0.5)
    means, variances = _stats(rng)
    update_delta_rho(options, hyper, covar, means, variances, np.zeros(1),
                     np.ones(1), first_iteration=False,
                     wp_precisions=np.full((27, 1), 10.0), wp_means=means)
    assert 0.05 <= hyper.delta[0] <= 1e3


def test_delta_rate_limit(covar, rng):
    """With a spatial speed, delta grows at most by that factor per iteration."""
    options = _opts("D", spatial_speed=2.0)
    hyper = SpatialHyperparams.initial(1, 0.8)
    means, variances = _stats(rng)
    with mock.patch("pysvb.core.hyperparams.optimize_smoothing_scale",
                    return_value=(50.0, 0.0)):
        update_delta_rho(options, hyper, covar, means, variances, np.zeros(1),
                         np.ones(1), first_iteration=False)
    assert hyper.delta[0] == pytest.approx(1.6)


def test_delta_rate_limit_reoptimises_rho(covar, rng):
    options = _opts("R", spatial_speed=2.0)
    hyper = SpatialHyperparams.initial(1, 0.8)
    means, variances = _stats(rng)
    with mock.patch("pysvb.core.hyperparams.optimize_smoothing_scale",
                    return_value=(50.0, 9.0)), \
            mock.patch("pysvb.core.hyperparams.optimize_rho", return_value=-1.5) as rho:
        update_delta_rho(options, hyper, covar, means, variances, np.zeros(1),
                         np.ones(1), first_iteration=False)
    assert hyper.delta[0] == pytest.approx(1.6)
    assert hyper.rho[0] == -1.5
    assert rho.call_args.args[3] == pytest.approx(1.6)


def test_always_initial_delta_guess(covar, rng):
    options = _opts("D", always_initial_delta_guess=3.0)
    hyper = SpatialHyperparams.initial(1, 0.5)
    means, variances = _stats(rng)
    with mock.patch("pysvb.core.hyperparams.optimize_smoothing_scale",
                    return_value=(1.0, 0.0)) as smoothing:
        update_delta_rho(options, hyper, covar, means, variances, np.zeros(1),
                         np.ones(1), first_iteration=False)
    assert smoothing.call_args.args[3] == 3.0


def test_update_akmean(cube_coords, rng):
    options = _opts("SS", spatial_speed=2.0)
    nb, _ = calc_neighbours(cube_coords, 3)
    flat = np.column_stack([np.ones(27), 10 * rng.standard_normal(27)])
    akmean = update_akmean(options, np.array([1e-8, 1e-8]), flat,
                           np.full((27, 2), 0.01), nb)
    # Ceiling is max(1e-8 * 2, 0.5)
    assert akmean.shape == (2,)
    assert akmean[0] == 0.5
    assert 0 < akmean[1] <= 0.5
