"""Noise models and their VB updates for the linearised forward model."""

import logging
import math

import numpy as np
from scipy.special import digamma, gammaln

from pysvb.errors import ConfigurationError
from pysvb.math.mvn import MVNDist
from pysvb.models.linearized import LinearizedFwdModel

logger = logging.getLogger(__name__)


class NoiseParams:
    """Per-voxel noise distribution; round-trips through a flat MVN."""

    def clone(self) -> "NoiseParams":
        raise NotImplementedError

    def output_as_mvn(self) -> MVNDist:
        raise NotImplementedError

    def input_from_mvn(self, mvn: MVNDist) -> None:
        raise NotImplementedError


class WhiteNoiseParams(NoiseParams):
    """Gamma(shape c, scale b) distribution on the noise precision phi."""

    def __init__(self, b: float, c: float):
        self.b = float(b)
        self.c = float(c)

    @property
    def phi(self) -> float:
        """Expected noise precision."""
        return self.b * self.c

    def clone(self):
        return WhiteNoiseParams(self.b, self.c)

    def output_as_mvn(self):
        return MVNDist(np.array([self.b * self.c]),
                       covariance=np.array([[self.c * self.b * self.b]]))

    def input_from_mvn(self, mvn):
        mean = float(mvn.means[0])
        var = float(mvn.covariance[0, 0])
        if mean <= 0 or var <= 0:
            raise ConfigurationError(
                f"Cannot convert mean={mean}, var={var} to a gamma distribution")
        self.b = var / mean
        self.c = mean * mean / var

    def __repr__(self):
        return f"WhiteNoiseParams(b={self.b!r}, c={self.c!r})"


class NoiseModel:
    """Interface the inference loop uses to update one voxel."""

    name = ""

    def new_params(self) -> NoiseParams:
        raise NotImplementedError

    def initial_prior(self) -> NoiseParams:
        raise NotImplementedError

    def initial_posterior(self) -> NoiseParams:
        raise NotImplementedError

    def precalculate(self, noise: NoiseParams, noise_prior: NoiseParams,
                     data: np.ndarray) -> None:
        """Cache any data-dependent quantities before iterating."""

    def update_theta(self, noise, posterior, prior, linear, data,
                     posterior_without_prior=None) -> None:
        raise NotImplementedError

    def update_noise(self, noise, noise_prior, posterior, linear, data) -> None:
        raise NotImplementedError

    def calc_free_energy(self, noise, noise_prior, posterior, prior, linear,
                         data) -> float:
        raise NotImplementedError


class WhiteNoiseModel(NoiseModel):
    """Independent, identically distributed Gaussian noise.

    Args:
        prior_b: Scale of the gamma prior on the noise precision.
        prior_c: Shape of the gamma prior on the noise precision.
    """

    name = "white"

    def __init__(self, prior_b: float = 1e6, prior_c: float = 1e-6):
        if prior_b <= 0 or prior_c <= 0:
            raise ConfigurationError(
                f"Noise prior must have positive b and c, got b={prior_b}, c={prior_c}")
        self.prior_b = prior_b
        self.prior_c = prior_c

    def new_params(self):
        return WhiteNoiseParams(1.0, 1.0)

    def initial_prior(self):
        return WhiteNoiseParams(self.prior_b, self.prior_c)

    def initial_posterior(self):
        return WhiteNoiseParams(1e-8, 50.0)

    def update_theta(self, noise, posterior, prior, linear, data,
                     posterior_without_prior=None):
        """Update the parameter posterior given the current noise estimate.

        Raises:
            numpy.linalg.LinAlgError: if the posterior precision is singular.
        """
        jac = linear.jacobian
        data = np.asarray(data, dtype=np.float64)
        k0 = data - linear.offset + jac @ linear.centre

        ltmp = noise.phi * (jac.T @ jac)
        mtmp = noise.phi * (jac.T @ k0)

        prior_prec = prior.precisions
        precisions = ltmp + prior_prec
        means = np.linalg.solve(precisions, mtmp + prior_prec @ prior.means)
        # solve both systems before writing either posterior
        if posterior_without_prior is not None:
            means_without_prior = np.linalg.solve(ltmp, mtmp)

        posterior.set_precisions(precisions)
        posterior.means = means
        if posterior_without_prior is not None:
            posterior_without_prior.set_precisions(ltmp)
            posterior_without_prior.means = means_without_prior

    def _residual_term(self, posterior: MVNDist, linear: LinearizedFwdModel,
                       data: np.ndarray) -> float:
        """E[r'r] = r'r + tr(Sigma J'J) under the current posterior."""
        jac = linear.jacobian
        resid = np.asarray(data, dtype=np.float64) - linear.predict(posterior.means)
        return float(resid @ resid + np.sum(posterior.covariance * (jac.T @ jac)))

    def update_noise(self, noise, noise_prior, posterior, linear, data):
        num_times = len(data)
        tmp = self._residual_term(posterior, linear, data)
        noise.b = 1.0 / (0.5 * tmp + 1.0 / noise_prior.b)
        noise.c = 0.5 * num_times + noise_prior.c

    def calc_free_energy(self, noise, noise_prior, posterior, prior, linear, data):
        num_times = len(data)
        tmp = self._residual_term(posterior, linear, data)
        b, c = noise.b, noise.c
        b0, c0 = noise_prior.b, noise_prior.c

        expected_loglik = (-0.5 * num_times * math.log(2 * math.pi)
                           + 0.5 * num_times * (digamma(c) + math.log(b))
                           - 0.5 * b * c * tmp)

        prior_prec = prior.precisions
        diff = posterior.means - prior.means
        _, logdet_post = np.linalg.slogdet(posterior.precisions)
        _, logdet_prior = np.linalg.slogdet(prior_prec)
        kl_theta = 0.5 * (np.sum(prior_prec * posterior.covariance)
                          + diff @ prior_prec @ diff
                          - posterior.size + logdet_post - logdet_prior)

        kl_noise = ((c - c0) * digamma(c) - gammaln(c) + gammaln(c0)
                    + c0 * (math.log(b0) - math.log(b)) + c * (b / b0 - 1))

        return float(expected_loglik - kl_theta - kl_noise)


_NOISE_MODELS: dict[str, type[NoiseModel]] = {WhiteNoiseModel.name: WhiteNoiseModel}


def create_noise_model(name: str, rundata=None) -> NoiseModel:
    """Create a noise model by name.

    Raises:
        ConfigurationError: for an unknown noise model.
    """
    if name not in _NOISE_MODELS:
        raise ConfigurationError(
            f"Unknown noise model '{name}'; known models: {', '.join(sorted(_NOISE_MODELS))}")
    kwargs = {}
    if rundata is not None:
        kwargs["prior_b"] = rundata.get_double("noise-prior-b", 1e6)
        kwargs["prior_c"] = rundata.get_double("noise-prior-c", 1e-6)
    return _NOISE_MODELS[name](**kwargs)
