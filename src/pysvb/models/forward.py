"""Forward models mapping parameter vectors to predicted voxel time series."""

import logging

import numpy as np

from pysvb.errors import ConfigurationError
from pysvb.math.mvn import MVNDist

logger = logging.getLogger(__name__)


class FwdModel:
    """Base class for forward models.

    Subclasses set ``name`` and implement ``param_names`` and ``evaluate``.
    ``jacobian`` may return None, in which case the linearisation falls back
    to numerical differentiation.
    """

    name = ""

    @property
    def param_names(self) -> list[str]:
        raise NotImplementedError

    @property
    def num_params(self) -> int:
        return len(self.param_names)

    def evaluate(self, params: np.ndarray, num_times: int) -> np.ndarray:
        """Predicted time series (num_times,) for one parameter vector."""
        raise NotImplementedError

    def jacobian(self, params: np.ndarray, num_times: int) -> np.ndarray | None:
        return None

    def initial_priors(self) -> tuple[MVNDist, MVNDist]:
        """(prior, initial posterior) over the model parameters."""
        prior = MVNDist.from_means(np.zeros(self.num_params), 1e-12)
        return prior, prior.copy()

    def init_params(self, posterior: MVNDist, data: np.ndarray) -> None:
        """Voxelwise initialisation of the posterior from the data (optional)."""


class TrivialFwdModel(FwdModel):
    """One parameter whose value is predicted at every timepoint."""

    name = "trivial"

    @property
    def param_names(self) -> list[str]:
        return ["p"]

    def evaluate(self, params, num_times):
        return np.full(num_times, float(params[0]))

    def jacobian(self, params, num_times):
        return np.ones((num_times, 1))


class PolynomialFwdModel(FwdModel):
    """Polynomial in the timepoint index t = 1..T.

    Args:
        degree: Highest power of t; the model has degree + 1 coefficients.
    """

    name = "poly"

    def __init__(self, degree: int = 1):
        if degree < 0:
            raise ConfigurationError(f"Polynomial degree must be >= 0, got {degree}")
        self.degree = degree

    @property
    def param_names(self) -> list[str]:
        return [f"c{i}" for i in range(self.degree + 1)]

    def _design(self, num_times: int) -> np.ndarray:
        t = np.arange(1, num_times + 1, dtype=np.float64)
        return t[:, np.newaxis] ** np.arange(self.degree + 1)

    def evaluate(self, params, num_times):
        return self._design(num_times) @ np.asarray(params, dtype=np.float64)

    def jacobian(self, params, num_times):
        return self._design(num_times)


class ExpFwdModel(FwdModel):
    """Mono-exponential decay amp * exp(-rate * t), t = 1..T."""

    name = "exp"

    @property
    def param_names(self) -> list[str]:
        return ["amp", "rate"]

    def evaluate(self, params, num_times):
        amp, rate = params[0], params[1]
        t = np.arange(1, num_times + 1, dtype=np.float64)
        return amp * np.exp(-rate * t)

    def initial_priors(self):
        prior = MVNDist(np.zeros(2), precisions=np.array([1e-6, 1e-6]))
        posterior = MVNDist(np.array([1.0, 0.1]), precisions=np.array([10.0, 10.0]))
        return prior, posterior

    def init_params(self, posterior, data):
        # Amplitude from the first timepoint, rate from the overall decay
        data = np.asarray(data, dtype=np.float64)
        means = posterior.means.copy()
        if data.size > 1 and data[0] > 0 and data[-1] > 0:
            means[1] = np.log(data[0] / data[-1]) / (data.size - 1)
            means[0] = data[0] * np.exp(means[1])
            posterior.means = means


_FWD_MODELS: dict[str, type[FwdModel]] = {}


def register_fwd_model(cls: type[FwdModel]) -> type[FwdModel]:
    _FWD_MODELS[cls.name] = cls
    return cls


for _cls in (TrivialFwdModel, PolynomialFwdModel, ExpFwdModel):
    register_fwd_model(_cls)


def fwd_model_names() -> list[str]:
    return sorted(_FWD_MODELS)


def create_fwd_model(name: str, rundata=None) -> FwdModel:
    """Create a forward model by name, configured from run data options.

    Raises:
        ConfigurationError: for an unknown model name.
    """
    try:
        cls = _FWD_MODELS[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown forward model '{name}'; known models: "
            f"{', '.join(fwd_model_names())}") from None
    if cls is PolynomialFwdModel:
        degree = rundata.get_int("degree", 1) if rundata is not None else 1
        model = PolynomialFwdModel(degree)
    else:
        model = cls()
    logger.info("Forward model: %s (%d parameters)", name, model.num_params)
    return model
