"""First-order linearisation of a forward model about a centre point."""

import numpy as np

from pysvb.models.forward import FwdModel

# Relative step for central differences
_DIFF_STEP = 1e-5


def numerical_jacobian(model: FwdModel, centre: np.ndarray, num_times: int) -> np.ndarray:
    """Central-difference Jacobian (num_times, P) of the model at centre."""
    centre = np.asarray(centre, dtype=np.float64)
    jac = np.empty((num_times, centre.size))
    for i in range(centre.size):
        step = _DIFF_STEP * max(abs(centre[i]), 1.0)
        plus, minus = centre.copy(), centre.copy()
        plus[i] += step
        minus[i] -= step
        jac[:, i] = (model.evaluate(plus, num_times)
                     - model.evaluate(minus, num_times)) / (2 * step)
    return jac


class LinearizedFwdModel:
    """f(theta) ~= offset + J (theta - centre)."""

    def __init__(self, model: FwdModel, num_times: int):
        self.model = model
        self.num_times = num_times
        self.centre: np.ndarray | None = None
        self.offset: np.ndarray | None = None
        self.jacobian: np.ndarray | None = None

    def recentre(self, centre: np.ndarray) -> None:
        centre = np.array(centre, dtype=np.float64).ravel()
        self.centre = centre
        self.offset = self.model.evaluate(centre, self.num_times)
        jac = self.model.jacobian(centre, self.num_times)
        if jac is None:
            jac = numerical_jacobian(self.model, centre, self.num_times)
        self.jacobian = np.asarray(jac, dtype=np.float64)

    def predict(self, params: np.ndarray) -> np.ndarray:
        return self.offset + self.jacobian @ (np.asarray(params) - self.centre)
