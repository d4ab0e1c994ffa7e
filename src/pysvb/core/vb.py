"""Per-voxel VB state and the non-spatial VB inference method."""

import logging
from dataclasses import dataclass

import numpy as np

from pysvb.errors import ConfigurationError, VoxelNumericalError
from pysvb.io.rundata import RunData
from pysvb.math.mvn import MVNDist
from pysvb.models.convergence import ConvergenceDetector
from pysvb.models.forward import FwdModel
from pysvb.models.linearized import LinearizedFwdModel
from pysvb.models.noise import NoiseModel, NoiseParams
from pysvb.types import InferenceResult, InferenceState

logger = logging.getLogger(__name__)


@dataclass
class VoxelState:
    """Everything the VB updates know about one voxel."""

    data: np.ndarray
    prior: MVNDist
    posterior: MVNDist
    noise: NoiseParams
    noise_prior: NoiseParams
    linear: LinearizedFwdModel
    without_prior: MVNDist | None = None
    free_energy: float = float("nan")

    def result_mvn(self) -> MVNDist:
        return self.posterior.concat(self.noise.output_as_mvn())


def check_diagonal_prior(prior: MVNDist) -> None:
    """Raise ConfigurationError unless the prior precision matrix is diagonal."""
    prec = prior.precisions
    if np.any(prec - np.diag(np.diag(prec))):
        raise ConfigurationError("The initial parameter prior must have a diagonal precision matrix")


def init_voxel_states(
    fwd_model: FwdModel,
    noise_model: NoiseModel,
    data: np.ndarray,
    save_without_prior: bool = False,
    init_params: bool = True,
    continue_from: list[MVNDist] | None = None,
    locked_centres: np.ndarray | None = None,
) -> list[VoxelState]:
    """Create the initial state of every voxel.

    Args:
        data: (T, N) voxel time series.
        save_without_prior: Also track the likelihood-only posterior.
        init_params: Let the forward model initialise each posterior from the data.
        continue_from: Saved per-voxel MVNs to start from, either model
            parameters only or model then noise parameters.
        locked_centres: (N, P) fixed linearisation centres.

    Raises:
        ConfigurationError: if saved MVNs or centres do not match the model.
    """
    num_times, n_voxels = data.shape
    num_params = fwd_model.num_params
    prior, posterior = fwd_model.initial_priors()
    noise_prior = noise_model.initial_prior()
    noise_posterior = noise_model.initial_posterior()
    noise_size = noise_posterior.output_as_mvn().size

    if continue_from is not None and len(continue_from) != n_voxels:
        raise ConfigurationError(
            f"Continuing from {len(continue_from)} saved voxels, but the data has {n_voxels}")
    if locked_centres is not None and locked_centres.shape != (n_voxels, num_params):
        raise ConfigurationError(
            f"Locked linearisation centres have shape {locked_centres.shape}, "
            f"expected {(n_voxels, num_params)}")

    states = []
    for v in range(n_voxels):
        voxel_data = data[:, v]
        voxel_post = posterior.copy()
        voxel_noise = noise_posterior.clone()
        if continue_from is not None:
            saved = continue_from[v]
            if saved.size not in (num_params, num_params + noise_size):
                raise ConfigurationError(
                    f"Saved MVN for voxel {v} has {saved.size} parameters, expected "
                    f"{num_params} or {num_params + noise_size}")
            voxel_post = saved.submatrix(0, num_params)
            if saved.size > num_params:
                voxel_noise = noise_model.new_params()
                voxel_noise.input_from_mvn(saved.submatrix(num_params, saved.size))
        elif init_params:
            fwd_model.init_params(voxel_post, voxel_data)

        linear = LinearizedFwdModel(fwd_model, num_times)
        linear.recentre(voxel_post.means if locked_centres is None else locked_centres[v])

        state = VoxelState(
            data=voxel_data,
            prior=prior.copy(),
            posterior=voxel_post,
            noise=voxel_noise,
            noise_prior=noise_prior.clone(),
            linear=linear,
            without_prior=MVNDist(np.zeros(num_params)) if save_without_prior else None,
        )
        noise_model.precalculate(state.noise, state.noise_prior, voxel_data)
        states.append(state)
    return states


def guarded_update(index: int, state: VoxelState, halt_bad_voxel: bool,
                   step: str, update) -> bool:
    """Run one voxel update, applying the bad-voxel policy.

    On a numerical failure the voxel either aborts the run (``halt_bad_voxel``)
    or keeps the posterior, noise and likelihood-only posterior it had before
    the update.

    Returns:
        True if the update succeeded.

    Raises:
        VoxelNumericalError: on failure when halt_bad_voxel is set.
    """
    previous = state.posterior.copy(), state.noise.clone()
    previous_without_prior = None if state.without_prior is None else state.without_prior.copy()
    try:
        update()
        if not (np.all(np.isfinite(state.posterior.means))
                and np.all(np.isfinite(state.noise.output_as_mvn().means))):
            raise VoxelNumericalError(index, f"non-finite values after {step}")
    except (np.linalg.LinAlgError, VoxelNumericalError) as exc:
        if halt_bad_voxel:
            if isinstance(exc, VoxelNumericalError):
                raise
            raise VoxelNumericalError(index, f"{step} failed: {exc}") from exc
        logger.warning("Bad voxel %d in %s, keeping its previous state: %s", index, step, exc)
        state.posterior, state.noise = previous
        state.without_prior = previous_without_prior
        return False
    return True


def update_free_energy(noise_model: NoiseModel, state: VoxelState, extra: float = 0.0) -> float:
    state.free_energy = noise_model.calc_free_energy(
        state.noise, state.noise_prior, state.posterior, state.prior,
        state.linear, state.data) + extra
    return state.free_energy


class VariationalBayes:
    """Independent VB fit at every voxel, with no spatial coupling.

    Each voxel iterates theta update, noise update and recentring until the
    convergence detector stops it.
    """

    def __init__(
        self,
        fwd_model: FwdModel,
        noise_model: NoiseModel,
        convergence: ConvergenceDetector,
        halt_bad_voxel: bool = True,
        print_free_energy: bool = False,
    ):
        self.fwd_model = fwd_model
        self.noise_model = noise_model
        self.convergence = convergence
        self.halt_bad_voxel = halt_bad_voxel
        self.print_free_energy = print_free_energy
        self.state = InferenceState.UNINITIALIZED

    def do_calculations(self, rundata: RunData) -> InferenceResult:
        self.state = InferenceState.INITIALIZING
        prior, _ = self.fwd_model.initial_priors()
        check_diagonal_prior(prior)
        states = init_voxel_states(self.fwd_model, self.noise_model, rundata.data)
        need_f = self.convergence.needs_free_energy or self.print_free_energy

        self.state = InferenceState.ITERATING
        max_its = 0
        any_max_reached = False
        for v, voxel in enumerate(states):
            self.convergence.reset()
            while True:
                guarded_update(v, voxel, self.halt_bad_voxel, "theta update",
                               lambda: self.noise_model.update_theta(
                                   voxel.noise, voxel.posterior, voxel.prior,
                                   voxel.linear, voxel.data))
                guarded_update(v, voxel, self.halt_bad_voxel, "noise update",
                               lambda: self.noise_model.update_noise(
                                   voxel.noise, voxel.noise_prior, voxel.posterior,
                                   voxel.linear, voxel.data))
                voxel.linear.recentre(voxel.posterior.means)
                free_energy = update_free_energy(self.noise_model, voxel) if need_f else 0.0
                if self.print_free_energy:
                    logger.info("Voxel %d: F == %g", v, free_energy)
                if self.convergence.test(free_energy):
                    break
            max_its = max(max_its, self.convergence.its)
            any_max_reached |= self.convergence.max_reached
            logger.debug("Voxel %d done after %d iterations: %s",
                         v, self.convergence.its, self.convergence.reason)

        self.state = (InferenceState.MAX_ITERATIONS_REACHED if any_max_reached
                      else InferenceState.CONVERGED)
        logger.info("VB finished %d voxels", len(states))
        return InferenceResult(
            posteriors=[voxel.result_mvn() for voxel in states],
            param_names=self.fwd_model.param_names,
            free_energy=np.array([s.free_energy for s in states]) if need_f else None,
            iterations=max_its,
            state=self.state,
        )
