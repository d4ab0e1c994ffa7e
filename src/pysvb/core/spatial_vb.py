"""Spatially regularised VB: the main outer iteration."""

import logging

import numpy as np

from pysvb.core.evidence import full_evidence_optimization, simultaneous_evidence_optimization
from pysvb.core.hyperparams import update_akmean, update_delta_rho
from pysvb.core.options import SpatialVBOptions
from pysvb.core.spatial_priors import assemble_precision_matrices, derive_voxel_priors
from pysvb.core.vb import (
    VoxelState,
    check_diagonal_prior,
    guarded_update,
    init_voxel_states,
    update_free_energy,
)
from pysvb.errors import ConfigurationError, InternalConsistencyError
from pysvb.io.mat_interop import load_mvns
from pysvb.io.rundata import RunData
from pysvb.logs import warn_once
from pysvb.math.covariance import CovarianceCache, calc_distances
from pysvb.math.mrf import build_second_order_matrix, build_sts_matrix
from pysvb.math.mvn import MVNDist
from pysvb.math.neighbours import calc_neighbours
from pysvb.models.convergence import ConvergenceDetector
from pysvb.models.forward import FwdModel
from pysvb.models.noise import NoiseModel
from pysvb.types import (
    EvidenceOptimization,
    InferenceResult,
    InferenceState,
    SpatialHyperparams,
    SpatialPriorType,
)

logger = logging.getLogger(__name__)

# Passed to the convergence test when it does not use the free energy
PLACEHOLDER_FREE_ENERGY = 1234.5678


class SpatialVariationalBayes:
    """Spatial VB inference over all voxels of a volume.

    Each outer iteration runs, in order: the shrinkage (akmean) update, the
    delta/rho update, spatial precision matrix assembly, per-voxel prior
    derivation, the per-voxel theta update, optional evidence optimisation,
    and the per-voxel noise update with recentring.

    Args:
        fwd_model: Forward model fitted at every voxel.
        noise_model: Noise model providing the VB updates.
        convergence: Detector tested once per outer iteration.
        options: Validated options; read from the run data on
            ``initialize`` if not given.
    """

    def __init__(
        self,
        fwd_model: FwdModel,
        noise_model: NoiseModel,
        convergence: ConvergenceDetector,
        options: SpatialVBOptions | None = None,
    ):
        self.fwd_model = fwd_model
        self.noise_model = noise_model
        self.convergence = convergence
        self.options = options
        self.state = InferenceState.UNINITIALIZED

        self.neighbours: list[list[int]] = []
        self.neighbours2: list[list[int]] = []
        self.covar: CovarianceCache | None = None
        self.sts: np.ndarray | None = None
        self.second_order: np.ndarray | None = None
        self.image_priors: dict[int, np.ndarray] = {}
        self.hyper: SpatialHyperparams | None = None
        self.voxels: list[VoxelState] = []
        self.prior_means = np.zeros(0)
        self.prior_precisions = np.zeros(0)
        self.locked = False

    @property
    def num_params(self) -> int:
        return self.fwd_model.num_params

    def initialize(self, rundata: RunData) -> None:
        """Validate options and build every run-constant structure.

        Raises:
            ConfigurationError: for bad options or unsorted coordinates.
            InternalConsistencyError: for broken adjacency or dimension mismatches.
        """
        self.state = InferenceState.INITIALIZING
        if self.options is None:
            self.options = SpatialVBOptions.from_rundata(rundata, self.fwd_model.param_names)
        options = self.options
        if len(options.prior_types) != self.num_params:
            raise ConfigurationError(
                f"--param-spatial-priors={options.prior_string}, but there are "
                f"{self.num_params} parameters!")

        prior, _ = self.fwd_model.initial_priors()
        check_diagonal_prior(prior)
        self.prior_means = prior.means.copy()
        self.prior_precisions = np.diag(prior.precisions).copy()

        n_voxels = rundata.num_voxels
        coords = rundata.coords
        if (options.needs_neighbours or options.needs_distances) and coords.shape != (3, n_voxels):
            raise InternalConsistencyError(
                f"Voxel coordinates have shape {coords.shape}, expected {(3, n_voxels)}")

        if options.needs_neighbours:
            self.neighbours, self.neighbours2 = calc_neighbours(coords, options.spatial_dims)
        if options.needs_distances:
            distances = calc_distances(coords, options.distance_measure)
            self.covar = CovarianceCache(distances, use_cache=options.use_covariance_cache)

        shrinkage = options.shrinkage_type
        if shrinkage is not None and shrinkage.uses_sts:
            self.sts = build_sts_matrix(self.neighbours)
        if shrinkage is SpatialPriorType.PENNY_DIRICHLET and options.save_without_prior:
            self.second_order = build_second_order_matrix(self.neighbours, options.spatial_dims)

        self.image_priors = {}
        for k, name in options.image_priors.items():
            logger.info("Reading image prior (%d): %s", k, name)
            self.image_priors[k] = rundata.get_voxel_data(name)

        continue_from = None
        if options.continue_from_file:
            logger.info("Continuing from the MVN '%s'", options.continue_from_file)
            continue_from = load_mvns(options.continue_from_file)
        locked_centres = None
        if options.locked_linear_file:
            logger.info("Loading fixed linearization centres from the MVN '%s'",
                        options.locked_linear_file)
            locked = load_mvns(options.locked_linear_file)
            if any(mvn.size < self.num_params for mvn in locked):
                raise ConfigurationError(
                    f"Locked linearisation MVNs need at least {self.num_params} parameters")
            locked_centres = np.array([mvn.means[:self.num_params] for mvn in locked])

        self.voxels = init_voxel_states(
            self.fwd_model, self.noise_model, rundata.data,
            save_without_prior=options.save_without_prior,
            continue_from=continue_from,
            locked_centres=locked_centres)
        self.locked = locked_centres is not None

        self.hyper = SpatialHyperparams.initial(self.num_params, options.fixed_delta)
        logger.info("Using initial value for all deltas: %g", options.fixed_delta)

    def _posterior_stats(self) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """(N, P) posterior means, marginal variances and precision diagonals."""
        means = np.array([s.posterior.means for s in self.voxels])
        variances = np.array([np.diag(s.posterior.covariance) for s in self.voxels])
        precisions = np.array([np.diag(s.posterior.precisions) for s in self.voxels])
        return means, variances, precisions

    def _without_prior_stats(self) -> tuple[np.ndarray | None, np.ndarray | None]:
        if not self.options.save_without_prior:
            return None, None
        precs = np.array([np.diag(s.without_prior.precisions) for s in self.voxels])
        means = np.array([s.without_prior.means for s in self.voxels])
        return precs, means

    def _log_free_energy(self, v: int, label: str, need_f: bool, extra: float = 0.0) -> None:
        if need_f:
            update_free_energy(self.noise_model, self.voxels[v], extra)
        if self.options.print_free_energy:
            logger.info("      F%s == %g", label, self.voxels[v].free_energy)

    def _iterate(self, first_iteration: bool, need_f: bool) -> None:
        options = self.options
        hyper = self.hyper
        n_voxels = len(self.voxels)

        # Global hyperparameters from the previous posteriors
        means, variances, precisions = self._posterior_stats()
        if options.shrinkage_type is not None and (
                not first_iteration or options.update_first_iteration):
            hyper.akmean = update_akmean(options, hyper.akmean, means, variances,
                                         self.neighbours, sts=self.sts)

        wp_precs, wp_means = self._without_prior_stats()
        update_delta_rho(options, hyper, self.covar, means, variances,
                         self.prior_means, self.prior_precisions, first_iteration,
                         wp_precisions=wp_precs, wp_means=wp_means)

        shrinkage_matrix = self.sts if self.sts is not None else self.second_order
        sinvs = assemble_precision_matrices(options, hyper, self.covar,
                                            self.prior_precisions, n_voxels,
                                            shrinkage_matrix=shrinkage_matrix)

        prior_means, prior_precs, fard = derive_voxel_priors(
            options, hyper, sinvs, means, precisions,
            self.prior_means, self.prior_precisions, first_iteration,
            image_priors=self.image_priors, neighbours=self.neighbours,
            neighbours2=self.neighbours2, sts=self.sts)

        # Theta update, every voxel against the same snapshot of priors
        for v, voxel in enumerate(self.voxels):
            voxel.prior = MVNDist(prior_means[v], precisions=prior_precs[v])
            self._log_free_energy(v, "before", need_f, fard[v])
            guarded_update(v, voxel, options.halt_bad_voxel, "theta update",
                           lambda: self.noise_model.update_theta(
                               voxel.noise, voxel.posterior, voxel.prior, voxel.linear,
                               voxel.data, voxel.without_prior))
            self._log_free_energy(v, "theta", need_f, fard[v])

        match options.evidence_optimization:
            case EvidenceOptimization.SIMULTANEOUS:
                simultaneous_evidence_optimization(
                    options, sinvs, [s.posterior for s in self.voxels],
                    [s.without_prior for s in self.voxels], self.prior_means)
            case EvidenceOptimization.FULL:
                full_evidence_optimization(
                    options, sinvs, [s.posterior for s in self.voxels],
                    [s.without_prior for s in self.voxels], self.prior_means)
            case EvidenceOptimization.NONE:
                pass

        for v, voxel in enumerate(self.voxels):
            guarded_update(v, voxel, options.halt_bad_voxel, "noise update",
                           lambda: self.noise_model.update_noise(
                               voxel.noise, voxel.noise_prior, voxel.posterior,
                               voxel.linear, voxel.data))
            self._log_free_energy(v, "noise", need_f)
            if not self.locked:
                voxel.linear.recentre(voxel.posterior.means)
            self._log_free_energy(v, "lin", need_f)

    def do_calculations(self, rundata: RunData) -> InferenceResult:
        """Run the outer iteration to convergence and collect the result."""
        if self.state is InferenceState.UNINITIALIZED:
            self.initialize(rundata)
        if self.state is not InferenceState.INITIALIZING:
            raise InternalConsistencyError(
                f"do_calculations called in state {self.state.value}")

        need_f = self.convergence.needs_free_energy or self.options.print_free_energy
        warn_once(logger, "Not saving the final spatial priors -- too big")

        self.convergence.reset()
        self.state = InferenceState.ITERATING
        first_iteration = True
        iterations = 0
        while True:
            logger.info("Spatial VB iteration %d", iterations + 1)
            self._iterate(first_iteration, need_f)
            first_iteration = False
            iterations += 1

            if self.convergence.needs_free_energy:
                global_f = float(sum(s.free_energy for s in self.voxels))
                logger.info("Total free energy: %g", global_f)
            else:
                global_f = PLACEHOLDER_FREE_ENERGY
            if self.convergence.test(global_f):
                break

        self.state = (InferenceState.MAX_ITERATIONS_REACHED if self.convergence.max_reached
                      else InferenceState.CONVERGED)
        logger.info("Spatial VB stopped after %d iterations: %s",
                    iterations, self.convergence.reason)

        result = InferenceResult(
            posteriors=[s.result_mvn() for s in self.voxels],
            param_names=self.fwd_model.param_names,
            free_energy=np.array([s.free_energy for s in self.voxels]) if need_f else None,
            hyperparams=self.hyper.copy(),
            iterations=iterations,
            state=self.state,
            resels=self.coefficient_resels(),
        )
        if self.options.save_without_prior:
            result.posteriors_without_prior = [
                s.without_prior.concat(s.noise.output_as_mvn()) for s in self.voxels]
        return result

    def coefficient_resels(self) -> list[tuple[float, float]]:
        """Coefficient resels per voxel for each parameter (Penny et al. 2005).

        Returns:
            (vb, eo) per parameter: the mean of 1 - postVar/priorVar, and the
            mean of postVar/likelihoodVar (NaN without evidence optimisation).
        """
        resels = []
        post_var = np.array([np.diag(s.posterior.covariance) for s in self.voxels])
        prior_var = np.array([np.diag(s.prior.covariance) for s in self.voxels])
        gamma = 1.0 - post_var / prior_var
        if self.options.save_without_prior:
            try:
                wp_var = np.array([np.diag(s.without_prior.covariance) for s in self.voxels])
                gamma_eo = post_var / wp_var
            except np.linalg.LinAlgError:
                gamma_eo = np.full_like(post_var, np.nan)
        else:
            gamma_eo = np.full_like(post_var, np.nan)
        for k in range(self.num_params):
            vb, eo = float(np.mean(gamma[:, k])), float(np.mean(gamma_eo[:, k]))
            logger.info("Coefficient resels per voxel for param %d: %g (vb) or %g (eo)",
                        k, vb, eo)
            resels.append((vb, eo))
        return resels
