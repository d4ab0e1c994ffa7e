"""Option parsing and validation for spatial VB."""

import logging
from dataclasses import dataclass, field

from pysvb.errors import ConfigurationError
from pysvb.io.rundata import RunData
from pysvb.logs import warn_once
from pysvb.types import DistanceMeasure, EvidenceOptimization, SpatialPriorType

logger = logging.getLogger(__name__)

DEFAULT_PRIOR_STRING = "S+"
DEFAULT_FIXED_DELTA = 0.5


def expand_prior_string(
    priors: str,
    num_params: int,
) -> tuple[str, dict[int, int]]:
    """Expand the ``+`` shorthand in a prior-type string.

    The character before ``+`` is repeated so the string has one character
    per parameter. Only a ``+`` after the first character is recognised.

    Returns:
        (expanded, position_map) where position_map maps each 0-based
        position in the unexpanded string to its expanded position.
        Positions that disappear (the ``+`` itself, or a repeated character
        repeated zero times) are not mapped.

    Raises:
        ConfigurationError: if more than one ``+`` is present.
    """
    plus = priors.find("+", 1)
    if plus < 0:
        return priors, {i: i for i in range(len(priors))}
    if priors.rfind("+") != plus:
        raise ConfigurationError(
            f"--param-spatial-priors={priors} may contain only one '+'")

    before = priors[:plus - 1]
    after = priors[plus + 1:]
    repeat = priors[plus - 1]
    n_repeat = num_params - len(before) - len(after)
    expanded = before + repeat * max(n_repeat, 0) + after

    position_map = {i: i for i in range(len(before))}
    if n_repeat > 0:
        position_map[plus - 1] = plus - 1
    shift = n_repeat - 2
    for i in range(len(after)):
        position_map[plus + 1 + i] = plus + 1 + i + shift
    return expanded, position_map


@dataclass
class SpatialVBOptions:
    """Validated configuration of one spatial VB run.

    Attributes:
        prior_types: One prior type per model parameter.
        image_priors: Parameter index -> voxel image name, for 'I' priors.
        first_param_for_full_eo: 0-based index of the first parameter whose
            posterior is rewritten by full evidence optimisation.
    """

    prior_types: list[SpatialPriorType]
    spatial_dims: int = 3
    spatial_speed: float = -1.0
    distance_measure: DistanceMeasure = DistanceMeasure.EUCLIDEAN
    image_priors: dict[int, str] = field(default_factory=dict)
    fixed_delta: float = DEFAULT_FIXED_DELTA
    fixed_rho: float = 0.0
    update_first_iteration: bool = False
    new_delta_iterations: int = 10
    evidence_optimization: EvidenceOptimization = EvidenceOptimization.NONE
    use_evidence_optimization: bool = False
    first_param_for_full_eo: int = 0
    use_covariance_marginals: bool = False
    keep_interparameter_covariances: bool = False
    always_initial_delta_guess: float = -1.0
    brute_force_delta_search: bool = False
    locked_linear_file: str | None = None
    continue_from_file: str | None = None
    halt_bad_voxel: bool = True
    print_free_energy: bool = False
    use_covariance_cache: bool = True
    exact_rho: bool = False

    @property
    def prior_string(self) -> str:
        return "".join(t.value for t in self.prior_types)

    @property
    def shrinkage_type(self) -> SpatialPriorType | None:
        for prior_type in self.prior_types:
            if prior_type.is_shrinkage:
                return prior_type
        return None

    @property
    def needs_neighbours(self) -> bool:
        return self.shrinkage_type is not None

    @property
    def needs_distances(self) -> bool:
        return any(t.is_distance for t in self.prior_types)

    @property
    def save_without_prior(self) -> bool:
        return self.use_evidence_optimization

    @classmethod
    def from_rundata(cls, rundata: RunData, param_names: list[str]) -> "SpatialVBOptions":
        """Read and validate every spatial VB option.

        Raises:
            ConfigurationError: for any malformed or inconsistent option.
        """
        num_params = len(param_names)

        spatial_dims = rundata.get_int("spatial-dims", 3)
        if not 0 <= spatial_dims <= 3:
            raise ConfigurationError("--spatial-dims= must take 0, 1, 2, or 3")
        if spatial_dims == 1:
            warn_once(logger, "--spatial-dims=1 is very weird... "
                              "I hope you're just testing something!")
        elif spatial_dims == 2:
            warn_once(logger, "--spatial-dims=2 doesn't decompose into slices and "
                              "won't help if you're using the D prior")

        spatial_speed = rundata.get_double("spatial-speed", -1.0)
        if not (spatial_speed > 1 or spatial_speed == -1):
            raise ConfigurationError(
                f"--spatial-speed must be greater than 1 or -1, got {spatial_speed}")

        distance_measure = DistanceMeasure.from_name(
            rundata.get_string_default("distance-measure", "dist1"))

        raw_priors = rundata.get_string_default("param-spatial-priors", DEFAULT_PRIOR_STRING)
        prior_chars, image_priors = _read_prior_types(rundata, raw_priors, param_names)
        if len(prior_chars) != num_params:
            raise ConfigurationError(
                f"--param-spatial-priors={''.join(prior_chars)}, but there are "
                f"{num_params} parameters!")
        prior_types = [SpatialPriorType.from_char(c) for c in prior_chars]
        logger.info("Expanded, --param-spatial-priors=%s", "".join(prior_chars))

        shrinkage = None
        for prior_type in prior_types:
            if prior_type.is_shrinkage:
                if shrinkage is not None and prior_type is not shrinkage:
                    raise ConfigurationError(
                        "Sorry, only one type of shrinkage prior at a time, please!")
                shrinkage = prior_type

        fixed_delta = rundata.get_double("fixed-delta", -1.0)
        if SpatialPriorType.FIXED_DISTANCE in prior_types:
            if fixed_delta < 0:
                raise ConfigurationError(
                    "If --param-spatial-priors=F, you must specify a --fixed-delta value.")
        elif fixed_delta == -1:
            fixed_delta = DEFAULT_FIXED_DELTA

        new_delta_iterations = rundata.get_int("new-delta-iterations", 10)
        if new_delta_iterations <= 0:
            raise ConfigurationError("--new-delta-iterations must be positive")

        simultaneous = rundata.get_bool("use-simultaneous-evidence-optimization")
        full = simultaneous or rundata.get_bool("use-full-evidence-optimization")
        first_param = rundata.get_int("first-parameter-for-full-eo", 1) if full else 1
        use_eo = full or rundata.get_bool("use-evidence-optimization")
        cov_marginals = full and rundata.get_bool("use-covariance-marginals")
        keep_cov = full and rundata.get_bool("keep-interparameter-covariances")
        update_first = rundata.get_bool("update-spatial-prior-on-first-iteration")
        if update_first and not use_eo:
            raise ConfigurationError(
                "--update-spatial-prior-on-first-iteration requires evidence optimization")

        if (not full and not rundata.get_bool("no-eo")
                and any(t in (SpatialPriorType.DISTANCE, SpatialPriorType.DISTANCE_RHO)
                        for t in prior_types)):
            full = use_eo = True
            simultaneous = rundata.get_bool("slow-eo")
            if not simultaneous:
                warn_once(logger, "Defaulting to Full (non-simultaneous) Evidence Optimization")

        if not 1 <= first_param <= num_params:
            raise ConfigurationError(
                f"--first-parameter-for-full-eo must be between 1 and {num_params}")
        if simultaneous and first_param != 1:
            raise ConfigurationError(
                "Simultaneous evidence optimization requires --first-parameter-for-full-eo=1")
        if shrinkage is SpatialPriorType.SHRINKAGE_STS and not use_eo:
            raise ConfigurationError("The 'Z' prior requires evidence optimization")
        if use_eo and shrinkage is not None and not (
                shrinkage.uses_sts or shrinkage is SpatialPriorType.PENNY_DIRICHLET):
            raise ConfigurationError(
                f"Evidence optimization is not available with the "
                f"'{shrinkage.value}' prior; use S, Z or p")

        if simultaneous:
            eo_mode = EvidenceOptimization.SIMULTANEOUS
        elif full:
            eo_mode = EvidenceOptimization.FULL
        else:
            eo_mode = EvidenceOptimization.NONE

        locked = rundata.get_string_default("locked-linear-from-mvn", "") or None
        continue_from = rundata.get_string_default("continue-from-mvn", "") or None

        use_cache = not rundata.get_bool("disable-covariance-cache")

        options = cls(
            prior_types=prior_types,
            spatial_dims=spatial_dims,
            spatial_speed=spatial_speed,
            distance_measure=distance_measure,
            image_priors=image_priors,
            fixed_delta=fixed_delta,
            fixed_rho=rundata.get_double("fixed-rho", 0.0),
            update_first_iteration=update_first,
            new_delta_iterations=new_delta_iterations,
            evidence_optimization=eo_mode,
            use_evidence_optimization=use_eo,
            first_param_for_full_eo=first_param - 1,
            use_covariance_marginals=cov_marginals,
            keep_interparameter_covariances=keep_cov,
            always_initial_delta_guess=rundata.get_double("always-initial-delta-guess", -1.0),
            brute_force_delta_search=rundata.get_bool("brute-force-delta-search"),
            locked_linear_file=locked,
            continue_from_file=continue_from,
            halt_bad_voxel=not rundata.get_bool("allow-bad-voxels"),
            print_free_energy=rundata.get_bool("print-free-energy"),
            use_covariance_cache=use_cache,
            exact_rho=rundata.get_bool("exact-rho"),
        )
        logger.debug("Spatial VB options: %s", options)
        return options


def _read_prior_types(
    rundata: RunData,
    raw_priors: str,
    param_names: list[str],
) -> tuple[list[str], dict[int, str]]:
    """Expanded prior characters and image-prior names per parameter index."""
    num_params = len(param_names)

    # image-prior<k> refers to position k of the string as the user wrote it
    raw_images = {
        i: rundata.get_string(f"image-prior{i + 1}")
        for i, char in enumerate(raw_priors)
        if char == "I" and i < num_params
    }
    expanded, position_map = expand_prior_string(raw_priors, num_params)
    chars = list(expanded)
    images = {
        position_map[i]: name for i, name in raw_images.items() if i in position_map
    }

    n = 1
    while rundata.have_key(f"PSP_byname{n}"):
        name = rundata.get_string(f"PSP_byname{n}")
        if name not in param_names:
            raise ConfigurationError(
                f"Spatial prior specification by name, parameter {name} "
                "does not exist in the model")
        idx = param_names.index(name)
        char = rundata.get_string(f"PSP_byname{n}_type")
        if len(char) != 1:
            raise ConfigurationError(
                f"PSP_byname{n}_type must be a single character, got '{char}'")
        if idx < len(chars):
            chars[idx] = char
        if char == "I":
            images[idx] = rundata.get_string(f"PSP_byname{n}_image")
        n += 1

    for idx, char in enumerate(chars):
        if char == "I" and idx not in images:
            images[idx] = rundata.get_string(f"image-prior{idx + 1}")
    return chars, {k: v for k, v in images.items() if k < len(chars) and chars[k] == "I"}
