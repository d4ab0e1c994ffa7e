"""Run a complete inference from run data: build the models, fit, save."""

import logging
from pathlib import Path

from pysvb.core.spatial_vb import SpatialVariationalBayes
from pysvb.core.vb import VariationalBayes
from pysvb.errors import ConfigurationError
from pysvb.io.mat_interop import save_result
from pysvb.io.rundata import RunData
from pysvb.models.convergence import create_convergence_detector
from pysvb.models.forward import create_fwd_model
from pysvb.models.noise import create_noise_model
from pysvb.types import FileFormat, InferenceResult

logger = logging.getLogger(__name__)


def _spatial_vb(fwd_model, noise_model, convergence, rundata):
    return SpatialVariationalBayes(fwd_model, noise_model, convergence)


def _vb(fwd_model, noise_model, convergence, rundata):
    return VariationalBayes(
        fwd_model, noise_model, convergence,
        halt_bad_voxel=not rundata.get_bool("allow-bad-voxels"),
        print_free_energy=rundata.get_bool("print-free-energy"))


INFERENCE_METHODS = {
    "spatialvb": _spatial_vb,
    "vb": _vb,
}


def create_inference(rundata: RunData):
    """Build the inference technique selected by the ``method`` option.

    Raises:
        ConfigurationError: for an unknown method, model, noise or convergence name.
    """
    method = rundata.get_string_default("method", "spatialvb")
    if method not in INFERENCE_METHODS:
        raise ConfigurationError(
            f"Unknown inference method '{method}'; known: {', '.join(sorted(INFERENCE_METHODS))}")
    fwd_model = create_fwd_model(rundata.get_string_default("model", "trivial"), rundata)
    noise_model = create_noise_model(rundata.get_string_default("noise", "white"), rundata)
    convergence = create_convergence_detector(
        rundata.get_string_default("convergence", "maxits"), rundata)
    logger.info("Inference method: %s", method)
    return INFERENCE_METHODS[method](fwd_model, noise_model, convergence, rundata)


def run_inference(
    rundata: RunData,
    output_dir: str | Path | None = None,
    fmt: FileFormat = FileFormat.MAT_V5,
) -> InferenceResult:
    """Fit the configured model to every voxel.

    Args:
        rundata: Voxel data, coordinates and options.
        output_dir: If given, results are saved there.
        fmt: File format for saved results.

    Returns:
        The inference result.
    """
    logger.info("Fitting %d voxels with %d timepoints",
                rundata.num_voxels, rundata.num_times)
    inference = create_inference(rundata)
    result = inference.do_calculations(rundata)
    if output_dir is not None:
        save_result(output_dir, result, fmt=fmt)
    return result
