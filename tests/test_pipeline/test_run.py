"""Tests for the run_inference pipeline."""

import numpy as np
import pytest

from pysvb.core.spatial_vb import SpatialVariationalBayes
from pysvb.core.vb import VariationalBayes
from pysvb.errors import ConfigurationError
from pysvb.io.mat_interop import load_mat, load_mvns
from pysvb.io.rundata import RunData
from pysvb.models.convergence import FreeEnergyChangeDetector
from pysvb.pipeline.run import create_inference, run_inference
from pysvb.types import FileFormat, InferenceState


def test_create_inference_defaults(constant_series, cube_coords):
    inference = create_inference(RunData(constant_series, cube_coords))
    assert isinstance(inference, SpatialVariationalBayes)
    assert inference.fwd_model.name == "trivial"


def test_create_inference_vb(constant_series):
    inference = create_inference(RunData(constant_series, options={
        "method": "vb", "convergence": "fchange", "allow-bad-voxels": ""}))
    assert isinstance(inference, VariationalBayes)
    assert isinstance(inference.convergence, FreeEnergyChangeDetector)
    assert not inference.halt_bad_voxel


@pytest.mark.parametrize("key,value", [
    ("method", "mcmc"), ("model", "nope"), ("noise", "pink"), ("convergence", "never"),
])
def test_unknown_names(constant_series, key, value):
    with pytest.raises(ConfigurationError):
        create_inference(RunData(constant_series, options={key: value}))


def test_run_spatial_vb_and_save(tmp_path, constant_series, cube_coords):
    rundata = RunData(constant_series, cube_coords, options={
        "param-spatial-priors": "S+", "max-iterations": "3"})
    result = run_inference(rundata, tmp_path / "out")
    assert result.iterations == 3
    assert result.state is InferenceState.MAX_ITERATIONS_REACHED
    results = load_mat(tmp_path / "out" / "results.mat")
    np.testing.assert_allclose(results["mean_p"].ravel(), result.means[:, 0])
    assert len(load_mvns(tmp_path / "out" / "finalMVN.mat")) == 27


def test_run_polynomial_vb(tmp_path, rng):
    t = np.arange(1, 21, dtype=float)
    data = (1.0 + 0.5 * t)[:, np.newaxis] + 0.01 * rng.standard_normal((20, 4))
    rundata = RunData(data, options={"method": "vb", "model": "poly", "degree": "1"})
    result = run_inference(rundata, tmp_path, fmt=FileFormat.NPZ)
    np.testing.assert_allclose(result.means, np.tile([1.0, 0.5], (4, 1)), atol=0.05)
    assert (tmp_path / "results.npz").exists()


def test_run_without_output(constant_series):
    result = run_inference(RunData(constant_series, options={
        "method": "vb", "max-iterations": "2"}))
    assert result.num_voxels == 27
