"""Tests for .mat/.npz file I/O and result saving."""

import numpy as np
import pytest
import scipy.io as sio

from pysvb.io.mat_interop import (
    arrays_to_mvns,
    load_mat,
    load_mvns,
    save_mat,
    save_mvns,
    save_result,
)
from pysvb.math.mvn import MVNDist
from pysvb.types import FileFormat, InferenceResult, InferenceState, SpatialHyperparams


@pytest.mark.parametrize("fmt,suffix", [
    (FileFormat.MAT_V5, ".mat"),
    (FileFormat.MAT_V73, ".mat"),
    (FileFormat.NPZ, ".npz"),
])
def test_save_load(tmp_path, rng, fmt, suffix):
    arr = rng.standard_normal((4, 3))
    path = tmp_path / f"data{suffix}"
    save_mat(path, {"x": arr}, fmt=fmt)
    loaded = load_mat(path)
    np.testing.assert_allclose(loaded["x"], arr)


def test_auto_format_by_suffix(tmp_path):
    save_mat(tmp_path / "a.npz", {"x": np.ones((2, 2))})
    save_mat(tmp_path / "b.mat", {"x": np.ones((2, 2))})
    assert set(np.load(tmp_path / "a.npz").files) == {"x"}
    assert "x" in sio.loadmat(str(tmp_path / "b.mat"))
    with pytest.raises(ValueError, match="auto-detect"):
        save_mat(tmp_path / "c.txt", {"x": np.ones(1)})


def test_load_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_mat(tmp_path / "missing.mat")


@pytest.mark.parametrize("fmt", [FileFormat.MAT_V5, FileFormat.MAT_V73])
def test_mvn_file_round_trip(tmp_path, fmt):
    mvns = [
        MVNDist(np.array([1.0, 2.0]), covariance=np.array([[1.0, 0.2], [0.2, 2.0]])),
        MVNDist(np.array([-1.0, 0.5]), covariance=np.eye(2) * 3),
    ]
    path = tmp_path / "mvns.mat"
    save_mvns(path, mvns, fmt=fmt)
    loaded = load_mvns(path)
    assert len(loaded) == 2
    for before, after in zip(mvns, loaded):
        np.testing.assert_allclose(after.means, before.means)
        np.testing.assert_allclose(after.covariance, before.covariance)


def test_load_mvns_needs_keys(tmp_path):
    save_mat(tmp_path / "x.mat", {"means": np.ones((2, 1))})
    with pytest.raises(ValueError, match="covariance"):
        load_mvns(tmp_path / "x.mat")


def test_arrays_to_mvns_shape_check():
    with pytest.raises(ValueError):
        arrays_to_mvns(np.ones((3, 2)), np.ones((3, 3, 3)))


def _result(with_prior_free=True):
    posteriors = [
        MVNDist(np.array([2.0, 0.5]), covariance=np.diag([4.0, 0.01])),
        MVNDist(np.array([3.0, 0.7]), covariance=np.diag([9.0, 0.02])),
    ]
    return InferenceResult(
        posteriors=posteriors,
        param_names=["p"],
        posteriors_without_prior=posteriors if with_prior_free else None,
        free_energy=np.array([-10.0, -11.0]),
        hyperparams=SpatialHyperparams.initial(1, 0.5),
        iterations=7,
        state=InferenceState.CONVERGED,
        resels=[(0.5, float("nan"))],
    )


def test_save_result(tmp_path):
    out = save_result(tmp_path / "out", _result())
    assert (out / "finalMVN.mat").exists()
    assert (out / "finalMVNwithoutPrior.mat").exists()
    results = load_mat(out / "results.mat")
    np.testing.assert_allclose(results["mean_p"].ravel(), [2.0, 3.0])
    np.testing.assert_allclose(results["std_p"].ravel(), [2.0, 3.0])
    np.testing.assert_allclose(results["freeEnergy"].ravel(), [-10.0, -11.0])
    np.testing.assert_allclose(results["delta"].ravel(), [0.5])
    assert int(results["iterations"].ravel()[0]) == 7
    assert len(load_mvns(out / "finalMVN.mat")) == 2


def test_save_result_npz_without_prior_free(tmp_path):
    out = save_result(tmp_path, _result(with_prior_free=False), fmt=FileFormat.NPZ)
    assert (out / "finalMVN.npz").exists()
    assert not (out / "finalMVNwithoutPrior.npz").exists()
    assert "mean_p" in load_mat(out / "results.npz")
