"""Load and save .mat (v5 and v7.3) and .npz files, and MVN result sets."""

import logging
from pathlib import Path

import h5py
import numpy as np
import scipy.io as sio

from pysvb.math.mvn import MVNDist
from pysvb.types import FileFormat, InferenceResult

logger = logging.getLogger(__name__)


def _is_hdf5(path: Path) -> bool:
    """Check if a file is HDF5 format by reading its magic bytes."""
    with open(path, "rb") as f:
        return f.read(8) == b"\x89HDF\r\n\x1a\n"


def load_mat(path: str | Path) -> dict[str, np.ndarray]:
    """Load data from a .mat or .npz file, auto-detecting format."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    if path.suffix == ".npz":
        with np.load(str(path)) as npz:
            return dict(npz)

    if _is_hdf5(path):
        result = {}
        with h5py.File(str(path), "r") as f:
            for key in f.keys():
                if key.startswith("#"):
                    continue
                result[key] = np.array(f[key])
        return result

    raw = sio.loadmat(str(path))
    return {k: v for k, v in raw.items() if not k.startswith("_")}


def save_mat(
    path: str | Path,
    data: dict[str, np.ndarray],
    fmt: FileFormat = FileFormat.AUTO,
) -> None:
    """Save data to a .mat or .npz file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if fmt == FileFormat.AUTO:
        if path.suffix == ".npz":
            fmt = FileFormat.NPZ
        elif path.suffix == ".mat":
            fmt = FileFormat.MAT_V5
        else:
            raise ValueError(f"Cannot auto-detect format for extension: {path.suffix}")

    if fmt == FileFormat.MAT_V5:
        sio.savemat(str(path), data)
    elif fmt == FileFormat.MAT_V73:
        with h5py.File(str(path), "w") as f:
            for key, val in data.items():
                f.create_dataset(key, data=np.asarray(val))
    elif fmt == FileFormat.NPZ:
        np.savez(str(path), **data)
    else:
        raise ValueError(f"Unsupported format: {fmt}")


def mvns_to_arrays(mvns: list[MVNDist]) -> dict[str, np.ndarray]:
    """Stack per-voxel MVNs into ``means`` (N, P) and ``covariance`` (N, P, P)."""
    means = np.array([mvn.means for mvn in mvns])
    covariance = np.array([mvn.covariance for mvn in mvns])
    return {"means": means, "covariance": covariance}


def arrays_to_mvns(means: np.ndarray, covariance: np.ndarray) -> list[MVNDist]:
    means = np.asarray(means, dtype=np.float64)
    covariance = np.asarray(covariance, dtype=np.float64)
    if means.ndim == 1:
        means = means[:, np.newaxis]
    if covariance.ndim == 2:
        covariance = covariance[:, :, np.newaxis]
    if covariance.shape != (means.shape[0], means.shape[1], means.shape[1]):
        raise ValueError(
            f"Covariance shape {covariance.shape} does not match means {means.shape}")
    return [MVNDist(m, covariance=c) for m, c in zip(means, covariance)]


def save_mvns(
    path: str | Path,
    mvns: list[MVNDist],
    fmt: FileFormat = FileFormat.AUTO,
) -> None:
    """Save one MVN per voxel."""
    save_mat(path, mvns_to_arrays(mvns), fmt=fmt)


def load_mvns(path: str | Path) -> list[MVNDist]:
    """Load per-voxel MVNs written by save_mvns.

    Raises:
        FileNotFoundError: if the file does not exist.
        ValueError: if it does not hold ``means`` and ``covariance``.
    """
    raw = load_mat(path)
    if "means" not in raw or "covariance" not in raw:
        raise ValueError(f"{path} does not contain 'means' and 'covariance'")
    return arrays_to_mvns(raw["means"], raw["covariance"])


def save_result(
    output_dir: str | Path,
    result: InferenceResult,
    fmt: FileFormat = FileFormat.MAT_V5,
) -> Path:
    """Write an inference result to ``output_dir``.

    Files:
        finalMVN.mat: posterior MVNs (model then noise parameters).
        finalMVNwithoutPrior.mat: likelihood-only posteriors, if present.
        results.mat: ``mean_<name>``/``std_<name>`` per parameter,
            ``freeEnergy`` if calculated, and the final hyperparameters.

    Returns:
        The output directory.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    suffix = ".npz" if fmt == FileFormat.NPZ else ".mat"

    save_mvns(output_dir / f"finalMVN{suffix}", result.posteriors, fmt=fmt)
    if result.posteriors_without_prior is not None:
        save_mvns(output_dir / f"finalMVNwithoutPrior{suffix}",
                  result.posteriors_without_prior, fmt=fmt)

    summary: dict[str, np.ndarray] = {}
    means, variances = result.means, result.variances
    for i, name in enumerate(result.param_names):
        summary[f"mean_{name}"] = means[:, i]
        summary[f"std_{name}"] = np.sqrt(variances[:, i])
    if result.free_energy is not None:
        summary["freeEnergy"] = np.asarray(result.free_energy)
    if result.hyperparams is not None:
        summary["delta"] = result.hyperparams.delta
        summary["rho"] = result.hyperparams.rho
        summary["akmean"] = result.hyperparams.akmean
    if result.resels:
        summary["resels"] = np.array(result.resels, dtype=np.float64)
    summary["iterations"] = np.array([result.iterations])
    save_mat(output_dir / f"results{suffix}", summary, fmt=fmt)

    logger.info("Saved results for %d voxels to %s", result.num_voxels, output_dir)
    return output_dir
