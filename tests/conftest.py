"""Shared fixtures for pysvb tests."""

import numpy as np
import pytest

from pysvb.logs import reset_warnings


@pytest.fixture(autouse=True)
def _fresh_warnings():
    """Every test sees once-only warnings again."""
    reset_warnings()
    yield
    reset_warnings()


@pytest.fixture
def rng():
    """Reproducible random number generator."""
    return np.random.default_rng(42)


def grid_coords(nx, ny=1, nz=1):
    """(3, N) coordinates of a full box, ordered by z, then y, then x."""
    zz, yy, xx = np.meshgrid(np.arange(nz), np.arange(ny), np.arange(nx), indexing="ij")
    return np.vstack([xx.ravel(), yy.ravel(), zz.ravel()]).astype(np.int64)


@pytest.fixture
def make_grid():
    """Factory for ordered box coordinates."""
    return grid_coords


@pytest.fixture
def cube_coords():
    """3 x 3 x 3 voxel cube (N=27)."""
    return grid_coords(3, 3, 3)


@pytest.fixture
def chain_coords():
    """Three voxels in a row along x."""
    return grid_coords(3)


@pytest.fixture
def constant_series(rng):
    """Noisy constant signal (T=20) of value 5 at each of 27 voxels."""
    return 5.0 + 0.1 * rng.standard_normal((20, 27))


@pytest.fixture
def varying_series(rng):
    """Noisy signal (T=20) whose level differs randomly between 27 voxels."""
    levels = rng.standard_normal(27)
    return levels[np.newaxis, :] + 0.1 * rng.standard_normal((20, 27)), levels
