"""First- and second-order voxel neighbour lists from integer coordinates."""

import logging

import numpy as np

from pysvb.errors import ConfigurationError, InternalConsistencyError

logger = logging.getLogger(__name__)


def is_coord_matrix_ordered(coords: np.ndarray) -> bool:
    """Check voxels are listed in increasing z, then y, then x order.

    Args:
        coords: (3, N) integer voxel coordinates, one column per voxel.

    Returns:
        True if every voxel comes strictly after its predecessor.
    """
    coords = np.asarray(coords)
    if coords.shape[1] < 2:
        return True
    diff = np.sign(np.diff(coords.astype(np.int64), axis=1))
    # +1 = +x, +10 = +y, +100 = +z, -99 = -z+x, etc.
    d = diff[0] + 10 * diff[1] + 100 * diff[2]
    bad = np.flatnonzero(d <= 0)
    if bad.size:
        logger.debug("Found mis-ordered voxels %d and %d: d=%d",
                     bad[0], bad[0] + 1, d[bad[0]])
        return False
    return True


def voxel_offsets(coords: np.ndarray) -> tuple[np.ndarray, tuple[int, int, int]]:
    """Linear offset of every voxel inside the coordinate bounding box.

    Returns:
        (offsets, (xsize, ysize, zsize)) where offset = z*xsize*ysize + y*xsize + x.
    """
    coords = np.asarray(coords, dtype=np.int64)
    xsize, ysize, zsize = (int(coords[i].max()) + 1 for i in range(3))
    offsets = coords[2] * xsize * ysize + coords[1] * xsize + coords[0]
    return offsets, (xsize, ysize, zsize)


def neighbour_array(coords: np.ndarray, spatial_dims: int) -> np.ndarray:
    """Axis-aligned neighbour indices as an (N, 2*spatial_dims) array.

    Columns are the +x, -x, +y, -y, +z, -z probes (only the first
    spatial_dims axes); -1 marks a missing neighbour.
    """
    offsets, (xsize, ysize, _) = voxel_offsets(coords)
    n_voxels = offsets.size
    xy = xsize * ysize
    deltas = [1, -1, xsize, -xsize, xy, -xy]
    # Period of the axis each probe moves along; z never wraps.
    periods = [xsize, xsize, xy, xy, None, None]

    n_probes = 2 * spatial_dims
    neighbourhood = np.full((n_voxels, n_probes), -1, dtype=np.int64)
    for n in range(n_probes):
        delta = deltas[n]
        targets = offsets + delta
        idx = np.searchsorted(offsets, targets)
        idx_clipped = np.minimum(idx, n_voxels - 1)
        found = (idx < n_voxels) & (offsets[idx_clipped] == targets)

        period = periods[n]
        if period is not None:
            step = abs(delta)
            if delta > 0:
                wraps = (offsets % period) >= period - step
            else:
                wraps = (offsets % period) < step
            found &= ~wraps

        neighbourhood[found, n] = idx[found]
    return neighbourhood


def calc_neighbours(
    coords: np.ndarray,
    spatial_dims: int,
) -> tuple[list[list[int]], list[list[int]]]:
    """Calculate nearest and second-nearest neighbours of every voxel.

    Args:
        coords: (3, N) non-negative integer voxel coordinates, sorted by
            increasing z, then y, then x.
        spatial_dims: Number of axes (0-3) along which voxels are adjacent.

    Returns:
        (neighbours, neighbours2): per-voxel lists of 0-based voxel indices.
        Second-order lists exclude the voxel itself but keep duplicates when
        two distinct paths lead to the same voxel.

    Raises:
        ConfigurationError: if coordinates are unsorted or negative.
        InternalConsistencyError: if adjacency is not symmetric.
    """
    coords = np.asarray(coords)
    if coords.ndim != 2 or coords.shape[0] != 3:
        raise InternalConsistencyError(
            f"Voxel coordinates must be (3, N), got {coords.shape}")
    n_voxels = coords.shape[1]
    if n_voxels == 0:
        raise InternalConsistencyError("No voxels to build neighbours for")
    if np.any(coords < 0):
        raise ConfigurationError("Voxel coordinates must be non-negative")
    if not is_coord_matrix_ordered(coords):
        raise ConfigurationError(
            "Coordinate matrix must be in correct order to use "
            "adjacency-based priors.")

    neighbourhood = neighbour_array(coords, spatial_dims)
    neighbours = [
        [int(nb) for nb in row if nb >= 0] for row in neighbourhood
    ]

    neighbours2: list[list[int]] = [[] for _ in range(n_voxels)]
    for vid in range(n_voxels):
        for n1id in neighbours[vid]:
            back_links = 0
            for n2id in neighbours[n1id]:
                if n2id != vid:
                    neighbours2[vid].append(n2id)
                else:
                    back_links += 1
            if back_links != 1:
                raise InternalConsistencyError(
                    f"Voxel {n1id} lists voxel {vid} as a neighbour "
                    f"{back_links} times; each of this voxel's neighbours "
                    "must have this voxel as a neighbour exactly once")

    logger.debug("Built neighbour lists for %d voxels (%d dims)",
                 n_voxels, spatial_dims)
    return neighbours, neighbours2
