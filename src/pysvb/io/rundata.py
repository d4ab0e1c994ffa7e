"""Run data: voxel data, coordinates, auxiliary images and options."""

import logging
from pathlib import Path

import numpy as np

from pysvb.errors import ConfigurationError
from pysvb.io.mat_interop import load_mat

logger = logging.getLogger(__name__)

_TRUE_STRINGS = {"", "1", "true", "yes", "on"}
_FALSE_STRINGS = {"0", "false", "no", "off"}


class RunData:
    """Voxel data and string-keyed options for one inference run.

    Args:
        data: (T, N) time series, one column per voxel.
        coords: (3, N) integer voxel coordinates.
        options: Option values; a key present with value "" counts as a
            set boolean flag.
        voxel_images: Named (N,) per-voxel arrays, e.g. image priors.
    """

    def __init__(
        self,
        data: np.ndarray,
        coords: np.ndarray | None = None,
        options: dict[str, str] | None = None,
        voxel_images: dict[str, np.ndarray] | None = None,
    ):
        data = np.asarray(data, dtype=np.float64)
        if data.ndim == 1:
            data = data[:, np.newaxis]
        if data.ndim != 2:
            raise ConfigurationError(f"Voxel data must be (T, N), got {data.shape}")
        self.data = data
        if coords is None:
            coords = np.zeros((3, 0), dtype=np.int64)
        self.coords = np.asarray(coords)
        self.options: dict[str, str] = {}
        for key, value in (options or {}).items():
            self.set(key, value)
        self._images = {
            name: np.asarray(img, dtype=np.float64).ravel()
            for name, img in (voxel_images or {}).items()
        }

    @classmethod
    def from_file(cls, path: str | Path, options: dict[str, str] | None = None) -> "RunData":
        """Load ``data`` (T, N) and ``coords`` (3, N) plus any extra arrays.

        Every other array in the file becomes a named voxel image.
        """
        raw = load_mat(path)
        if "data" not in raw:
            raise ConfigurationError(f"{path} has no 'data' array")
        data = raw.pop("data")
        coords = raw.pop("coords", None)
        if coords is not None:
            coords = np.rint(coords).astype(np.int64)
        return cls(data, coords, options=options, voxel_images=raw)

    @property
    def num_voxels(self) -> int:
        return self.data.shape[1]

    @property
    def num_times(self) -> int:
        return self.data.shape[0]

    def set(self, key: str, value) -> None:
        if isinstance(value, bool):
            if value:
                self.options[key] = ""
            else:
                self.options.pop(key, None)
            return
        self.options[key] = str(value)

    def have_key(self, key: str) -> bool:
        return key in self.options

    def get_string(self, key: str) -> str:
        try:
            return self.options[key]
        except KeyError:
            raise ConfigurationError(f"Missing mandatory option: {key}") from None

    def get_string_default(self, key: str, default: str) -> str:
        return self.options.get(key, default)

    def get_int(self, key: str, default: int | None = None) -> int:
        if key not in self.options:
            if default is None:
                raise ConfigurationError(f"Missing mandatory option: {key}")
            return default
        try:
            return int(self.options[key])
        except ValueError:
            raise ConfigurationError(
                f"Option {key} must be an integer, got '{self.options[key]}'") from None

    def get_double(self, key: str, default: float | None = None) -> float:
        if key not in self.options:
            if default is None:
                raise ConfigurationError(f"Missing mandatory option: {key}")
            return default
        try:
            return float(self.options[key])
        except ValueError:
            raise ConfigurationError(
                f"Option {key} must be a number, got '{self.options[key]}'") from None

    def get_bool(self, key: str) -> bool:
        if key not in self.options:
            return False
        value = self.options[key].strip().lower()
        if value in _TRUE_STRINGS:
            return True
        if value in _FALSE_STRINGS:
            return False
        raise ConfigurationError(f"Option {key} is a flag, got value '{value}'")

    def get_voxel_data(self, name: str) -> np.ndarray:
        """Named per-voxel array (N,).

        Raises:
            ConfigurationError: if no such image exists or it has the wrong size.
        """
        if name not in self._images:
            raise ConfigurationError(f"No voxel data named '{name}'")
        img = self._images[name]
        if img.size != self.num_voxels:
            raise ConfigurationError(
                f"Voxel data '{name}' has {img.size} values, expected {self.num_voxels}")
        return img

    def set_voxel_data(self, name: str, values: np.ndarray) -> None:
        self._images[name] = np.asarray(values, dtype=np.float64).ravel()
