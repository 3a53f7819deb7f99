"""Elevation raster storage, NoData classification and bilinear sampling."""

import logging
from typing import Optional, Tuple

import numpy as np

from .grid import round_half_up

logger = logging.getLogger(__name__)

# Samples at or above this value are treated as holes injected downstream
NODATA_THRESHOLD = 1e5
# Written into downsampled cells whose interpolation neighbourhood touches NoData
NODATA_FILL = 1e38


class ElevationDataError(ValueError):
    """Raised when an elevation array is empty or does not match its dimensions."""

    pass


def nodata_mask(values, no_data_value: Optional[float] = None) -> np.ndarray:
    """Return a boolean mask of NoData samples in ``values``.

    A sample is NoData when it is non-finite, ``>= 1e5`` or equal to the
    explicit ``no_data_value``.
    """
    arr = np.asarray(values, dtype=np.float64)
    with np.errstate(invalid="ignore"):
        mask = ~np.isfinite(arr) | (arr >= NODATA_THRESHOLD)
        if no_data_value is not None:
            mask |= arr == no_data_value
    return mask


def as_elevation_array(
    elevation, width: Optional[int] = None, height: Optional[int] = None
) -> np.ndarray:
    """Coerce flat or 2D input into a ``(height, width)`` float64 array."""
    arr = np.asarray(elevation, dtype=np.float64)
    if arr.size == 0:
        raise ElevationDataError("Elevation data is empty.")
    if arr.ndim == 1:
        if width is None or height is None:
            raise ElevationDataError("Flat elevation data needs width and height.")
        if arr.size != width * height:
            raise ElevationDataError(
                f"Elevation data has {arr.size} samples, expected {width}x{height}."
            )
        arr = arr.reshape(height, width)
    elif arr.ndim == 2:
        if (width is not None and arr.shape[1] != width) or (
            height is not None and arr.shape[0] != height
        ):
            raise ElevationDataError(
                f"Elevation shape {arr.shape} does not match {width}x{height}."
            )
    else:
        raise ElevationDataError(f"Elevation data must be 2D, got {arr.ndim}D.")
    return arr


class ElevationSampler:
    """
    Owns an elevation grid (row 0 = north) and answers bilinear queries.

    Any query whose four surrounding samples include NoData yields NaN; NoData
    never blends into valid neighbours.
    """

    def __init__(
        self,
        elevation,
        width: Optional[int] = None,
        height: Optional[int] = None,
        no_data_value: Optional[float] = None,
    ):
        self.no_data_value = no_data_value
        self._set_data(as_elevation_array(elevation, width, height))

    def _set_data(self, data: np.ndarray) -> None:
        self.data = data
        self.height, self.width = data.shape
        self._nodata = nodata_mask(data, self.no_data_value)
        # NaN wherever the raw sample is NoData
        self._clean = np.where(self._nodata, np.nan, data)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.height, self.width

    @property
    def nodata(self) -> np.ndarray:
        return self._nodata

    def is_no_data(self, value):
        """Return ``True`` for NoData values; arrays give an element-wise mask."""
        mask = nodata_mask(value, self.no_data_value)
        return bool(mask) if mask.ndim == 0 else mask

    def valid_fraction(self) -> float:
        """Fraction of samples that are not NoData."""
        return float(np.count_nonzero(~self._nodata)) / self._nodata.size

    def elevation_at(self, x, y):
        """Elevation of integer raster cell ``(x, y)`` or NaN for NoData."""
        value = self._clean[y, x]
        return float(value) if np.ndim(value) == 0 else value

    def masked(self) -> np.ndarray:
        """Copy of the grid with NoData replaced by NaN."""
        return self._clean.copy()

    def _neighbourhood(self, u, v):
        u = np.clip(np.asarray(u, dtype=np.float64), 0.0, 1.0)
        v = np.clip(np.asarray(v, dtype=np.float64), 0.0, 1.0)
        x = u * (self.width - 1)
        y = v * (self.height - 1)
        x0 = np.floor(x).astype(np.intp)
        y0 = np.floor(y).astype(np.intp)
        x1 = np.minimum(x0 + 1, self.width - 1)
        y1 = np.minimum(y0 + 1, self.height - 1)
        return x0, x1, y0, y1, x - x0, y - y0

    def sample_bilinear(self, u, v):
        """Bilinear elevation at normalized ``(u, v)``; NaN if any neighbour is NoData.

        Args:
            u: Normalized column coordinate(s) in ``[0, 1]``.
            v: Normalized row coordinate(s) in ``[0, 1]``, 0 = north.

        Returns:
            A float for scalar input, otherwise an array shaped like ``u``.
        """
        x0, x1, y0, y1, fx, fy = self._neighbourhood(u, v)
        grid = self._clean
        v00 = grid[y0, x0]
        v10 = grid[y0, x1]
        v01 = grid[y1, x0]
        v11 = grid[y1, x1]
        top = v00 * (1 - fx) + v10 * fx
        bottom = v01 * (1 - fx) + v11 * fx
        result = top * (1 - fy) + bottom * fy
        # NaN * 0 stays NaN, so a NoData corner poisons the sample even at zero weight
        return float(result) if np.ndim(result) == 0 else result

    def has_nearby_no_data(self, u, v):
        """True if any of the four samples a bilinear lookup at ``(u, v)`` touches is NoData."""
        x0, x1, y0, y1, _, _ = self._neighbourhood(u, v)
        mask = self._nodata
        result = mask[y0, x0] | mask[y0, x1] | mask[y1, x0] | mask[y1, x1]
        return bool(result) if np.ndim(result) == 0 else result

    def resample(self, new_width: int, new_height: int) -> np.ndarray:
        """Bilinearly resample to ``new_width x new_height``, writing 1e38 for NoData."""
        u = np.linspace(0.0, 1.0, new_width) if new_width > 1 else np.zeros(1)
        v = np.linspace(0.0, 1.0, new_height) if new_height > 1 else np.zeros(1)
        uu, vv = np.meshgrid(u, v)
        values = self.sample_bilinear(uu, vv)
        return np.where(np.isfinite(values), values, NODATA_FILL)

    def downsample_to_limit(self, max_dim: int) -> bool:
        """Shrink the grid so neither side exceeds ``max_dim``, preserving aspect.

        Returns:
            ``True`` if the grid was replaced.
        """
        if max_dim < 2:
            raise ValueError("max_dim must be at least 2")
        src_width, src_height = self.width, self.height
        if src_width <= max_dim and src_height <= max_dim:
            return False

        aspect = src_width / src_height
        if src_width > src_height:
            new_width = min(src_width, max_dim)
            new_height = round_half_up(new_width / aspect)
            if new_height > max_dim:
                new_height = max_dim
                new_width = round_half_up(new_height * aspect)
        else:
            new_height = min(src_height, max_dim)
            new_width = round_half_up(new_height * aspect)
            if new_width > max_dim:
                new_width = max_dim
                new_height = round_half_up(new_width / aspect)
        new_width = max(new_width, 2)
        new_height = max(new_height, 2)

        logger.info(
            "Downsampling elevation data from %dx%d to %dx%d (limit %d)",
            src_width,
            src_height,
            new_width,
            new_height,
            max_dim,
        )
        self._set_data(self.resample(new_width, new_height))
        return True
