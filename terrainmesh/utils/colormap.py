"""Depth colormap lookup."""

import matplotlib
import numpy as np

# Minimal matplotlib usage: colormap tables only
matplotlib.use("Agg")

COLORMAP_NAME = "turbo"
COLORMAP_SIZE = 256
NEUTRAL_GRAY = (0.5, 0.5, 0.5)


def _build_table(name: str = COLORMAP_NAME, size: int = COLORMAP_SIZE) -> np.ndarray:
    cmap = matplotlib.colormaps[name].resampled(size)
    return np.asarray(cmap(np.arange(size))[:, :3], dtype=np.float64)


COLORMAP_TABLE = _build_table()


def color_for_depth(depth, min_depth: float, max_depth: float) -> np.ndarray:
    """Map depth onto the colormap, shallow to the high end and deep to the low end.

    Args:
        depth: Scalar or array of depths (reference minus elevation).
        min_depth: Depth mapped to the last table entry.
        max_depth: Depth mapped to the first table entry.

    Returns:
        RGB in ``[0, 1]``, shape ``(3,)`` for scalars or ``(..., 3)`` for arrays.
    """
    depth = np.asarray(depth, dtype=np.float64)
    span = max_depth - min_depth
    if span > 0:
        normalized = (depth - min_depth) / span
    else:
        normalized = np.where(depth > min_depth, 1.0, 0.0)
    inverted = 1.0 - np.clip(normalized, 0.0, 1.0)

    index = inverted * (COLORMAP_SIZE - 1)
    lower = np.floor(index).astype(np.intp)
    upper = np.ceil(index).astype(np.intp)
    frac = (index - lower)[..., np.newaxis]

    c_lower = COLORMAP_TABLE[lower]
    c_upper = COLORMAP_TABLE[upper]
    return c_lower + (c_upper - c_lower) * frac
