"""Lighting normal raster from elevation finite differences."""

import logging

import numpy as np

from .chunked import iter_chunks, run_chunked
from .dem import ElevationSampler

logger = logging.getLogger(__name__)

# Encoded value for NoData cells: flat up normal, fully transparent
NODATA_NORMAL = (128, 128, 255, 0)


def encode_normals(normals: np.ndarray) -> np.ndarray:
    """Map unit normals in ``[-1, 1]`` to uint8 RGB."""
    return np.floor((normals * 0.5 + 0.5) * 255).astype(np.uint8)


def _neighbour(grid, nodata, center, rows, cols):
    values = grid[np.ix_(rows, cols)]
    return np.where(nodata[np.ix_(rows, cols)], center, values)


def iter_normal_map(
    sampler: ElevationSampler,
    real_world_width: float,
    real_world_height: float,
    strength: float = 5.0,
    row_chunk: int = 50,
):
    """
    Compute an RGBA normal raster row block by row block.

    Neighbours are clamped at the raster edge and a NoData neighbour is
    replaced by the center value, so slopes never jump across data voids.
    Yields the completed fraction after each block of ``row_chunk`` rows and
    returns a ``(height, width, 4)`` uint8 array.
    """
    height, width = sampler.shape
    grid = sampler.data
    nodata = sampler.nodata
    cell_x = real_world_width / width
    cell_y = real_world_height / height

    cols = np.arange(width)
    left = np.maximum(cols - 1, 0)
    right = np.minimum(cols + 1, width - 1)

    normal_map = np.empty((height, width, 4), dtype=np.uint8)
    for start, end in iter_chunks(height, row_chunk):
        rows = np.arange(start, end)
        top = np.maximum(rows - 1, 0)
        bottom = np.minimum(rows + 1, height - 1)

        center = grid[start:end]
        e_left = _neighbour(grid, nodata, center, rows, left)
        e_right = _neighbour(grid, nodata, center, rows, right)
        e_top = _neighbour(grid, nodata, center, top, cols)
        e_bottom = _neighbour(grid, nodata, center, bottom, cols)

        with np.errstate(invalid="ignore", over="ignore"):
            dzdx = (e_right - e_left) / (2 * cell_x) * strength
            dzdy = (e_bottom - e_top) / (2 * cell_y) * strength
            vectors = np.stack([-dzdx, -dzdy, np.ones_like(dzdx)], axis=-1)
            vectors /= np.linalg.norm(vectors, axis=-1, keepdims=True)

        block = normal_map[start:end]
        block[..., :3] = encode_normals(np.nan_to_num(vectors, nan=0.0))
        block[..., 3] = 255
        block[nodata[start:end]] = NODATA_NORMAL
        yield end / height

    logger.debug(
        "Normal map generated: %dx%d, strength %.2f, cell %.3fx%.3f",
        width,
        height,
        strength,
        cell_x,
        cell_y,
    )
    return normal_map


def generate_normal_map(
    sampler: ElevationSampler,
    real_world_width: float,
    real_world_height: float,
    strength: float = 5.0,
    row_chunk: int = 50,
    on_progress=None,
) -> np.ndarray:
    return run_chunked(
        iter_normal_map(
            sampler, real_world_width, real_world_height, strength, row_chunk
        ),
        on_progress,
    )
