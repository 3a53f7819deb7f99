"""Mesh grid sizing and model-space dimensions."""

import logging
import math
from typing import Tuple

logger = logging.getLogger(__name__)


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves going up (``2.5 -> 3``, ``-2.5 -> -2``)."""
    return int(math.floor(value + 0.5))


def plan_grid(
    elevation_width: int,
    elevation_height: int,
    valid_fraction: float,
    target_polygons: int,
) -> Tuple[int, int]:
    """Derive the vertex grid resolution that hits ``target_polygons`` in valid areas.

    Args:
        elevation_width: Raster width in samples.
        elevation_height: Raster height in samples.
        valid_fraction: Fraction of raster samples that are not NoData.
        target_polygons: Desired triangle count after NoData filtering.

    Returns:
        ``(grid_width, grid_height)``, each at least 2 and at most the raster
        dimension (when the raster has at least 2 samples along that axis).
    """
    if valid_fraction <= 0 or target_polygons <= 0:
        # Nothing survives filtering anyway; fall back to full raster resolution
        grid_width, grid_height = elevation_width, elevation_height
    else:
        aspect = elevation_width / elevation_height
        target_quads = target_polygons / (2 * valid_fraction)
        h = math.sqrt(target_quads / aspect)
        w = h * aspect
        grid_width = min(round_half_up(w) + 1, elevation_width)
        grid_height = min(round_half_up(h) + 1, elevation_height)

    grid_width = max(grid_width, 2)
    grid_height = max(grid_height, 2)
    logger.debug(
        "Planned %dx%d grid for %dx%d raster (valid %.1f%%, target %d polygons)",
        grid_width,
        grid_height,
        elevation_width,
        elevation_height,
        valid_fraction * 100,
        target_polygons,
    )
    return grid_width, grid_height


def model_dimensions(
    geo_bounds: Tuple[float, float, float, float], model_size: float
) -> Tuple[float, float]:
    """Model-space width and depth whose longer side equals ``model_size``."""
    min_x, min_y, max_x, max_y = geo_bounds
    geo_width = max_x - min_x
    geo_height = max_y - min_y
    aspect = geo_width / geo_height
    if aspect >= 1:
        return model_size, model_size / aspect
    return model_size * aspect, model_size
