from types import SimpleNamespace

import numpy as np
import pytest

from terrainmesh.models import TerrainConfig
from terrainmesh.services.terrain_model import TerrainModel


def flat_grid(w, h, elev):
    return np.full((h, w), float(elev))


def sloped_grid(w, h, min_elev, max_elev):
    """Linear gradient from min_elev (west) to max_elev (east)."""
    row = min_elev + (max_elev - min_elev) * (np.arange(w) / (w - 1))
    return np.tile(row, (h, 1))


def _radius(w, h):
    cx = (w - 1) / 2
    cy = (h - 1) / 2
    yy, xx = np.mgrid[0:h, 0:w]
    return np.sqrt((xx - cx) ** 2 + (yy - cy) ** 2), np.sqrt(cx * cx + cy * cy)


def gaussian_hill(w, h, peak, base, sigma):
    r, _ = _radius(w, h)
    return base + (peak - base) * np.exp(-(r**2) / (2 * sigma * sigma))


def cone(w, h, peak, base):
    r, max_r = _radius(w, h)
    return peak - (peak - base) * np.minimum(1.0, r / max_r)


def basin(w, h, rim, bottom):
    r, max_r = _radius(w, h)
    return bottom + (rim - bottom) * np.minimum(1.0, r / max_r)


def step_grid(w, h, low, high):
    grid = np.full((h, w), float(low))
    grid[:, w // 2 :] = high
    return grid


def grid_with_nodata_hole(base, no_data_value=np.nan):
    """Copy of ``base`` with a rectangular hole over its central 40%."""
    grid = np.array(base, dtype=np.float64)
    h, w = grid.shape
    grid[int(h * 0.3) : int(h * 0.7), int(w * 0.3) : int(w * 0.7)] = no_data_value
    return grid


def grid_with_nodata_border(w, h, elev, border):
    grid = np.full((h, w), np.nan)
    grid[border : h - border, border : w - border] = elev
    return grid


def all_nodata_grid(w, h):
    return np.full((h, w), np.nan)


@pytest.fixture
def grids():
    return SimpleNamespace(
        flat=flat_grid,
        sloped=sloped_grid,
        hill=gaussian_hill,
        cone=cone,
        basin=basin,
        step=step_grid,
        hole=grid_with_nodata_hole,
        border=grid_with_nodata_border,
        all_nodata=all_nodata_grid,
    )


@pytest.fixture
def build_terrain():
    """Return a factory that loads a grid into a CPU-displaced TerrainModel."""

    def _build(
        grid,
        geo_bounds=None,
        reference_elevation=None,
        no_data_value=None,
        on_progress=None,
        **config,
    ):
        grid = np.asarray(grid, dtype=np.float64)
        h, w = grid.shape
        config.setdefault("target_polygons", 100_000)
        config.setdefault("gpu_displacement", False)
        config.setdefault("contour_simplify_tolerance", 0.0)
        model = TerrainModel(TerrainConfig(**config))
        model.load(
            grid,
            w,
            h,
            geo_bounds or (0.0, 0.0, float(w), float(h)),
            no_data_value=no_data_value,
            on_progress=on_progress,
        )
        if reference_elevation is not None:
            model.set_reference_elevation(reference_elevation)
        return model

    return _build
