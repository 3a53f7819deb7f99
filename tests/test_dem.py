import math

import numpy as np
import pytest

from terrainmesh.utils.dem import (
    NODATA_FILL,
    ElevationDataError,
    ElevationSampler,
    as_elevation_array,
    nodata_mask,
)


def test_nodata_mask_rules():
    values = np.array([1.0, np.nan, np.inf, 1e5, 99999.0, -9999.0])
    mask = nodata_mask(values, no_data_value=-9999.0)
    assert mask.tolist() == [False, True, True, True, False, True]


def test_is_no_data_scalar_and_array():
    sampler = ElevationSampler(np.zeros((2, 2)), no_data_value=-1.0)
    assert sampler.is_no_data(-1.0)
    assert sampler.is_no_data(float("nan"))
    assert sampler.is_no_data(2e5)
    assert not sampler.is_no_data(0.0)
    assert sampler.is_no_data(np.array([0.0, -1.0])).tolist() == [False, True]


def test_flat_input_is_reshaped_row_major():
    sampler = ElevationSampler(np.arange(6.0), width=3, height=2)
    assert sampler.shape == (2, 3)
    assert sampler.elevation_at(2, 0) == 2.0
    assert sampler.elevation_at(0, 1) == 3.0


@pytest.mark.parametrize(
    "elevation, width, height",
    [
        (np.array([]), 0, 0),
        (np.arange(5.0), 2, 3),
        (np.arange(5.0), None, None),
        (np.zeros((2, 2, 2)), None, None),
        (np.zeros((2, 3)), 2, 2),
    ],
)
def test_malformed_elevation_raises(elevation, width, height):
    with pytest.raises(ElevationDataError):
        as_elevation_array(elevation, width, height)


def test_sample_bilinear_corners_and_center():
    sampler = ElevationSampler(np.array([[0.0, 10.0], [20.0, 30.0]]))
    assert sampler.sample_bilinear(0, 0) == 0.0
    assert sampler.sample_bilinear(1, 0) == 10.0
    assert sampler.sample_bilinear(0, 1) == 20.0
    assert sampler.sample_bilinear(1, 1) == 30.0
    assert sampler.sample_bilinear(0.5, 0.5) == pytest.approx(15.0)


def test_sample_bilinear_within_grid_range():
    rng = np.random.default_rng(42)
    grid = rng.uniform(-50, 300, size=(17, 23))
    sampler = ElevationSampler(grid)
    u = rng.uniform(0, 1, 1000)
    v = rng.uniform(0, 1, 1000)
    values = sampler.sample_bilinear(u, v)
    assert values.shape == (1000,)
    assert np.all(values >= grid.min() - 1e-9)
    assert np.all(values <= grid.max() + 1e-9)


def test_sample_bilinear_nan_when_any_neighbour_is_nodata():
    rng = np.random.default_rng(7)
    for _ in range(50):
        grid = rng.uniform(0, 100, size=(8, 8))
        y, x = rng.integers(0, 8, size=2)
        grid[y, x] = np.nan
        sampler = ElevationSampler(grid)
        # Any query whose cell touches (x, y) must come back NaN
        for cx in (max(x - 1, 0), x):
            for cy in (max(y - 1, 0), y):
                if cx == 7 or cy == 7:
                    continue
                fx, fy = rng.uniform(0.01, 0.99, size=2)
                u = (cx + fx) / 7
                v = (cy + fy) / 7
                assert math.isnan(sampler.sample_bilinear(u, v))
                assert sampler.has_nearby_no_data(u, v)


def test_nodata_does_not_blend_at_zero_weight():
    sampler = ElevationSampler(np.array([[5.0, 1e6], [5.0, 5.0]]))
    # Exactly on a valid corner, but the cell still touches the NoData sample
    assert math.isnan(sampler.sample_bilinear(0.0, 0.0))
    assert sampler.has_nearby_no_data(0.0, 0.0)


def test_explicit_nodata_value():
    grid = np.array([[-32768.0, 1.0], [1.0, 1.0]])
    sampler = ElevationSampler(grid, no_data_value=-32768.0)
    assert sampler.valid_fraction() == pytest.approx(0.75)
    assert math.isnan(sampler.elevation_at(0, 0))


def test_uv_outside_unit_square_is_clamped():
    sampler = ElevationSampler(np.array([[0.0, 10.0], [20.0, 30.0]]))
    assert sampler.sample_bilinear(-0.5, -2.0) == 0.0
    assert sampler.sample_bilinear(1.5, 3.0) == 30.0


def test_downsample_to_limit_preserves_aspect():
    grid = np.tile(np.linspace(0, 100, 40), (20, 1))
    sampler = ElevationSampler(grid)
    assert sampler.downsample_to_limit(10)
    assert sampler.shape == (5, 10)
    assert sampler.data[0, 0] == pytest.approx(0.0)
    assert sampler.data[0, -1] == pytest.approx(100.0)


def test_downsample_to_limit_noop_when_small():
    sampler = ElevationSampler(np.zeros((4, 4)))
    assert not sampler.downsample_to_limit(4)
    assert sampler.shape == (4, 4)


def test_downsample_propagates_nodata_as_fill():
    grid = np.full((20, 20), 10.0)
    grid[9:11, 9:11] = np.nan
    sampler = ElevationSampler(grid)
    sampler.downsample_to_limit(7)
    assert np.any(sampler.data == NODATA_FILL)
    assert np.all(sampler.data[sampler.nodata] == NODATA_FILL)
    assert np.allclose(sampler.data[~sampler.nodata], 10.0)


def test_downsample_rejects_tiny_limit():
    sampler = ElevationSampler(np.zeros((4, 4)))
    with pytest.raises(ValueError):
        sampler.downsample_to_limit(1)
