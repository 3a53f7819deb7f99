import numpy as np
import pytest

from terrainmesh.services.elevation_service import analyze_elevation, depth_range_for
from terrainmesh.utils.dem import ElevationSampler


def test_statistics_of_valid_samples(grids):
    info = analyze_elevation(grids.sloped(11, 5, 12.0, 112.0))
    assert info.min_elevation == 12.0
    assert info.max_elevation == 112.0
    assert info.reference_elevation == 112.0
    assert info.depth_range == (0.0, 100.0)
    assert info.valid_fraction == 1.0
    assert info.nodata_regions == 0


def test_flat_input_with_dimensions():
    info = analyze_elevation(np.arange(12.0), width=4, height=3)
    assert info.max_elevation == 11.0
    assert info.depth_range == (0.0, 11.0)


def test_nodata_is_excluded(grids):
    grid = grids.hole(grids.sloped(10, 10, 0.0, 90.0), no_data_value=-9999.0)
    info = analyze_elevation(grid, no_data_value=-9999.0)
    assert info.min_elevation == 0.0
    assert info.max_elevation == 90.0
    assert info.valid_fraction == pytest.approx(84 / 100)
    assert info.nodata_regions == 1


def test_counts_separate_nodata_regions():
    grid = np.ones((8, 8))
    grid[0, 0] = np.nan
    grid[4:6, 4:6] = np.nan
    grid[7, 0] = 1e6
    info = analyze_elevation(grid)
    assert info.nodata_regions == 3


def test_accepts_sampler(grids):
    sampler = ElevationSampler(grids.flat(3, 3, 7.0))
    info = analyze_elevation(sampler)
    assert info.min_elevation == info.max_elevation == 7.0
    # Flat terrain still gets a usable color range
    assert info.depth_range == (0.0, 1.0)


def test_all_nodata_is_not_an_error(grids, caplog):
    with caplog.at_level("WARNING"):
        info = analyze_elevation(grids.all_nodata(4, 4))
    assert info.valid_fraction == 0.0
    assert info.depth_range == (0.0, 1.0)
    assert info.reference_elevation == 0.0
    assert info.nodata_regions == 1
    assert "no valid samples" in caplog.text


@pytest.mark.parametrize(
    "reference, minimum, expected",
    [
        (100.0, 0.0, (0.0, 100.0)),
        (10.4, 10.0, (0.0, 1.0)),
        (12.5, 10.0, (0.0, 3.0)),
        (5.0, 10.0, (0.0, 1.0)),
    ],
)
def test_depth_range_for(reference, minimum, expected):
    assert depth_range_for(reference, minimum) == expected


def test_to_dict_is_json_friendly(grids):
    data = analyze_elevation(grids.flat(2, 2, 1.0)).to_dict()
    assert data["depth_range"] == [0.0, 1.0]
    assert set(data) == {
        "min_elevation",
        "max_elevation",
        "reference_elevation",
        "depth_range",
        "valid_fraction",
        "nodata_regions",
    }
