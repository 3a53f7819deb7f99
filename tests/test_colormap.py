import numpy as np

from terrainmesh.utils.colormap import COLORMAP_SIZE, COLORMAP_TABLE, color_for_depth


def test_table_shape_and_range():
    assert COLORMAP_TABLE.shape == (COLORMAP_SIZE, 3)
    assert COLORMAP_TABLE.min() >= 0.0
    assert COLORMAP_TABLE.max() <= 1.0


def test_depth_endpoints_map_to_table_ends():
    # Shallow water at the high end of the table, deepest at the low end
    np.testing.assert_allclose(color_for_depth(0.0, 0.0, 50.0), COLORMAP_TABLE[-1])
    np.testing.assert_allclose(color_for_depth(50.0, 0.0, 50.0), COLORMAP_TABLE[0])


def test_depth_outside_range_is_clamped():
    np.testing.assert_allclose(color_for_depth(-10.0, 0.0, 50.0), COLORMAP_TABLE[-1])
    np.testing.assert_allclose(color_for_depth(500.0, 0.0, 50.0), COLORMAP_TABLE[0])


def test_interpolates_between_entries():
    max_depth = float(COLORMAP_SIZE - 1)
    # Depth 0.5 lands halfway between the last two entries
    expected = (COLORMAP_TABLE[-1] + COLORMAP_TABLE[-2]) / 2
    np.testing.assert_allclose(color_for_depth(0.5, 0.0, max_depth), expected)


def test_vectorized_shape():
    colors = color_for_depth(np.linspace(0, 100, 7), 0.0, 100.0)
    assert colors.shape == (7, 3)
    assert np.all((colors >= 0.0) & (colors <= 1.0))


def test_zero_span_does_not_divide_by_zero():
    with np.errstate(all="raise"):
        color = color_for_depth(3.0, 5.0, 5.0)
    np.testing.assert_allclose(color, COLORMAP_TABLE[-1])
