"""Terrain grid geometry, vertex coloring and triangle filtering."""

import logging
from typing import Optional, Tuple

import numpy as np

from .chunked import iter_chunks, run_chunked
from .colormap import NEUTRAL_GRAY, color_for_depth
from .dem import ElevationSampler
from ..models import MeshGeometry

logger = logging.getLogger(__name__)


def build_geometry(
    grid_width: int, grid_height: int, model_width: float, model_height: float
) -> MeshGeometry:
    """Build a ``grid_width x grid_height`` vertex grid centered on the origin.

    The grid lies in the XZ plane with Y up; row 0 sits at ``z = -model_height / 2``
    (north). Every quad ``(a, b, c, d)`` is split into triangles ``(a, b, d)`` and
    ``(b, c, d)``, both facing +Y.

    Args:
        grid_width: Number of vertex columns (>= 2).
        grid_height: Number of vertex rows (>= 2).
        model_width: Extent along X.
        model_height: Extent along Z.

    Returns:
        The geometry with its original (unfiltered) index buffer.
    """
    if grid_width < 2 or grid_height < 2:
        raise ValueError("Grid needs at least 2x2 vertices")

    fx = np.arange(grid_width) / (grid_width - 1)
    fz = np.arange(grid_height) / (grid_height - 1)
    xx, zz = np.meshgrid(
        fx * model_width - model_width / 2, fz * model_height - model_height / 2
    )
    positions = np.column_stack(
        [xx.ravel(), np.zeros(xx.size), zz.ravel()]
    ).astype(np.float32)

    uu, vv = np.meshgrid(fx, 1.0 - fz)
    uvs = np.column_stack([uu.ravel(), vv.ravel()]).astype(np.float32)

    ix, iy = np.meshgrid(np.arange(grid_width - 1), np.arange(grid_height - 1))
    a = (ix + grid_width * iy).ravel()
    b = a + grid_width
    c = b + 1
    d = a + 1
    indices = np.column_stack([a, b, d, b, c, d]).ravel().astype(np.uint32)

    logger.debug(
        "Built %dx%d grid geometry: %d vertices, %d triangles",
        grid_width,
        grid_height,
        len(positions),
        len(indices) // 3,
    )
    return MeshGeometry(
        positions=positions,
        uvs=uvs,
        original_indices=indices,
        grid_width=grid_width,
        grid_height=grid_height,
        model_width=model_width,
        model_height=model_height,
    )


def sample_coordinates(
    geometry: MeshGeometry, start: int = 0, end: Optional[int] = None
) -> Tuple[np.ndarray, np.ndarray]:
    """Raster-space ``(u, v)`` of vertices ``start:end``, i.e. the UV with V flipped."""
    end = geometry.vertex_count if end is None else end
    index = np.arange(start, end)
    u = (index % geometry.grid_width) / (geometry.grid_width - 1)
    v = (index // geometry.grid_width) / (geometry.grid_height - 1)
    return u, v


def colors_for_elevations(
    elevation: np.ndarray,
    reference_elevation: float,
    depth_range: Tuple[float, float],
) -> np.ndarray:
    """Colormap colors below the reference, neutral gray for NoData and above."""
    colors = np.empty((len(elevation), 3), dtype=np.float64)
    colors[:] = NEUTRAL_GRAY
    with np.errstate(invalid="ignore"):
        below = np.isfinite(elevation) & (elevation < reference_elevation)
    if below.any():
        min_depth, max_depth = depth_range
        colors[below] = color_for_depth(
            reference_elevation - elevation[below], min_depth, max_depth
        )
    return colors


def iter_vertex_colors(
    geometry: MeshGeometry,
    sampler: ElevationSampler,
    reference_elevation: float,
    depth_range: Tuple[float, float],
    chunk_size: int = 10000,
):
    """Chunked vertex coloring; yields progress and returns an ``(N, 3)`` float32 buffer."""
    total = geometry.vertex_count
    colors = np.empty((total, 3), dtype=np.float32)
    below_count = 0
    for start, end in iter_chunks(total, chunk_size):
        elevation = sampler.sample_bilinear(*sample_coordinates(geometry, start, end))
        colors[start:end] = colors_for_elevations(
            elevation, reference_elevation, depth_range
        )
        with np.errstate(invalid="ignore"):
            below_count += int(np.count_nonzero(elevation < reference_elevation))
        yield end / total

    logger.debug(
        "Vertex colors computed: %d below reference, %d gray",
        below_count,
        total - below_count,
    )
    return colors


def compute_vertex_colors(
    geometry: MeshGeometry,
    sampler: ElevationSampler,
    reference_elevation: float,
    depth_range: Tuple[float, float],
) -> np.ndarray:
    return run_chunked(
        iter_vertex_colors(geometry, sampler, reference_elevation, depth_range)
    )


def classify_vertices(
    geometry: MeshGeometry,
    sampler: ElevationSampler,
    reference_elevation: float,
    start: int = 0,
    end: Optional[int] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """Return ``(is_nodata, is_below_reference)`` masks for vertices ``start:end``.

    A vertex is NoData when any sample a GPU bilinear fetch would touch is
    NoData or its interpolated elevation is not finite.
    """
    u, v = sample_coordinates(geometry, start, end)
    elevation = sampler.sample_bilinear(u, v)
    is_nodata = sampler.has_nearby_no_data(u, v) | ~np.isfinite(elevation)
    with np.errstate(invalid="ignore"):
        is_below = ~is_nodata & (elevation < reference_elevation)
    return is_nodata, is_below


def iter_filter_triangles(
    geometry: MeshGeometry,
    sampler: ElevationSampler,
    reference_elevation: float,
    chunk_size: int = 5000,
):
    """Chunked triangle filter; yields progress and returns the filtered index buffer.

    Triangles touching a NoData vertex are dropped, as are triangles with no
    vertex below the reference elevation. Kept triangles keep their original
    order. Vertices are classified in chunks first, then triangles filtered;
    the yielded fraction counts both.
    """
    vertex_count = geometry.vertex_count
    triangles = geometry.original_indices.reshape(-1, 3)
    total = len(triangles)
    steps = vertex_count + total

    is_nodata = np.empty(vertex_count, dtype=bool)
    is_below = np.empty(vertex_count, dtype=bool)
    for start, end in iter_chunks(vertex_count, chunk_size):
        is_nodata[start:end], is_below[start:end] = classify_vertices(
            geometry, sampler, reference_elevation, start, end
        )
        yield end / steps

    kept = []
    for start, end in iter_chunks(total, chunk_size):
        tri = triangles[start:end]
        keep = ~is_nodata[tri].any(axis=1) & is_below[tri].any(axis=1)
        kept.append(tri[keep])
        yield (vertex_count + end) / steps

    if kept:
        indices = np.concatenate(kept).ravel().astype(np.uint32)
    else:
        indices = np.zeros(0, dtype=np.uint32)
    kept_count = len(indices) // 3
    filtered_count = total - kept_count
    logger.debug(
        "Triangle filtering: %d kept, %d filtered (%.1f%% reduction)",
        kept_count,
        filtered_count,
        100.0 * filtered_count / total if total else 0.0,
    )
    return indices


def filter_triangles(
    geometry: MeshGeometry, sampler: ElevationSampler, reference_elevation: float
) -> np.ndarray:
    return run_chunked(iter_filter_triangles(geometry, sampler, reference_elevation))


def displace_vertices(
    geometry: MeshGeometry,
    sampler: ElevationSampler,
    reference_elevation: float,
    height_scale: float,
) -> np.ndarray:
    """CPU displacement: write ``(elevation - reference) * height_scale`` into Y.

    NoData vertices are placed at Y = 0. The position buffer is updated in place
    and returned.
    """
    u, v = sample_coordinates(geometry)
    elevation = sampler.sample_bilinear(u, v)
    valid = np.isfinite(elevation)
    heights = np.zeros(len(elevation), dtype=np.float64)
    heights[valid] = (elevation[valid] - reference_elevation) * height_scale
    geometry.positions[:, 1] = heights
    logger.debug(
        "CPU displacement: %d valid, %d NoData vertices",
        int(np.count_nonzero(valid)),
        int(np.count_nonzero(~valid)),
    )
    return geometry.positions


def compute_vertex_normals(positions: np.ndarray, indices: np.ndarray) -> np.ndarray:
    """Area-weighted vertex normals; vertices without faces point straight up."""
    positions = np.asarray(positions, dtype=np.float64)
    triangles = np.asarray(indices, dtype=np.intp).reshape(-1, 3)
    normals = np.zeros_like(positions)
    if len(triangles):
        p0 = positions[triangles[:, 0]]
        p1 = positions[triangles[:, 1]]
        p2 = positions[triangles[:, 2]]
        face_normals = np.cross(p1 - p0, p2 - p0)
        for corner in range(3):
            np.add.at(normals, triangles[:, corner], face_normals)

    lengths = np.linalg.norm(normals, axis=1)
    flat = lengths < 1e-20
    normals[flat] = (0.0, 1.0, 0.0)
    lengths[flat] = 1.0
    return (normals / lengths[:, np.newaxis]).astype(np.float32)
