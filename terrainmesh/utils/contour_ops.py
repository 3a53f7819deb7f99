"""Contour line extraction by marching squares over the elevation sampler."""

import logging
from typing import Dict, List, NamedTuple, Optional

import numpy as np
from shapely.geometry import MultiLineString, mapping

from .chunked import iter_as_steps, iter_chunks, run_chunked
from .dem import ElevationSampler
from .geometry_ops import chain_and_simplify
from .grid import round_half_up
from ..models import ContourLevel, GenerationResult

logger = logging.getLogger(__name__)

# Cell corners as (row, col) offsets: top-left, top-right, bottom-right, bottom-left
CORNER_OFFSETS = np.array([(0, 0), (0, 1), (1, 1), (1, 0)], dtype=np.intp)

# Cell edges, indexed 0..3, as (start corner, end corner):
# 0 = top (tl -> tr), 1 = right (tr -> br), 2 = bottom (bl -> br), 3 = left (tl -> bl)
EDGE_CORNERS = np.array([(0, 1), (1, 2), (3, 2), (0, 3)], dtype=np.intp)

# Saddle codes whose center average is at or above the threshold
SADDLE_5_HIGH = 16
SADDLE_10_HIGH = 17

# Relative offset applied to samples equal to the traced threshold
THRESHOLD_NUDGE = 1e-6

# Edge pairs per case code; bit 8 = tl, 4 = tr, 2 = br, 1 = bl set when >= threshold
MS_EDGE_TABLE: Dict[int, List[List[int]]] = {
    1: [[3, 2]],
    2: [[2, 1]],
    3: [[3, 1]],
    4: [[0, 1]],
    5: [[0, 1], [3, 2]],
    6: [[0, 2]],
    7: [[3, 0]],
    8: [[0, 3]],
    9: [[0, 2]],
    10: [[3, 0], [2, 1]],
    11: [[0, 1]],
    12: [[3, 1]],
    13: [[2, 1]],
    14: [[3, 2]],
    SADDLE_5_HIGH: [[3, 0], [2, 1]],
    SADDLE_10_HIGH: [[0, 1], [3, 2]],
}


def _edge_lookup():
    pairs = np.full((SADDLE_10_HIGH + 1, 2, 2), -1, dtype=np.intp)
    counts = np.zeros(SADDLE_10_HIGH + 1, dtype=np.intp)
    for code, edges in MS_EDGE_TABLE.items():
        counts[code] = len(edges)
        for slot, pair in enumerate(edges):
            pairs[code, slot] = pair
    return pairs, counts


EDGE_PAIRS, SEGMENT_COUNT = _edge_lookup()


class ContourGrid(NamedTuple):
    """Elevation samples on the contour grid plus the model-space coordinate axes."""

    values: np.ndarray  # (grid_height, grid_width), NaN over NoData
    model_x: np.ndarray  # (grid_width,)
    model_z: np.ndarray  # (grid_height,)

    @property
    def cell_width(self) -> float:
        return float(self.model_x[1] - self.model_x[0])

    @property
    def cell_height(self) -> float:
        return float(self.model_z[1] - self.model_z[0])


def build_contour_thresholds(
    reference_elevation: float, min_elevation: float, interval: float
) -> List[float]:
    """Thresholds one interval apart, descending from the reference elevation.

    Depths run from ``interval`` up to ``round(reference - min)`` inclusive; a
    threshold below ``min_elevation`` is skipped.
    """
    if not interval > 0:
        raise ValueError(f"Contour interval must be positive, got {interval}")
    max_depth = round_half_up(reference_elevation - min_elevation)
    thresholds = []
    step = 1
    while step * interval <= max_depth:
        threshold = reference_elevation - step * interval
        if threshold >= min_elevation:
            thresholds.append(threshold)
        step += 1
    return thresholds


def iter_contour_grid(
    sampler: ElevationSampler,
    grid_width: int,
    grid_height: int,
    model_width: float,
    model_height: float,
    row_chunk: int = 50,
):
    """Bilinearly sample the contour grid ``row_chunk`` rows per step."""
    fx = np.arange(grid_width) / (grid_width - 1)
    fz = np.arange(grid_height) / (grid_height - 1)
    values = np.empty((grid_height, grid_width), dtype=np.float64)
    for start, end in iter_chunks(grid_height, row_chunk):
        uu, vv = np.meshgrid(fx, fz[start:end])
        values[start:end] = sampler.sample_bilinear(uu, vv)
        yield end / grid_height
    return ContourGrid(
        values=values,
        model_x=fx * model_width - model_width / 2,
        model_z=fz * model_height - model_height / 2,
    )


def build_contour_grid(
    sampler: ElevationSampler,
    grid_width: int,
    grid_height: int,
    model_width: float,
    model_height: float,
) -> ContourGrid:
    """Bilinearly sample a ``grid_width x grid_height`` grid spanning the model."""
    return run_chunked(
        iter_contour_grid(sampler, grid_width, grid_height, model_width, model_height)
    )


def compute_grid_normals(
    values: np.ndarray,
    cell_width: float,
    cell_height: float,
    height_scale: float,
    start: int = 0,
    end: Optional[int] = None,
) -> np.ndarray:
    """
    Per-vertex surface normals of the displaced contour grid.

    Central differences inside the grid, one-sided at its border. A NaN
    neighbour falls back to the center value, and NaN vertices point
    straight up.

    Args:
        values: Full contour grid samples.
        cell_width, cell_height: Model-space cell size.
        height_scale: Vertical scale applied to the samples.
        start, end: Row range to compute; defaults to the whole grid.

    Returns:
        ``(end - start, grid_width, 3)`` unit normals with positive Y.
    """
    height, width = values.shape
    end = height if end is None else end
    rows = np.arange(start, end)
    center = values[start:end]
    left = np.concatenate([center[:, :1], center[:, :-1]], axis=1)
    right = np.concatenate([center[:, 1:], center[:, -1:]], axis=1)
    up = values[np.maximum(rows - 1, 0)]
    down = values[np.minimum(rows + 1, height - 1)]
    left, right, up, down = (
        np.where(np.isnan(n), center, n) for n in (left, right, up, down)
    )

    dx = np.full(width, 2.0)
    dx[[0, -1]] = 1.0
    dz = np.where((rows == 0) | (rows == height - 1), 1.0, 2.0)

    grad_x = (right - left) / (dx[np.newaxis, :] * cell_width) * height_scale
    grad_z = (down - up) / (dz[:, np.newaxis] * cell_height) * height_scale
    length = np.sqrt(grad_x * grad_x + 1.0 + grad_z * grad_z)
    normals = np.stack([-grad_x / length, 1.0 / length, -grad_z / length], axis=-1)
    normals[np.isnan(center)] = (0.0, 1.0, 0.0)
    return normals


def iter_grid_normals(grid: ContourGrid, height_scale: float, row_chunk: int = 50):
    """Chunked :func:`compute_grid_normals` over the whole grid."""
    height, width = grid.values.shape
    normals = np.empty((height, width, 3), dtype=np.float64)
    for start, end in iter_chunks(height, row_chunk):
        normals[start:end] = compute_grid_normals(
            grid.values, grid.cell_width, grid.cell_height, height_scale, start, end
        )
        yield end / height
    return normals


def interpolate_edge(edges, threshold, corners, x0, x1, z0, z1):
    """Locate threshold crossings along cell edges.

    Args:
        edges: Edge index per crossing (0 top, 1 right, 2 bottom, 3 left).
        threshold: Iso-value being traced.
        corners: ``(S, 4)`` corner values ordered tl, tr, br, bl.
        x0, x1, z0, z1: Cell bounds per crossing.

    Returns:
        ``(x, z, t)`` arrays, ``t`` being the fraction from the edge's start
        corner to its end corner.
    """
    edges = np.atleast_1d(np.asarray(edges, dtype=np.intp))
    corners = np.atleast_2d(np.asarray(corners, dtype=np.float64))
    start = EDGE_CORNERS[edges, 0]
    end = EDGE_CORNERS[edges, 1]
    rows = np.arange(len(edges))
    a = corners[rows, start]
    b = corners[rows, end]
    t = (threshold - a) / (b - a)

    corner_x = np.stack(np.broadcast_arrays(x0, x1, x1, x0), axis=-1).reshape(-1, 4)
    corner_z = np.stack(np.broadcast_arrays(z0, z0, z1, z1), axis=-1).reshape(-1, 4)
    xa = corner_x[rows, start]
    za = corner_z[rows, start]
    x = xa + t * (corner_x[rows, end] - xa)
    z = za + t * (corner_z[rows, end] - za)
    return x, z, t


def _crossing_points(edges, threshold, corners, cell_rows, cell_cols, grid, normals):
    start = EDGE_CORNERS[edges, 0]
    end = EDGE_CORNERS[edges, 1]
    x, z, t = interpolate_edge(
        edges,
        threshold,
        corners,
        grid.model_x[cell_cols],
        grid.model_x[cell_cols + 1],
        grid.model_z[cell_rows],
        grid.model_z[cell_rows + 1],
    )
    n_start = normals[
        cell_rows + CORNER_OFFSETS[start, 0], cell_cols + CORNER_OFFSETS[start, 1]
    ]
    n_end = normals[
        cell_rows + CORNER_OFFSETS[end, 0], cell_cols + CORNER_OFFSETS[end, 1]
    ]
    normal = n_start + t[:, np.newaxis] * (n_end - n_start)
    return x, z, normal


def march_threshold(
    grid: ContourGrid,
    normals: np.ndarray,
    threshold: float,
    contour_y: float,
    height_offset: float,
) -> np.ndarray:
    """
    Trace one iso-line with marching squares.

    Cells with a NaN corner are skipped. Saddles (codes 5 and 10) are resolved
    with the average of the four corners. Segments come out in row-major cell
    order, each point lifted off the surface along its interpolated normal.

    Samples lying exactly on the threshold are raised by a relative
    :data:`THRESHOLD_NUDGE` first, so every crossing falls strictly inside an
    edge and no zero-length segments or four-way junctions are emitted.

    Returns:
        ``(2 * S, 3)`` float64 segment endpoints.
    """
    nudge = THRESHOLD_NUDGE * max(1.0, abs(threshold))
    values = np.where(grid.values == threshold, threshold + nudge, grid.values)
    tl = values[:-1, :-1]
    tr = values[:-1, 1:]
    br = values[1:, 1:]
    bl = values[1:, :-1]

    valid = np.isfinite(tl) & np.isfinite(tr) & np.isfinite(br) & np.isfinite(bl)
    with np.errstate(invalid="ignore"):
        code = (
            (tl >= threshold) * 8
            | (tr >= threshold) * 4
            | (br >= threshold) * 2
            | (bl >= threshold) * 1
        )
    active = valid & (code != 0) & (code != 15)
    cell_rows, cell_cols = np.nonzero(active)
    if len(cell_rows) == 0:
        return np.zeros((0, 3), dtype=np.float64)

    codes = code[cell_rows, cell_cols].astype(np.intp)
    corners = np.stack(
        [
            tl[cell_rows, cell_cols],
            tr[cell_rows, cell_cols],
            br[cell_rows, cell_cols],
            bl[cell_rows, cell_cols],
        ],
        axis=1,
    )
    center_high = corners.sum(axis=1) * 0.25 >= threshold
    codes = np.where((codes == 5) & center_high, SADDLE_5_HIGH, codes)
    codes = np.where((codes == 10) & center_high, SADDLE_10_HIGH, codes)

    # One entry per emitted segment, keeping cell order then table order
    counts = SEGMENT_COUNT[codes]
    cell = np.repeat(np.arange(len(codes)), counts)
    slot = np.arange(len(cell)) - np.repeat(np.cumsum(counts) - counts, counts)
    seg_codes = codes[cell]
    seg_rows = cell_rows[cell]
    seg_cols = cell_cols[cell]
    seg_corners = corners[cell]

    endpoints = []
    for side in (0, 1):
        edges = EDGE_PAIRS[seg_codes, slot, side]
        x, z, normal = _crossing_points(
            edges, threshold, seg_corners, seg_rows, seg_cols, grid, normals
        )
        endpoints.append(
            np.column_stack(
                [
                    x + normal[:, 0] * height_offset,
                    contour_y + normal[:, 1] * height_offset,
                    z + normal[:, 2] * height_offset,
                ]
            )
        )
    return np.stack(endpoints, axis=1).reshape(-1, 3)


def iter_generate_contours(
    sampler: ElevationSampler,
    reference_elevation: float,
    min_elevation: float,
    interval: float,
    grid_width: int,
    grid_height: int,
    model_width: float,
    model_height: float,
    height_scale: float,
    height_offset: float = 1e-6,
    simplify_tolerance: float = 0.0,
    max_vertices: int = 0,
    row_chunk: int = 50,
):
    """
    Generate contour segments one threshold at a time.

    The grid is sampled, then its normals computed, ``row_chunk`` rows at a
    time; after that one threshold is traced per step. Yields the completed
    fraction after every step. The vertex budget is checked between
    thresholds; once ``max_vertices`` (when positive) is exceeded generation
    stops and the partial result is returned with ``aborted=True``.

    Returns:
        GenerationResult with flat float32 XYZ segment endpoints.
    """
    thresholds = build_contour_thresholds(
        reference_elevation, min_elevation, interval
    )
    if not thresholds:
        logger.warning(
            f"No contour thresholds between {min_elevation} and {reference_elevation} "
            f"at interval {interval}"
        )
        return GenerationResult()

    blocks = len(range(0, grid_height, row_chunk))
    steps = 2 * blocks + len(thresholds)
    logger.debug(
        f"Contouring {len(thresholds)} thresholds on {grid_width}x{grid_height} grid"
    )

    grid = yield from iter_as_steps(
        iter_contour_grid(
            sampler, grid_width, grid_height, model_width, model_height, row_chunk
        ),
        0,
        steps,
    )
    normals = yield from iter_as_steps(
        iter_grid_normals(grid, height_scale, row_chunk), blocks, steps
    )

    step = 2 * blocks
    chunks = []
    levels = []
    total_vertices = 0
    for index, threshold in enumerate(thresholds):
        contour_y = (threshold - reference_elevation) * height_scale
        points = march_threshold(grid, normals, threshold, contour_y, height_offset)
        if len(points) and simplify_tolerance > 0:
            points = chain_and_simplify(points, simplify_tolerance)

        levels.append(ContourLevel(float(threshold), total_vertices, len(points)))
        chunks.append(points)
        total_vertices += len(points)
        step += 1
        yield step / steps

        if max_vertices > 0 and total_vertices > max_vertices:
            logger.warning(
                f"Contour vertex limit ({max_vertices}) exceeded at threshold "
                f"{index + 1}/{len(thresholds)}; aborting"
            )
            return GenerationResult(
                segments=_flatten(chunks),
                vertex_count=total_vertices,
                aborted=True,
                levels=levels,
            )

    logger.info(
        f"Generated {total_vertices // 2} contour segments "
        f"({len(thresholds)} thresholds, {grid_width}x{grid_height} grid, "
        f"simplify={simplify_tolerance})"
    )
    return GenerationResult(
        segments=_flatten(chunks), vertex_count=total_vertices, levels=levels
    )


def _flatten(chunks: List[np.ndarray]) -> np.ndarray:
    if not chunks:
        return np.zeros(0, dtype=np.float32)
    return np.concatenate([c.reshape(-1) for c in chunks]).astype(np.float32)


def generate_contours(*args, on_progress=None, **kwargs) -> GenerationResult:
    """Blocking wrapper around :func:`iter_generate_contours`."""
    return run_chunked(iter_generate_contours(*args, **kwargs), on_progress)


def scale_contour_heights(result: GenerationResult, ratio: float) -> GenerationResult:
    """Multiply every cached contour Y coordinate by ``ratio`` in place."""
    if result.vertex_count and ratio != 1.0:
        result.segments[1::3] *= ratio
    return result


def contours_to_features(result: GenerationResult) -> List[dict]:
    """Export each non-empty level as a GeoJSON MultiLineString in model XZ."""
    features = []
    for level in result.levels:
        if level.vertex_count == 0:
            continue
        points = result.level_segments(level)[:, [0, 2]].astype(np.float64)
        lines = points.reshape(-1, 2, 2).tolist()
        features.append(
            {
                "elevation": level.threshold,
                "geometry": mapping(MultiLineString(lines)),
                "closed": False,
            }
        )
    return features
