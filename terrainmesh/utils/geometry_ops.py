"""Polyline chaining and simplification for contour segments."""

import logging
from collections import Counter, defaultdict
from typing import Dict, List, Tuple

import numpy as np

logger = logging.getLogger(__name__)

# Below this squared length the base line is treated as a point
_DEGENERATE_LENGTH_SQ = 1e-20


def _endpoint_key(point) -> Tuple[float, float]:
    return float(point[0]), float(point[2])


def endpoint_degrees(segment_points: np.ndarray) -> Counter:
    """Count how many segments touch each exact ``(x, z)`` endpoint.

    Args:
        segment_points: ``(2 * S, 3)`` array, rows ``2i`` and ``2i + 1`` being the
            two ends of segment ``i``.

    Returns:
        Counter mapping ``(x, z)`` to its degree.
    """
    points = np.asarray(segment_points, dtype=np.float64).reshape(-1, 3)
    return Counter(_endpoint_key(p) for p in points)


def _build_adjacency(points: np.ndarray) -> Dict[Tuple[float, float], List[int]]:
    # Values are point rows; row ^ 1 is the opposite end of the same segment
    adjacency: Dict[Tuple[float, float], List[int]] = defaultdict(list)
    for row, point in enumerate(points):
        adjacency[_endpoint_key(point)].append(row)
    return adjacency


def _walk(start_row, points, adjacency, used) -> List[int]:
    """Follow unused segments from the endpoint at ``start_row``; return visited rows."""
    path = []
    key = _endpoint_key(points[start_row])
    while True:
        for row in adjacency.get(key, ()):
            segment = row >> 1
            if not used[segment]:
                used[segment] = True
                next_row = row ^ 1
                path.append(next_row)
                key = _endpoint_key(points[next_row])
                break
        else:
            return path


def chain_segments(segment_points: np.ndarray) -> List[np.ndarray]:
    """
    Chain raw segments sharing exact endpoints into polylines.

    Segments live in a flat arena indexed by integer id, and an adjacency
    map from endpoint coordinate to arena rows drives the walk, so no
    segment objects reference each other. Each polyline is returned as an
    array of row indices into ``segment_points``; closed loops start and end
    on the same coordinate.
    """
    points = np.asarray(segment_points, dtype=np.float64).reshape(-1, 3)
    segment_count = len(points) // 2
    if segment_count == 0:
        return []

    adjacency = _build_adjacency(points)
    junctions = sum(1 for rows in adjacency.values() if len(rows) > 2)
    if junctions:
        logger.warning(
            "Contour chaining found %d endpoints shared by more than two segments",
            junctions,
        )

    used = np.zeros(segment_count, dtype=bool)
    polylines = []
    for segment in range(segment_count):
        if used[segment]:
            continue
        used[segment] = True
        head, tail = 2 * segment, 2 * segment + 1
        forward = _walk(tail, points, adjacency, used)
        backward = _walk(head, points, adjacency, used)
        rows = backward[::-1] + [head, tail] + forward
        polylines.append(np.array(rows, dtype=np.intp))
    return polylines


def douglas_peucker_mask(points: np.ndarray, tolerance: float) -> np.ndarray:
    """Return a keep-mask for 2D Douglas-Peucker simplification of ``points``.

    Distances are measured perpendicular to the infinite line through the
    span endpoints, or to the span start when that line is degenerate. The
    first and last point are always kept.
    """
    pts = np.asarray(points, dtype=np.float64)
    n = len(pts)
    keep = np.zeros(n, dtype=bool)
    if n == 0:
        return keep
    keep[0] = True
    keep[-1] = True
    if tolerance <= 0:
        keep[:] = True
        return keep

    tol_sq = tolerance * tolerance
    stack = [(0, n - 1)]
    while stack:
        start, end = stack.pop()
        if end - start <= 1:
            continue
        first = pts[start]
        base = pts[end] - first
        offsets = pts[start + 1 : end] - first
        length_sq = float(base @ base)
        if length_sq < _DEGENERATE_LENGTH_SQ:
            dist_sq = np.einsum("ij,ij->i", offsets, offsets)
        else:
            t = (offsets @ base) / length_sq
            perpendicular = offsets - t[:, np.newaxis] * base
            dist_sq = np.einsum("ij,ij->i", perpendicular, perpendicular)
        local = int(np.argmax(dist_sq))
        if dist_sq[local] > tol_sq:
            split = start + 1 + local
            keep[split] = True
            stack.append((split, end))
            stack.append((start, split))
    return keep


def simplify_polyline(points: np.ndarray, tolerance: float) -> np.ndarray:
    """Douglas-Peucker simplification of an ``(N, 2)`` polyline.

    Tolerance ``<= 0`` returns an unchanged copy, as do inputs of two points
    or fewer.
    """
    pts = np.asarray(points, dtype=np.float64)
    if tolerance <= 0 or len(pts) <= 2:
        return pts.copy()
    return pts[douglas_peucker_mask(pts, tolerance)]


def polyline_to_segments(points: np.ndarray) -> np.ndarray:
    """Expand an ``(N, 3)`` polyline into ``(2 * (N - 1), 3)`` segment endpoints."""
    return np.stack([points[:-1], points[1:]], axis=1).reshape(-1, 3)


def chain_and_simplify(segment_points: np.ndarray, tolerance: float) -> np.ndarray:
    """Chain segments into polylines, simplify each in XZ and re-expand to pairs.

    Kept points retain their own Y, so the normal offset survives
    simplification.
    """
    points = np.asarray(segment_points, dtype=np.float64).reshape(-1, 3)
    polylines = chain_segments(points)
    if not polylines:
        return np.zeros((0, 3), dtype=np.float64)

    pieces = []
    for rows in polylines:
        polyline = points[rows]
        keep = douglas_peucker_mask(polyline[:, [0, 2]], tolerance)
        pieces.append(polyline_to_segments(polyline[keep]))

    result = np.concatenate(pieces)
    logger.debug(
        "Chained %d segments into %d polylines, %d segments after simplification",
        len(points) // 2,
        len(polylines),
        len(result) // 2,
    )
    return result
