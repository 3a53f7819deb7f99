import matplotlib

matplotlib.use("Agg")
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
from matplotlib.collections import LineCollection

from ..models import GenerationResult


def save_terrain_visualization(
    elevation_data: np.ndarray,
    result: GenerationResult | None,
    filename: str | Path,
    model_width: float = 1.0,
    model_height: float = 1.0,
) -> None:
    """
    Save a visualization of the elevation raster and its contours to a PNG file.

    Args:
        elevation_data: Elevation grid with NaN over NoData (row 0 = north).
        result: Contour segments in model space to overlay (optional).
        filename: Output path.
        model_width: Model-space extent along X, used to map segments to pixels.
        model_height: Model-space extent along Z.
    """
    height, width = elevation_data.shape
    fig, ax = plt.subplots(figsize=(10, 8))

    # NaN cells render transparent
    im = ax.imshow(elevation_data, cmap="terrain", origin="upper", alpha=0.8)
    plt.colorbar(im, ax=ax, label="Elevation (m)")

    if result is not None and result.vertex_count:
        points = result.segments.reshape(-1, 3).astype(np.float64)
        cols = (points[:, 0] / model_width + 0.5) * (width - 1)
        rows = (points[:, 2] / model_height + 0.5) * (height - 1)
        lines = np.column_stack([cols, rows]).reshape(-1, 2, 2)
        ax.add_collection(LineCollection(lines, colors="red", linewidths=0.6))

    ax.set_title("Terrain Diagnostic")
    ax.axis("off")

    plt.savefig(filename, dpi=150, bbox_inches="tight")
    plt.close(fig)
