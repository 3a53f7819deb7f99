"""Data classes shared by the mesh and contour pipelines."""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable

import numpy as np

from config import settings

# Progress stage identifiers reported to ``on_progress(stage, fraction)``
CREATE_TERRAIN = "CREATE_TERRAIN"
COMPUTE_COLORS = "COMPUTE_COLORS"
FILTER_GEOMETRY = "FILTER_GEOMETRY"
GENERATE_NORMALS = "GENERATE_NORMALS"
CREATE_CONTOURS = "CREATE_CONTOURS"

STAGES = (
    CREATE_TERRAIN,
    COMPUTE_COLORS,
    FILTER_GEOMETRY,
    GENERATE_NORMALS,
    CREATE_CONTOURS,
)


@dataclass
class TerrainConfig:
    """
    Per-instance configuration of a TerrainModel.

    Defaults are read from ``config.settings`` when the instance is created,
    so environment overrides apply to every new model.
    """

    target_polygons: int = field(default_factory=lambda: settings.TARGET_POLYGONS)
    model_size: float = field(default_factory=lambda: settings.MODEL_SIZE)
    min_z_exaggeration: float = field(
        default_factory=lambda: settings.MIN_Z_EXAGGERATION
    )
    max_z_exaggeration: float = field(
        default_factory=lambda: settings.MAX_Z_EXAGGERATION
    )
    default_z_exaggeration: float = field(
        default_factory=lambda: settings.DEFAULT_Z_EXAGGERATION
    )
    normal_map_strength: float = field(
        default_factory=lambda: settings.NORMAL_MAP_STRENGTH
    )
    max_texture_size: int = field(default_factory=lambda: settings.MAX_TEXTURE_SIZE)
    contour_height_offset: float = field(
        default_factory=lambda: settings.CONTOUR_HEIGHT_OFFSET
    )
    contour_simplify_tolerance: float = field(
        default_factory=lambda: settings.CONTOUR_SIMPLIFY_TOLERANCE
    )
    max_contour_vertices: int = field(
        default_factory=lambda: settings.MAX_CONTOUR_VERTICES
    )
    color_chunk_size: int = field(default_factory=lambda: settings.COLOR_CHUNK_SIZE)
    filter_chunk_size: int = field(default_factory=lambda: settings.FILTER_CHUNK_SIZE)
    normal_row_chunk: int = field(default_factory=lambda: settings.NORMAL_ROW_CHUNK)
    # False selects the CPU fallback: vertex Y is written into the position buffer
    gpu_displacement: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TerrainConfig":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class ElevationInfo:
    """Summary statistics of an elevation raster."""

    min_elevation: float
    max_elevation: float
    reference_elevation: float
    depth_range: Tuple[float, float]
    valid_fraction: float
    nodata_regions: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "min_elevation": self.min_elevation,
            "max_elevation": self.max_elevation,
            "reference_elevation": self.reference_elevation,
            "depth_range": list(self.depth_range),
            "valid_fraction": self.valid_fraction,
            "nodata_regions": self.nodata_regions,
        }


@dataclass
class MeshGeometry:
    """A rectangular XZ grid of vertices, triangulated into the original index buffer."""

    positions: np.ndarray  # (N, 3) float32
    uvs: np.ndarray  # (N, 2) float32, v = 1 at the north edge
    original_indices: np.ndarray  # (M * 3,) uint32
    grid_width: int
    grid_height: int
    model_width: float
    model_height: float

    @property
    def vertex_count(self) -> int:
        return len(self.positions)

    @property
    def triangle_count(self) -> int:
        return len(self.original_indices) // 3


@dataclass
class TerrainBuffers:
    """Everything a renderer needs to draw the terrain."""

    positions: np.ndarray
    colors: np.ndarray
    uvs: np.ndarray
    indices: np.ndarray
    normal_map: Optional[np.ndarray]
    vertex_normals: Optional[np.ndarray]
    reference_elevation: float
    height_scale: float


@dataclass
class ContourLevel:
    """Location of one threshold's vertices inside ``GenerationResult.segments``."""

    threshold: float
    start_vertex: int
    vertex_count: int


@dataclass
class GenerationResult:
    """
    Contour line segments as flat XYZ triples, consumed as pairs.

    When ``aborted`` is set the vertex budget was exceeded; ``segments`` and
    ``vertex_count`` only cover the thresholds processed before the abort and
    must be discarded by the caller.
    """

    segments: np.ndarray = field(
        default_factory=lambda: np.zeros(0, dtype=np.float32)
    )
    vertex_count: int = 0
    aborted: bool = False
    levels: List[ContourLevel] = field(default_factory=list)

    def level_segments(self, level: ContourLevel) -> np.ndarray:
        """Return the ``(vertex_count, 3)`` vertices of a single level."""
        start = level.start_vertex * 3
        end = start + level.vertex_count * 3
        return self.segments[start:end].reshape(-1, 3)

    def summary(self) -> Dict[str, Any]:
        return {
            "vertex_count": self.vertex_count,
            "aborted": self.aborted,
            "levels": len(self.levels),
        }


@runtime_checkable
class TerrainQuery(Protocol):
    """Surface exposed to interactive tools: queries plus the exaggeration control."""

    def sample_elevation_at(self, u: float, v: float) -> float: ...

    def height_at_local_position(self, x: float, z: float) -> float: ...

    def local_to_geo(self, x: float, z: float) -> Optional[Tuple[float, float]]: ...

    def geo_to_local(
        self, geo_x: float, geo_y: float
    ) -> Optional[Tuple[float, float, float]]: ...

    def depth_at_local_position(self, x: float, z: float) -> Optional[float]: ...

    def get_z_exaggeration(self) -> float: ...

    def set_z_exaggeration(self, factor: float) -> float: ...

    def get_real_world_scale(self) -> float: ...
