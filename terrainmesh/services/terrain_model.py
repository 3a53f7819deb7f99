import logging
import math
import os
from contextlib import contextmanager
from typing import Callable, Optional, Tuple

import numpy as np
from rasterio.transform import from_bounds

from config import settings
from terrainmesh.models import (
    COMPUTE_COLORS,
    CREATE_CONTOURS,
    CREATE_TERRAIN,
    FILTER_GEOMETRY,
    GENERATE_NORMALS,
    STAGES,
    ElevationInfo,
    GenerationResult,
    MeshGeometry,
    TerrainBuffers,
    TerrainConfig,
)
from terrainmesh.services.elevation_service import analyze_elevation, depth_range_for
from terrainmesh.utils import contour_ops
from terrainmesh.utils.chunked import run_interleaved
from terrainmesh.utils.dem import ElevationDataError, ElevationSampler
from terrainmesh.utils.diagnostics import save_terrain_visualization
from terrainmesh.utils.grid import model_dimensions, plan_grid
from terrainmesh.utils.mesh_ops import (
    build_geometry,
    compute_vertex_normals,
    displace_vertices,
    iter_filter_triangles,
    iter_vertex_colors,
)
from terrainmesh.utils.normals import generate_normal_map

logger = logging.getLogger(__name__)

# Used when zExaggeration / realWorldScale is not a usable positive number
FALLBACK_HEIGHT_SCALE = 0.001

ProgressCallback = Callable[[str, Optional[float]], None]


class TerrainStateError(RuntimeError):
    """Raised when terrain operations are called out of order or re-entrantly."""

    pass


class TerrainModel:
    """
    Owns one elevation raster and everything derived from it.

    The model holds the reference elevation, depth range and vertical
    exaggeration, builds the mesh buffers and contour segments, and keeps
    them consistent when that state changes. Updates are serialized: calling
    ``set_reference_elevation``, ``set_z_exaggeration`` or
    ``generate_contours`` while another one is running (for instance from a
    progress callback) raises TerrainStateError.
    """

    def __init__(self, config: TerrainConfig | None = None):
        self.config = config or TerrainConfig()
        self.z_exaggeration = self.config.default_z_exaggeration
        self.reference_elevation = 0.0
        self.depth_range: Tuple[float, float] = (0.0, 1.0)
        self.no_data_value: float | None = None
        self.min_elevation = 0.0
        self.info: ElevationInfo | None = None

        self.sampler: ElevationSampler | None = None
        self.geometry: MeshGeometry | None = None
        self.geo_bounds: Tuple[float, float, float, float] | None = None
        self.geo_transform = None
        self.model_width = self.config.model_size
        self.model_height = self.config.model_size
        self.real_world_width = 0.0
        self.real_world_height = 0.0
        self.real_world_scale = 1.0

        self.colors: np.ndarray | None = None
        self.indices: np.ndarray | None = None
        self.normal_map: np.ndarray | None = None
        self.vertex_normals: np.ndarray | None = None

        self.contours: GenerationResult | None = None
        self.contour_interval: float | None = None
        self.contours_exceed_limit = False

        self._elevation_configured = False
        self._active_operation: str | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def set_elevation_config(
        self,
        reference_elevation: float,
        depth_range: Tuple[float, float],
        no_data_value: float | None = None,
    ) -> None:
        """Preset the reference elevation and depth range used by the next ``load``."""
        self.reference_elevation = float(reference_elevation)
        self.depth_range = (float(depth_range[0]), float(depth_range[1]))
        self.no_data_value = no_data_value
        self._elevation_configured = True

    def load(
        self,
        elevation,
        width: int | None,
        height: int | None,
        geo_bounds: Tuple[float, float, float, float],
        no_data_value: float | None = None,
        full_resolution=None,
        on_progress: ProgressCallback | None = None,
    ) -> TerrainBuffers:
        """
        Build the terrain mesh from an elevation raster.

        Args:
            elevation: Elevation samples, 2D or flat row-major (row 0 = north).
            width: Raster width in samples.
            height: Raster height in samples.
            geo_bounds: ``(min_x, min_y, max_x, max_y)`` in a projected CRS (meters).
            no_data_value: Explicit NoData sentinel; defaults to the configured one.
            full_resolution: Optional higher-resolution grid (array, sampler or a
                zero-argument callable returning one) used only for the normal map.
            on_progress: Called as ``on_progress(stage, fraction_or_None)``.

        Returns:
            The renderer buffers.
        """
        with self._transaction("load", require_loaded=False):
            return self._load(
                elevation,
                width,
                height,
                geo_bounds,
                no_data_value,
                full_resolution,
                on_progress,
            )

    def _load(
        self,
        elevation,
        width,
        height,
        geo_bounds,
        no_data_value,
        full_resolution,
        on_progress,
    ) -> TerrainBuffers:
        min_x, min_y, max_x, max_y = geo_bounds
        if not (max_x - min_x > 0 and max_y - min_y > 0):
            raise ElevationDataError(f"Geographic bounds {geo_bounds} have no extent.")

        if no_data_value is not None:
            self.no_data_value = no_data_value
        sampler = ElevationSampler(elevation, width, height, self.no_data_value)
        info = analyze_elevation(sampler)
        self.info = info
        self.min_elevation = info.min_elevation
        if not self._elevation_configured:
            self.reference_elevation = info.reference_elevation
            self.depth_range = info.depth_range

        self._report(on_progress, CREATE_TERRAIN, None)
        sampler.downsample_to_limit(self.config.max_texture_size)
        self.sampler = sampler

        self.geo_bounds = tuple(float(b) for b in geo_bounds)
        self.geo_transform = from_bounds(min_x, min_y, max_x, max_y, 1, 1)
        self.real_world_width = float(max_x - min_x)
        self.real_world_height = float(max_y - min_y)
        self.model_width, self.model_height = model_dimensions(
            self.geo_bounds, self.config.model_size
        )
        self.real_world_scale = self.real_world_width / self.model_width

        grid_width, grid_height = plan_grid(
            sampler.width,
            sampler.height,
            sampler.valid_fraction(),
            self.config.target_polygons,
        )
        self.geometry = build_geometry(
            grid_width, grid_height, self.model_width, self.model_height
        )
        self.contours = None
        self.contour_interval = None
        self.contours_exceed_limit = False

        self._report(on_progress, COMPUTE_COLORS, None)
        self._recolor_and_filter(on_progress)
        if not self.config.gpu_displacement:
            self._update_vertices_cpu()

        self._report(on_progress, GENERATE_NORMALS, None)
        self._generate_normals(full_resolution, on_progress)

        logger.info(
            f"Terrain built: {sampler.width}x{sampler.height} raster, "
            f"{grid_width}x{grid_height} grid, {len(self.indices) // 3} of "
            f"{self.geometry.triangle_count} triangles visible, "
            f"model {self.model_width:.3f}x{self.model_height:.3f}, "
            f"scale 1:{self.real_world_scale:.1f}"
        )
        return self.buffers()

    # ------------------------------------------------------------------
    # Update protocol
    # ------------------------------------------------------------------

    def set_reference_elevation(
        self,
        reference_elevation: float,
        regenerate_contours: bool = True,
        on_progress: ProgressCallback | None = None,
    ) -> TerrainBuffers:
        """
        Move the waterline and re-derive everything that depends on it.

        Colors and the filtered index buffer are recomputed together, CPU
        positions are refreshed on the CPU path, and contours are regenerated
        with the last interval unless the previous run exceeded the vertex
        budget.
        """
        with self._transaction("set_reference_elevation"):
            self.reference_elevation = float(reference_elevation)
            self.depth_range = depth_range_for(
                self.reference_elevation, self.min_elevation
            )
            logger.debug(
                f"Reference elevation set to {self.reference_elevation}, "
                f"depth range {self.depth_range}"
            )
            self._recolor_and_filter(on_progress)
            if not self.config.gpu_displacement:
                self._update_vertices_cpu()

            if regenerate_contours and self.contour_interval is not None:
                if self.contours_exceed_limit:
                    logger.info(
                        "Skipping contour regeneration: vertex limit was exceeded "
                        f"at interval {self.contour_interval}"
                    )
                else:
                    self._generate_contours(self.contour_interval, on_progress)
            return self.buffers()

    def set_z_exaggeration(self, factor: float) -> float:
        """Clamp and apply a new vertical exaggeration; returns the applied value."""
        with self._transaction("set_z_exaggeration"):
            previous = self.z_exaggeration
            self.z_exaggeration = float(
                min(
                    self.config.max_z_exaggeration,
                    max(self.config.min_z_exaggeration, factor),
                )
            )
            if not self.config.gpu_displacement:
                self._update_vertices_cpu()
            if self.contours is not None and previous:
                contour_ops.scale_contour_heights(
                    self.contours, self.z_exaggeration / previous
                )
            return self.z_exaggeration

    def get_z_exaggeration(self) -> float:
        return self.z_exaggeration

    def generate_contours(
        self,
        interval: float,
        on_progress: ProgressCallback | None = None,
        grid_width: int | None = None,
        grid_height: int | None = None,
    ) -> GenerationResult:
        """
        Generate contours every ``interval`` meters below the reference elevation.

        Explicitly choosing an interval clears a previous budget overrun. An
        aborted result is returned to the caller but not cached.
        """
        with self._transaction("generate_contours"):
            return self._generate_contours(
                interval, on_progress, grid_width, grid_height
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def sample_elevation_at(self, u: float, v: float) -> float:
        """Bilinear elevation at normalized raster coordinates; NaN over NoData."""
        self._require_loaded()
        return self.sampler.sample_bilinear(u, v)

    def _local_to_uv(self, x: float, z: float) -> Tuple[float, float]:
        u = (x + self.model_width / 2) / self.model_width
        v = (z + self.model_height / 2) / self.model_height
        return u, v

    @staticmethod
    def _inside(u: float, v: float) -> bool:
        return 0.0 <= u <= 1.0 and 0.0 <= v <= 1.0

    def height_at_local_position(self, x: float, z: float) -> float:
        """Displaced surface height at model ``(x, z)``; 0 outside or over NoData."""
        self._require_loaded()
        u, v = self._local_to_uv(x, z)
        if not self._inside(u, v):
            return 0.0
        elevation = self.sampler.sample_bilinear(u, v)
        if not math.isfinite(elevation):
            return 0.0
        return (elevation - self.reference_elevation) * self.get_height_scale()

    def depth_at_local_position(self, x: float, z: float) -> float | None:
        """Depth below the reference at model ``(x, z)``; None outside or over NoData."""
        self._require_loaded()
        u, v = self._local_to_uv(x, z)
        if not self._inside(u, v):
            return None
        elevation = self.sampler.sample_bilinear(u, v)
        if not math.isfinite(elevation):
            return None
        return max(0.0, self.reference_elevation - elevation)

    def local_to_geo(self, x: float, z: float) -> Tuple[float, float] | None:
        self._require_loaded()
        u, v = self._local_to_uv(x, z)
        if not self._inside(u, v):
            return None
        geo_x, geo_y = self.geo_transform * (u, v)
        return float(geo_x), float(geo_y)

    def geo_to_local(
        self, geo_x: float, geo_y: float
    ) -> Tuple[float, float, float] | None:
        """Model position ``(x, 0, z)`` of a projected coordinate, None outside."""
        self._require_loaded()
        u, v = ~self.geo_transform * (geo_x, geo_y)
        if not self._inside(u, v):
            return None
        return (
            (u - 0.5) * self.model_width,
            0.0,
            (v - 0.5) * self.model_height,
        )

    def get_real_world_scale(self) -> float:
        return self.real_world_scale

    def get_height_scale(self) -> float:
        scale = self.z_exaggeration / self.real_world_scale
        return scale if math.isfinite(scale) and scale > 0 else FALLBACK_HEIGHT_SCALE

    def uniforms(self) -> dict:
        """Scalars a renderer needs to displace vertices on the GPU."""
        self._require_loaded()
        return {
            "reference_elevation": self.reference_elevation,
            "height_scale": self.get_height_scale(),
            "elevation_size": (self.sampler.width, self.sampler.height),
        }

    def buffers(self) -> TerrainBuffers:
        self._require_loaded()
        return TerrainBuffers(
            positions=self.geometry.positions,
            colors=self.colors,
            uvs=self.geometry.uvs,
            indices=self.indices,
            normal_map=self.normal_map,
            vertex_normals=self.vertex_normals,
            reference_elevation=self.reference_elevation,
            height_scale=self.get_height_scale(),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @property
    def is_loaded(self) -> bool:
        return self.geometry is not None

    def _require_loaded(self) -> None:
        if not self.is_loaded:
            raise TerrainStateError("Terrain has not been loaded; call load() first.")

    @contextmanager
    def _transaction(self, name: str, require_loaded: bool = True):
        if require_loaded:
            self._require_loaded()
        if self._active_operation:
            raise TerrainStateError(
                f"{name} called while {self._active_operation} is still running"
            )
        self._active_operation = name
        try:
            yield
        finally:
            self._active_operation = None

    @staticmethod
    def _report(on_progress, stage: str, fraction: float | None) -> None:
        if stage not in STAGES:
            raise ValueError(f"Unknown progress stage: {stage}")
        if on_progress:
            on_progress(stage, fraction)

    def _recolor_and_filter(self, on_progress: ProgressCallback | None) -> None:
        results = run_interleaved(
            {
                COMPUTE_COLORS: iter_vertex_colors(
                    self.geometry,
                    self.sampler,
                    self.reference_elevation,
                    self.depth_range,
                    self.config.color_chunk_size,
                ),
                FILTER_GEOMETRY: iter_filter_triangles(
                    self.geometry,
                    self.sampler,
                    self.reference_elevation,
                    self.config.filter_chunk_size,
                ),
            },
            lambda stage, fraction: self._report(on_progress, stage, fraction),
        )
        self.colors = results[COMPUTE_COLORS]
        self.indices = results[FILTER_GEOMETRY]

    def _update_vertices_cpu(self) -> None:
        displace_vertices(
            self.geometry,
            self.sampler,
            self.reference_elevation,
            self.get_height_scale(),
        )
        self.vertex_normals = compute_vertex_normals(
            self.geometry.positions, self.geometry.original_indices
        )

    def _generate_normals(self, full_resolution, on_progress) -> None:
        def progress(fraction):
            self._report(on_progress, GENERATE_NORMALS, fraction)

        if full_resolution is not None:
            try:
                source = (
                    full_resolution() if callable(full_resolution) else full_resolution
                )
                if not isinstance(source, ElevationSampler):
                    source = ElevationSampler(source, no_data_value=self.no_data_value)
                logger.info(
                    f"Using full-resolution elevation for normal map: "
                    f"{source.width}x{source.height}"
                )
                self.normal_map = self._normal_map_from(source, progress)
                return
            except Exception as e:
                logger.warning(
                    f"Full-resolution elevation failed, using mesh raster for normals: {e}"
                )
        self.normal_map = self._normal_map_from(self.sampler, progress)

    def _normal_map_from(self, source: ElevationSampler, progress) -> np.ndarray:
        return generate_normal_map(
            source,
            self.real_world_width,
            self.real_world_height,
            strength=self.config.normal_map_strength,
            row_chunk=self.config.normal_row_chunk,
            on_progress=progress,
        )

    def _generate_contours(
        self,
        interval: float,
        on_progress: ProgressCallback | None = None,
        grid_width: int | None = None,
        grid_height: int | None = None,
    ) -> GenerationResult:
        self._report(on_progress, CREATE_CONTOURS, None)
        result = contour_ops.generate_contours(
            self.sampler,
            self.reference_elevation,
            self.min_elevation,
            interval,
            grid_width or self.geometry.grid_width,
            grid_height or self.geometry.grid_height,
            self.model_width,
            self.model_height,
            self.get_height_scale(),
            height_offset=self.config.contour_height_offset,
            simplify_tolerance=self.config.contour_simplify_tolerance,
            max_vertices=self.config.max_contour_vertices,
            on_progress=lambda fraction: self._report(
                on_progress, CREATE_CONTOURS, fraction
            ),
        )
        self.contour_interval = interval
        self.contours_exceed_limit = result.aborted
        self.contours = None if result.aborted else result

        if settings.DEBUG and not result.aborted:
            os.makedirs(settings.DEBUG_IMAGE_PATH, exist_ok=True)
            save_terrain_visualization(
                self.sampler.masked(),
                result,
                os.path.join(settings.DEBUG_IMAGE_PATH, f"contours_{interval}.png"),
                self.model_width,
                self.model_height,
            )
        return result
