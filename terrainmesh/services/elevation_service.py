import logging

import scipy.ndimage

from terrainmesh.models import ElevationInfo
from terrainmesh.utils.dem import ElevationSampler
from terrainmesh.utils.grid import round_half_up

logger = logging.getLogger(__name__)


def depth_range_for(reference_elevation: float, min_elevation: float) -> tuple:
    """Color depth range ``[0, max(1, round(reference - min))]``."""
    return 0.0, float(max(1, round_half_up(reference_elevation - min_elevation)))


def analyze_elevation(
    elevation,
    width: int | None = None,
    height: int | None = None,
    no_data_value: float | None = None,
) -> ElevationInfo:
    """
    Compute the statistics the terrain pipeline is configured from.

    The reference elevation defaults to the highest valid sample, so the whole
    surface starts out below the waterline.

    Args:
        elevation: Elevation grid, 2D or flat with ``width``/``height``, or an
            ElevationSampler.
        width: Raster width when ``elevation`` is flat.
        height: Raster height when ``elevation`` is flat.
        no_data_value: Explicit NoData sentinel.

    Returns:
        ElevationInfo; an all-NoData raster yields zeros, a ``[0, 1]`` depth
        range and a valid fraction of 0.
    """
    if isinstance(elevation, ElevationSampler):
        sampler = elevation
    else:
        sampler = ElevationSampler(elevation, width, height, no_data_value)

    nodata = sampler.nodata
    _, nodata_regions = scipy.ndimage.label(nodata)
    valid = sampler.data[~nodata]

    if valid.size == 0:
        logger.warning(
            f"Elevation raster {sampler.width}x{sampler.height} has no valid samples"
        )
        return ElevationInfo(
            min_elevation=0.0,
            max_elevation=0.0,
            reference_elevation=0.0,
            depth_range=(0.0, 1.0),
            valid_fraction=0.0,
            nodata_regions=int(nodata_regions),
        )

    min_elev = float(valid.min())
    max_elev = float(valid.max())
    info = ElevationInfo(
        min_elevation=min_elev,
        max_elevation=max_elev,
        reference_elevation=max_elev,
        depth_range=depth_range_for(max_elev, min_elev),
        valid_fraction=valid.size / nodata.size,
        nodata_regions=int(nodata_regions),
    )
    logger.debug(
        f"Elevation range {min_elev:.2f}..{max_elev:.2f}, "
        f"valid {info.valid_fraction * 100:.1f}%, {nodata_regions} NoData regions"
    )
    return info
