import logging
import traceback

from celery import shared_task

from terrainmesh.models import TerrainConfig, TerrainQuery
from terrainmesh.services.terrain_model import TerrainModel
from terrainmesh.utils.contour_ops import contours_to_features
from terrainmesh.utils.dem import ElevationDataError

logger = logging.getLogger(__name__)


def _progress_reporter(task):
    def report(stage, fraction):
        task.update_state(
            state="PROGRESS", meta={"stage": stage, "progress": fraction}
        )

    return report


def _load_model(params: dict, report) -> TerrainModel:
    model = TerrainModel(TerrainConfig.from_dict(params.get("config", {})))
    model.load(
        params["elevation"],
        params.get("width"),
        params.get("height"),
        tuple(params["geo_bounds"]),
        no_data_value=params.get("no_data_value"),
        on_progress=report,
    )
    return model


def _surface_summary(query: TerrainQuery) -> dict:
    center = query.local_to_geo(0.0, 0.0)
    return {
        "real_world_scale": query.get_real_world_scale(),
        "z_exaggeration": query.get_z_exaggeration(),
        "center": list(center) if center else None,
    }


def _summarize(model: TerrainModel, contours=None) -> dict:
    result = {
        "status": "SUCCESS",
        "elevation": model.info.to_dict(),
        "reference_elevation": model.reference_elevation,
        "depth_range": list(model.depth_range),
        "grid": [model.geometry.grid_width, model.geometry.grid_height],
        "vertex_count": model.geometry.vertex_count,
        "triangle_count": len(model.indices) // 3,
        "height_scale": model.get_height_scale(),
    }
    result.update(_surface_summary(model))
    if contours is not None:
        result["contours"] = contours.summary()
        if not contours.aborted:
            result["features"] = contours_to_features(contours)
    return result


@shared_task(bind=True)
def run_terrain_job(self, params):
    """
    Task to build a terrain mesh and, optionally, its contours.
    Args:
        self: The Celery task instance.
        params (dict): ``elevation``, ``width``, ``height``, ``geo_bounds``,
            optional ``no_data_value``, ``reference_elevation``,
            ``contour_interval`` and ``config`` overrides.
    """
    report = _progress_reporter(self)
    try:
        model = _load_model(params, report)
        if params.get("reference_elevation") is not None:
            model.set_reference_elevation(
                params["reference_elevation"],
                regenerate_contours=False,
                on_progress=report,
            )
        contours = None
        if params.get("contour_interval"):
            contours = model.generate_contours(
                float(params["contour_interval"]), on_progress=report
            )
        result = _summarize(model, contours)
        logger.info(f"Terrain job {self.request.id} completed: {result['grid']} grid")
        return result
    except ElevationDataError as e:
        logger.warning(f"Terrain job {self.request.id} elevation data error: {e}")
        return {"status": "FAILURE", "error": str(e)}
    except Exception:
        logger.error(
            f"Terrain job {self.request.id} failed:\n{traceback.format_exc()}"
        )
        raise


@shared_task(bind=True)
def run_reference_update_job(self, params):
    """
    Task to rebuild a terrain and move its reference elevation.
    Contours are generated at ``contour_interval`` first, so the update
    exercises the same regeneration path an interactive session uses.
    Args:
        self: The Celery task instance.
        params (dict): As for ``run_terrain_job``; ``reference_elevation`` is required.
    """
    report = _progress_reporter(self)
    try:
        model = _load_model(params, report)
        if params.get("contour_interval"):
            model.generate_contours(
                float(params["contour_interval"]), on_progress=report
            )
        model.set_reference_elevation(
            float(params["reference_elevation"]), on_progress=report
        )
        result = _summarize(model, model.contours)
        result["contours_exceed_limit"] = model.contours_exceed_limit
        logger.info(
            f"Reference update job {self.request.id} completed at "
            f"{model.reference_elevation}"
        )
        return result
    except ElevationDataError as e:
        logger.warning(f"Reference update job {self.request.id} error: {e}")
        return {"status": "FAILURE", "error": str(e)}
    except Exception:
        logger.error(
            f"Reference update job {self.request.id} failed:\n{traceback.format_exc()}"
        )
        raise
