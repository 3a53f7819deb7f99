import pytest

from config.celery import app as celery_app
from terrainmesh.models import COMPUTE_COLORS, CREATE_CONTOURS, GENERATE_NORMALS
from terrainmesh.tasks import (
    _progress_reporter,
    run_reference_update_job,
    run_terrain_job,
)


@pytest.fixture
def progress_log(monkeypatch):
    """Capture the PROGRESS states the jobs publish."""
    log = []

    def fake_update_state(task_id=None, state=None, meta=None, **kwargs):
        log.append((state, meta))

    for task in (run_terrain_job, run_reference_update_job):
        monkeypatch.setattr(task, "update_state", fake_update_state)
    return log


@pytest.fixture
def ramp_params(grids):
    grid = grids.sloped(10, 10, 0.0, 100.0)
    return {
        "elevation": grid.ravel().tolist(),
        "width": 10,
        "height": 10,
        "geo_bounds": [0.0, 0.0, 1000.0, 1000.0],
        "config": {
            "target_polygons": 100_000,
            "gpu_displacement": False,
            "contour_simplify_tolerance": 0.0,
            "not_a_setting": True,
        },
    }


def test_celery_app_uses_project_settings():
    assert celery_app.main == "terrainmesh"
    assert celery_app.conf.task_serializer == "json"


def test_progress_reporter_publishes_stage():
    calls = []

    class FakeTask:
        def update_state(self, state=None, meta=None):
            calls.append((state, meta))

    _progress_reporter(FakeTask())(COMPUTE_COLORS, 0.5)
    assert calls == [("PROGRESS", {"stage": COMPUTE_COLORS, "progress": 0.5})]


def test_terrain_job_summary(ramp_params, progress_log):
    result = run_terrain_job.apply(args=[ramp_params]).get()
    assert result["status"] == "SUCCESS"
    assert result["grid"] == [10, 10]
    assert result["vertex_count"] == 100
    assert result["triangle_count"] == 162
    assert result["reference_elevation"] == 100.0
    assert result["depth_range"] == [0.0, 100.0]
    assert result["elevation"]["valid_fraction"] == 1.0
    assert result["height_scale"] == pytest.approx(4.0 / 1000.0)
    assert result["real_world_scale"] == 1000.0
    assert result["z_exaggeration"] == 4.0
    assert result["center"] == pytest.approx([500.0, 500.0])
    assert "contours" not in result

    stages = {meta["stage"] for state, meta in progress_log}
    assert {state for state, _ in progress_log} == {"PROGRESS"}
    assert {COMPUTE_COLORS, GENERATE_NORMALS} <= stages


def test_terrain_job_with_contours(ramp_params, progress_log):
    params = dict(ramp_params, reference_elevation=60.0, contour_interval=20)
    result = run_terrain_job.apply(args=[params]).get()
    assert result["reference_elevation"] == 60.0
    assert result["contours"]["aborted"] is False
    assert [f["elevation"] for f in result["features"]] == [40.0, 20.0]
    assert any(meta["stage"] == CREATE_CONTOURS for _, meta in progress_log)


def test_terrain_job_reports_bad_elevation(ramp_params, progress_log):
    params = dict(ramp_params, width=7)
    result = run_terrain_job.apply(args=[params]).get()
    assert result["status"] == "FAILURE"
    assert "expected 7x10" in result["error"]


def test_terrain_job_reraises_unexpected_errors(ramp_params, progress_log):
    params = dict(ramp_params)
    del params["geo_bounds"]
    with pytest.raises(KeyError):
        run_terrain_job.apply(args=[params]).get()


def test_reference_update_job_regenerates_contours(ramp_params, progress_log):
    params = dict(ramp_params, reference_elevation=50.0, contour_interval=10)
    result = run_reference_update_job.apply(args=[params]).get()
    assert result["status"] == "SUCCESS"
    assert result["reference_elevation"] == 50.0
    assert result["contours_exceed_limit"] is False
    assert [f["elevation"] for f in result["features"]] == [40.0, 30.0, 20.0, 10.0]


def test_reference_update_job_respects_vertex_budget(ramp_params, progress_log):
    params = dict(ramp_params, reference_elevation=50.0, contour_interval=10)
    params["config"] = dict(ramp_params["config"], max_contour_vertices=4)
    result = run_reference_update_job.apply(args=[params]).get()
    assert result["contours_exceed_limit"] is True
    assert "contours" not in result
