"""Settings for the terrain mesh pipeline.

Every value can be overridden with an environment variable of the same name.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


DEBUG = _env_bool("DEBUG", False)
DEBUG_IMAGE_PATH = os.environ.get("DEBUG_IMAGE_PATH", str(BASE_DIR / "debug"))

# Mesh sizing
TARGET_POLYGONS = int(os.environ.get("TARGET_POLYGONS", 3_000_000))
MODEL_SIZE = float(os.environ.get("MODEL_SIZE", 1.0))
MAX_TEXTURE_SIZE = int(os.environ.get("MAX_TEXTURE_SIZE", 16384))

# Vertical exaggeration
MIN_Z_EXAGGERATION = float(os.environ.get("MIN_Z_EXAGGERATION", 1.0))
MAX_Z_EXAGGERATION = float(os.environ.get("MAX_Z_EXAGGERATION", 10.0))
DEFAULT_Z_EXAGGERATION = float(os.environ.get("DEFAULT_Z_EXAGGERATION", 4.0))

NORMAL_MAP_STRENGTH = float(os.environ.get("NORMAL_MAP_STRENGTH", 5.0))

# Contours
CONTOUR_HEIGHT_OFFSET = float(os.environ.get("CONTOUR_HEIGHT_OFFSET", 1e-6))
CONTOUR_SIMPLIFY_TOLERANCE = float(os.environ.get("CONTOUR_SIMPLIFY_TOLERANCE", 1e-4))
MAX_CONTOUR_VERTICES = int(os.environ.get("MAX_CONTOUR_VERTICES", 2_000_000))

# Cooperative chunk sizes
COLOR_CHUNK_SIZE = int(os.environ.get("COLOR_CHUNK_SIZE", 10000))
FILTER_CHUNK_SIZE = int(os.environ.get("FILTER_CHUNK_SIZE", 5000))
NORMAL_ROW_CHUNK = int(os.environ.get("NORMAL_ROW_CHUNK", 50))

# Celery
CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL", "redis://localhost:6379/0")
# In-process result store unless a real backend is configured
CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND", "cache+memory://")
CELERY_TASK_ALWAYS_EAGER = _env_bool("CELERY_TASK_ALWAYS_EAGER", False)
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_SERIALIZER = "json"
CELERY_ACCEPT_CONTENT = ["json"]
