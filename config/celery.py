from celery import Celery

# Create the Celery app with the project name.
app = Celery("terrainmesh")

# Load any custom config from the settings module, using keys that start with "CELERY_"
app.config_from_object("config.settings", namespace="CELERY")

# Auto-discover task modules in the terrainmesh package.
app.autodiscover_tasks(["terrainmesh"])
