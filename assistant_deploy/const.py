# vim: ai:sw=4:ts=4:sta:et:fo=croql
"""
Default values shared across the package. To create an attributes class use::

    import attrs

    @attrs.define(**const.ATTRS_DEFAULTS)
    class MyAttrs: pass
"""
from typing import Dict, List

###########
#  ATTRS  #
###########

ATTRS_DEFAULTS: Dict[str, bool] = dict(
    kw_only=True,
    str=True,
    repr=True,
    eq=True,
    hash=True,
    frozen=True,
    slots=True,
)

ENCODING_UTF8: str = "UTF-8"

#################
#  Environment  #
#################

PROJECT_ENV_VAR: str = "GCP_PROJECT"
REGION_ENV_VAR: str = "GCP_REGION"

##############
#  Defaults  #
##############

DEFAULT_CONFIG_FILE: str = "deploy.yaml"
DEFAULT_REGION: str = "us-central1"
DEFAULT_SERVICE_NAME: str = "student-assistant"
DEFAULT_IMAGE_TMPL: str = "gcr.io/{project_id}/{service_name}"

DEFAULT_API_KEY_SECRET_ID: str = "GEMINI_API_KEY"
DEFAULT_SECRET_VERSION: str = "latest"
# App Engine gets <<env var>>_SECRET, the secret version to read <<env var>> from at startup
SECRET_REF_ENV_VAR_SUFFIX: str = "_SECRET"

DEFAULT_PORT: int = 8080
DEFAULT_BASE_IMAGE: str = "python:3.11-slim"
DEFAULT_REQUIREMENTS_FILE: str = "requirements.txt"
DEFAULT_START_COMMAND: str = (
    "gunicorn --bind :$PORT --workers 1 --threads 8 --timeout 0 main:app"
)

DEFAULT_APP_ENGINE_RUNTIME: str = "python311"
DEFAULT_APP_ENGINE_ENTRYPOINT: str = "gunicorn -b :$PORT main:app"
DEFAULT_APP_ENGINE_SERVICE: str = "default"

DEFAULT_APIS: List[str] = [
    "run.googleapis.com",
    "cloudbuild.googleapis.com",
    "secretmanager.googleapis.com",
    "appengine.googleapis.com",
    "logging.googleapis.com",
]

PORT_PLACEHOLDER: str = "$PORT"
