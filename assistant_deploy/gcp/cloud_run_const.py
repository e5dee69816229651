# vim: ai:sw=4:ts=4:sta:et:fo=croql
# pylint: disable=line-too-long
"""
Default values related to Cloud Run.

Paths correspond to attributes in the API, starting from `Service`_, e.g.:
    `Service`_.`RevisionTemplate`_.`RevisionScaling`_

.. _Service: https://cloud.google.com/python/docs/reference/run/latest/google.cloud.run_v2.types.Service
.. _RevisionTemplate: https://cloud.google.com/python/docs/reference/run/latest/google.cloud.run_v2.types.RevisionTemplate
.. _RevisionScaling: https://cloud.google.com/python/docs/reference/run/latest/google.cloud.run_v2.types.RevisionScaling
"""
# pylint: enable=line-too-long
from typing import List

###################
#  Resource name  #
###################

CLOUD_RUN_NAME_TOKENS: List[str] = ["projects", "locations", "services"]
CLOUD_RUN_NAME_TMPL: str = "projects/{project_id}/locations/{region}/services/{service_id}"
CLOUD_RUN_PARENT_TMPL: str = "projects/{project_id}/locations/{region}"

###########################
#  Update Request: paths  #
###########################

REQUEST_PATH_SEP: str = "."

CLOUD_RUN_SERVICE_SCALING_MIN_INSTANCES_PARAM: str = REQUEST_PATH_SEP.join(
    ["template", "scaling", "min_instance_count"]
)
CLOUD_RUN_SERVICE_SCALING_MAX_INSTANCES_PARAM: str = REQUEST_PATH_SEP.join(
    ["template", "scaling", "max_instance_count"]
)
CLOUD_RUN_SERVICE_SCALING_CONCURRENCY_PARAM: str = REQUEST_PATH_SEP.join(
    ["template", "max_instance_request_concurrency"]
)
# the application runs a single container
CLOUD_RUN_SERVICE_CPU_IDLE_PARAM: str = REQUEST_PATH_SEP.join(
    ["template", "containers", "0", "resources", "cpu_idle"]
)
CLOUD_RUN_SERVICE_INGRESS_PARAM: str = "ingress"
# the API key is the first environment variable of the container
CLOUD_RUN_SERVICE_SECRET_VERSION_PARAM: str = REQUEST_PATH_SEP.join(
    ["template", "containers", "0", "env", "0", "value_source", "secret_key_ref", "version"]
)

############################
#  Update Request: ignore  #
############################

CLOUD_RUN_UPDATE_REQUEST_SERVICE_PATHS_TO_REMOVE: List[str] = [
    "etag",
    "create_time",
    "creator",
    "delete_time",
    "generation",
    "last_modifier",
    "latest_created_revision",
    "latest_ready_revision",
    "launch_stage",
    "observed_generation",
    "traffic",
    "traffic_statuses",
    "uid",
    "update_time",
]

##############################
#  Update Request: revision  #
##############################

CLOUD_RUN_SERVICE_REVISION_PATH: str = REQUEST_PATH_SEP.join(["template", "revision"])
CLOUD_RUN_REVISION_TMPL: str = "{service_id}-{suffix}-{timestamp}"
CLOUD_RUN_REVISION_DEPLOY_SUFFIX: str = "deploy"
CLOUD_RUN_REVISION_UPDATE_SUFFIX: str = "update"

#########
#  IAM  #
#########

CLOUD_RUN_INVOKER_ROLE: str = "roles/run.invoker"

################
#  Conditions  #
################

CONDITION_SUCCEEDED: str = "CONDITION_SUCCEEDED"
