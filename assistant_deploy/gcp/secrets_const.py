# vim: ai:sw=4:ts=4:sta:et:fo=croql
"""
Default values related to Secret Manager.
"""
from typing import List

###################
#  Resource name  #
###################

SECRET_NAME_TOKENS: List[str] = ["projects", "secrets", "versions"]

VERSION_SUB_STR: str = "/versions/"
DEFAULT_GCP_SECRET_VERSION: str = "latest"

GCP_SECRET_PATH_TMPL: str = "projects/{project_id}/secrets/{secret_id}"
GCP_SECRET_NAME_TMPL: str = GCP_SECRET_PATH_TMPL + "/versions/{version}"
GCP_PROJECT_TMPL: str = "projects/{project_id}"

#############
#  Listing  #
#############

NOT_DESTROYED_FILTER: str = "state:(ENABLED OR DISABLED)"
STATE_ENABLED: str = "ENABLED"
STATE_DISABLED: str = "DISABLED"

#########
#  IAM  #
#########

SECRET_ACCESSOR_ROLE: str = "roles/secretmanager.secretAccessor"
