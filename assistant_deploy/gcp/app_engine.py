# vim: ai:sw=4:ts=4:sta:et:fo=croql
# pylint: disable=line-too-long
"""
GCP `App Engine Admin`_ entry point to operate deployed versions.
Deploying new versions requires staging the source, which is left to ``gcloud app deploy``.

.. _App Engine Admin: https://cloud.google.com/python/docs/reference/appengine/latest
"""
# pylint: enable=line-too-long
import asyncio
from typing import Any, Dict, List, Optional

import attrs
from google.api_core import exceptions
from google.cloud import appengine_admin_v1
from google.protobuf import field_mask_pb2

from assistant_deploy import const, logger
from assistant_deploy.dto import config
from assistant_deploy.gcp import resource_name

_LOGGER = logger.get(__name__)

APP_ENGINE_VERSION_TOKENS: List[str] = ["apps", "services", "versions"]
APP_ENGINE_SERVICE_TOKENS: List[str] = ["apps", "services"]
_VERSION_NAME_TMPL: str = "apps/{project_id}/services/{service_id}/versions/{version_id}"
_SERVICE_PATH_TMPL: str = "apps/{project_id}/services/{service_id}"

SERVING_STATUS_MASK: str = "serving_status"
MIN_INSTANCES_MASK: str = "automatic_scaling.standard_scheduler_settings.min_instances"
MAX_INSTANCES_MASK: str = "automatic_scaling.standard_scheduler_settings.max_instances"
NETWORK_SETTINGS_MASK: str = "network_settings"

_IngressTrafficAllowed = appengine_admin_v1.NetworkSettings.IngressTrafficAllowed
_INGRESS_TO_APP_ENGINE: Dict[config.Ingress, Any] = {
    config.Ingress.ALL: _IngressTrafficAllowed.INGRESS_TRAFFIC_ALLOWED_ALL,
    config.Ingress.INTERNAL: _IngressTrafficAllowed.INGRESS_TRAFFIC_ALLOWED_INTERNAL_ONLY,
    config.Ingress.INTERNAL_AND_LB: _IngressTrafficAllowed.INGRESS_TRAFFIC_ALLOWED_INTERNAL_AND_LB,
}


class AppEngineError(Exception):
    """
    To encapsulate all exceptions operating on App Engine.
    """


@attrs.define(**const.ATTRS_DEFAULTS)
class VersionInfo:  # pylint: disable=too-few-public-methods
    """
    Summary of a deployed version.
    """

    name: str = attrs.field(validator=attrs.validators.instance_of(str))
    id: str = attrs.field(validator=attrs.validators.instance_of(str))
    serving_status: str = attrs.field(validator=attrs.validators.instance_of(str))
    create_time: Optional[str] = attrs.field(default=None)


def version_name(project_id: str, service_id: str, version_id: str) -> str:
    """
    Builds::
        apps/<<project id>>/services/<<service id>>/versions/<<version id>>
    """
    result = _VERSION_NAME_TMPL.format(project_id=project_id, service_id=service_id, version_id=version_id)
    resource_name.validate_resource_name(value=result, tokens=APP_ENGINE_VERSION_TOKENS)
    return result


def service_path(project_id: str, service_id: str) -> str:
    """
    Builds::
        apps/<<project id>>/services/<<service id>>
    """
    result = _SERVICE_PATH_TMPL.format(project_id=project_id, service_id=service_id)
    resource_name.validate_resource_name(value=result, tokens=APP_ENGINE_SERVICE_TOKENS)
    return result


def _versions_client() -> appengine_admin_v1.VersionsClient:
    return appengine_admin_v1.VersionsClient()


def _services_client() -> appengine_admin_v1.ServicesClient:
    return appengine_admin_v1.ServicesClient()


def _status_name(value: Any) -> str:
    return getattr(value, "name", str(value))


async def list_versions(parent: str) -> List[VersionInfo]:
    """
    Lists versions of a service, newest first.

    Args:
        parent: in the format ``apps/<<project id>>/services/<<service id>>``.
    """
    resource_name.validate_resource_name(value=parent, tokens=APP_ENGINE_SERVICE_TOKENS)
    await asyncio.sleep(0)
    try:
        versions = list(_versions_client().list_versions(request={"parent": parent}))
    except Exception as err:
        raise AppEngineError(f"Could not list versions of <{parent}>. Error: {err}") from err
    result = [
        VersionInfo(
            name=version.name,
            id=version.id,
            serving_status=_status_name(version.serving_status),
            create_time=str(version.create_time) if version.create_time else None,
        )
        for version in versions
    ]
    result.sort(key=lambda info: info.create_time or "", reverse=True)
    return result


async def get_version(name: str) -> appengine_admin_v1.Version:
    """
    Describes a version.
    """
    resource_name.validate_resource_name(value=name, tokens=APP_ENGINE_VERSION_TOKENS)
    await asyncio.sleep(0)
    try:
        result = _versions_client().get_version(request={"name": name})
    except Exception as err:
        raise AppEngineError(f"Could not retrieve version <{name}>. Error: {err}") from err
    return result


async def stop_version(name: str) -> appengine_admin_v1.Version:
    """
    Stops serving. Only applies to versions with manual or basic scaling.
    """
    return await _set_serving_status(name, appengine_admin_v1.ServingStatus.STOPPED)


async def start_version(name: str) -> appengine_admin_v1.Version:
    """
    Resumes serving.
    """
    return await _set_serving_status(name, appengine_admin_v1.ServingStatus.SERVING)


async def _set_serving_status(name: str, status: Any) -> appengine_admin_v1.Version:
    version = appengine_admin_v1.Version(serving_status=status)
    return await _update_version(name, version, [SERVING_STATUS_MASK])


async def update_scaling(
    name: str, *, min_instances: Optional[int] = None, max_instances: Optional[int] = None
) -> appengine_admin_v1.Version:
    """
    Updates automatic scaling of a standard environment version.
    """
    config.validate_scaling(min_instances=min_instances, max_instances=max_instances)
    settings = appengine_admin_v1.StandardSchedulerSettings()
    mask = []
    if min_instances is not None:
        settings.min_instances = min_instances
        mask.append(MIN_INSTANCES_MASK)
    if max_instances is not None:
        settings.max_instances = max_instances
        mask.append(MAX_INSTANCES_MASK)
    if not mask:
        raise ValueError("At least one scaling parameter must be given")
    version = appengine_admin_v1.Version(
        automatic_scaling=appengine_admin_v1.AutomaticScaling(standard_scheduler_settings=settings)
    )
    return await _update_version(name, version, mask)


async def _update_version(name: str, version: Any, mask: List[str]) -> appengine_admin_v1.Version:
    resource_name.validate_resource_name(value=name, tokens=APP_ENGINE_VERSION_TOKENS)
    request = {"name": name, "version": version, "update_mask": field_mask_pb2.FieldMask(paths=mask)}
    _LOGGER.debug("Updating version <%s> fields <%s>", name, mask)
    await asyncio.sleep(0)
    try:
        operation = _versions_client().update_version(request=request)
        result = operation.result()
    except Exception as err:
        raise AppEngineError(f"Could not update <{mask}> of version <{name}>. Error: {err}") from err
    _LOGGER.info("Updated <%s> of version <%s>", mask, name)
    return result


async def set_ingress(name: str, ingress: str) -> appengine_admin_v1.Service:
    """
    Switches the service between public and internal-only traffic.

    Args:
        name: in the format ``apps/<<project id>>/services/<<service id>>``.
        ingress: ``all``, ``internal``, or ``internal_and_lb``.
    """
    resource_name.validate_resource_name(value=name, tokens=APP_ENGINE_SERVICE_TOKENS)
    ingress_type = config.Ingress.from_str(ingress)
    if ingress_type is None:
        raise ValueError(f"Ingress must be one of {config.Ingress.values()}. Got: <{ingress}>")
    service = appengine_admin_v1.Service(
        network_settings=appengine_admin_v1.NetworkSettings(
            ingress_traffic_allowed=_INGRESS_TO_APP_ENGINE[ingress_type]
        )
    )
    request = {
        "name": name,
        "service": service,
        "update_mask": field_mask_pb2.FieldMask(paths=[NETWORK_SETTINGS_MASK]),
    }
    await asyncio.sleep(0)
    try:
        operation = _services_client().update_service(request=request)
        result = operation.result()
    except Exception as err:
        raise AppEngineError(f"Could not set ingress <{ingress}> on <{name}>. Error: {err}") from err
    _LOGGER.info("Set ingress of <%s> to <%s>", name, ingress)
    return result


async def delete_version(name: str) -> None:
    """
    Deletes a version, it must not be receiving traffic.
    """
    resource_name.validate_resource_name(value=name, tokens=APP_ENGINE_VERSION_TOKENS)
    await asyncio.sleep(0)
    try:
        operation = _versions_client().delete_version(request={"name": name})
        operation.result()
    except exceptions.NotFound:
        _LOGGER.warning("Version <%s> does not exist, nothing to delete", name)
        return
    except Exception as err:
        raise AppEngineError(f"Could not delete version <{name}>. Error: {err}") from err
    _LOGGER.info("Deleted version <%s>", name)


async def serving_version(parent: str) -> Optional[VersionInfo]:
    """
    Newest version currently serving, if any.
    """
    for info in await list_versions(parent):
        if info.serving_status == appengine_admin_v1.ServingStatus.SERVING.name:
            return info
    return None


async def latest_version(parent: str) -> Optional[VersionInfo]:
    """
    Newest version, regardless of status.
    """
    versions = await list_versions(parent)
    return versions[0] if versions else None
