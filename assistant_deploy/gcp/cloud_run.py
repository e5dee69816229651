# vim: ai:sw=4:ts=4:sta:et:fo=croql
# pylint: disable=line-too-long
"""
GCP `Cloud Run`_ entry point focused on control plane APIs.

.. _Cloud Run: https://cloud.google.com/python/docs/reference/run/latest
"""
# pylint: enable=line-too-long
import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import attrs
from google.api_core import exceptions
from google.cloud import run_v2

from assistant_deploy import const, logger
from assistant_deploy.dto import config
from assistant_deploy.gcp import cloud_run_const, iam, resource_name

_LOGGER = logger.get(__name__)

_INGRESS_TO_RUN: Dict[config.Ingress, run_v2.IngressTraffic] = {
    config.Ingress.ALL: run_v2.IngressTraffic.INGRESS_TRAFFIC_ALL,
    config.Ingress.INTERNAL: run_v2.IngressTraffic.INGRESS_TRAFFIC_INTERNAL_ONLY,
    config.Ingress.INTERNAL_AND_LB: run_v2.IngressTraffic.INGRESS_TRAFFIC_INTERNAL_LOAD_BALANCER,
}


class CloudRunServiceError(Exception):
    """
    To encapsulate all exceptions operating on CloudRun.
    """


@attrs.define(**const.ATTRS_DEFAULTS)
class RevisionInfo:  # pylint: disable=too-few-public-methods
    """
    Summary of a service revision.
    """

    name: str = attrs.field(validator=attrs.validators.instance_of(str))
    create_time: Optional[str] = attrs.field(default=None)
    min_instances: Optional[int] = attrs.field(default=None)
    max_instances: Optional[int] = attrs.field(default=None)
    concurrency: Optional[int] = attrs.field(default=None)


@attrs.define(**const.ATTRS_DEFAULTS)
class ServiceStatus:  # pylint: disable=too-few-public-methods
    """
    Readiness summary of a service.
    """

    name: str = attrs.field(validator=attrs.validators.instance_of(str))
    uri: Optional[str] = attrs.field(default=None)
    ready: bool = attrs.field(default=False)
    reconciling: bool = attrs.field(default=False)
    latest_ready_revision: Optional[str] = attrs.field(default=None)
    latest_created_revision: Optional[str] = attrs.field(default=None)
    message: Optional[str] = attrs.field(default=None)


def service_name(project_id: str, region: str, service_id: str) -> str:
    """
    Builds the full service name::
        projects/<<project id>>/locations/<<region>>/services/<<service id>>
    """
    result = cloud_run_const.CLOUD_RUN_NAME_TMPL.format(
        project_id=project_id, region=region, service_id=service_id
    )
    validate_cloud_run_resource_name(result)
    return result


def validate_cloud_run_resource_name(value: str, *, raise_if_invalid: bool = True) -> List[str]:
    """
    Validates the ``value`` against the pattern:
        "projects/my-project-123/locations/my-location-123/services/my-service-123".

    Args:
        value: Could Run resource name to be validated.
        raise_if_invalid: if :py:obj:`True` will raise exception if ``value`` is not valid.

    Returns:
        If ``raise_if_invalid`` if :py:obj:`False` will contain all reasons
            why the validation failed.
    """
    return resource_name.validate_resource_name(
        value=value,
        tokens=cloud_run_const.CLOUD_RUN_NAME_TOKENS,
        raise_if_invalid=raise_if_invalid,
    )


def _run_client() -> run_v2.ServicesClient:
    return run_v2.ServicesClient()


def _revisions_client() -> run_v2.RevisionsClient:
    return run_v2.RevisionsClient()


def ingress_value(ingress: str) -> run_v2.IngressTraffic:
    """
    Maps ``all``, ``internal``, or ``internal_and_lb`` to :py:class:`run_v2.IngressTraffic`.
    """
    ingress_type = config.Ingress.from_str(ingress)
    if ingress_type is None:
        raise ValueError(f"Ingress must be one of {config.Ingress.values()}. Got: <{ingress}>")
    return _INGRESS_TO_RUN[ingress_type]


async def get_service(name: str) -> run_v2.Service:
    # pylint: disable=line-too-long
    """
    Wrapper for :py:meth:`run_v2.ServicesClient.get_service` (`documentation`_).

    Args:
        name: full service name, e.g.:
            `projects/my-project-123/locations/my-location-123/services/my-service-123`.

    Returns:
        Service

    Raises:
        py:class:`CloudRunServiceError` any error accessing the CloudRun control plane.

    .. _documentation: https://cloud.google.com/python/docs/reference/run/latest/google.cloud.run_v2.services.services.ServicesClient#google_cloud_run_v2_services_services_ServicesClient_get_service
    """
    # pylint: enable=line-too-long
    _LOGGER.debug("Getting service <%s>", name)
    validate_cloud_run_resource_name(name)
    await asyncio.sleep(0)
    try:
        result = _run_client().get_service(request={"name": name})
    except Exception as err:
        raise CloudRunServiceError(f"Could not retrieve service <{name}>. Error: {err}") from err
    return result


async def exists(name: str) -> bool:
    """
    Checks if the service exists.
    """
    validate_cloud_run_resource_name(name)
    await asyncio.sleep(0)
    try:
        _run_client().get_service(request={"name": name})
    except exceptions.NotFound:
        return False
    except Exception as err:
        raise CloudRunServiceError(f"Could not check service <{name}>. Error: {err}") from err
    return True


async def can_be_deployed(name: str) -> Tuple[bool, Optional[str]]:
    # pylint: disable=line-too-long
    """
    A wrapper around :py:func:`get_service` and returning ``NOT reconciling`` field.
    Check ``reconciling`` in `Service`_ definition.

    Returns:
        A tuple in the form ``(<can_enact: bool>, <reason for False: str>)``.

    .. _Service: https://cloud.google.com/python/docs/reference/run/latest/google.cloud.run_v2.types.Service
    """
    # pylint: enable=line-too-long
    reason = None
    _LOGGER.debug("Checking readiness of service <%s>", name)
    try:
        service = await get_service(name)
        if service.reconciling:
            reason = f"Service <{name}> is reconciling, try again later."
    except Exception as err:  # pylint: disable=broad-except
        reason = f"Could not retrieve service with name <{name}>. Error: {err}"
        _LOGGER.exception(reason)
    return reason is None, reason


async def service_status(name: str) -> ServiceStatus:
    """
    Summarizes the readiness of the service based on its terminal condition.
    """
    service = await get_service(name)
    condition = service.terminal_condition
    state = getattr(condition.state, "name", str(condition.state)) if condition else None
    ready = (
        state == cloud_run_const.CONDITION_SUCCEEDED
        and not service.reconciling
        and bool(service.latest_ready_revision)
        and service.latest_ready_revision == service.latest_created_revision
    )
    return ServiceStatus(
        name=name,
        uri=service.uri or None,
        ready=ready,
        reconciling=bool(service.reconciling),
        latest_ready_revision=service.latest_ready_revision or None,
        latest_created_revision=service.latest_created_revision or None,
        message=(condition.message or None) if condition else None,
    )


def build_service(value: config.DeployConfig) -> run_v2.Service:
    """
    Creates the :py:class:`run_v2.Service` definition for the configuration.
    The API key is injected as an environment variable referencing Secret Manager,
    it is never copied into the service definition.
    """
    secret_env = run_v2.EnvVar(
        name=value.secret.env_var,
        value_source=run_v2.EnvVarSource(
            secret_key_ref=run_v2.SecretKeySelector(
                secret=value.secret.secret_id, version=value.secret.version
            )
        ),
    )
    container = run_v2.Container(
        image=value.image_uri,
        ports=[run_v2.ContainerPort(container_port=value.build.port)],
        env=[secret_env],
        resources=run_v2.ResourceRequirements(cpu_idle=value.scaling.cpu_idle),
    )
    template = run_v2.RevisionTemplate(
        containers=[container],
        scaling=run_v2.RevisionScaling(
            min_instance_count=value.scaling.min_instances,
            max_instance_count=value.scaling.max_instances,
        ),
        max_instance_request_concurrency=value.scaling.concurrency,
    )
    if value.service_account:
        template.service_account = value.service_account
    return run_v2.Service(template=template, ingress=ingress_value(value.ingress))


async def deploy(value: config.DeployConfig) -> run_v2.Service:
    """
    Creates the service, if it does not exist, or replaces its revision template.
    Public access is granted if :py:attr:`config.DeployConfig.allow_unauthenticated`.

    Returns:
        Deployed service.
    """
    name = service_name(value.project_id, value.region, value.service_name)
    service = build_service(value)
    _set_revision(service, value.service_name, cloud_run_const.CLOUD_RUN_REVISION_DEPLOY_SUFFIX)
    if await exists(name):
        _LOGGER.info("Service <%s> exists, deploying a new revision with <%s>", name, value.image_uri)
        current = await get_service(name)
        current.template = service.template
        current.ingress = service.ingress
        result = await _send_update(name, _clean_service_for_update_request(current))
    else:
        _LOGGER.info("Creating service <%s> with image <%s>", name, value.image_uri)
        result = await _create_service(value, service)
    if value.allow_unauthenticated:
        await set_public_access(name, True)
    return result


async def _create_service(value: config.DeployConfig, service: run_v2.Service) -> run_v2.Service:
    parent = cloud_run_const.CLOUD_RUN_PARENT_TMPL.format(
        project_id=value.project_id, region=value.region
    )
    request = {"parent": parent, "service": service, "service_id": value.service_name}
    await asyncio.sleep(0)
    try:
        operation = _run_client().create_service(request=request)
        result = operation.result()
    except Exception as err:
        raise CloudRunServiceError(
            f"Could not create service <{value.service_name}> in <{parent}>. Error: {err}"
        ) from err
    _LOGGER.info("Created service <%s>", value.service_name)
    return result


async def update_service(*, name: str, values: Dict[str, Any]) -> run_v2.Service:
    # pylint: disable=line-too-long
    """
    Wrapper for :py:meth:`run_v2.ServicesClient.update_service` (`documentation`_).

    Args:
        name: full service name, e.g.:
            `projects/my-project-123/locations/my-location-123/services/my-service-123`.
        values: simple `x-path`_ like paths, to the values to be updated in the Cloud Run service,
            mapped to what the end-node should contain. Numeric path entries index lists.

    Returns:
        Updated service.

    .. _documentation: https://cloud.google.com/python/docs/reference/run/latest/google.cloud.run_v2.services.services.ServicesClient#google_cloud_run_v2_services_services_ServicesClient_update_service
    .. _x-path: https://en.wikipedia.org/wiki/XPath
    """
    # pylint: enable=line-too-long
    _LOGGER.debug("Updating service <%s> with <%s>", name, values)
    validate_cloud_run_resource_name(name)
    if not isinstance(values, dict) or not values:
        raise TypeError(
            f"Values must be a non-empty {dict.__name__}. Got: <{values}>({type(values)})"
        )
    for path in values:
        if not isinstance(path, str) or not path.strip():
            raise TypeError(f"Path must be a non-empty {str.__name__}. Got: <{path}>({type(path)})")
    service = await get_service(name)
    for path, value in values.items():
        _set_service_value_by_path(service, path.strip(), value)
    service = _clean_service_for_update_request(service)
    _set_revision(service, name.split("/")[-1], cloud_run_const.CLOUD_RUN_REVISION_UPDATE_SUFFIX)
    result = await _send_update(name, service)
    for path, value in values.items():
        _validate_service(result, path.strip(), value)
    return result


async def _send_update(name: str, service: Any) -> run_v2.Service:
    request = _create_update_request(service)
    await asyncio.sleep(0)
    try:
        operation = _run_client().update_service(request=request)
        result = operation.result()
    except Exception as err:
        raise CloudRunServiceError(f"Could not update service <{name}>. Error: {err}") from err
    _LOGGER.info("Update request for service <%s> applied", name)
    return result


def _create_update_request(service: run_v2.Service, **kwargs) -> run_v2.UpdateServiceRequest:
    """For testing"""
    return run_v2.UpdateServiceRequest(service=service, **kwargs)


async def update_scaling(
    name: str,
    *,
    min_instances: Optional[int] = None,
    max_instances: Optional[int] = None,
    concurrency: Optional[int] = None,
    cpu_allocation: Optional[str] = None,
) -> run_v2.Service:
    """
    Updates the autoscaling parameters given, leaving the others untouched.
    """
    config.validate_scaling(
        min_instances=min_instances, max_instances=max_instances, concurrency=concurrency
    )
    values = {}
    if min_instances is not None:
        values[cloud_run_const.CLOUD_RUN_SERVICE_SCALING_MIN_INSTANCES_PARAM] = min_instances
    if max_instances is not None:
        values[cloud_run_const.CLOUD_RUN_SERVICE_SCALING_MAX_INSTANCES_PARAM] = max_instances
    if concurrency is not None:
        values[cloud_run_const.CLOUD_RUN_SERVICE_SCALING_CONCURRENCY_PARAM] = concurrency
    if cpu_allocation is not None:
        cpu = config.CpuAllocation.from_str(cpu_allocation)
        if cpu is None:
            raise ValueError(
                f"CPU allocation must be one of {config.CpuAllocation.values()}. Got: <{cpu_allocation}>"
            )
        cpu_idle = cpu == config.CpuAllocation.REQUEST_ONLY
        values[cloud_run_const.CLOUD_RUN_SERVICE_CPU_IDLE_PARAM] = cpu_idle
    if not values:
        raise ValueError("At least one scaling parameter must be given")
    return await update_service(name=name, values=values)


async def set_ingress(name: str, ingress: str) -> run_v2.Service:
    """
    Switches between public and internal-only traffic.
    """
    values = {cloud_run_const.CLOUD_RUN_SERVICE_INGRESS_PARAM: ingress_value(ingress)}
    return await update_service(name=name, values=values)


async def set_secret_version(name: str, version: str) -> run_v2.Service:
    """
    Points the API key environment variable to another secret version.
    Only the version changes, scaling and ingress of the live service are kept.
    """
    if not isinstance(version, str) or not version.strip():
        raise ValueError(f"Version must be a non-empty string. Got: <{version}>({type(version)})")
    values = {cloud_run_const.CLOUD_RUN_SERVICE_SECRET_VERSION_PARAM: version.strip()}
    return await update_service(name=name, values=values)


async def set_public_access(name: str, allow: bool) -> bool:
    """
    Adds, or removes, ``allUsers`` as :py:data:`cloud_run_const.CLOUD_RUN_INVOKER_ROLE`.

    Returns:
        :py:obj:`True` if the policy changed.
    """
    validate_cloud_run_resource_name(name)
    await asyncio.sleep(0)
    try:
        client = _run_client()
        policy = client.get_iam_policy(request={"resource": name})
        if allow:
            changed = iam.add_member(
                policy, role=cloud_run_const.CLOUD_RUN_INVOKER_ROLE, member=iam.ALL_USERS_MEMBER
            )
        else:
            changed = iam.remove_member(
                policy, role=cloud_run_const.CLOUD_RUN_INVOKER_ROLE, member=iam.ALL_USERS_MEMBER
            )
        if changed:
            client.set_iam_policy(request={"resource": name, "policy": policy})
    except Exception as err:
        raise CloudRunServiceError(
            f"Could not set public access to <{allow}> on <{name}>. Error: {err}"
        ) from err
    _LOGGER.info("Public access on <%s> set to <%s> (changed: %s)", name, allow, changed)
    return changed


async def list_revisions(name: str) -> List[RevisionInfo]:
    """
    Lists the revisions of the service, newest first.
    """
    validate_cloud_run_resource_name(name)
    await asyncio.sleep(0)
    try:
        revisions = list(_revisions_client().list_revisions(request={"parent": name}))
    except Exception as err:
        raise CloudRunServiceError(f"Could not list revisions of <{name}>. Error: {err}") from err
    result = [
        RevisionInfo(
            name=rev.name.split("/")[-1],
            create_time=str(rev.create_time) if rev.create_time else None,
            min_instances=rev.scaling.min_instance_count,
            max_instances=rev.scaling.max_instance_count,
            concurrency=rev.max_instance_request_concurrency,
        )
        for rev in revisions
    ]
    result.sort(key=lambda info: info.create_time or "", reverse=True)
    return result


async def delete_service(name: str) -> None:
    """
    Deletes the service and all its revisions.
    """
    validate_cloud_run_resource_name(name)
    await asyncio.sleep(0)
    try:
        operation = _run_client().delete_service(request={"name": name})
        operation.result()
    except exceptions.NotFound:
        _LOGGER.warning("Service <%s> does not exist, nothing to delete", name)
        return
    except Exception as err:
        raise CloudRunServiceError(f"Could not delete service <{name}>. Error: {err}") from err
    _LOGGER.info("Deleted service <%s>", name)


def _set_service_value_by_path(service: Any, path: str, value: Any) -> Any:
    # pylint: disable=line-too-long
    """
    Set `value` on :py:class:`run_v2.Service` (`documentation`_) based on `path`.
    .. _documentation: https://cloud.google.com/python/docs/reference/run/latest/google.cloud.run_v2.types.Service
    """
    # pylint: enable=line-too-long
    node, attr_name = _get_parent_node_attribute_based_on_path(service, path)
    setattr(node, attr_name, value)
    return service


def _get_parent_node_attribute_based_on_path(value: Any, path: str) -> Tuple[Any, str]:
    result = value
    split_path = path.split(cloud_run_const.REQUEST_PATH_SEP)
    for entry in split_path[:-1]:
        if entry.isdigit():
            result = result[int(entry)]
        else:
            result = getattr(result, entry)
    return result, split_path[-1]


def _get_value_by_path(value: Any, path: str) -> Any:
    node, attr_name = _get_parent_node_attribute_based_on_path(value, path)
    return getattr(node, attr_name)


def _clean_service_for_update_request(value: Any) -> Any:
    for path in cloud_run_const.CLOUD_RUN_UPDATE_REQUEST_SERVICE_PATHS_TO_REMOVE:
        node, attr_name = _get_parent_node_attribute_based_on_path(value, path)
        setattr(node, attr_name, None)
    return value


def _set_revision(service: Any, service_id: str, suffix: str) -> Any:
    node, attr_name = _get_parent_node_attribute_based_on_path(
        service, cloud_run_const.CLOUD_RUN_SERVICE_REVISION_PATH
    )
    setattr(node, attr_name, _create_revision(service_id, suffix))
    return service


def _create_revision(service_id: str, suffix: str) -> str:
    ts_int = int(datetime.now(timezone.utc).timestamp())
    return cloud_run_const.CLOUD_RUN_REVISION_TMPL.format(
        service_id=service_id, suffix=suffix, timestamp=ts_int
    )


def _validate_service(service: Any, path: str, value: Any, raise_if_invalid: bool = True) -> Any:
    # pylint: disable=line-too-long
    """
    Get current `value` from :py:class:`run_v2.Service` (`documentation`_) based on `path`
        and compare to desired/target `value`.
    .. _documentation: https://cloud.google.com/python/docs/reference/run/latest/google.cloud.run_v2.types.Service
    """
    # pylint: enable=line-too-long
    current = _get_value_by_path(service, path)
    if current != value:
        msg = (
            f"Current value <{current}> is not desired value <{value}> "
            f"for path <{path}> in <{service.name}>"
        )
        if raise_if_invalid:
            raise CloudRunServiceError(msg)
        _LOGGER.error(msg)
    return service
