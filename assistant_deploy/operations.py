# vim: ai:sw=4:ts=4:sta:et:fo=croql
"""
Lifecycle workflows of the application, for either platform:
setup, secret rotation, deploy, scaling, ingress, stop/start, teardown, and troubleshooting.
"""
import pathlib
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

import attrs

from assistant_deploy import artifacts, const, logger
from assistant_deploy.dto import config
from assistant_deploy.gcp import app_engine, cloud_run, cloud_run_const, gcloud, iam, logs
from assistant_deploy.gcp import secrets, secrets_const

_LOGGER = logger.get(__name__)

APP_ENGINE_DEFAULT_SERVICE_ACCOUNT_TMPL: str = "{project_id}@appspot.gserviceaccount.com"
DOCTOR_LOG_WINDOW: timedelta = timedelta(hours=1)


class OperationError(Exception):
    """
    A workflow could not be completed.
    """


@attrs.define(**const.ATTRS_DEFAULTS)
class Check:  # pylint: disable=too-few-public-methods
    """
    Result of a single troubleshooting check.
    """

    name: str = attrs.field(validator=attrs.validators.instance_of(str))
    ok: bool = attrs.field(validator=attrs.validators.instance_of(bool))
    detail: str = attrs.field(default="", validator=attrs.validators.instance_of(str))

    def __str__(self) -> str:
        return f"[{'OK' if self.ok else 'FAIL'}] {self.name}: {self.detail}"


def _is_cloud_run(value: config.DeployConfig) -> bool:
    return value.platform_type == config.Platform.CLOUD_RUN


def cloud_run_name(value: config.DeployConfig) -> str:
    """
    Full Cloud Run service name for the configuration.
    """
    return cloud_run.service_name(value.project_id, value.region, value.service_name)


def app_engine_service(value: config.DeployConfig) -> str:
    """
    App Engine service path for the configuration.
    """
    return app_engine.service_path(value.project_id, value.app_engine.service)


def log_service_id(value: config.DeployConfig) -> str:
    """
    Service ID as it appears in log entries labels.
    """
    return value.service_name if _is_cloud_run(value) else value.app_engine.service


def secret_path(value: config.DeployConfig) -> str:
    """
    Secret path, without version, holding the API key.
    """
    return secrets.secret_path(value.project_id, value.secret.secret_id)


async def runtime_service_account(value: config.DeployConfig) -> Optional[str]:
    """
    Service account the application runs as, the one needing access to the secret.

    Returns:
        The configured one, otherwise the one the platform assigned.
        :py:obj:`None` if the Cloud Run service is not deployed yet.
    """
    if value.service_account:
        return value.service_account
    if _is_cloud_run(value):
        name = cloud_run_name(value)
        if not await cloud_run.exists(name):
            return None
        service = await cloud_run.get_service(name)
        return service.template.service_account or None
    return APP_ENGINE_DEFAULT_SERVICE_ACCOUNT_TMPL.format(project_id=value.project_id)


async def setup(value: config.DeployConfig, *, api_key: Optional[str] = None) -> str:
    """
    Enables the required APIs and creates the secret, adding ``api_key`` as its first version.

    Returns:
        Secret path.
    """
    _LOGGER.info("Setting up project <%s>", value.project_id)
    gcloud.enable_apis(value.project_id, value.apis)
    result = await secrets.create(value.project_id, value.secret.secret_id, content=api_key)
    if api_key is None:
        _LOGGER.warning(
            "Secret <%s> has no value yet, add one with 'assistant-deploy secrets add-version' before deploying",
            result,
        )
    return result


async def rotate_secret(
    value: config.DeployConfig, content: str, *, keep: int = secrets.DEFAULT_AMOUNT_TO_KEEP
) -> str:
    """
    Adds a new version of the API key and,
    if the Cloud Run service pins a version, points the service to the new one.
    Old versions are disabled/destroyed only after that,
    so a failed redeploy never leaves the service on a disabled version.

    Returns:
        New version name.
    """
    path = secret_path(value)
    result = await secrets.put(secret_name=path, content=content)
    if _is_cloud_run(value) and value.secret.is_pinned:
        version = result.split(secrets_const.VERSION_SUB_STR)[-1]
        _LOGGER.info(
            "Service pins secret version <%s>, switching to version <%s>", value.secret.version, version
        )
        await cloud_run.set_secret_version(cloud_run_name(value), version)
    await secrets.clean_up(secret_name=path, amount_to_keep=keep)
    return result


async def deploy(value: config.DeployConfig, source_dir: Union[str, pathlib.Path]) -> str:
    """
    Deploys the application in ``source_dir``.
    The runtime service account is granted access to the secret before deploying, if it is known.
    A new Cloud Run service without :py:attr:`config.DeployConfig.service_account`
    only gets it after the first deploy.

    Cloud Run:
        renders the ``Dockerfile``, if missing, builds the image with Cloud Build, and deploys it.

    App Engine:
        renders ``app.yaml`` and runs ``gcloud app deploy``.

    Returns:
        Service URL, if known.
    """
    source_dir = pathlib.Path(source_dir)
    path = secret_path(value)
    if not await secrets.exists(path):
        raise OperationError(
            f"Secret <{path}> does not exist, the application requires it. "
            "Create it with 'assistant-deploy setup' first."
        )
    member = await runtime_service_account(value)
    if member:
        await secrets.grant_accessor(path, iam.service_account_member(member))
    else:
        _LOGGER.warning(
            "Runtime service account of <%s> is unknown before the first deploy, "
            "set 'service_account' if the deploy fails reading the secret",
            value.service_name,
        )
    if _is_cloud_run(value):
        result = await _deploy_cloud_run(value, source_dir)
    else:
        result = await _deploy_app_engine(value, source_dir)
    if not member:
        await _grant_accessor_after_deploy(value)
    return result


async def _grant_accessor_after_deploy(value: config.DeployConfig) -> None:
    member = await runtime_service_account(value)
    if member:
        await secrets.grant_accessor(secret_path(value), iam.service_account_member(member))
    else:
        _LOGGER.warning("Could not determine runtime service account, grant secret access manually")


async def _deploy_cloud_run(value: config.DeployConfig, source_dir: pathlib.Path) -> str:
    if not (source_dir / artifacts.DOCKERFILE_NAME).exists():
        artifacts.write_artifacts(value, source_dir, app_yaml=False)
    gcloud.build_image(value.project_id, source_dir, value.image_uri)
    service = await cloud_run.deploy(value)
    return service.uri


async def _deploy_app_engine(value: config.DeployConfig, source_dir: pathlib.Path) -> str:
    artifacts.write_artifacts(value, source_dir, dockerfile=False, overwrite=True)
    gcloud.deploy_app_engine(value.project_id, source_dir)
    return f"https://{value.project_id}.appspot.com"


async def scale(
    value: config.DeployConfig,
    *,
    min_instances: Optional[int] = None,
    max_instances: Optional[int] = None,
    concurrency: Optional[int] = None,
    cpu_allocation: Optional[str] = None,
) -> None:
    """
    Updates autoscaling of the running application.
    App Engine only supports minimum and maximum instances here.
    """
    if _is_cloud_run(value):
        await cloud_run.update_scaling(
            cloud_run_name(value),
            min_instances=min_instances,
            max_instances=max_instances,
            concurrency=concurrency,
            cpu_allocation=cpu_allocation,
        )
        return
    if concurrency is not None or cpu_allocation is not None:
        raise OperationError(
            "App Engine concurrency and CPU allocation are set in app.yaml, change the config and redeploy"
        )
    version = await _serving_version(value)
    await app_engine.update_scaling(
        version.name, min_instances=min_instances, max_instances=max_instances
    )


async def set_ingress(value: config.DeployConfig, ingress: str) -> None:
    """
    Switches between public and internal-only traffic.
    """
    if _is_cloud_run(value):
        await cloud_run.set_ingress(cloud_run_name(value), ingress)
    else:
        await app_engine.set_ingress(app_engine_service(value), ingress)


async def describe(value: config.DeployConfig) -> Dict[str, Any]:
    """
    Summary of the deployed application.
    """
    result: Dict[str, Any] = {"platform": value.platform, "project_id": value.project_id}
    if _is_cloud_run(value):
        status = await cloud_run.service_status(cloud_run_name(value))
        result.update(attrs.asdict(status))
    else:
        versions = await app_engine.list_versions(app_engine_service(value))
        result["name"] = app_engine_service(value)
        result["versions"] = [attrs.asdict(info) for info in versions]
    return result


async def list_revisions(value: config.DeployConfig) -> List[Any]:
    """
    Cloud Run revisions or App Engine versions, newest first.
    """
    if _is_cloud_run(value):
        return await cloud_run.list_revisions(cloud_run_name(value))
    return await app_engine.list_versions(app_engine_service(value))


async def stop(value: config.DeployConfig) -> None:
    """
    App Engine:
        stops the serving version.

    Cloud Run:
        there is no stop, it scales to zero and only accepts internal traffic.
    """
    if _is_cloud_run(value):
        _LOGGER.info("Stopping <%s>: scaling to zero and restricting ingress", value.service_name)
        await cloud_run.update_service(
            name=cloud_run_name(value),
            values={
                cloud_run_const.CLOUD_RUN_SERVICE_SCALING_MIN_INSTANCES_PARAM: 0,
                cloud_run_const.CLOUD_RUN_SERVICE_INGRESS_PARAM: cloud_run.ingress_value(
                    config.Ingress.INTERNAL.value
                ),
            },
        )
        return
    version = await _serving_version(value)
    await app_engine.stop_version(version.name)


async def start(value: config.DeployConfig) -> None:
    """
    App Engine:
        starts the newest version.

    Cloud Run:
        restores scaling and ingress from the configuration.
    """
    if _is_cloud_run(value):
        _LOGGER.info("Starting <%s>: restoring scaling and ingress", value.service_name)
        await cloud_run.update_service(
            name=cloud_run_name(value),
            values={
                cloud_run_const.CLOUD_RUN_SERVICE_SCALING_MIN_INSTANCES_PARAM: value.scaling.min_instances,
                cloud_run_const.CLOUD_RUN_SERVICE_SCALING_MAX_INSTANCES_PARAM: value.scaling.max_instances,
                cloud_run_const.CLOUD_RUN_SERVICE_INGRESS_PARAM: cloud_run.ingress_value(value.ingress),
            },
        )
        return
    version = await app_engine.latest_version(app_engine_service(value))
    if version is None:
        raise OperationError(f"There are no versions in <{app_engine_service(value)}> to start")
    await app_engine.start_version(version.name)


async def _serving_version(value: config.DeployConfig) -> app_engine.VersionInfo:
    result = await app_engine.serving_version(app_engine_service(value))
    if result is None:
        raise OperationError(f"There is no version serving in <{app_engine_service(value)}>")
    return result


async def teardown(value: config.DeployConfig, *, delete_secret: bool = False) -> None:
    """
    Deletes the Cloud Run service or the non-serving App Engine versions, optionally the secret.
    The serving App Engine version can only go by disabling the application in the console.
    """
    if _is_cloud_run(value):
        await cloud_run.delete_service(cloud_run_name(value))
    else:
        for info in await app_engine.list_versions(app_engine_service(value)):
            if info.serving_status == "SERVING":
                _LOGGER.warning("Version <%s> is serving, stop it instead of deleting", info.name)
                continue
            await app_engine.delete_version(info.name)
    if delete_secret:
        await secrets.delete(secret_path(value))


async def doctor(value: config.DeployConfig) -> List[Check]:
    """
    Runs the troubleshooting checks, never raises for a failed check.
    """
    result = [
        await _check("gcloud authentication", _check_auth()),
        await _check("API key secret", _check_secret(value)),
        await _check("secret accessor binding", _check_accessor(value)),
        await _check("service ready", _check_service(value)),
        await _check("recent errors", _check_logs(value)),
    ]
    passed = [check for check in result if check.ok]
    _LOGGER.info("Doctor: %d of %d checks passed", len(passed), len(result))
    return result


async def _check(name: str, coro: Any) -> Check:
    try:
        ok, detail = await coro
    except Exception as err:  # pylint: disable=broad-except
        _LOGGER.debug("Check <%s> failed with %s", name, err)
        ok, detail = False, str(err)
    return Check(name=name, ok=ok, detail=detail)


async def _check_auth():
    account = gcloud.active_account()
    if account:
        return True, f"Authenticated as <{account}>"
    return False, "No active account, run 'gcloud auth login'"


async def _check_secret(value: config.DeployConfig):
    path = secret_path(value)
    if not await secrets.exists(path):
        return False, f"Secret <{path}> does not exist, run 'assistant-deploy setup'"
    versions = await secrets.list_versions(path)
    enabled = [info for info in versions if info.state == secrets_const.STATE_ENABLED]
    if not enabled:
        return False, (
            f"Secret <{path}> has no enabled version, "
            "add one with 'assistant-deploy secrets add-version'"
        )
    return True, f"Secret <{path}> latest enabled version is <{enabled[0].number}>"


async def _check_accessor(value: config.DeployConfig):
    member = await runtime_service_account(value)
    if not member:
        return False, "Could not determine the runtime service account, is the service deployed?"
    if await secrets.has_accessor(secret_path(value), iam.service_account_member(member)):
        return True, f"<{member}> has <{secrets_const.SECRET_ACCESSOR_ROLE}>"
    return False, (
        f"<{member}> lacks <{secrets_const.SECRET_ACCESSOR_ROLE}> on the secret, "
        f"run 'assistant-deploy secrets grant-access --member serviceAccount:{member}'"
    )


async def _check_service(value: config.DeployConfig):
    if _is_cloud_run(value):
        status = await cloud_run.service_status(cloud_run_name(value))
        if status.ready:
            return True, f"Revision <{status.latest_ready_revision}> serving at <{status.uri}>"
        return False, (
            f"Service not ready (reconciling: {status.reconciling}, latest created: "
            f"<{status.latest_created_revision}>, latest ready: <{status.latest_ready_revision}>). "
            f"{status.message or ''}"
        ).strip()
    version = await app_engine.serving_version(app_engine_service(value))
    if version is None:
        return False, f"No version serving in <{app_engine_service(value)}>"
    return True, f"Version <{version.id}> is serving"


async def _check_logs(value: config.DeployConfig):
    since = datetime.now(timezone.utc) - DOCTOR_LOG_WINDOW
    filter_ = logs.build_filter(
        value.platform, log_service_id(value), severity="ERROR", since=since
    )
    lines = await logs.read(value.project_id, filter_, limit=logs.DEFAULT_LIMIT)
    if not lines:
        return True, f"No ERROR entries in the last {DOCTOR_LOG_WINDOW}"
    # reading stops at the limit
    amount = f"At least {len(lines)}" if len(lines) >= logs.DEFAULT_LIMIT else str(len(lines))
    return False, (
        f"{amount} ERROR entries in the last {DOCTOR_LOG_WINDOW}, latest: {lines[0].message}"
    )
