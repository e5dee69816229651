# vim: ai:sw=4:ts=4:sta:et:fo=croql
# pylint: disable=missing-module-docstring,missing-class-docstring,missing-function-docstring
# pylint: disable=missing-function-docstring,assignment-from-no-return,c-extension-no-member
# pylint: disable=protected-access,redefined-outer-name,using-constant-test,redefined-builtin
# pylint: disable=invalid-name,attribute-defined-outside-init,too-few-public-methods
# type: ignore
from typing import Any, Dict, List, Optional
import types

import pytest

from assistant_deploy import artifacts, operations
from assistant_deploy.dto import config
from assistant_deploy.gcp import (
    app_engine,
    cloud_run,
    cloud_run_const,
    gcloud,
    logs,
    secrets,
    secrets_const,
)

from tests import common

_TEST_APP_ENGINE_SERVICE: str = f"apps/{common.TEST_PROJECT_ID}/services/default"
_TEST_SA_MEMBER: str = f"serviceAccount:{common.TEST_SERVICE_ACCOUNT}"


class _Recorder:
    def __init__(self):
        self.called: Dict[str, List[Any]] = {}
        self.order: List[str] = []

    def sync(self, name: str, result: Any = None, error: Optional[Exception] = None):
        def func(*args, **kwargs):
            self.called.setdefault(name, []).append((args, kwargs))
            self.order.append(name)
            if error is not None:
                raise error
            return result

        return func

    def coro(self, name: str, result: Any = None, error: Optional[Exception] = None):
        sync_func = self.sync(name, result, error)

        async def func(*args, **kwargs):
            return sync_func(*args, **kwargs)

        return func


def _version_info(version_id: str, status: str) -> app_engine.VersionInfo:
    return app_engine.VersionInfo(
        name=f"{_TEST_APP_ENGINE_SERVICE}/versions/{version_id}", id=version_id, serving_status=status
    )


def _mock_operations(  # pylint: disable=too-many-arguments
    monkeypatch,
    *,
    service_exists: bool = True,
    secret_exists: bool = True,
    versions: Optional[List[secrets.SecretVersionInfo]] = None,
    has_accessor: bool = True,
    status: Optional[cloud_run.ServiceStatus] = None,
    log_lines: Optional[List[logs.LogLine]] = None,
    app_versions: Optional[List[app_engine.VersionInfo]] = None,
    account: Optional[str] = "student@example.com",
) -> _Recorder:
    rec = _Recorder()
    service = types.SimpleNamespace(
        template=types.SimpleNamespace(service_account=common.TEST_SERVICE_ACCOUNT),
        uri="https://test-assistant.a.run.app",
    )
    if versions is None:
        versions = [
            secrets.SecretVersionInfo(name=f"{common.TEST_SECRET_PATH}/versions/2", state="ENABLED"),
            secrets.SecretVersionInfo(name=f"{common.TEST_SECRET_PATH}/versions/1", state="DISABLED"),
        ]
    if status is None:
        status = cloud_run.ServiceStatus(
            name=common.TEST_CLOUD_RUN_NAME, uri=service.uri, ready=True, latest_ready_revision="rev-1"
        )
    if app_versions is None:
        app_versions = [_version_info("v2", "STOPPED"), _version_info("v1", "SERVING")]
    serving = [info for info in app_versions if info.serving_status == "SERVING"]
    # gcloud
    monkeypatch.setattr(gcloud, gcloud.enable_apis.__name__, rec.sync("enable_apis"))
    monkeypatch.setattr(gcloud, gcloud.build_image.__name__, rec.sync("build_image"))
    monkeypatch.setattr(gcloud, gcloud.deploy_app_engine.__name__, rec.sync("deploy_app_engine"))
    monkeypatch.setattr(gcloud, gcloud.active_account.__name__, rec.sync("active_account", account))
    # secrets
    monkeypatch.setattr(secrets, secrets.create.__name__, rec.coro("secrets.create", common.TEST_SECRET_PATH))
    monkeypatch.setattr(
        secrets, secrets.put.__name__, rec.coro("secrets.put", f"{common.TEST_SECRET_PATH}/versions/3")
    )
    monkeypatch.setattr(secrets, secrets.clean_up.__name__, rec.coro("secrets.clean_up"))
    monkeypatch.setattr(secrets, secrets.exists.__name__, rec.coro("secrets.exists", secret_exists))
    monkeypatch.setattr(secrets, secrets.list_versions.__name__, rec.coro("secrets.list_versions", versions))
    monkeypatch.setattr(secrets, secrets.grant_accessor.__name__, rec.coro("secrets.grant_accessor", True))
    monkeypatch.setattr(secrets, secrets.has_accessor.__name__, rec.coro("secrets.has_accessor", has_accessor))
    monkeypatch.setattr(secrets, secrets.delete.__name__, rec.coro("secrets.delete"))
    # cloud run
    monkeypatch.setattr(cloud_run, cloud_run.exists.__name__, rec.coro("cloud_run.exists", service_exists))
    monkeypatch.setattr(cloud_run, cloud_run.get_service.__name__, rec.coro("cloud_run.get_service", service))
    monkeypatch.setattr(cloud_run, cloud_run.deploy.__name__, rec.coro("cloud_run.deploy", service))
    monkeypatch.setattr(cloud_run, cloud_run.update_scaling.__name__, rec.coro("cloud_run.update_scaling"))
    monkeypatch.setattr(cloud_run, cloud_run.update_service.__name__, rec.coro("cloud_run.update_service"))
    monkeypatch.setattr(cloud_run, cloud_run.set_ingress.__name__, rec.coro("cloud_run.set_ingress"))
    monkeypatch.setattr(
        cloud_run, cloud_run.set_secret_version.__name__, rec.coro("cloud_run.set_secret_version")
    )
    monkeypatch.setattr(cloud_run, cloud_run.service_status.__name__, rec.coro("cloud_run.service_status", status))
    monkeypatch.setattr(cloud_run, cloud_run.list_revisions.__name__, rec.coro("cloud_run.list_revisions", []))
    monkeypatch.setattr(cloud_run, cloud_run.delete_service.__name__, rec.coro("cloud_run.delete_service"))
    # app engine
    monkeypatch.setattr(
        app_engine, app_engine.list_versions.__name__, rec.coro("app_engine.list_versions", app_versions)
    )
    monkeypatch.setattr(
        app_engine, app_engine.serving_version.__name__, rec.coro("app_engine.serving_version", (serving or [None])[0])
    )
    monkeypatch.setattr(
        app_engine,
        app_engine.latest_version.__name__,
        rec.coro("app_engine.latest_version", (app_versions or [None])[0]),
    )
    monkeypatch.setattr(app_engine, app_engine.stop_version.__name__, rec.coro("app_engine.stop_version"))
    monkeypatch.setattr(app_engine, app_engine.start_version.__name__, rec.coro("app_engine.start_version"))
    monkeypatch.setattr(app_engine, app_engine.update_scaling.__name__, rec.coro("app_engine.update_scaling"))
    monkeypatch.setattr(app_engine, app_engine.set_ingress.__name__, rec.coro("app_engine.set_ingress"))
    monkeypatch.setattr(app_engine, app_engine.delete_version.__name__, rec.coro("app_engine.delete_version"))
    # logs
    monkeypatch.setattr(logs, logs.read.__name__, rec.coro("logs.read", log_lines or []))
    return rec


###########
#  Setup  #
###########


@pytest.mark.asyncio
async def test_setup_ok(monkeypatch):
    # Given
    rec = _mock_operations(monkeypatch)
    cfg = common.create_deploy_config()
    # When
    result = await operations.setup(cfg, api_key="TEST_KEY")
    # Then
    assert result == common.TEST_SECRET_PATH
    assert rec.called["enable_apis"][0][0] == (common.TEST_PROJECT_ID, cfg.apis)
    args, kwargs = rec.called["secrets.create"][0]
    assert args == (common.TEST_PROJECT_ID, common.TEST_SECRET_ID)
    assert kwargs == {"content": "TEST_KEY"}


#####################
#  Secret rotation  #
#####################


@pytest.mark.asyncio
async def test_rotate_secret_ok_latest(monkeypatch):
    # Given
    rec = _mock_operations(monkeypatch)
    # When
    result = await operations.rotate_secret(common.create_deploy_config(), "NEW_KEY", keep=3)
    # Then
    assert result == f"{common.TEST_SECRET_PATH}/versions/3"
    assert rec.called["secrets.put"][0][1] == {"secret_name": common.TEST_SECRET_PATH, "content": "NEW_KEY"}
    assert rec.called["secrets.clean_up"][0][1] == {"secret_name": common.TEST_SECRET_PATH, "amount_to_keep": 3}
    assert "cloud_run.set_secret_version" not in rec.called
    assert "cloud_run.deploy" not in rec.called


@pytest.mark.asyncio
async def test_rotate_secret_ok_pinned_switches_version_before_clean_up(monkeypatch):
    # Given
    rec = _mock_operations(monkeypatch)
    cfg = common.create_deploy_config(secret=config.SecretBinding(secret_id=common.TEST_SECRET_ID, version="2"))
    # When
    await operations.rotate_secret(cfg, "NEW_KEY")
    # Then
    assert rec.called["cloud_run.set_secret_version"][0][0] == (common.TEST_CLOUD_RUN_NAME, "3")
    assert "cloud_run.deploy" not in rec.called
    assert rec.order == ["secrets.put", "cloud_run.set_secret_version", "secrets.clean_up"]


@pytest.mark.asyncio
async def test_rotate_secret_nok_pinned_switch_fails_keeps_old_versions(monkeypatch):
    # Given
    rec = _mock_operations(monkeypatch)
    monkeypatch.setattr(
        cloud_run,
        "set_secret_version",
        rec.coro("cloud_run.set_secret_version", error=cloud_run.CloudRunServiceError("TEST")),
    )
    cfg = common.create_deploy_config(secret=config.SecretBinding(secret_id=common.TEST_SECRET_ID, version="2"))
    # When/Then
    with pytest.raises(cloud_run.CloudRunServiceError):
        await operations.rotate_secret(cfg, "NEW_KEY")
    assert "secrets.clean_up" not in rec.called


@pytest.mark.asyncio
async def test_rotate_secret_ok_pinned_app_engine_no_redeploy(monkeypatch):
    # Given
    rec = _mock_operations(monkeypatch)
    cfg = common.create_app_engine_config(secret=config.SecretBinding(secret_id=common.TEST_SECRET_ID, version="2"))
    # When
    await operations.rotate_secret(cfg, "NEW_KEY")
    # Then
    assert "cloud_run.set_secret_version" not in rec.called
    assert "cloud_run.deploy" not in rec.called


############
#  Deploy  #
############


@pytest.mark.asyncio
async def test_deploy_ok_cloud_run(monkeypatch, tmp_path):
    # Given
    rec = _mock_operations(monkeypatch)
    cfg = common.create_deploy_config()
    # When
    result = await operations.deploy(cfg, tmp_path)
    # Then
    assert result == "https://test-assistant.a.run.app"
    assert (tmp_path / artifacts.DOCKERFILE_NAME).exists()
    assert not (tmp_path / artifacts.APP_YAML_NAME).exists()
    assert rec.called["build_image"][0][0] == (common.TEST_PROJECT_ID, tmp_path, cfg.image_uri)
    assert rec.called["cloud_run.deploy"][0][0] == (cfg,)
    assert rec.called["secrets.grant_accessor"] == [((common.TEST_SECRET_PATH, _TEST_SA_MEMBER), {})]
    assert rec.order.index("secrets.grant_accessor") < rec.order.index("cloud_run.deploy")


@pytest.mark.asyncio
async def test_deploy_nok_cloud_run_grants_configured_account_first(monkeypatch, tmp_path):
    # Given
    rec = _mock_operations(monkeypatch, service_exists=False)
    monkeypatch.setattr(
        cloud_run,
        "deploy",
        rec.coro("cloud_run.deploy", error=cloud_run.CloudRunServiceError("Permission denied on secret")),
    )
    cfg = common.create_deploy_config(service_account=common.TEST_SERVICE_ACCOUNT)
    # When/Then
    with pytest.raises(cloud_run.CloudRunServiceError):
        await operations.deploy(cfg, tmp_path)
    assert rec.called["secrets.grant_accessor"][0][0] == (common.TEST_SECRET_PATH, _TEST_SA_MEMBER)
    assert rec.order.index("secrets.grant_accessor") < rec.order.index("cloud_run.deploy")


@pytest.mark.asyncio
async def test_deploy_ok_cloud_run_new_service_grants_after_deploy(monkeypatch, tmp_path):
    # Given
    rec = _mock_operations(monkeypatch)

    async def exists(name: str) -> bool:  # pylint: disable=unused-argument
        return "cloud_run.deploy" in rec.called

    monkeypatch.setattr(cloud_run, "exists", exists)
    # When
    await operations.deploy(common.create_deploy_config(), tmp_path)
    # Then
    assert rec.called["secrets.grant_accessor"] == [((common.TEST_SECRET_PATH, _TEST_SA_MEMBER), {})]
    assert rec.order.index("cloud_run.deploy") < rec.order.index("secrets.grant_accessor")


@pytest.mark.asyncio
async def test_deploy_ok_cloud_run_keeps_existing_dockerfile(monkeypatch, tmp_path):
    # Given
    _mock_operations(monkeypatch)
    dockerfile = tmp_path / artifacts.DOCKERFILE_NAME
    dockerfile.write_text("FROM scratch\n", encoding="UTF-8")
    # When
    await operations.deploy(common.create_deploy_config(), tmp_path)
    # Then
    assert dockerfile.read_text(encoding="UTF-8") == "FROM scratch\n"


@pytest.mark.asyncio
async def test_deploy_ok_app_engine(monkeypatch, tmp_path):
    # Given
    rec = _mock_operations(monkeypatch)
    cfg = common.create_app_engine_config()
    # When
    result = await operations.deploy(cfg, tmp_path)
    # Then
    assert result == f"https://{common.TEST_PROJECT_ID}.appspot.com"
    assert (tmp_path / artifacts.APP_YAML_NAME).exists()
    assert rec.called["deploy_app_engine"][0][0] == (common.TEST_PROJECT_ID, tmp_path)
    assert "build_image" not in rec.called
    member = f"serviceAccount:{common.TEST_PROJECT_ID}@appspot.gserviceaccount.com"
    assert rec.called["secrets.grant_accessor"] == [((common.TEST_SECRET_PATH, member), {})]
    assert rec.order.index("secrets.grant_accessor") < rec.order.index("deploy_app_engine")


@pytest.mark.asyncio
async def test_deploy_nok_no_secret(monkeypatch, tmp_path):
    # Given
    rec = _mock_operations(monkeypatch, secret_exists=False)
    # When/Then
    with pytest.raises(operations.OperationError):
        await operations.deploy(common.create_deploy_config(), tmp_path)
    assert "build_image" not in rec.called


#############
#  Scaling  #
#############


@pytest.mark.asyncio
async def test_scale_ok_cloud_run(monkeypatch):
    # Given
    rec = _mock_operations(monkeypatch)
    # When
    await operations.scale(common.create_deploy_config(), min_instances=1, cpu_allocation="always")
    # Then
    args, kwargs = rec.called["cloud_run.update_scaling"][0]
    assert args == (common.TEST_CLOUD_RUN_NAME,)
    assert kwargs == dict(min_instances=1, max_instances=None, concurrency=None, cpu_allocation="always")


@pytest.mark.asyncio
async def test_scale_ok_app_engine(monkeypatch):
    # Given
    rec = _mock_operations(monkeypatch)
    # When
    await operations.scale(common.create_app_engine_config(), max_instances=4)
    # Then
    args, kwargs = rec.called["app_engine.update_scaling"][0]
    assert args == (f"{_TEST_APP_ENGINE_SERVICE}/versions/v1",)
    assert kwargs == dict(min_instances=None, max_instances=4)


@pytest.mark.asyncio
async def test_scale_nok_app_engine_concurrency(monkeypatch):
    # Given
    _mock_operations(monkeypatch)
    # When/Then
    with pytest.raises(operations.OperationError):
        await operations.scale(common.create_app_engine_config(), concurrency=10)


@pytest.mark.asyncio
async def test_scale_nok_app_engine_nothing_serving(monkeypatch):
    # Given
    _mock_operations(monkeypatch, app_versions=[_version_info("v1", "STOPPED")])
    # When/Then
    with pytest.raises(operations.OperationError):
        await operations.scale(common.create_app_engine_config(), max_instances=4)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "cfg,expected_call,expected_name",
    [
        (common.create_deploy_config(), "cloud_run.set_ingress", common.TEST_CLOUD_RUN_NAME),
        (common.create_app_engine_config(), "app_engine.set_ingress", _TEST_APP_ENGINE_SERVICE),
    ],
)
async def test_set_ingress_ok(monkeypatch, cfg, expected_call, expected_name):
    # Given
    rec = _mock_operations(monkeypatch)
    # When
    await operations.set_ingress(cfg, "internal")
    # Then
    assert rec.called[expected_call][0][0] == (expected_name, "internal")


################
#  Stop/Start  #
################


@pytest.mark.asyncio
async def test_stop_ok_cloud_run(monkeypatch):
    # Given
    rec = _mock_operations(monkeypatch)
    # When
    await operations.stop(common.create_deploy_config())
    # Then
    kwargs = rec.called["cloud_run.update_service"][0][1]
    assert kwargs["name"] == common.TEST_CLOUD_RUN_NAME
    assert kwargs["values"][cloud_run_const.CLOUD_RUN_SERVICE_SCALING_MIN_INSTANCES_PARAM] == 0
    assert kwargs["values"][cloud_run_const.CLOUD_RUN_SERVICE_INGRESS_PARAM] == cloud_run.ingress_value("internal")


@pytest.mark.asyncio
async def test_start_ok_cloud_run_restores_config(monkeypatch):
    # Given
    rec = _mock_operations(monkeypatch)
    cfg = common.create_deploy_config(scaling=config.ScalingConfig(min_instances=1, max_instances=3))
    # When
    await operations.start(cfg)
    # Then
    values = rec.called["cloud_run.update_service"][0][1]["values"]
    assert values[cloud_run_const.CLOUD_RUN_SERVICE_SCALING_MIN_INSTANCES_PARAM] == 1
    assert values[cloud_run_const.CLOUD_RUN_SERVICE_SCALING_MAX_INSTANCES_PARAM] == 3
    assert values[cloud_run_const.CLOUD_RUN_SERVICE_INGRESS_PARAM] == cloud_run.ingress_value("all")


@pytest.mark.asyncio
async def test_stop_start_ok_app_engine(monkeypatch):
    # Given
    rec = _mock_operations(monkeypatch)
    cfg = common.create_app_engine_config()
    # When
    await operations.stop(cfg)
    await operations.start(cfg)
    # Then
    assert rec.called["app_engine.stop_version"][0][0] == (f"{_TEST_APP_ENGINE_SERVICE}/versions/v1",)
    assert rec.called["app_engine.start_version"][0][0] == (f"{_TEST_APP_ENGINE_SERVICE}/versions/v2",)


@pytest.mark.asyncio
async def test_start_nok_app_engine_no_versions(monkeypatch):
    # Given
    _mock_operations(monkeypatch, app_versions=[])
    # When/Then
    with pytest.raises(operations.OperationError):
        await operations.start(common.create_app_engine_config())


##############
#  Describe  #
##############


@pytest.mark.asyncio
async def test_describe_ok_cloud_run(monkeypatch):
    # Given
    _mock_operations(monkeypatch)
    # When
    result = await operations.describe(common.create_deploy_config())
    # Then
    assert result["platform"] == "cloud_run"
    assert result["ready"]
    assert result["uri"] == "https://test-assistant.a.run.app"


@pytest.mark.asyncio
async def test_describe_ok_app_engine(monkeypatch):
    # Given
    _mock_operations(monkeypatch)
    # When
    result = await operations.describe(common.create_app_engine_config())
    # Then
    assert result["name"] == _TEST_APP_ENGINE_SERVICE
    assert [version["id"] for version in result["versions"]] == ["v2", "v1"]


##############
#  Teardown  #
##############


@pytest.mark.asyncio
@pytest.mark.parametrize("delete_secret", [True, False])
async def test_teardown_ok_cloud_run(monkeypatch, delete_secret):
    # Given
    rec = _mock_operations(monkeypatch)
    # When
    await operations.teardown(common.create_deploy_config(), delete_secret=delete_secret)
    # Then
    assert rec.called["cloud_run.delete_service"][0][0] == (common.TEST_CLOUD_RUN_NAME,)
    assert ("secrets.delete" in rec.called) == delete_secret


@pytest.mark.asyncio
async def test_teardown_ok_app_engine_skips_serving(monkeypatch):
    # Given
    rec = _mock_operations(monkeypatch)
    # When
    await operations.teardown(common.create_app_engine_config())
    # Then
    deleted = [args[0] for args, _ in rec.called["app_engine.delete_version"]]
    assert deleted == [f"{_TEST_APP_ENGINE_SERVICE}/versions/v2"]


############
#  Doctor  #
############


@pytest.mark.asyncio
async def test_doctor_ok_all_pass(monkeypatch):
    # Given
    _mock_operations(monkeypatch)
    # When
    result = await operations.doctor(common.create_deploy_config())
    # Then
    assert len(result) == 5
    assert all(check.ok for check in result), [str(check) for check in result]
    assert "version is <2>" in result[1].detail


@pytest.mark.asyncio
async def test_doctor_ok_reports_failures(monkeypatch):
    # Given
    _mock_operations(
        monkeypatch,
        account=None,
        versions=[secrets.SecretVersionInfo(name=f"{common.TEST_SECRET_PATH}/versions/1", state="DISABLED")],
        has_accessor=False,
        status=cloud_run.ServiceStatus(name=common.TEST_CLOUD_RUN_NAME, reconciling=True),
        log_lines=[logs.LogLine(severity="ERROR", message="Missing GEMINI_API_KEY")],
    )
    # When
    result = await operations.doctor(common.create_deploy_config())
    # Then
    assert not any(check.ok for check in result)
    details = {check.name: check.detail for check in result}
    assert "gcloud auth login" in details["gcloud authentication"]
    assert "no enabled version" in details["API key secret"]
    assert secrets_const.SECRET_ACCESSOR_ROLE in details["secret accessor binding"]
    assert "reconciling: True" in details["service ready"]
    assert "Missing GEMINI_API_KEY" in details["recent errors"]
    assert details["recent errors"].startswith("1 ERROR entries")


@pytest.mark.asyncio
async def test_doctor_ok_recent_errors_at_limit(monkeypatch):
    # Given
    lines = [logs.LogLine(severity="ERROR", message=f"boom {i}") for i in range(logs.DEFAULT_LIMIT)]
    _mock_operations(monkeypatch, log_lines=lines)
    # When
    result = await operations.doctor(common.create_deploy_config())
    # Then
    assert not result[4].ok
    assert result[4].detail.startswith(f"At least {logs.DEFAULT_LIMIT} ERROR entries")
    assert "boom 0" in result[4].detail


@pytest.mark.asyncio
async def test_doctor_ok_check_raising_is_reported(monkeypatch):
    # Given
    _mock_operations(monkeypatch)
    failing = _Recorder().sync("active_account", error=gcloud.GcloudCommandError("no gcloud"))
    monkeypatch.setattr(gcloud, "active_account", failing)
    # When
    result = await operations.doctor(common.create_deploy_config())
    # Then
    assert not result[0].ok
    assert result[0].detail == "no gcloud"
    assert all(check.ok for check in result[1:])


@pytest.mark.asyncio
async def test_doctor_ok_secret_missing(monkeypatch):
    # Given
    _mock_operations(monkeypatch, secret_exists=False)
    # When
    result = await operations.doctor(common.create_deploy_config())
    # Then
    assert not result[1].ok
    assert "assistant-deploy setup" in result[1].detail


@pytest.mark.asyncio
async def test_runtime_service_account_ok_not_deployed(monkeypatch):
    # Given
    _mock_operations(monkeypatch, service_exists=False)
    # When/Then
    assert await operations.runtime_service_account(common.create_deploy_config()) is None
    assert (
        await operations.runtime_service_account(
            common.create_deploy_config(service_account=common.TEST_SERVICE_ACCOUNT)
        )
        == common.TEST_SERVICE_ACCOUNT
    )
