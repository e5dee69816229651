# vim: ai:sw=4:ts=4:sta:et:fo=croql
# pylint: disable=missing-module-docstring,missing-class-docstring,missing-function-docstring
# pylint: disable=missing-function-docstring,assignment-from-no-return,c-extension-no-member
# pylint: disable=protected-access,redefined-outer-name,using-constant-test,redefined-builtin
# pylint: disable=invalid-name,attribute-defined-outside-init,too-few-public-methods
# type: ignore
import pytest
import yaml

from assistant_deploy import artifacts, const
from assistant_deploy.dto import config

from tests import common


def test_render_dockerfile_ok_defaults():
    # Given/When
    result = artifacts.render_dockerfile(config.BuildConfig())
    lines = result.splitlines()
    # Then
    assert lines[0] == f"FROM {const.DEFAULT_BASE_IMAGE}"
    assert "COPY requirements.txt ." in lines
    assert "RUN pip install --no-cache-dir -r requirements.txt" in lines
    assert "COPY . ." in lines
    assert "ENV PORT=8080" in lines
    assert "EXPOSE 8080" in lines
    assert lines[-1] == f"CMD exec {const.DEFAULT_START_COMMAND}"
    # dependencies are installed before the source is copied
    assert lines.index("RUN pip install --no-cache-dir -r requirements.txt") < lines.index("COPY . .")


def test_render_dockerfile_ok_custom():
    # Given
    build = config.BuildConfig(
        base_image="python:3.12-slim",
        requirements_file="requirements-prod.txt",
        port=9000,
        start_command="python main.py",
    )
    # When
    result = artifacts.render_dockerfile(build)
    # Then
    assert "FROM python:3.12-slim" in result
    assert "COPY requirements-prod.txt ." in result
    assert "EXPOSE 9000" in result
    assert "CMD exec python main.py" in result


def test_render_dockerfile_nok():
    with pytest.raises(TypeError):
        artifacts.render_dockerfile({"port": 8080})


def test_render_app_yaml_ok_defaults():
    # Given
    cfg = common.create_app_engine_config()
    # When
    result = yaml.safe_load(artifacts.render_app_yaml(cfg))
    # Then
    assert result["runtime"] == const.DEFAULT_APP_ENGINE_RUNTIME
    assert result["entrypoint"] == "gunicorn -b :$PORT main:app"
    assert "service" not in result
    assert result["env_variables"] == {"GEMINI_API_KEY_SECRET": f"{common.TEST_SECRET_PATH}/versions/latest"}
    assert result["automatic_scaling"] == {"min_instances": 0, "max_instances": 10, "max_concurrent_requests": 80}
    assert result["handlers"] == [
        {"url": "/static", "static_dir": "static"},
        {"url": "/.*", "script": "auto"},
    ]


def test_render_app_yaml_ok_key_order():
    # Given
    cfg = common.create_app_engine_config()
    # When
    result = artifacts.render_app_yaml(cfg)
    # Then
    assert result.startswith("runtime: ")
    assert result.index("entrypoint:") < result.index("handlers:")


def test_render_app_yaml_ok_custom():
    # Given
    app_cfg = config.AppEngineConfig(
        service="assistant",
        env_variables={"DEBUG": "false", "WORKERS": 2},
        handlers=[{"script": "auto", "url": "/.*"}],
    )
    cfg = common.create_app_engine_config(app_engine=app_cfg, service_account=common.TEST_SERVICE_ACCOUNT)
    # When
    result = yaml.safe_load(artifacts.render_app_yaml(cfg))
    # Then
    assert result["service"] == "assistant"
    assert result["env_variables"] == {
        "DEBUG": "false",
        "WORKERS": "2",
        "GEMINI_API_KEY_SECRET": f"{common.TEST_SECRET_PATH}/versions/latest",
    }
    assert result["service_account"] == common.TEST_SERVICE_ACCOUNT
    assert list(result["handlers"][0]) == ["url", "script"]


def test_render_app_yaml_ok_pinned_secret_reference():
    # Given
    cfg = common.create_app_engine_config(
        secret=config.SecretBinding(secret_id=common.TEST_SECRET_ID, env_var="GEMINI_API_KEY", version="4")
    )
    # When
    result = yaml.safe_load(artifacts.render_app_yaml(cfg))
    # Then
    assert result["env_variables"] == {"GEMINI_API_KEY_SECRET": f"{common.TEST_SECRET_PATH}/versions/4"}
    assert "GEMINI_API_KEY" not in result["env_variables"]


def test_render_app_yaml_nok_entrypoint_without_port():
    # Given
    cfg = common.create_app_engine_config(app_engine=config.AppEngineConfig(entrypoint="gunicorn -b :8080 main:app"))
    # When/Then
    with pytest.raises(ValueError):
        artifacts.render_app_yaml(cfg)


def test_write_artifacts_ok(tmp_path):
    # Given
    cfg = common.create_deploy_config()
    # When
    result = artifacts.write_artifacts(cfg, tmp_path)
    # Then
    assert [path.name for path in result] == [artifacts.DOCKERFILE_NAME, artifacts.APP_YAML_NAME]
    assert (tmp_path / artifacts.DOCKERFILE_NAME).read_text(encoding=const.ENCODING_UTF8).startswith("FROM ")
    assert yaml.safe_load((tmp_path / artifacts.APP_YAML_NAME).read_text(encoding=const.ENCODING_UTF8))


def test_write_artifacts_nok_exists(tmp_path):
    # Given
    cfg = common.create_deploy_config()
    existing = tmp_path / artifacts.DOCKERFILE_NAME
    existing.write_text("FROM scratch\n", encoding=const.ENCODING_UTF8)
    # When/Then
    with pytest.raises(artifacts.ArtifactExistsError):
        artifacts.write_artifacts(cfg, tmp_path)
    assert existing.read_text(encoding=const.ENCODING_UTF8) == "FROM scratch\n"
    assert not (tmp_path / artifacts.APP_YAML_NAME).exists()


def test_write_artifacts_ok_overwrite(tmp_path):
    # Given
    cfg = common.create_deploy_config()
    existing = tmp_path / artifacts.DOCKERFILE_NAME
    existing.write_text("FROM scratch\n", encoding=const.ENCODING_UTF8)
    # When
    artifacts.write_artifacts(cfg, tmp_path, app_yaml=False, overwrite=True)
    # Then
    assert existing.read_text(encoding=const.ENCODING_UTF8).startswith(f"FROM {const.DEFAULT_BASE_IMAGE}")
    assert not (tmp_path / artifacts.APP_YAML_NAME).exists()


def test_write_artifacts_nok_missing_dir(tmp_path):
    with pytest.raises(FileNotFoundError):
        artifacts.write_artifacts(common.create_deploy_config(), tmp_path / "missing")
