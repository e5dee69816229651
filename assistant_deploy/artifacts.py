# vim: ai:sw=4:ts=4:sta:et:fo=croql
"""
Renders the deployment artifacts:

* ``Dockerfile``: the container build contract for Cloud Run;
* ``app.yaml``: the App Engine platform configuration file.
"""
import pathlib
from typing import Any, Dict, List, Union

import yaml

from assistant_deploy import const, logger
from assistant_deploy.dto import config
from assistant_deploy.gcp import secrets

_LOGGER = logger.get(__name__)

DOCKERFILE_NAME: str = "Dockerfile"
APP_YAML_NAME: str = "app.yaml"

_DOCKERFILE_TMPL: str = """\
FROM {base_image}

ENV PYTHONUNBUFFERED=1
WORKDIR /app

COPY {requirements_file} .
RUN pip install --no-cache-dir -r {requirements_file}

COPY . .

ENV PORT={port}
EXPOSE {port}

CMD exec {start_command}
"""


class ArtifactExistsError(Exception):
    """An artifact would overwrite an existing file."""


def render_dockerfile(value: config.BuildConfig) -> str:
    """
    Build from the base runtime image, install declared dependencies, copy the source,
    expose one port, and launch the start command. The start command runs through a shell
    so ``$PORT`` is expanded when the container starts.
    """
    if not isinstance(value, config.BuildConfig):
        raise TypeError(f"Value must be an instance of {config.BuildConfig.__name__}. Got: <{type(value)}>")
    return _DOCKERFILE_TMPL.format(
        base_image=value.base_image,
        requirements_file=value.requirements_file,
        port=value.port,
        start_command=value.start_command.strip(),
    )


def app_yaml_content(value: config.DeployConfig) -> Dict[str, Any]:
    """
    ``app.yaml`` content as a :py:class:`dict`.

    Raises:
        :py:class:`ValueError` if the entrypoint does not bind to :py:data:`const.PORT_PLACEHOLDER`.
    """
    app_cfg = value.app_engine
    if const.PORT_PLACEHOLDER not in app_cfg.entrypoint:
        raise ValueError(
            f"App Engine entrypoint must bind to <{const.PORT_PLACEHOLDER}>, "
            f"the platform sets the port. Got: <{app_cfg.entrypoint}>"
        )
    if value.secret.env_var in app_cfg.env_variables:
        _LOGGER.warning(
            "Environment variable <%s> is set in plain text in app.yaml, keep it in Secret Manager <%s> instead",
            value.secret.env_var,
            value.secret.secret_id,
        )
    result: Dict[str, Any] = {"runtime": app_cfg.runtime, "entrypoint": app_cfg.entrypoint}
    if app_cfg.service != const.DEFAULT_APP_ENGINE_SERVICE:
        result["service"] = app_cfg.service
    env_variables = {str(key): str(val) for key, val in app_cfg.env_variables.items()}
    # the secret version name, never the key
    env_variables.setdefault(
        f"{value.secret.env_var}{const.SECRET_REF_ENV_VAR_SUFFIX}",
        secrets.name(value.project_id, value.secret.secret_id, version=value.secret.version),
    )
    result["env_variables"] = env_variables
    result["automatic_scaling"] = {
        "min_instances": value.scaling.min_instances,
        "max_instances": value.scaling.max_instances,
        "max_concurrent_requests": value.scaling.concurrency,
    }
    if value.service_account:
        result["service_account"] = value.service_account
    result["handlers"] = _handlers(app_cfg.handlers)
    return result


def _handlers(value: List[Dict[str, str]]) -> List[Dict[str, str]]:
    # url first
    return [{"url": handler["url"], **{k: v for k, v in handler.items() if k != "url"}} for handler in value]


def render_app_yaml(value: config.DeployConfig) -> str:
    """
    Renders ``app.yaml``: runtime, entrypoint with the port placeholder,
    environment variables, automatic scaling, and URL routing handlers.
    """
    return yaml.safe_dump(app_yaml_content(value), sort_keys=False, default_flow_style=False)


def write_artifacts(
    value: config.DeployConfig,
    directory: Union[str, pathlib.Path],
    *,
    dockerfile: bool = True,
    app_yaml: bool = True,
    overwrite: bool = False,
) -> List[pathlib.Path]:
    """
    Writes the artifacts into ``directory``.

    Returns:
        Written files.

    Raises:
        :py:class:`ArtifactExistsError` if a file exists and ``overwrite`` is :py:obj:`False`.
    """
    directory = pathlib.Path(directory)
    if not directory.is_dir():
        raise FileNotFoundError(f"Directory <{directory}> does not exist")
    to_write = []
    if dockerfile:
        to_write.append((directory / DOCKERFILE_NAME, render_dockerfile(value.build)))
    if app_yaml:
        to_write.append((directory / APP_YAML_NAME, render_app_yaml(value)))
    existing = [str(path) for path, _ in to_write if path.exists()]
    if existing and not overwrite:
        raise ArtifactExistsError(f"Files already exist, use overwrite to replace them: {existing}")
    result = []
    for path, content in to_write:
        path.write_text(content, encoding=const.ENCODING_UTF8)
        _LOGGER.info("Wrote <%s>", path)
        result.append(path)
    return result
