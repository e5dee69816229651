# vim: ai:sw=4:ts=4:sta:et:fo=croql
"""
Loads :py:class:`config.DeployConfig` from a YAML file, environment variables, and explicit overrides.

Priority, highest first:
    1. explicit arguments (usually from the CLI);
    2. environment variables :py:data:`const.PROJECT_ENV_VAR` and :py:data:`const.REGION_ENV_VAR`;
    3. the YAML file;
    4. ``gcloud config get-value project``, for the project only.
"""
import os
import pathlib
from typing import Any, Callable, Dict, Mapping, Optional, Union

import yaml

from assistant_deploy import const, logger
from assistant_deploy.dto import config

_LOGGER = logger.get(__name__)


class ConfigError(Exception):
    """Configuration could not be loaded or is invalid."""


def load(
    path: Optional[Union[str, pathlib.Path]] = None,
    *,
    project_id: Optional[str] = None,
    region: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    project_fallback: Optional[Callable[[], Optional[str]]] = None,
) -> config.DeployConfig:
    """
    Builds the deployment configuration.

    Args:
        path: YAML file, defaults to :py:data:`const.DEFAULT_CONFIG_FILE`.
            A missing file is only an error if ``path`` was explicitly given.
        project_id: overrides everything else.
        region: overrides everything else.
        environ: defaults to :py:data:`os.environ`.
        project_fallback: called if no project is found anywhere else.

    Returns:
        Validated configuration.

    Raises:
        :py:class:`ConfigError` if the file cannot be parsed, the project is missing,
            or any value is invalid.
    """
    if environ is None:
        environ = os.environ
    content = read_yaml(path)
    # env vars
    env_project = environ.get(const.PROJECT_ENV_VAR)
    env_region = environ.get(const.REGION_ENV_VAR)
    if env_project:
        content["project_id"] = env_project
    if env_region:
        content["region"] = env_region
    # explicit
    if project_id:
        content["project_id"] = project_id
    if region:
        content["region"] = region
    # fallback
    if not content.get("project_id") and project_fallback is not None:
        content["project_id"] = _call_fallback(project_fallback)
    if not content.get("project_id"):
        raise ConfigError(
            "Project ID not found. Set it with --project, "
            f"the {const.PROJECT_ENV_VAR} environment variable, "
            "'project_id' in the config file, or 'gcloud config set project <PROJECT_ID>'"
        )
    try:
        result = config.DeployConfig.from_dict(content)
    except (TypeError, ValueError) as err:
        raise ConfigError(f"Invalid configuration. Error: {err}") from err
    _LOGGER.debug("Loaded configuration: %s", result)
    return result


def read_yaml(path: Optional[Union[str, pathlib.Path]] = None) -> Dict[str, Any]:
    """
    Reads the YAML configuration file as a :py:class:`dict`.

    Args:
        path: if :py:obj:`None` uses :py:data:`const.DEFAULT_CONFIG_FILE`
            and returns an empty :py:class:`dict` when it does not exist.

    Returns:
    """
    explicit = path is not None
    path = pathlib.Path(path if explicit else const.DEFAULT_CONFIG_FILE)
    if not path.exists():
        if explicit:
            raise ConfigError(f"Configuration file not found at: {path}")
        _LOGGER.debug("No configuration file at <%s>, using defaults", path)
        return {}
    if not path.is_file():
        raise ConfigError(f"Configuration path is not a file: {path}")
    try:
        with open(path, "r", encoding=const.ENCODING_UTF8) as in_file:
            result = yaml.safe_load(in_file)
    except yaml.YAMLError as err:
        raise ConfigError(f"Failed to parse YAML config at {path}. Error: {err}") from err
    if result is None:
        result = {}
    if not isinstance(result, dict):
        raise ConfigError(f"Config file at {path} must contain a mapping. Got: {type(result).__name__}")
    _LOGGER.info("Using configuration from <%s>", path)
    return result


def _call_fallback(fallback: Callable[[], Optional[str]]) -> Optional[str]:
    try:
        return fallback()
    except Exception as err:  # pylint: disable=broad-except
        _LOGGER.warning("Could not detect project ID using %s. Error: %s", fallback, err)
    return None
