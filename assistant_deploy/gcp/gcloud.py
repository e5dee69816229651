# vim: ai:sw=4:ts=4:sta:et:fo=croql
"""
Operations only available through the ``gcloud`` CLI:
authentication status, project selection, API enablement, Cloud Build, and App Engine deploy.
"""
import pathlib
import shutil
import subprocess
from typing import List, Optional, Union

from assistant_deploy import logger

_LOGGER = logger.get(__name__)

GCLOUD_BIN: str = "gcloud"


class GcloudCommandError(Exception):
    """
    A ``gcloud`` command failed or could not be started.
    """


def run(args: List[str], *, timeout: Optional[float] = None) -> str:
    """
    Runs ``gcloud <args>`` and returns its standard output, stripped.

    Raises:
        :py:class:`GcloudCommandError` if ``gcloud`` is missing or exits with non-zero.
    """
    cmd = [GCLOUD_BIN, *args]
    _LOGGER.debug("Running <%s>", " ".join(cmd))
    if shutil.which(GCLOUD_BIN) is None:
        raise GcloudCommandError(
            f"Could not find <{GCLOUD_BIN}> in PATH. Install the Google Cloud SDK: https://cloud.google.com/sdk/docs/install"
        )
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=False, timeout=timeout)
    except (OSError, subprocess.SubprocessError) as err:
        raise GcloudCommandError(f"Could not run <{' '.join(cmd)}>. Error: {err}") from err
    if result.returncode != 0:
        raise GcloudCommandError(
            f"Command <{' '.join(cmd)}> failed with exit code {result.returncode}. Error: {result.stderr.strip()}"
        )
    return result.stdout.strip()


def active_account() -> Optional[str]:
    """
    The active authenticated account, if any.
    """
    output = run(["auth", "list", "--filter=status:ACTIVE", "--format=value(account)"])
    return output.splitlines()[0].strip() if output else None


def get_project() -> Optional[str]:
    """
    Project from ``gcloud config``, if set.
    """
    output = run(["config", "get-value", "project"])
    if not output or output == "(unset)":
        return None
    return output


def set_project(project_id: str) -> None:
    """
    Sets the default project in ``gcloud config``.
    """
    run(["config", "set", "project", project_id])
    _LOGGER.info("Default project set to <%s>", project_id)


def enable_apis(project_id: str, apis: List[str]) -> None:
    """
    Enables the Google APIs, already enabled ones are a no-op.
    """
    if not apis:
        _LOGGER.info("No APIs to enable")
        return
    run(["services", "enable", *apis, f"--project={project_id}"])
    _LOGGER.info("Enabled APIs <%s> in project <%s>", apis, project_id)


def build_image(project_id: str, source_dir: Union[str, pathlib.Path], image: str) -> None:
    """
    Builds the container image with Cloud Build from the ``Dockerfile`` in ``source_dir``.
    """
    source_dir = _existing_dir(source_dir)
    _LOGGER.info("Building image <%s> from <%s>", image, source_dir)
    run(["builds", "submit", str(source_dir), f"--tag={image}", f"--project={project_id}", "--quiet"])
    _LOGGER.info("Built image <%s>", image)


def deploy_app_engine(
    project_id: str,
    source_dir: Union[str, pathlib.Path],
    *,
    version: Optional[str] = None,
    promote: bool = True,
) -> None:
    """
    Deploys the ``app.yaml`` in ``source_dir`` to App Engine.
    """
    source_dir = _existing_dir(source_dir)
    app_yaml = source_dir / "app.yaml"
    if not app_yaml.is_file():
        raise GcloudCommandError(f"Could not find <{app_yaml}>, render it first")
    args = ["app", "deploy", str(app_yaml), f"--project={project_id}", "--quiet"]
    if version:
        args.append(f"--version={version}")
    args.append("--promote" if promote else "--no-promote")
    _LOGGER.info("Deploying <%s> to App Engine in project <%s>", app_yaml, project_id)
    run(args)


def _existing_dir(value: Union[str, pathlib.Path]) -> pathlib.Path:
    result = pathlib.Path(value).absolute()
    if not result.is_dir():
        raise GcloudCommandError(f"Source directory <{result}> does not exist")
    return result
