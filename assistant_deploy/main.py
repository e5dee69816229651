# vim: ai:sw=4:ts=4:sta:et:fo=croql
"""
CLI entry point to deploy and operate the student assistant.
"""
import asyncio
import contextlib
import functools
import io
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import click

from assistant_deploy import artifacts, config_loader, logger, operations
from assistant_deploy.dto import config
from assistant_deploy.gcp import app_engine, cloud_run, gcloud, iam, logs, secrets

_LOGGER = logger.get(__name__)

_CLI_ERRORS = (
    config_loader.ConfigError,
    secrets.SecretManagerAccessError,
    cloud_run.CloudRunServiceError,
    app_engine.AppEngineError,
    logs.LogReadError,
    gcloud.GcloudCommandError,
    operations.OperationError,
    artifacts.ArtifactExistsError,
    FileNotFoundError,
    ValueError,
)


@contextlib.contextmanager
def _cli_errors():
    try:
        yield
    except _CLI_ERRORS as err:
        _LOGGER.debug("Command failed", exc_info=True)
        raise click.ClickException(str(err)) from err


def coro(func: Callable):
    """
    A decorator to allow :py:module:`click` to play well with :py:module:`asyncio`.
    Known errors are reported as ``Error: <message>`` with exit code 1.

    Source: https://github.com/pallets/click/issues/85#issuecomment-503464628
    Args:
        func:

    Returns:

    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        with _cli_errors():
            return asyncio.run(func(*args, **kwargs))

    return wrapper


@click.group(help="Deploy and operate the student assistant on Cloud Run or App Engine.")
@click.option("--config", "config_path", required=False, type=str, help="YAML config, default: deploy.yaml")
@click.option("--project", required=False, type=str, help="Google Cloud project ID")
@click.option("--region", required=False, type=str, help="Google Cloud region")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str], project: Optional[str], region: Optional[str]) -> None:
    """
    Click entry-point.
    """
    ctx.ensure_object(dict)
    ctx.obj.update(config_path=config_path, project=project, region=region)


def _load_config(ctx: click.Context) -> config.DeployConfig:
    obj = ctx.find_root().obj or {}
    return config_loader.load(
        obj.get("config_path"),
        project_id=obj.get("project"),
        region=obj.get("region"),
        project_fallback=gcloud.get_project,
    )


def _read_secret_value(value_file: Optional[io.TextIOWrapper]) -> str:
    if value_file is not None:
        result = value_file.read().strip()
    else:
        result = click.prompt("API key", hide_input=True, confirmation_prompt=True).strip()
    if not result:
        raise click.ClickException("Secret value must not be empty")
    return result


############
#  Render  #
############


@cli.group(help="Render deployment artifacts")
def render() -> None:
    """
    Artifacts group.
    """


@render.command(name="dockerfile", help="Render the Dockerfile")
@click.option("--output", required=False, type=str, help="Directory to write into, default prints it")
@click.option("--overwrite", is_flag=True, default=False, help="Replace an existing file")
@click.pass_context
def render_dockerfile(ctx: click.Context, output: Optional[str], overwrite: bool) -> None:
    """
    Prints or writes the ``Dockerfile``.
    """
    with _cli_errors():
        cfg = _load_config(ctx)
        if output is None:
            click.echo(artifacts.render_dockerfile(cfg.build), nl=False)
            return
        for path in artifacts.write_artifacts(cfg, output, app_yaml=False, overwrite=overwrite):
            click.echo(f"Wrote {path}")


@render.command(name="app-yaml", help="Render the App Engine app.yaml")
@click.option("--output", required=False, type=str, help="Directory to write into, default prints it")
@click.option("--overwrite", is_flag=True, default=False, help="Replace an existing file")
@click.pass_context
def render_app_yaml(ctx: click.Context, output: Optional[str], overwrite: bool) -> None:
    """
    Prints or writes ``app.yaml``.
    """
    with _cli_errors():
        cfg = _load_config(ctx)
        if output is None:
            click.echo(artifacts.render_app_yaml(cfg), nl=False)
            return
        for path in artifacts.write_artifacts(cfg, output, dockerfile=False, overwrite=overwrite):
            click.echo(f"Wrote {path}")


###########
#  Setup  #
###########


@cli.command(help="Enable APIs and create the API key secret")
@click.option("--value-file", required=False, type=click.File("r"), help="File with the API key")
@click.option("--no-value", is_flag=True, default=False, help="Create the secret without a version")
@click.pass_context
@coro
async def setup(ctx: click.Context, value_file: Optional[io.TextIOWrapper], no_value: bool) -> None:
    """
    One-time project setup.
    """
    cfg = _load_config(ctx)
    api_key = None if no_value else _read_secret_value(value_file)
    path = await operations.setup(cfg, api_key=api_key)
    click.echo(f"Secret ready: {path}")


#############
#  Secrets  #
#############


@cli.group(name="secrets", help="Manage the API key in Secret Manager")
def secrets_group() -> None:
    """
    Secrets group.
    """


@secrets_group.command(name="create", help="Create the secret")
@click.option("--value-file", required=False, type=click.File("r"), help="File with the first value")
@click.pass_context
@coro
async def secrets_create(ctx: click.Context, value_file: Optional[io.TextIOWrapper]) -> None:
    """
    Creates the secret, with a first version if a file is given.
    """
    cfg = _load_config(ctx)
    content = _read_secret_value(value_file) if value_file is not None else None
    path = await secrets.create(cfg.project_id, cfg.secret.secret_id, content=content)
    click.echo(f"Created {path}")


@secrets_group.command(name="add-version", help="Rotate the API key by adding a new version")
@click.option("--value-file", required=False, type=click.File("r"), help="File with the new value")
@click.option(
    "--keep",
    required=False,
    type=int,
    default=secrets.DEFAULT_AMOUNT_TO_KEEP,
    show_default=True,
    help="Older versions to keep disabled",
)
@click.pass_context
@coro
async def secrets_add_version(ctx: click.Context, value_file: Optional[io.TextIOWrapper], keep: int) -> None:
    """
    Adds a version and cleans up older ones.
    """
    cfg = _load_config(ctx)
    version = await operations.rotate_secret(cfg, _read_secret_value(value_file), keep=keep)
    click.echo(f"Added {version}")


@secrets_group.command(name="get", help="Access a secret version")
@click.option("--version", required=False, type=str, default="latest", show_default=True, help="Version")
@click.option("--reveal", is_flag=True, default=False, help="Print the value itself")
@click.pass_context
@coro
async def secrets_get(ctx: click.Context, version: str, reveal: bool) -> None:
    """
    Proves access to the secret, only printing it with ``--reveal``.
    """
    cfg = _load_config(ctx)
    content = await secrets.get(secrets.name(cfg.project_id, cfg.secret.secret_id, version=version))
    if reveal:
        click.echo(content)
    else:
        click.echo(f"<hidden: {len(content)} characters, use --reveal to print>")


@secrets_group.command(name="list", help="List secrets in the project")
@click.pass_context
@coro
async def secrets_list(ctx: click.Context) -> None:
    """
    Lists secret paths.
    """
    cfg = _load_config(ctx)
    for path in await secrets.list_secrets(cfg.project_id):
        click.echo(path)


@secrets_group.command(name="versions", help="List versions of the API key secret")
@click.option("--all", "include_destroyed", is_flag=True, default=False, help="Include destroyed versions")
@click.pass_context
@coro
async def secrets_versions(ctx: click.Context, include_destroyed: bool) -> None:
    """
    Lists versions, newest first.
    """
    cfg = _load_config(ctx)
    versions = await secrets.list_versions(
        operations.secret_path(cfg), include_destroyed_versions=include_destroyed
    )
    for info in versions:
        click.echo(f"{info.number}\t{info.state}\t{info.create_time or '-'}")


def _version_command(name: str, help_text: str, func_name: str) -> None:
    @secrets_group.command(name=name, help=help_text)
    @click.argument("version", type=int)
    @click.pass_context
    @coro
    async def command(ctx: click.Context, version: int) -> None:
        cfg = _load_config(ctx)
        version_name = secrets.name(cfg.project_id, cfg.secret.secret_id, version=str(version))
        # resolved on each call, not at import
        await getattr(secrets, func_name)(version_name)
        click.echo(f"{name.capitalize()}d: {version_name}")


_version_command("disable", "Disable a secret version", "disable_version")
_version_command("enable", "Enable a secret version", "enable_version")


@secrets_group.command(name="destroy", help="Destroy a secret version, irreversible")
@click.argument("version", type=int)
@click.option("--yes", is_flag=True, default=False, help="Do not ask for confirmation")
@click.pass_context
@coro
async def secrets_destroy(ctx: click.Context, version: int, yes: bool) -> None:
    """
    Destroys a version.
    """
    cfg = _load_config(ctx)
    version_name = secrets.name(cfg.project_id, cfg.secret.secret_id, version=str(version))
    if not yes:
        click.confirm(f"Destroy {version_name}? This cannot be undone", abort=True)
    await secrets.destroy_version(version_name)
    click.echo(f"Destroyed: {version_name}")


@secrets_group.command(name="clean-up", help="Disable recent versions and destroy older ones")
@click.option(
    "--keep",
    required=False,
    type=int,
    default=secrets.DEFAULT_AMOUNT_TO_KEEP,
    show_default=True,
    help="Older versions to keep disabled",
)
@click.pass_context
@coro
async def secrets_clean_up(ctx: click.Context, keep: int) -> None:
    """
    Cleans up versions, keeping the latest enabled.
    """
    cfg = _load_config(ctx)
    await secrets.clean_up(secret_name=operations.secret_path(cfg), amount_to_keep=keep)
    click.echo("Cleaned up")


@secrets_group.command(name="grant-access", help="Grant secret access to the runtime service account")
@click.option(
    "--member",
    required=False,
    type=str,
    help="IAM member, like serviceAccount:EMAIL. Default: the runtime service account",
)
@click.pass_context
@coro
async def secrets_grant_access(ctx: click.Context, member: Optional[str]) -> None:
    """
    Binds the secret accessor role.
    """
    cfg = _load_config(ctx)
    if member is None:
        account = await operations.runtime_service_account(cfg)
        if account is None:
            raise click.ClickException("Could not determine the runtime service account, use --member")
        member = iam.service_account_member(account)
    changed = await secrets.grant_accessor(operations.secret_path(cfg), member)
    click.echo(f"Granted to {member}" if changed else f"{member} already has access")


############
#  Deploy  #
############


@cli.command(help="Build and deploy the application")
@click.option("--source", required=False, type=str, default=".", show_default=True, help="Application source")
@click.pass_context
@coro
async def deploy(ctx: click.Context, source: str) -> None:
    """
    Deploys to the configured platform.
    """
    cfg = _load_config(ctx)
    url = await operations.deploy(cfg, source)
    click.echo(f"Deployed {cfg.service_name} to {cfg.platform}: {url or '-'}")


@cli.command(help="Describe the deployed service")
@click.pass_context
@coro
async def describe(ctx: click.Context) -> None:
    """
    Prints the service summary.
    """
    cfg = _load_config(ctx)
    for key, value in (await operations.describe(cfg)).items():
        click.echo(f"{key}: {value}")


@cli.command(help="List revisions (Cloud Run) or versions (App Engine)")
@click.pass_context
@coro
async def revisions(ctx: click.Context) -> None:
    """
    Newest first.
    """
    cfg = _load_config(ctx)
    for info in await operations.list_revisions(cfg):
        click.echo(str(info))


@cli.command(help="Update autoscaling")
@click.option("--min", "min_instances", required=False, type=int, help="Minimum instances")
@click.option("--max", "max_instances", required=False, type=int, help="Maximum instances")
@click.option("--concurrency", required=False, type=int, help="Concurrent requests per instance")
@click.option("--cpu", required=False, type=click.Choice(config.CpuAllocation.values()), help="CPU allocation")
@click.pass_context
@coro
async def scale(
    ctx: click.Context,
    min_instances: Optional[int],
    max_instances: Optional[int],
    concurrency: Optional[int],
    cpu: Optional[str],
) -> None:
    """
    Only the given parameters change.
    """
    cfg = _load_config(ctx)
    await operations.scale(
        cfg,
        min_instances=min_instances,
        max_instances=max_instances,
        concurrency=concurrency,
        cpu_allocation=cpu,
    )
    click.echo("Scaling updated")


@cli.command(help="Switch between public and internal-only traffic")
@click.argument("value", type=click.Choice(config.Ingress.values()))
@click.pass_context
@coro
async def ingress(ctx: click.Context, value: str) -> None:
    """
    Sets ingress.
    """
    cfg = _load_config(ctx)
    await operations.set_ingress(cfg, value)
    click.echo(f"Ingress set to {value}")


@cli.command(help="Stop serving")
@click.pass_context
@coro
async def stop(ctx: click.Context) -> None:
    """
    Stops the application.
    """
    cfg = _load_config(ctx)
    await operations.stop(cfg)
    click.echo(f"Stopped {cfg.service_name}")


@cli.command(help="Resume serving")
@click.pass_context
@coro
async def start(ctx: click.Context) -> None:
    """
    Starts the application.
    """
    cfg = _load_config(ctx)
    await operations.start(cfg)
    click.echo(f"Started {cfg.service_name}")


@cli.command(help="Delete the deployed service")
@click.option("--delete-secret", is_flag=True, default=False, help="Also delete the API key secret")
@click.option("--yes", is_flag=True, default=False, help="Do not ask for confirmation")
@click.pass_context
@coro
async def delete(ctx: click.Context, delete_secret: bool, yes: bool) -> None:
    """
    Tears the deployment down.
    """
    cfg = _load_config(ctx)
    if not yes:
        what = f"{cfg.service_name} and its secret" if delete_secret else cfg.service_name
        click.confirm(f"Delete {what} in {cfg.project_id}?", abort=True)
    await operations.teardown(cfg, delete_secret=delete_secret)
    click.echo(f"Deleted {cfg.service_name}")


##########
#  Logs  #
##########


@cli.command(name="logs", help="Read or follow application logs")
@click.option(
    "--severity",
    required=False,
    type=click.Choice(logs.SEVERITY_LEVELS, case_sensitive=False),
    help="Minimum severity",
)
@click.option("--since-minutes", required=False, type=int, help="Only entries from the last N minutes")
@click.option("--limit", required=False, type=int, default=logs.DEFAULT_LIMIT, show_default=True, help="Entries")
@click.option("--follow", is_flag=True, default=False, help="Keep polling for new entries")
@click.option(
    "--poll-seconds",
    required=False,
    type=float,
    default=logs.DEFAULT_POLL_SECONDS,
    show_default=True,
    help="Pause between polls when following",
)
@click.pass_context
@coro
async def logs_command(  # pylint: disable=too-many-arguments
    ctx: click.Context,
    severity: Optional[str],
    since_minutes: Optional[int],
    limit: int,
    follow: bool,
    poll_seconds: float,
) -> None:
    """
    Prints log lines oldest first.
    """
    cfg = _load_config(ctx)
    since = datetime.now(timezone.utc) - timedelta(minutes=since_minutes) if since_minutes else None
    service_id = operations.log_service_id(cfg)
    if follow:
        filter_ = logs.build_filter(cfg.platform, service_id, severity=severity)
        async for line in logs.tail(cfg.project_id, filter_, poll_seconds=poll_seconds, since=since):
            click.echo(str(line))
        return
    filter_ = logs.build_filter(cfg.platform, service_id, severity=severity, since=since)
    for line in reversed(await logs.read(cfg.project_id, filter_, limit=limit)):
        click.echo(str(line))


@cli.command(help="Troubleshoot the deployment")
@click.pass_context
@coro
async def doctor(ctx: click.Context) -> None:
    """
    Exits with 1 if any check fails.
    """
    cfg = _load_config(ctx)
    checks = await operations.doctor(cfg)
    for check in checks:
        click.echo(str(check))
    if not all(check.ok for check in checks):
        raise click.exceptions.Exit(1)


if __name__ == "__main__":
    cli()  # pylint: disable=no-value-for-parameter
