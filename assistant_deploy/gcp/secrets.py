# vim: ai:sw=4:ts=4:sta:et:fo=croql
# pylint: disable=line-too-long
"""
GCP `Secret Manager`_ entry point, holds the generative-AI API key the application needs.

The synchronous client is used, the async one does not play well with threads: https://github.com/grpc/grpc/issues/25364

.. _Secret Manager: https://cloud.google.com/secret-manager/docs/quickstart#secretmanager-quickstart-python
"""
# pylint: enable=line-too-long
import asyncio
from typing import Any, Callable, List, Optional

import attrs
from google.api_core import exceptions
from google.cloud import secretmanager

from assistant_deploy import const, logger
from assistant_deploy.gcp import iam, resource_name, secrets_const

_LOGGER = logger.get(__name__)

DEFAULT_AMOUNT_TO_KEEP: int = 2
MIN_AMOUNT_TO_KEEP: int = 1


class SecretManagerAccessError(Exception):
    """To code all Secret Manager errors"""


class SecretPermissionError(SecretManagerAccessError):
    """The caller lacks permission to access the secret."""


@attrs.define(**const.ATTRS_DEFAULTS)
class SecretVersionInfo:  # pylint: disable=too-few-public-methods
    """
    Summary of a secret version.
    """

    name: str = attrs.field(validator=attrs.validators.instance_of(str))
    state: str = attrs.field(validator=attrs.validators.instance_of(str))
    create_time: Optional[str] = attrs.field(default=None)

    @property
    def number(self) -> int:
        """Version number, the last token in :py:attr:`name`."""
        return int(self.name.split("/")[-1])


def name(project_id: str, secret_id: str, *, version: Optional[str] = None) -> str:
    """
    Build a canonical secret path in the format::
       projects/<<project id>>/secrets/<<secret id>>/versions/<<version>>

    Args:
        project_id:
        secret_id:
        version: Default value `latest`

    Returns:
    """
    _validate_ids(project_id, secret_id)
    if version is None:
        version = secrets_const.DEFAULT_GCP_SECRET_VERSION
    return secrets_const.GCP_SECRET_NAME_TMPL.format(
        project_id=project_id, secret_id=secret_id, version=str(version)
    )


def secret_path(project_id: str, secret_id: str) -> str:
    """
    Build a canonical secret path, without version, in the format::
       projects/<<project id>>/secrets/<<secret id>>
    """
    _validate_ids(project_id, secret_id)
    return secrets_const.GCP_SECRET_PATH_TMPL.format(project_id=project_id, secret_id=secret_id)


def _validate_ids(project_id: str, secret_id: str) -> None:
    if not isinstance(project_id, str) or not project_id:
        raise TypeError(f"Project ID must be a non-empty string. Got: <{project_id}>({type(project_id)})")
    if not isinstance(secret_id, str) or not secret_id:
        raise TypeError(f"Secret ID must be a non-empty string. Got: <{secret_id}>({type(secret_id)})")


def validate_secret_resource_name(value: str, *, raise_if_invalid: bool = True) -> List[str]:
    """
    Validates the ``value`` against the pattern:
        "projects/my-project-123/secrets/my-secret/versions/my-version".

    Args:
        value: Secret resource name to be validated.
        raise_if_invalid: if :py:obj:`True` will raise exception if ``value`` is not valid.

    Returns:
        If ``raise_if_invalid`` if :py:obj:`False` will contain all reasons
            why the validation failed.
    """
    return resource_name.validate_resource_name(
        value=value,
        tokens=secrets_const.SECRET_NAME_TOKENS,
        raise_if_invalid=raise_if_invalid,
    )


def _secret_client() -> secretmanager.SecretManagerServiceClient:
    return secretmanager.SecretManagerServiceClient()


def _validate_secret_name(value: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise SecretManagerAccessError(
            f"Secret name must be a non-empty string. Got: <{value}>({type(value)})"
        )
    return value.strip()


def _secret_name_parent(value: str) -> str:
    # value: projects/<<project id>>/secrets/<<secret id>>/versions/<<version number>>
    if secrets_const.VERSION_SUB_STR in value:
        value = value.split(secrets_const.VERSION_SUB_STR)[0]
    # result: projects/<<project id>>/secrets/<<secret id>>
    return value


async def create(project_id: str, secret_id: str, *, content: Optional[str] = None) -> str:
    """
    Creates the secret with automatic replication, reusing it if it already exists.
    If ``content`` is given, it is added as a new version.

    Args:
        project_id:
        secret_id:
        content: first version content.

    Returns:
        The secret path, without version.
    """
    result = secret_path(project_id, secret_id)
    _LOGGER.info("Creating secret <%s>", result)
    await asyncio.sleep(0)
    request = {
        "parent": secrets_const.GCP_PROJECT_TMPL.format(project_id=project_id),
        "secret_id": secret_id,
        "secret": {"replication": {"automatic": {}}},
    }
    try:
        _secret_client().create_secret(request=request)
    except exceptions.AlreadyExists:
        _LOGGER.info("Secret <%s> already exists, reusing it", result)
    except Exception as err:
        raise SecretManagerAccessError(f"Could not create secret <{result}>. Error: {err}") from err
    if content is not None:
        await put(secret_name=result, content=content)
    return result


async def put(*, secret_name: str, content: str) -> str:
    """
    Puts a secret, by name. Adding a version is how the secret is rotated.

    Args:
        secret_name: a secret name in the format:
            `projects/<<project id>>/secrets/<<secret id>>`
        content: secret content.
    Returns:
        The secret full name, with version.
    """
    secret_name = _secret_name_parent(_validate_secret_name(secret_name))
    if not isinstance(content, str) or not content.strip():
        raise SecretManagerAccessError(
            f"Content must be a non-empty string, Secret Manager does not accept empty payloads. "
            f"Got: <{type(content)}>"
        )
    _LOGGER.info("Adding a version to secret <%s>", secret_name)
    await asyncio.sleep(0)
    try:
        request = {
            "parent": secret_name,
            "payload": {"data": content.encode(const.ENCODING_UTF8)},
        }
        response = _secret_client().add_secret_version(request=request)
    except exceptions.PermissionDenied as err:
        raise SecretPermissionError(_permission_msg(secret_name, "add a version to", err)) from err
    except Exception as err:
        raise SecretManagerAccessError(
            f"Could not add version to secret <{secret_name}>. Error: {err}"
        ) from err
    _LOGGER.info("Added secret version <%s>", response.name)
    return response.name


async def get(secret_name: str) -> str:
    """
    Accesses the content of a secret version.

    Args:
        secret_name: a secret name in the format:
            `projects/<<project id>>/secrets/<<secret id>>/versions/<<version>>`
    Returns:
        Secret content
    """
    secret_name = _validate_secret_name(secret_name)
    _LOGGER.info("Retrieving secret <%s>", secret_name)
    await asyncio.sleep(0)
    try:
        response = _secret_client().access_secret_version(request={"name": secret_name})
    except exceptions.PermissionDenied as err:
        msg = _permission_msg(secret_name, "access", err)
        _LOGGER.critical(msg)
        raise SecretPermissionError(msg) from err
    except Exception as err:
        msg = f"Could not retrieve secret <{secret_name}>. Error: {err}"
        _LOGGER.critical(msg)
        raise SecretManagerAccessError(msg) from err
    return response.payload.data.decode(const.ENCODING_UTF8)


def _permission_msg(secret_name: str, action: str, err: Exception) -> str:
    return (
        f"Permission denied to {action} secret <{secret_name}>. "
        f"The caller needs the role <{secrets_const.SECRET_ACCESSOR_ROLE}> on "
        f"<{_secret_name_parent(secret_name)}>, "
        "grant it with: 'assistant-deploy secrets grant-access --member serviceAccount:<EMAIL>'. "
        f"Error: {err}"
    )


async def exists(secret_name: str) -> bool:
    """
    Checks if the secret exists, regardless of version.
    """
    secret_name = _secret_name_parent(_validate_secret_name(secret_name))
    await asyncio.sleep(0)
    try:
        _secret_client().get_secret(request={"name": secret_name})
    except exceptions.NotFound:
        return False
    except Exception as err:
        raise SecretManagerAccessError(f"Could not check secret <{secret_name}>. Error: {err}") from err
    return True


async def list_secrets(project_id: str) -> List[str]:
    """
    Lists all secret paths in the project.
    """
    parent = secrets_const.GCP_PROJECT_TMPL.format(project_id=project_id)
    _LOGGER.debug("Listing secrets in <%s>", parent)
    await asyncio.sleep(0)
    try:
        result = [secret.name for secret in _secret_client().list_secrets(request={"parent": parent})]
    except Exception as err:
        raise SecretManagerAccessError(f"Could not list secrets in <{parent}>. Error: {err}") from err
    return result


async def list_versions(
    secret_name: str, *, include_destroyed_versions: bool = False
) -> List[SecretVersionInfo]:
    """
    Will list all versions for the secret, newest first, using following `API`_ and `filtering`_.

    Args:
        secret_name: a secret name in the format:
            `projects/<<project id>>/secrets/<<secret id>>`
        include_destroyed_versions: include destroyed?

    .. _API: https://cloud.google.com/secret-manager/docs/view-secret-version
    .. _filtering: https://cloud.google.com/secret-manager/docs/filtering
    """
    secret_name = _secret_name_parent(_validate_secret_name(secret_name))
    _LOGGER.debug("Listing secret versions for <%s>", secret_name)
    request = {"parent": secret_name}
    if not include_destroyed_versions:
        request["filter"] = secrets_const.NOT_DESTROYED_FILTER
    await asyncio.sleep(0)
    try:
        versions = _secret_client().list_secret_versions(request=request)
        result = [_version_info(version) for version in versions]
    except exceptions.PermissionDenied as err:
        raise SecretPermissionError(_permission_msg(secret_name, "list versions of", err)) from err
    except Exception as err:
        raise SecretManagerAccessError(
            f"Could not list secret versions for <{secret_name}>. Error: {err}"
        ) from err
    result.sort(key=lambda info: info.number, reverse=True)
    _LOGGER.info("Listed secret versions for <%s>. There are <%d> versions.", secret_name, len(result))
    return result


def _version_info(version: Any) -> SecretVersionInfo:
    state = getattr(version.state, "name", str(version.state))
    create_time = getattr(version, "create_time", None)
    return SecretVersionInfo(
        name=version.name,
        state=state,
        create_time=str(create_time) if create_time is not None else None,
    )


async def disable_version(version_name: str) -> None:
    """
    Source: https://cloud.google.com/secret-manager/docs/disable-secret-version
    """
    await _single_version_operation(version_name, "disable_secret_version", "Disabled")


async def enable_version(version_name: str) -> None:
    """
    Source: https://cloud.google.com/secret-manager/docs/disable-secret-version
    """
    await _single_version_operation(version_name, "enable_secret_version", "Enabled")


async def destroy_version(version_name: str) -> None:
    """
    Irreversible.
    Source: https://cloud.google.com/secret-manager/docs/destroy-secret-version
    """
    await _single_version_operation(version_name, "destroy_secret_version", "Destroyed")


async def _single_version_operation(version_name: str, method: str, past_tense: str) -> None:
    validate_secret_resource_name(version_name)
    await asyncio.sleep(0)
    try:
        getattr(_secret_client(), method)(request={"name": version_name})
    except Exception as err:
        raise SecretManagerAccessError(
            f"Could not execute {method} on <{version_name}>. Error: {err}"
        ) from err
    _LOGGER.info("%s secret version <%s>", past_tense, version_name)


async def clean_up(*, secret_name: str, amount_to_keep: Optional[int] = None) -> None:
    """
    Keeps the newest version enabled and disables the next ``amount_to_keep`` ones.
    Anything older is destroyed.
    With 10 versions and ``amount_to_keep=2``: 10 enabled, 9 and 8 disabled, 7 to 1 destroyed.

    Args:
        secret_name: ``projects/<<project id>>/secrets/<<secret id>>``, a version suffix is dropped.
        amount_to_keep: disabled versions to keep, at least :py:data:`MIN_AMOUNT_TO_KEEP`.
    """
    secret_name = _secret_name_parent(_validate_secret_name(secret_name))
    if not isinstance(amount_to_keep, int):
        amount_to_keep = DEFAULT_AMOUNT_TO_KEEP
    amount_to_keep = max(MIN_AMOUNT_TO_KEEP, amount_to_keep)
    versions = await list_versions(secret_name)
    candidates = versions[1 : (amount_to_keep + 1)]
    to_keep = [info for info in candidates if info.state != secrets_const.STATE_DISABLED]
    to_remove = versions[(amount_to_keep + 1) :]

    def disable(value: str) -> None:
        _LOGGER.debug("Disabling <%s>", value)
        _secret_client().disable_secret_version(request={"name": value})

    def destroy(value: str) -> None:
        _LOGGER.debug("Destroying <%s>", value)
        _secret_client().destroy_secret_version(request={"name": value})

    errors = await _apply_operation_on_versions([info.name for info in to_keep], disable)
    errors.extend(await _apply_operation_on_versions([info.name for info in to_remove], destroy))
    if errors:
        raise SecretManagerAccessError(
            f"Could not clean up versions of secret <{secret_name}>. Error(s): {errors}"
        )
    _LOGGER.info(
        "Cleaned up secret <%s>. Disabled: <%d>. Destroyed: <%d>.",
        secret_name,
        len(to_keep),
        len(to_remove),
    )


async def _apply_operation_on_versions(
    version_names: List[str], operation: Callable[[str], None]
) -> List[str]:
    errors = []
    for version_name in version_names:
        await asyncio.sleep(0)
        try:
            operation(version_name)
        except Exception as err:  # pylint: disable=broad-except
            errors.append(f"Could not execute operation on secret <{version_name}>. Error: {err}")
    return errors


async def grant_accessor(secret_name: str, member: str) -> bool:
    """
    Binds ``member`` to :py:data:`secrets_const.SECRET_ACCESSOR_ROLE` on the secret.

    Args:
        secret_name: a secret name in the format:
            `projects/<<project id>>/secrets/<<secret id>>`
        member: like ``serviceAccount:sa@project.iam.gserviceaccount.com``.

    Returns:
        :py:obj:`True` if the policy changed.
    """
    secret_name = _secret_name_parent(_validate_secret_name(secret_name))
    await asyncio.sleep(0)
    try:
        client = _secret_client()
        policy = client.get_iam_policy(request={"resource": secret_name})
        changed = iam.add_member(policy, role=secrets_const.SECRET_ACCESSOR_ROLE, member=member)
        if changed:
            client.set_iam_policy(request={"resource": secret_name, "policy": policy})
    except Exception as err:
        raise SecretManagerAccessError(
            f"Could not grant <{secrets_const.SECRET_ACCESSOR_ROLE}> "
            f"to <{member}> on <{secret_name}>. Error: {err}"
        ) from err
    if changed:
        _LOGGER.info(
            "Granted <%s> to <%s> on <%s>", secrets_const.SECRET_ACCESSOR_ROLE, member, secret_name
        )
    else:
        _LOGGER.info(
            "Member <%s> already has <%s> on <%s>", member, secrets_const.SECRET_ACCESSOR_ROLE, secret_name
        )
    return changed


async def has_accessor(secret_name: str, member: str) -> bool:
    """
    Checks if ``member`` is bound to :py:data:`secrets_const.SECRET_ACCESSOR_ROLE` on the secret itself.
    Project level bindings are not considered.
    """
    secret_name = _secret_name_parent(_validate_secret_name(secret_name))
    await asyncio.sleep(0)
    try:
        policy = _secret_client().get_iam_policy(request={"resource": secret_name})
    except Exception as err:
        raise SecretManagerAccessError(
            f"Could not read IAM policy of <{secret_name}>. Error: {err}"
        ) from err
    return iam.has_member(policy, role=secrets_const.SECRET_ACCESSOR_ROLE, member=member)


async def delete(secret_name: str) -> None:
    """
    Deletes the secret and all its versions.
    """
    secret_name = _secret_name_parent(_validate_secret_name(secret_name))
    await asyncio.sleep(0)
    try:
        _secret_client().delete_secret(request={"name": secret_name})
    except exceptions.NotFound:
        _LOGGER.warning("Secret <%s> does not exist, nothing to delete", secret_name)
        return
    except Exception as err:
        raise SecretManagerAccessError(f"Could not delete secret <{secret_name}>. Error: {err}") from err
    _LOGGER.info("Deleted secret <%s>", secret_name)
