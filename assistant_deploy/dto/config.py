# vim: ai:sw=4:ts=4:sta:et:fo=croql
"""
Deployment configuration DTOs.
"""
import re
from typing import Any, Dict, List, Optional

import attrs

from assistant_deploy import const
from assistant_deploy.dto import dto_defaults

MIN_CONCURRENCY: int = 1
MAX_CONCURRENCY: int = 1000
MIN_PORT: int = 1
MAX_PORT: int = 65535

_PROJECT_ID_REGEX: re.Pattern = re.compile(r"^[a-z][a-z0-9-]{4,28}[a-z0-9]$")
_SERVICE_NAME_REGEX: re.Pattern = re.compile(r"^[a-z]([a-z0-9-]{0,47}[a-z0-9])?$")
_SECRET_ID_REGEX: re.Pattern = re.compile(r"^[a-zA-Z0-9_-]{1,255}$")
_ENV_VAR_REGEX: re.Pattern = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_HANDLER_TARGET_KEYS: List[str] = ["script", "static_dir", "static_files"]


class Platform(dto_defaults.EnumWithFromStrIgnoreCase):
    """
    Where the application runs.
    """

    CLOUD_RUN = "cloud_run"
    APP_ENGINE = "app_engine"


class Ingress(dto_defaults.EnumWithFromStrIgnoreCase):
    """
    Which networks may reach the service.
    """

    ALL = "all"
    INTERNAL = "internal"
    INTERNAL_AND_LB = "internal_and_lb"


class CpuAllocation(dto_defaults.EnumWithFromStrIgnoreCase):
    """
    ``always`` keeps CPU allocated between requests,
    ``request_only`` throttles it outside of request processing.
    """

    ALWAYS = "always"
    REQUEST_ONLY = "request_only"


def _enum_validator(enum_cls: type):
    def validator(instance: Any, attribute: attrs.Attribute, value: str) -> None:  # pylint: disable=unused-argument
        if enum_cls.from_str(value) is None:
            raise ValueError(
                f"Attribute {attribute.name} does not accept <{value}>. Valid values are: {enum_cls.values()}"
            )

    return validator


def _regex_validator(regex: re.Pattern):
    def validator(  # pylint: disable=unused-argument
        instance: Any, attribute: attrs.Attribute, value: Optional[str]
    ) -> None:
        if value is not None and not regex.match(value):
            raise ValueError(f"Attribute {attribute.name} must match <{regex.pattern}>. Got: <{value}>")

    return validator


@attrs.define(**const.ATTRS_DEFAULTS)
class SecretBinding(dto_defaults.HasFromJsonString):  # pylint: disable=too-few-public-methods
    """
    Which Secret Manager secret is exposed to the application, and under which environment variable.
    """

    secret_id: str = attrs.field(
        default=const.DEFAULT_API_KEY_SECRET_ID,
        validator=[attrs.validators.instance_of(str), _regex_validator(_SECRET_ID_REGEX)],
    )
    env_var: str = attrs.field(
        default=const.DEFAULT_API_KEY_SECRET_ID,
        validator=[attrs.validators.instance_of(str), _regex_validator(_ENV_VAR_REGEX)],
    )
    version: str = attrs.field(
        default=const.DEFAULT_SECRET_VERSION,
        converter=str,
    )

    @version.validator
    def _validate_version(self, attribute: attrs.Attribute, value: str) -> None:
        if value != const.DEFAULT_SECRET_VERSION and not value.isdigit():
            raise ValueError(f"Attribute {attribute.name} must be 'latest' or a version number. Got: <{value}>")

    @property
    def is_pinned(self) -> bool:
        """:py:obj:`True` if a specific version number is used instead of ``latest``."""
        return self.version != const.DEFAULT_SECRET_VERSION


@attrs.define(**const.ATTRS_DEFAULTS)
class ScalingConfig(dto_defaults.HasFromJsonString):  # pylint: disable=too-few-public-methods
    """
    Autoscaling knobs passed to the managed runtime.
    """

    min_instances: int = attrs.field(default=0, validator=attrs.validators.instance_of(int))
    max_instances: int = attrs.field(default=10, validator=attrs.validators.instance_of(int))
    concurrency: int = attrs.field(default=80, validator=attrs.validators.instance_of(int))
    cpu_allocation: str = attrs.field(
        default=CpuAllocation.REQUEST_ONLY.value,
        validator=[attrs.validators.instance_of(str), _enum_validator(CpuAllocation)],
    )

    def __attrs_post_init__(self):
        validate_scaling(
            min_instances=self.min_instances,
            max_instances=self.max_instances,
            concurrency=self.concurrency,
        )

    @property
    def cpu_idle(self) -> bool:
        """Cloud Run flag: CPU only allocated during requests."""
        return CpuAllocation.from_str(self.cpu_allocation) == CpuAllocation.REQUEST_ONLY


def validate_scaling(
    *,
    min_instances: Optional[int] = None,
    max_instances: Optional[int] = None,
    concurrency: Optional[int] = None,
) -> None:
    """
    Validates scaling values, only the ones given.

    Raises:
        :py:class:`ValueError` if any value is out of range.
    """
    if min_instances is not None and min_instances < 0:
        raise ValueError(f"Minimum instances must be non-negative. Got: {min_instances}")
    if max_instances is not None and max_instances < 1:
        raise ValueError(f"Maximum instances must be at least 1. Got: {max_instances}")
    if min_instances is not None and max_instances is not None and min_instances > max_instances:
        raise ValueError(f"Minimum instances {min_instances} is greater than maximum instances {max_instances}")
    if concurrency is not None and not MIN_CONCURRENCY <= concurrency <= MAX_CONCURRENCY:
        raise ValueError(f"Concurrency must be in [{MIN_CONCURRENCY}, {MAX_CONCURRENCY}]. Got: {concurrency}")


@attrs.define(**const.ATTRS_DEFAULTS)
class BuildConfig(dto_defaults.HasFromJsonString):  # pylint: disable=too-few-public-methods
    """
    Container build contract.
    """

    base_image: str = attrs.field(default=const.DEFAULT_BASE_IMAGE, validator=attrs.validators.instance_of(str))
    requirements_file: str = attrs.field(
        default=const.DEFAULT_REQUIREMENTS_FILE, validator=attrs.validators.instance_of(str)
    )
    port: int = attrs.field(default=const.DEFAULT_PORT, validator=attrs.validators.instance_of(int))
    start_command: str = attrs.field(
        default=const.DEFAULT_START_COMMAND, validator=attrs.validators.instance_of(str)
    )

    @port.validator
    def _validate_port(self, attribute: attrs.Attribute, value: int) -> None:
        if not MIN_PORT <= value <= MAX_PORT:
            raise ValueError(f"Attribute {attribute.name} must be in [{MIN_PORT}, {MAX_PORT}]. Got: {value}")

    @start_command.validator
    def _validate_start_command(self, attribute: attrs.Attribute, value: str) -> None:
        if not value.strip():
            raise ValueError(f"Attribute {attribute.name} must be a non-empty string")


def _default_handlers() -> List[Dict[str, str]]:
    return [
        {"url": "/static", "static_dir": "static"},
        {"url": "/.*", "script": "auto"},
    ]


@attrs.define(**const.ATTRS_DEFAULTS)
class AppEngineConfig(dto_defaults.HasFromJsonString):  # pylint: disable=too-few-public-methods
    """
    App Engine platform configuration file content.
    """

    runtime: str = attrs.field(
        default=const.DEFAULT_APP_ENGINE_RUNTIME, validator=attrs.validators.instance_of(str)
    )
    entrypoint: str = attrs.field(
        default=const.DEFAULT_APP_ENGINE_ENTRYPOINT, validator=attrs.validators.instance_of(str)
    )
    service: str = attrs.field(
        default=const.DEFAULT_APP_ENGINE_SERVICE, validator=attrs.validators.instance_of(str)
    )
    env_variables: Dict[str, str] = attrs.field(
        factory=dict, validator=attrs.validators.instance_of(dict), hash=False
    )
    handlers: List[Dict[str, str]] = attrs.field(
        factory=_default_handlers, validator=attrs.validators.instance_of(list), hash=False
    )

    @handlers.validator
    def _validate_handlers(self, attribute: attrs.Attribute, value: List[Dict[str, str]]) -> None:
        for ndx, handler in enumerate(value):
            if not isinstance(handler, dict) or not handler.get("url"):
                raise ValueError(f"Attribute {attribute.name}[{ndx}] must be a mapping with 'url'. Got: <{handler}>")
            targets = [key for key in _HANDLER_TARGET_KEYS if key in handler]
            if len(targets) != 1:
                raise ValueError(
                    f"Attribute {attribute.name}[{ndx}] must have exactly one of {_HANDLER_TARGET_KEYS}. "
                    f"Got: <{handler}>"
                )


@attrs.define(**const.ATTRS_DEFAULTS)
class DeployConfig(dto_defaults.HasFromJsonString):  # pylint: disable=too-few-public-methods,too-many-instance-attributes
    """
    Everything needed to deploy and operate the application.
    """

    project_id: str = attrs.field(validator=[attrs.validators.instance_of(str), _regex_validator(_PROJECT_ID_REGEX)])
    region: str = attrs.field(default=const.DEFAULT_REGION, validator=attrs.validators.instance_of(str))
    service_name: str = attrs.field(
        default=const.DEFAULT_SERVICE_NAME,
        validator=[attrs.validators.instance_of(str), _regex_validator(_SERVICE_NAME_REGEX)],
    )
    platform: str = attrs.field(
        default=Platform.CLOUD_RUN.value,
        validator=[attrs.validators.instance_of(str), _enum_validator(Platform)],
    )
    image: Optional[str] = attrs.field(
        default=None, validator=attrs.validators.optional(attrs.validators.instance_of(str))
    )
    service_account: Optional[str] = attrs.field(
        default=None, validator=attrs.validators.optional(attrs.validators.instance_of(str))
    )
    allow_unauthenticated: bool = attrs.field(default=True, validator=attrs.validators.instance_of(bool))
    ingress: str = attrs.field(
        default=Ingress.ALL.value,
        validator=[attrs.validators.instance_of(str), _enum_validator(Ingress)],
    )
    secret: SecretBinding = attrs.field(factory=SecretBinding, validator=attrs.validators.instance_of(SecretBinding))
    scaling: ScalingConfig = attrs.field(factory=ScalingConfig, validator=attrs.validators.instance_of(ScalingConfig))
    build: BuildConfig = attrs.field(factory=BuildConfig, validator=attrs.validators.instance_of(BuildConfig))
    app_engine: AppEngineConfig = attrs.field(
        factory=AppEngineConfig, validator=attrs.validators.instance_of(AppEngineConfig)
    )
    apis: List[str] = attrs.field(
        factory=lambda: list(const.DEFAULT_APIS), validator=attrs.validators.instance_of(list), hash=False
    )

    @property
    def image_uri(self) -> str:
        """Configured image or the default one derived from project and service."""
        if self.image:
            return self.image
        return const.DEFAULT_IMAGE_TMPL.format(project_id=self.project_id, service_name=self.service_name)

    @property
    def platform_type(self) -> Platform:
        """:py:attr:`platform` as :py:class:`Platform`."""
        return Platform.from_str(self.platform)
