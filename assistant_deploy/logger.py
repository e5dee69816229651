# vim: ai:sw=4:ts=4:sta:et:fo=croql
# pylint: disable=line-too-long
"""
All loggers come from this module::
    from assistant_deploy import logger
    _LOGGER = logger.get(__name__)

Records up to ``INFO`` go to standard out, anything above goes to standard error.
`Cloud Logging`_ is added as an extra handler when :py:data:`CLOUD_LOGGING_ENV_VAR_NAME` is truthy,
which only makes sense when running inside Google Cloud.

.. _Cloud Logging: https://cloud.google.com/python/docs/reference/logging/latest/handlers-cloud-logging#google.cloud.logging_v2.handlers.handlers.CloudLoggingHandler
"""
# pylint: enable=line-too-long
import logging
import os
import sys
from typing import Any, List, Optional, TextIO, Union

from google.cloud import logging as cloud_logging
from google.cloud.logging import handlers as cloud_handlers

LOG_LEVEL_ENV_VAR_NAME: str = "LOG_LEVEL"
CLOUD_LOGGING_ENV_VAR_NAME: str = "CLOUD_LOGGING_ENABLED"
_TRUTHY_VALUES: List[str] = ["1", "true", "yes", "on"]
_DEFAULT_LOG_LEVEL: int = logging.INFO
_LOGGER_FORMAT: str = "[%(asctime)s %(name)s:%(lineno)s] %(levelname)s: %(message)s"
_LINE_SEP_REPLACEMENT: str = " | "

_CLOUD_LOGGING_CLIENT: Optional[cloud_logging.Client] = None
_CLOUD_LOGGING_CHECKED: bool = False


class OneLineExceptionFormatter(logging.Formatter):
    """
    Tracebacks and stack info end up in the same line as the message,
    so one record is one line in the terminal and in Cloud Logging.
    """

    def formatException(self, ei: Any) -> str:
        return _LINE_SEP_REPLACEMENT.join(super().formatException(ei).splitlines())

    def formatStack(self, stack_info: str) -> str:
        return _LINE_SEP_REPLACEMENT.join(super().formatStack(stack_info).splitlines())

    def format(self, record: logging.LogRecord) -> str:
        result = super().format(record)
        if "\n" in result:
            result = _LINE_SEP_REPLACEMENT.join(result.splitlines())
        return result


class LevelRangeFilter(logging.Filter):  # pylint: disable=too-few-public-methods
    """
    Only lets through records with ``min_level <= levelno <= max_level``.
    """

    def __init__(self, min_level: int, max_level: int):
        super().__init__()
        if not isinstance(min_level, int) or not isinstance(max_level, int):
            raise TypeError(
                f"Levels must be {int.__name__}. Got: <{min_level}>({type(min_level)}), <{max_level}>({type(max_level)})"
            )
        if min_level > max_level:
            raise ValueError(f"Minimum level <{min_level}> must not be above maximum <{max_level}>")
        self.min_level = min_level
        self.max_level = max_level

    def filter(self, record: logging.LogRecord) -> bool:
        return self.min_level <= record.levelno <= self.max_level


def stdout_filter() -> LevelRangeFilter:
    """Everything up to and including ``INFO``."""
    return LevelRangeFilter(logging.NOTSET, logging.INFO)


def stderr_filter() -> LevelRangeFilter:
    """Everything above ``INFO``."""
    return LevelRangeFilter(logging.INFO + 1, sys.maxsize)


def get(name: str, *, level: Optional[Union[str, int]] = None) -> logging.Logger:
    """
    Returns the named :py:class:`logging.Logger`, with its handlers installed only once.

    The level is, in priority order:
        - argument ``level``;
        - environment variable :py:data:`LOG_LEVEL_ENV_VAR_NAME`;
        - :py:data:`_DEFAULT_LOG_LEVEL`.

    Raises:
        :py:class:`ValueError` if ``name`` is empty or the level is unknown.
    """
    if not isinstance(name, str) or not name.strip():
        raise ValueError(f"Name must be a non-empty string. Got: <{name}>({type(name)})")
    result = logging.getLogger(name.strip())
    level = _log_level(level)
    result.setLevel(level)
    result.propagate = False
    if not result.handlers:
        for handler in _handlers(level):
            result.addHandler(handler)
    return result


def _log_level(level: Optional[Union[str, int]]) -> int:
    if level is None:
        level = os.environ.get(LOG_LEVEL_ENV_VAR_NAME, "").strip() or None
    if level is None:
        return _DEFAULT_LOG_LEVEL
    if isinstance(level, int):
        return level
    result = logging.getLevelName(level.strip().upper())
    if not isinstance(result, int):
        raise ValueError(f"Unknown log level <{level}>")
    return result


def _handlers(level: int) -> List[logging.Handler]:
    result = [
        stream_handler(sys.stdout, level, stdout_filter()),
        stream_handler(sys.stderr, level, stderr_filter()),
    ]
    client = _cloud_logging_client()
    if client is not None:
        result.append(_formatted(cloud_handlers.CloudLoggingHandler(client), level))
    return result


def stream_handler(stream: TextIO, level: int, log_filter: Optional[logging.Filter] = None) -> logging.Handler:
    """
    A :py:class:`logging.StreamHandler` on ``stream`` with the one-line formatter.
    """
    result = _formatted(logging.StreamHandler(stream), level)
    if log_filter is not None:
        result.addFilter(log_filter)
    return result


def _formatted(handler: logging.Handler, level: int) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(OneLineExceptionFormatter(_LOGGER_FORMAT))
    return handler


def _cloud_logging_client() -> Optional[cloud_logging.Client]:
    global _CLOUD_LOGGING_CLIENT, _CLOUD_LOGGING_CHECKED  # pylint: disable=global-statement
    if _CLOUD_LOGGING_CHECKED:
        return _CLOUD_LOGGING_CLIENT
    _CLOUD_LOGGING_CHECKED = True
    if _is_cloud_logging_enabled():
        try:
            _CLOUD_LOGGING_CLIENT = cloud_logging.Client()
        except Exception as err:  # pylint: disable=broad-except
            print(
                f"Cloud Logging is enabled but its client failed, logging locally only. Error: {err}",
                file=sys.stderr,
            )
    return _CLOUD_LOGGING_CLIENT


def _is_cloud_logging_enabled() -> bool:
    return os.environ.get(CLOUD_LOGGING_ENV_VAR_NAME, "").strip().lower() in _TRUTHY_VALUES
