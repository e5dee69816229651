# vim: ai:sw=4:ts=4:sta:et:fo=croql
# pylint: disable=line-too-long
"""
Reads application logs from `Cloud Logging`_.

.. _Cloud Logging: https://cloud.google.com/python/docs/reference/logging/latest/client
"""
# pylint: enable=line-too-long
import asyncio
from datetime import datetime, timezone
from typing import Any, AsyncIterator, List, Optional, Set

import attrs
from google.cloud import logging as cloud_logging

from assistant_deploy import const, logger
from assistant_deploy.dto import config

_LOGGER = logger.get(__name__)

SEVERITY_LEVELS: List[str] = [
    "DEFAULT",
    "DEBUG",
    "INFO",
    "NOTICE",
    "WARNING",
    "ERROR",
    "CRITICAL",
    "ALERT",
    "EMERGENCY",
]
DEFAULT_LIMIT: int = 50
DEFAULT_POLL_SECONDS: float = 5.0

_CLOUD_RUN_FILTER_TMPL: str = 'resource.type="cloud_run_revision" AND resource.labels.service_name="{service_id}"'
_APP_ENGINE_FILTER_TMPL: str = 'resource.type="gae_app" AND resource.labels.module_id="{service_id}"'


class LogReadError(Exception):
    """
    To encapsulate all exceptions reading logs.
    """


@attrs.define(**const.ATTRS_DEFAULTS)
class LogLine:  # pylint: disable=too-few-public-methods
    """
    One log entry, simplified.
    """

    timestamp: Optional[datetime] = attrs.field(default=None)
    severity: str = attrs.field(default="DEFAULT")
    message: str = attrs.field(default="")
    insert_id: Optional[str] = attrs.field(default=None)

    def __str__(self) -> str:
        timestamp = self.timestamp.isoformat() if self.timestamp else "-"
        return f"{timestamp} {self.severity:<9} {self.message}"


def build_filter(
    platform: str,
    service_id: str,
    *,
    severity: Optional[str] = None,
    since: Optional[datetime] = None,
) -> str:
    """
    Builds a `logging query`_ for the application.

    Args:
        platform: ``cloud_run`` or ``app_engine``.
        service_id: service name (Cloud Run) or module (App Engine).
        severity: minimum severity, e.g. ``ERROR``.
        since: only entries at or after this moment.

    .. _logging query: https://cloud.google.com/logging/docs/view/logging-query-language
    """
    platform_type = config.Platform.from_str(platform)
    if platform_type is None:
        raise ValueError(f"Platform must be one of {config.Platform.values()}. Got: <{platform}>")
    if not isinstance(service_id, str) or not service_id.strip():
        raise TypeError(f"Service ID must be a non-empty string. Got: <{service_id}>({type(service_id)})")
    if platform_type == config.Platform.CLOUD_RUN:
        parts = [_CLOUD_RUN_FILTER_TMPL.format(service_id=service_id)]
    else:
        parts = [_APP_ENGINE_FILTER_TMPL.format(service_id=service_id)]
    if severity is not None:
        parts.append(f"severity>={validate_severity(severity)}")
    if since is not None:
        parts.append(f'timestamp>="{_rfc3339(since)}"')
    return " AND ".join(parts)


def validate_severity(value: str) -> str:
    """
    Returns the upper-case severity or raises :py:class:`ValueError`.
    """
    result = value.strip().upper() if isinstance(value, str) else None
    if result not in SEVERITY_LEVELS:
        raise ValueError(f"Severity must be one of {SEVERITY_LEVELS}. Got: <{value}>")
    return result


def _rfc3339(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _logging_client(project_id: str) -> cloud_logging.Client:
    return cloud_logging.Client(project=project_id)


def _list_entries(project_id: str, filter_: str, order_by: str, limit: Optional[int]) -> List[Any]:
    client = _logging_client(project_id)
    return list(
        client.list_entries(
            resource_names=[f"projects/{project_id}"],
            filter_=filter_,
            order_by=order_by,
            max_results=limit,
        )
    )


def _to_line(entry: Any) -> LogLine:
    payload = entry.payload
    if isinstance(payload, dict):
        message = payload.get("message") or str(payload)
    elif payload is None:
        message = ""
    else:
        message = str(payload)
    return LogLine(
        timestamp=entry.timestamp,
        severity=entry.severity or "DEFAULT",
        message=message,
        insert_id=getattr(entry, "insert_id", None),
    )


async def read(project_id: str, filter_: str, *, limit: int = DEFAULT_LIMIT) -> List[LogLine]:
    """
    Reads up to ``limit`` entries matching ``filter_``, newest first.
    """
    if not isinstance(limit, int) or limit < 1:
        raise ValueError(f"Limit must be a positive integer. Got: <{limit}>")
    _LOGGER.debug("Reading logs from <%s> with filter <%s>", project_id, filter_)
    await asyncio.sleep(0)
    try:
        entries = _list_entries(project_id, filter_, cloud_logging.DESCENDING, limit)
    except Exception as err:
        raise LogReadError(f"Could not read logs from <{project_id}> with filter <{filter_}>. Error: {err}") from err
    return [_to_line(entry) for entry in entries]


async def tail(
    project_id: str,
    filter_: str,
    *,
    poll_seconds: float = DEFAULT_POLL_SECONDS,
    max_polls: Optional[int] = None,
    since: Optional[datetime] = None,
) -> AsyncIterator[LogLine]:
    """
    Polls for new entries and yields them oldest first.

    Args:
        project_id:
        filter_: base filter, without timestamp restriction.
        poll_seconds: pause between polls.
        max_polls: stop after this many polls, :py:obj:`None` means forever.
        since: first poll starts here, default is now.
    """
    last_ts = since or datetime.now(timezone.utc)
    if last_ts.tzinfo is None:
        last_ts = last_ts.replace(tzinfo=timezone.utc)
    seen: Set[str] = set()
    polls = 0
    while max_polls is None or polls < max_polls:
        polls += 1
        query = f'{filter_} AND timestamp>="{_rfc3339(last_ts)}"'
        try:
            entries = _list_entries(project_id, query, cloud_logging.ASCENDING, None)
        except Exception as err:
            raise LogReadError(f"Could not tail logs from <{project_id}>. Error: {err}") from err
        for line in (_to_line(entry) for entry in entries):
            key = line.insert_id or f"{line.timestamp}{line.message}"
            if key in seen:
                continue
            if line.timestamp is not None and line.timestamp > last_ts:
                last_ts = line.timestamp
                # the next query starts at last_ts, older keys cannot show up again
                seen = set()
            seen.add(key)
            yield line
        if max_polls is None or polls < max_polls:
            await asyncio.sleep(poll_seconds)
