# vim: ai:sw=4:ts=4:sta:et:fo=croql
"""
Mixins for `attrs`_ DTOs, so configuration can be read from YAML/JSON dictionaries
and written back for ``describe``-like output.

.. _attrs: https://www.attrs.org/en/stable/
"""
import enum
import json
from typing import Any, Dict, List, Optional

import attrs

from assistant_deploy import logger

_LOGGER = logger.get(__name__)


def _field_names(cls: type) -> List[str]:
    return [field.name for field in attrs.fields(cls)]


def _is_dto_type(value: Any) -> bool:
    # annotations like typing.List are not classes
    return isinstance(value, type) and issubclass(value, HasFromDict)


class HasFromDict:
    """Adds :py:meth:`from_dict`, :py:meth:`as_dict`, and :py:meth:`clone`."""

    def as_dict(self) -> Dict[str, Any]:
        """Nested DTOs become nested dictionaries."""
        return attrs.asdict(self)

    def clone(self, **overwrite) -> Any:
        """
        Copy with the given fields replaced. Overwrites with value :py:obj:`None` are skipped,
        so optional CLI options can be passed straight through.

        Raises:
            :py:class:`ValueError` for a name that is not a field.
        """
        names = _field_names(self.__class__)
        unknown = [key for key in overwrite if key not in names]
        if unknown:
            raise ValueError(f"Type {self.__class__.__name__} has no field(s) {unknown}. Fields: {names}")
        changes = {key: val for key, val in overwrite.items() if val is not None}
        return attrs.evolve(self, **changes)

    @classmethod
    def from_dict(cls, value: Optional[Dict[str, Any]]) -> Any:
        """
        Builds an instance from a plain :py:class:`dict`.
        Missing keys take the field default, unknown keys are logged and dropped,
        and dictionaries for DTO typed fields are converted recursively.

        Raises:
            :py:class:`TypeError` if ``value`` is not a :py:class:`dict`.
            :py:class:`ValueError` if any field fails validation.
        """
        value = {} if value is None else value
        if not isinstance(value, dict):
            raise TypeError(f"Value for {cls.__name__} must be a {dict.__name__}. Got: <{value}>({type(value)})")
        kwargs = cls._kwargs_from(value)
        try:
            return cls(**kwargs)
        except (TypeError, ValueError) as err:
            raise ValueError(f"Invalid <{cls.__name__}> from <{kwargs}>. Error: {err}") from err

    @classmethod
    def _kwargs_from(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        names = _field_names(cls)
        unknown = sorted(set(value) - set(names))
        if unknown:
            _LOGGER.warning("Ignoring unknown keys %s for type %s", unknown, cls.__name__)
        result = {}
        for field in attrs.fields(cls):
            if field.name not in value:
                continue
            item = value[field.name]
            if isinstance(item, dict) and _is_dto_type(field.type):
                item = field.type.from_dict(item)
            result[field.name] = item
        return result


class HasFromJsonString(HasFromDict):
    """Adds :py:meth:`from_json` and :py:meth:`as_json`."""

    @classmethod
    def from_json(cls, json_string: str, context: Optional[str] = None) -> Any:
        """
        Parses ``json_string`` and hands it to :py:meth:`from_dict`.
        ``context`` is only added to the error message.
        """
        try:
            value = json.loads(json_string)
        except (TypeError, ValueError) as err:
            where = f" ({context})" if context else ""
            raise ValueError(f"Invalid JSON for <{cls.__name__}>{where}: <{json_string}>. Error: {err}") from err
        return cls.from_dict(value)

    def as_json(self) -> str:
        """Inverse of :py:meth:`from_json`."""
        return json.dumps(self.as_dict())


class EnumWithFromStrIgnoreCase(enum.Enum):
    """Adds :py:meth:`from_str` and :py:meth:`values`."""

    @classmethod
    def from_str(cls, value: str) -> Any:
        """
        Member whose value matches ``value``, ignoring case and surrounding blanks,
        or :py:obj:`None`.
        """
        if not isinstance(value, str):
            return None
        wanted = value.strip().lower()
        return next((member for member in cls if member.value.lower() == wanted), None)

    @classmethod
    def values(cls) -> List[str]:
        """All values, in declaration order."""
        return [member.value for member in cls]
