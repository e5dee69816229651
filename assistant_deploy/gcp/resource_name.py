# vim: ai:sw=4:ts=4:sta:et:fo=croql
"""
Validates and parses Google Cloud resource names, which are in the format::
    "token[0]/value[0]/token[1]/value[1]/token[2]/value[2]"

Examples:
    * ``projects/my-project/locations/us-central1/services/my-service``
    * ``projects/my-project/secrets/my-secret/versions/3``
    * ``apps/my-project/services/default/versions/v1``
"""
import re
from typing import Dict, List

_TOKEN_REGEX: re.Pattern = re.compile(r"^[^/\s]+$")
_TOKEN_VALUE_REGEX_STR: str = r"([^/\s]+)"


def validate_resource_name(*, value: str, tokens: List[str], raise_if_invalid: bool = True) -> List[str]:
    """
    Validates the ``value`` against the pattern built from ``tokens``.

    Args:
        value: Resource name to be validated.
        tokens: Which are the resource tokens,
            like: ``["projects", "locations", "services"]`` for Cloud Run.
        raise_if_invalid: if :py:obj:`True` will raise exception if ``value`` is not valid.

    Returns:
        All reasons why the validation failed, empty if valid.
    """
    result = []
    if not isinstance(value, str):
        result.append(f"Name <{value}>({type(value)}) must be an instance of {str.__name__}")
    if not isinstance(tokens, list) or not tokens:
        result.append(f"Tokens <{tokens}>({type(tokens)}) must be a non-empty {list.__name__}")
    if not result:
        bad_tokens = [tkn for tkn in tokens if not isinstance(tkn, str) or not _TOKEN_REGEX.match(tkn)]
        if bad_tokens:
            result.append(f"Tokens must comply with <{_TOKEN_REGEX.pattern}>. Invalid: {bad_tokens}")
        elif _resource_name_regex(tokens).match(value) is None:
            result.append(f"Name must obey the format: '{_error_msg_pattern(tokens)}'. Got <{value}>")
    if result and raise_if_invalid:
        raise ValueError(f"Could not validate resource name <{value}>. Error(s): {result}")
    return result


def parse_resource_name(*, value: str, tokens: List[str]) -> Dict[str, str]:
    """
    Validates and splits the ``value`` into its ids.

    Example::
        parse_resource_name(
            value="projects/p/secrets/s/versions/3",
            tokens=["projects", "secrets", "versions"],
        )
        # {"project_id": "p", "secret_id": "s", "version_id": "3"}
        # note that ``apps`` is mapped to ``app_id``.

    Raises:
        :py:class:`ValueError` if ``value`` is not valid.
    """
    validate_resource_name(value=value, tokens=tokens, raise_if_invalid=True)
    matched = _resource_name_regex(tokens).match(value)
    return {_simple_plural_to_id(tkn): val for tkn, val in zip(tokens, matched.groups())}


def _resource_name_regex(tokens: List[str]) -> re.Pattern:
    pattern_str = "/".join(f"{re.escape(tkn)}/{_TOKEN_VALUE_REGEX_STR}" for tkn in tokens)
    return re.compile(f"^{pattern_str}$")


def _error_msg_pattern(tokens: List[str]) -> str:
    return "/".join(f"{tkn}/{{{_simple_plural_to_id(tkn)}}}" for tkn in tokens)


def _simple_plural_to_id(token: str) -> str:
    """
    It assumes the argument is an ``s`` terminated string, if plural,
    and adds ``_id`` to its singular form.
    Examples:
        * projects -> project_id
        * secrets -> secret_id
        * flies -> flie_id <<<< where it breaks
    """
    if token.endswith("s"):
        token = token[:-1]
    return f"{token}_id"
