# vim: ai:sw=4:ts=4:sta:et:fo=croql
# pylint: disable=missing-module-docstring,missing-class-docstring,missing-function-docstring
# pylint: disable=missing-function-docstring,assignment-from-no-return,c-extension-no-member
# pylint: disable=protected-access,redefined-outer-name,using-constant-test,invalid-name
# pylint: disable=attribute-defined-outside-init,too-few-public-methods, redefined-builtin
# type: ignore
import pytest

from assistant_deploy.gcp import resource_name

_TEST_TOKENS = ["projects", "locations", "services"]


@pytest.mark.parametrize(
    "value,tokens,amount_errors",
    [
        ("projects/my-project/locations/us-central1/services/my-service", _TEST_TOKENS, 0),
        ("apps/my-project/services/default/versions/v1", ["apps", "services", "versions"], 0),
        ("projects/my-project/secrets/KEY", ["projects", "secrets"], 0),
        (None, _TEST_TOKENS, 1),
        (123, _TEST_TOKENS, 1),
        ("projects/my-project/locations/us-central1/services/my-service", [], 1),
        ("projects/my-project/locations/us-central1/services/my-service", None, 1),
        ("projects/my-project/locations/us-central1/services/my-service", ["bad token"], 1),
        ("projects/my-project/locations/us-central1/services/", _TEST_TOKENS, 1),
        ("projects/my-project/locations/us-central1", _TEST_TOKENS, 1),
        (" projects/my-project/locations/us-central1/services/my-service", _TEST_TOKENS, 1),
        ("projects/my project/locations/us-central1/services/my-service", _TEST_TOKENS, 1),
        ("projects/my-project/regions/us-central1/services/my-service", _TEST_TOKENS, 1),
    ],
)
def test_validate_resource_name(value, tokens, amount_errors):
    # Given/When
    result = resource_name.validate_resource_name(value=value, tokens=tokens, raise_if_invalid=False)
    # Then
    assert len(result) == amount_errors
    if amount_errors:
        with pytest.raises(ValueError):
            resource_name.validate_resource_name(value=value, tokens=tokens)


@pytest.mark.parametrize(
    "value,tokens,expected",
    [
        (
            "projects/p-123/locations/europe-west3/services/svc",
            _TEST_TOKENS,
            {"project_id": "p-123", "location_id": "europe-west3", "service_id": "svc"},
        ),
        (
            "projects/p-123/secrets/KEY/versions/3",
            ["projects", "secrets", "versions"],
            {"project_id": "p-123", "secret_id": "KEY", "version_id": "3"},
        ),
        (
            "apps/p-123/services/default",
            ["apps", "services"],
            {"app_id": "p-123", "service_id": "default"},
        ),
    ],
)
def test_parse_resource_name_ok(value, tokens, expected):
    assert resource_name.parse_resource_name(value=value, tokens=tokens) == expected


def test_parse_resource_name_nok():
    with pytest.raises(ValueError):
        resource_name.parse_resource_name(value="projects/p-123", tokens=_TEST_TOKENS)
