# vim: ai:sw=4:ts=4:sta:et:fo=croql
# pylint: disable=missing-module-docstring,missing-class-docstring,missing-function-docstring
# pylint: disable=missing-function-docstring,assignment-from-no-return,c-extension-no-member
# pylint: disable=protected-access,redefined-outer-name,using-constant-test,redefined-builtin
# pylint: disable=invalid-name,attribute-defined-outside-init,too-few-public-methods
# type: ignore
from typing import Any, Dict, List, Optional

from assistant_deploy.dto import config

TEST_PROJECT_ID: str = "test-project-123"
TEST_REGION: str = "europe-west3"
TEST_SERVICE_NAME: str = "test-assistant"
TEST_SECRET_ID: str = "TEST_API_KEY"
TEST_SERVICE_ACCOUNT: str = "runner@test-project-123.iam.gserviceaccount.com"
TEST_CLOUD_RUN_NAME: str = f"projects/{TEST_PROJECT_ID}/locations/{TEST_REGION}/services/{TEST_SERVICE_NAME}"
TEST_SECRET_PATH: str = f"projects/{TEST_PROJECT_ID}/secrets/{TEST_SECRET_ID}"

################
# DeployConfig #
################


_TEST_DEPLOY_CONFIG_KWARGS: Dict[str, Any] = dict(
    project_id=TEST_PROJECT_ID,
    region=TEST_REGION,
    service_name=TEST_SERVICE_NAME,
    secret=config.SecretBinding(secret_id=TEST_SECRET_ID, env_var="GEMINI_API_KEY"),
)


def create_deploy_config(**kwargs) -> config.DeployConfig:
    """
    Create a default :py:class:`config.DeployConfig` using ``kwargs`` to overwrite defaults.

    Args:
        **kwargs:

    Returns:

    """
    return config.DeployConfig(**{**_TEST_DEPLOY_CONFIG_KWARGS, **kwargs})


def create_app_engine_config(**kwargs) -> config.DeployConfig:
    return create_deploy_config(platform=config.Platform.APP_ENGINE.value, **kwargs)


########################
# Long running results #
########################


class StubOperation:
    def __init__(self, *, value: Optional[Any] = None, raise_on_result: Optional[bool] = False):
        self.called = {}
        self._raise_on_result = raise_on_result
        self._result = value

    def result(self) -> Any:
        self.called[StubOperation.result.__name__] = True
        if self._raise_on_result:
            raise RuntimeError("TEST_OPERATION_ERROR")
        return self._result


#########
#  IAM  #
#########


class StubBinding:
    def __init__(self, *, role: str, members: Optional[List[str]] = None):
        self.role = role
        self.members = list(members or [])


class StubBindings(list):
    def add(self, *, role: str, members: List[str]) -> StubBinding:
        result = StubBinding(role=role, members=members)
        self.append(result)
        return result


class StubPolicy:
    def __init__(self, bindings: Optional[Dict[str, List[str]]] = None):
        self.bindings = StubBindings(
            StubBinding(role=role, members=members) for role, members in (bindings or {}).items()
        )

    def members(self, role: str) -> List[str]:
        for binding in self.bindings:
            if binding.role == role:
                return binding.members
        return []
