# vim: ai:sw=4:ts=4:sta:et:fo=croql
"""
Runtime contract of the application container:

* bind to the port in ``PORT``, set by the platform, defaulting to :py:data:`DEFAULT_PORT`;
* the generative-AI API key must be in ``GEMINI_API_KEY`` at startup.
  Cloud Run binds it to Secret Manager. App Engine has no such binding,
  its ``app.yaml`` carries ``GEMINI_API_KEY_SECRET`` instead, the secret version name,
  and the key is read from Secret Manager by :py:func:`load_secret_env`.

Also provides a small `Flask`_ application to smoke-test a deployment::
    PORT=8080 GEMINI_API_KEY=... python -m assistant_deploy.runtime

.. _Flask: https://flask.palletsprojects.com/en/2.2.x/tutorial/factory/
"""
import asyncio
import os
from typing import Iterable, List, Mapping, MutableMapping, Optional

import flask

from assistant_deploy import const, logger
from assistant_deploy.gcp import secrets

_LOGGER = logger.get(__name__)

PORT_ENV_VAR: str = "PORT"
DEFAULT_PORT: int = const.DEFAULT_PORT
API_KEY_ENV_VAR: str = const.DEFAULT_API_KEY_SECRET_ID
REQUIRED_ENV_VARS: List[str] = [API_KEY_ENV_VAR]


class MissingEnvironmentError(Exception):
    """Required environment variables are missing or blank."""

    def __init__(self, names: List[str]):
        self.names = names
        super().__init__(
            f"Missing required environment variable(s): {names}. "
            "On Cloud Run bind them to Secret Manager, on App Engine set "
            f"<<name>>{const.SECRET_REF_ENV_VAR_SUFFIX} to a secret version, locally export them before starting."
        )


def port_from_env(environ: Optional[Mapping[str, str]] = None) -> int:
    """
    Port from :py:data:`PORT_ENV_VAR` or :py:data:`DEFAULT_PORT` if unset or blank.

    Raises:
        :py:class:`ValueError` if not an integer in ``[1, 65535]``.
    """
    if environ is None:
        environ = os.environ
    value = environ.get(PORT_ENV_VAR, "").strip()
    if not value:
        return DEFAULT_PORT
    try:
        result = int(value)
    except ValueError as err:
        raise ValueError(f"Environment variable {PORT_ENV_VAR} must be an integer. Got: <{value}>") from err
    if not 1 <= result <= 65535:
        raise ValueError(f"Environment variable {PORT_ENV_VAR} must be in [1, 65535]. Got: <{result}>")
    return result


def require_env(
    names: Iterable[str] = tuple(REQUIRED_ENV_VARS), environ: Optional[Mapping[str, str]] = None
) -> None:
    """
    Raises :py:class:`MissingEnvironmentError` listing every missing or blank variable.
    """
    if environ is None:
        environ = os.environ
    missing = [name for name in names if not environ.get(name, "").strip()]
    if missing:
        raise MissingEnvironmentError(missing)


def secret_ref_env_var(name: str) -> str:
    """
    Variable holding the Secret Manager version name to read ``name`` from.
    """
    return f"{name}{const.SECRET_REF_ENV_VAR_SUFFIX}"


def load_secret_env(
    names: Iterable[str] = tuple(REQUIRED_ENV_VARS), environ: Optional[MutableMapping[str, str]] = None
) -> List[str]:
    """
    For each variable in ``names`` that is missing or blank,
    reads it from the secret version in :py:func:`secret_ref_env_var`, if that one is set.
    Variables already set are left alone.

    Returns:
        Names read from Secret Manager.

    Raises:
        :py:class:`secrets.SecretManagerAccessError` if the secret can not be read.
    """
    if environ is None:
        environ = os.environ
    result = []
    for name in names:
        if environ.get(name, "").strip():
            continue
        reference = environ.get(secret_ref_env_var(name), "").strip()
        if not reference:
            continue
        environ[name] = asyncio.run(secrets.get(reference))
        _LOGGER.info("Read <%s> from secret <%s>", name, reference)
        result.append(name)
    return result


def create_app(  # pylint: disable=unused-argument,keyword-arg-before-vararg
    test_config=None, environ: Optional[MutableMapping[str, str]] = None, *args, **kwargs
) -> flask.Flask:
    """
    As in https://flask.palletsprojects.com/en/2.2.x/tutorial/factory/
    Fails at startup if the API key is not set, nor can be read from Secret Manager.
    """
    if environ is None:
        environ = os.environ
    load_secret_env(REQUIRED_ENV_VARS, environ)
    require_env(REQUIRED_ENV_VARS, environ)
    app = flask.Flask(__name__, instance_relative_config=False)
    if test_config:
        app.config.from_mapping(test_config)
    app.config["API_KEY_CONFIGURED"] = True

    @app.route("/healthz", methods=["GET"])
    def healthz():
        return flask.jsonify({"status": "ok"})

    @app.route("/readyz", methods=["GET"])
    def readyz():
        # never expose the key itself
        return flask.jsonify({"status": "ok", "api_key_configured": app.config["API_KEY_CONFIGURED"]})

    _LOGGER.info("Application created, API key present in <%s>", API_KEY_ENV_VAR)
    return app


def main() -> None:
    """
    Runs the smoke-test application on all interfaces, as the container requires.
    """
    port = port_from_env()
    application = create_app()
    _LOGGER.info("Listening on port %d", port)
    application.run(host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
