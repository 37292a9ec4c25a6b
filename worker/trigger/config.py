"""
Configuration loader for the Alerts Trigger Worker.

Uses Pydantic Settings for environment variable parsing, with SSM parameter
resolution in non-local environments so that service tokens never have to
be baked into the Lambda configuration.
"""

from __future__ import annotations

import os
from functools import lru_cache

import boto3
from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Alerts Trigger Worker configuration loaded from environment variables.

    In production (APP_ENV != 'local'), environment variables with an
    ``_SSM_PARAM`` suffix are resolved via AWS Systems Manager Parameter
    Store before constructing the settings object.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    alerts_api_base_url: str = "http://localhost:3001/"
    weather_api_base_url: str = "http://localhost:3000/"
    alerts_api_token: SecretStr | None = None

    service_name: str = "alerts-trigger"
    service_version: str = "1.0.0"

    # Upper bound for every outbound HTTP call, in seconds.
    request_timeout_seconds: float = 10.0

    # Ordering of the pending-alerts query
    pending_sort_by: str = "createdAt"
    pending_sort_order: str = "desc"

    # Only used by the local dev runner; production is driven by a schedule.
    evaluation_interval_seconds: int = 600

    aws_region: str = "us-east-1"

    @property
    def user_agent(self) -> str:
        return f"{self.service_name}/{self.service_version}"


def _resolve_ssm_params() -> None:
    """Scan environment variables for ``*_SSM_PARAM`` suffixes and replace
    them with the actual secret values fetched from AWS SSM Parameter Store.

    For example, if ``ALERTS_API_TOKEN_SSM_PARAM=/alerts-trigger/prod/token``
    is set, this function fetches that parameter and injects
    ``ALERTS_API_TOKEN=<resolved_value>`` into the environment.
    """
    ssm_suffix = "_SSM_PARAM"
    params_to_resolve: dict[str, str] = {}

    for key, value in os.environ.items():
        if key.endswith(ssm_suffix):
            target_key = key[: -len(ssm_suffix)]
            params_to_resolve[target_key] = value

    if not params_to_resolve:
        return

    ssm = boto3.client("ssm", region_name=os.environ.get("AWS_REGION", "us-east-1"))

    # Batch fetch in groups of 10 (SSM API limit)
    param_names = list(params_to_resolve.values())
    for i in range(0, len(param_names), 10):
        batch = param_names[i : i + 10]
        response = ssm.get_parameters(Names=batch, WithDecryption=True)
        resolved = {p["Name"]: p["Value"] for p in response["Parameters"]}

        for target_key, param_name in params_to_resolve.items():
            if param_name in resolved:
                os.environ[target_key] = resolved[param_name]


@lru_cache(maxsize=1)
def load_settings() -> Settings:
    """Load and cache application settings.

    1. Check ``APP_ENV`` environment variable.
    2. If not ``local``, resolve SSM parameters into the environment.
    3. Construct and return the ``Settings`` object.
    """
    app_env = os.environ.get("APP_ENV", "local")
    if app_env != "local":
        _resolve_ssm_params()

    return Settings()
