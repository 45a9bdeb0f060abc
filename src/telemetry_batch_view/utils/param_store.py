"""
SSM parameter lookup for deployment settings the job config leaves out.

The converter resolves its Parquet output bucket from
``/telemetry/parquet_bucket_name`` when ``storage.output_root`` is unset.
A resolved value is exported as an environment variable (``TELEMETRY_PARQUET_BUCKET_NAME``)
and cached in ``.env`` so later runs and pool workers skip the AWS round trip.
"""

from __future__ import annotations
import logging
import os
import pathlib
from typing import Any, Optional

import boto3  # type: ignore

logger = logging.getLogger(__name__)

# Offline cache, relative to the working directory of the job
_DOTENV = pathlib.Path(".env")


def param_env_key(param_name: str) -> str:
    """"/telemetry/parquet_bucket_name" → "TELEMETRY_PARQUET_BUCKET_NAME"."""
    return param_name.strip("/").upper().replace("/", "_")


def _cache_in_dotenv(env_key: str, value: str) -> None:
    kept = []
    if _DOTENV.exists():
        kept = [
            line for line in _DOTENV.read_text().splitlines() if not line.startswith(f"{env_key}=")
        ]
    kept.append(f"{env_key}={value}")
    _DOTENV.write_text("\n".join(kept) + "\n")


def get_param(param_name: str, ssm_client: Optional[Any] = None) -> str:
    """
    Value of the SSM parameter `param_name`.

    The environment wins when it already holds the value; otherwise the
    parameter is fetched from SSM, exported and cached in ``.env``.
    """
    env_key = param_env_key(param_name)
    cached = os.getenv(env_key)
    if cached:
        return cached

    client = ssm_client if ssm_client is not None else boto3.client("ssm")
    value = client.get_parameter(Name=param_name)["Parameter"]["Value"]
    logger.info("Resolved %s from SSM", param_name)

    _cache_in_dotenv(env_key, value)
    os.environ[env_key] = value
    return value
