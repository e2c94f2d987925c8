"""aws_clients.py — Lazy-singleton AWS service clients (DynamoDB, Secrets Manager).

Clients are created on first use and reused across warm invocations of the
same Lambda container.
"""
from __future__ import annotations

import json
from typing import Any, Dict

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from config import DYNAMODB_REGION, SECRETS_REGION

__all__ = [
    "_fetch_secret_json",
    "_get_ddb",
    "_get_secretsmanager",
]

# ---------------------------------------------------------------------------
# AWS client singletons
# ---------------------------------------------------------------------------

_ddb = None
_secretsmanager = None


def _get_ddb():
    global _ddb
    if _ddb is None:
        _ddb = boto3.client(
            "dynamodb",
            region_name=DYNAMODB_REGION,
            config=Config(retries={"max_attempts": 5, "mode": "standard"}),
        )
    return _ddb


def _get_secretsmanager():
    global _secretsmanager
    if _secretsmanager is None:
        _secretsmanager = boto3.client(
            "secretsmanager",
            region_name=SECRETS_REGION,
            config=Config(retries={"max_attempts": 3, "mode": "standard"}),
        )
    return _secretsmanager


def _fetch_secret_json(secret_id: str) -> Dict[str, Any]:
    """Read a JSON SecretString. Raises RuntimeError with the AWS error code on failure."""
    if not secret_id:
        raise RuntimeError("Missing secret reference")
    try:
        secret_string = (
            _get_secretsmanager().get_secret_value(SecretId=secret_id).get("SecretString") or ""
        )
    except ClientError as exc:
        code = exc.response.get("Error", {}).get("Code", "ClientError")
        raise RuntimeError(f"Secret fetch failed ({secret_id}): {code}") from exc
    except BotoCoreError as exc:
        raise RuntimeError(f"Secret fetch failed ({secret_id}): {exc.__class__.__name__}") from exc

    try:
        payload = json.loads(secret_string)
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"Secret {secret_id} is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise RuntimeError(f"Secret {secret_id} must be a JSON object")
    return payload
