"""serialization.py — DynamoDB (de)serialization, timestamps, structured observability.

Part of the relay_resolver Lambda (Skipper relay bridge).
"""
from __future__ import annotations

import datetime as dt
import json
import time
from typing import Any, Dict, Optional

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer

from config import logger

__all__ = [
    "_deserialize",
    "_emit_structured_observability",
    "_now_iso",
    "_now_z",
    "_serialize",
    "_unix_ms",
]

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------

_deserializer = TypeDeserializer()
_serializer = TypeSerializer()


def _serialize(value: Any) -> Dict[str, Any]:
    return _serializer.serialize(value)


def _deserialize(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {k: _deserializer.deserialize(v) for k, v in raw.items()}


def _now_z() -> str:
    return dt.datetime.now(dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _now_iso() -> str:
    """UTC ISO-8601 with milliseconds, the format the relay agent writes back."""
    now = dt.datetime.now(dt.timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def _unix_ms() -> int:
    return int(time.time() * 1000)


def _emit_structured_observability(
    *,
    component: str,
    event: str,
    tenant_id: Optional[str] = None,
    command_id: Optional[str] = None,
    operation: Optional[str] = None,
    latency_ms: Optional[int] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    payload: Dict[str, Any] = {
        "timestamp": _now_z(),
        "component": component,
        "event": event,
        "tenant_id": str(tenant_id or ""),
        "command_id": str(command_id or ""),
        "operation": str(operation or ""),
        "latency_ms": int(max(0, latency_ms or 0)),
        "error_code": str(error_code or ""),
    }
    if extra:
        payload.update(extra)
    logger.info("[OBSERVABILITY] %s", json.dumps(payload, sort_keys=True, default=str))
