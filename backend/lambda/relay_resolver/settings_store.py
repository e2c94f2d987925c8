"""settings_store.py — Per-project relay settings in DynamoDB.

Part of the relay_resolver Lambda (Skipper relay bridge).
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from aws_clients import _get_ddb
from config import DEFAULT_PROJECT_TECHNOLOGY, RELAY_SETTINGS_TABLE, logger
from serialization import _deserialize, _now_z, _serialize

__all__ = [
    "_default_settings",
    "_get_settings",
    "_save_settings",
    "_save_technical_design_doc",
    "_settings_key",
]

_DEFAULT_PROJECT_KEY = "default"
_RESERVED_FIELDS = {"project_key", "updated_at"}


def _settings_key(project_key: Optional[str]) -> Dict[str, Any]:
    return {"project_key": _serialize(str(project_key or _DEFAULT_PROJECT_KEY))}


def _default_settings() -> Dict[str, Any]:
    return {
        "projectName": "",
        "technicalDesignDoc": "",
        "projectTechnology": DEFAULT_PROJECT_TECHNOLOGY,
    }


def _get_settings(project_key: Optional[str]) -> Dict[str, Any]:
    resp = _get_ddb().get_item(TableName=RELAY_SETTINGS_TABLE, Key=_settings_key(project_key), ConsistentRead=True)
    raw = resp.get("Item")
    if not raw:
        return _default_settings()
    item = _deserialize(raw)
    return {k: v for k, v in item.items() if k not in _RESERVED_FIELDS}


def _save_settings(project_key: Optional[str], settings: Dict[str, Any]) -> None:
    if not isinstance(settings, dict):
        raise ValueError("config must be an object")
    item: Dict[str, Any] = {k: v for k, v in settings.items() if k not in _RESERVED_FIELDS and v is not None}
    item["project_key"] = str(project_key or _DEFAULT_PROJECT_KEY)
    item["updated_at"] = _now_z()
    try:
        _get_ddb().put_item(TableName=RELAY_SETTINGS_TABLE, Item={k: _serialize(v) for k, v in item.items()})
    except (BotoCoreError, ClientError) as exc:
        logger.error("[ERROR] Failed saving settings for %s: %s", item["project_key"], exc)
        raise RuntimeError("Failed to save configuration") from exc
    logger.info("[INFO] Configuration saved for project %s", item["project_key"])


def _save_technical_design_doc(project_key: Optional[str], technical_design_doc: str) -> None:
    try:
        _get_ddb().update_item(
            TableName=RELAY_SETTINGS_TABLE,
            Key=_settings_key(project_key),
            UpdateExpression="SET technicalDesignDoc = :doc, updated_at = :ts",
            ExpressionAttributeValues={
                ":doc": _serialize(str(technical_design_doc or "")),
                ":ts": _serialize(_now_z()),
            },
        )
    except (BotoCoreError, ClientError) as exc:
        logger.error("[ERROR] Failed saving technical design document for %s: %s", project_key, exc)
        raise RuntimeError("Failed to save technical design document") from exc
