"""dispatcher.py — Command dispatch: write one command record, return the handle.

Dispatch never waits for the agent. The returned ``CorrelationHandle`` is the
only state a caller needs to resume polling later.
"""
from __future__ import annotations

import secrets
import string
import time
from typing import Any, Dict, Optional

from config import _COMMAND_FAMILIES, logger
from errors import RelayWriteFailure
from models import CommandRecord, CorrelationHandle
from relay_store import RelayStoreClient
from serialization import _emit_structured_observability, _now_iso, _unix_ms

__all__ = [
    "build_conversion_prompt",
    "dispatch",
    "dispatch_code_request",
    "dispatch_conversion",
    "new_command_id",
]

_BASE36 = string.digits + string.ascii_lowercase
_SUFFIX_LENGTH = 9

_CONVERSION_PROMPT = """Please analyze the following technical design document and convert it into Jira Epics and User Stories.

IMPORTANT: Respond ONLY with valid JSON in this exact format:
{
  "epics": [
    {
      "title": "Epic Title",
      "description": "Epic description",
      "stories": [
        {
          "title": "Story Title",
          "description": "As a [user], I want [functionality] so that [benefit]",
          "acceptanceCriteria": ["Criteria 1", "Criteria 2"]
        }
      ]
    }
  ]
}

Technical Design Document Content:
"""


def new_command_id(prefix: str) -> str:
    """``prefix-<unix ms>-<9 base36 chars>``; uniqueness per tenant is assumed, not enforced."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(_SUFFIX_LENGTH))
    return f"{prefix}-{_unix_ms()}-{suffix}"


def build_conversion_prompt(document_content: str) -> str:
    return _CONVERSION_PROMPT + str(document_content or "")


def dispatch(
    store: RelayStoreClient,
    tenant_id: str,
    command_type: str,
    payload: Dict[str, Any],
    prefix: Optional[str] = None,
) -> CorrelationHandle:
    """Write a command record and return its handle.

    Raises RelayWriteFailure (or CredentialFailure) when the write did not land;
    the caller must not treat the command as sent.
    """
    prefix = prefix or _COMMAND_FAMILIES.get(command_type)
    if not prefix:
        raise ValueError(f"Unknown command type '{command_type}'")

    handle = CorrelationHandle(tenant_id=tenant_id, command_id=new_command_id(prefix))
    record = CommandRecord(type=command_type, payload=payload, timestamp=_now_iso())

    started = time.perf_counter()
    try:
        store.put_command(handle, record.to_dict())
    except RelayWriteFailure as exc:
        _emit_structured_observability(
            component="relay_resolver",
            event="dispatch",
            tenant_id=tenant_id,
            command_id=handle.command_id,
            operation=command_type,
            latency_ms=int((time.perf_counter() - started) * 1000),
            error_code=exc.code,
        )
        raise

    _emit_structured_observability(
        component="relay_resolver",
        event="dispatch",
        tenant_id=tenant_id,
        command_id=handle.command_id,
        operation=command_type,
        latency_ms=int((time.perf_counter() - started) * 1000),
    )
    logger.info("[INFO] Dispatched %s command %s for %s", command_type, handle.command_id, tenant_id)
    return handle


def dispatch_conversion(
    store: RelayStoreClient,
    tenant_id: str,
    document_content: str,
    project_key: Optional[str],
) -> CorrelationHandle:
    payload = {
        "prompt": build_conversion_prompt(document_content),
        "projectKey": project_key,
        "message": "Convert technical design to epics and stories",
    }
    return dispatch(store, tenant_id, "epics-conversion", payload)


def dispatch_code_request(
    store: RelayStoreClient,
    tenant_id: str,
    description: str,
    issue_id: Optional[str],
) -> CorrelationHandle:
    payload = {
        "description": description,
        "issueId": issue_id,
        "message": "Request from Jira Forge app",
    }
    return dispatch(store, tenant_id, "code-request", payload)
