"""relay_fakes.py — In-memory stand-in for RelayStoreClient used by the unit tests.

Mirrors the REST layout (messages / progress / responses) as plain dicts and
lets a test inject read or write failures per operation.
"""
from __future__ import annotations

import copy
import threading
from typing import Any, Dict, List, Optional, Set

from errors import RelayReadFailure, RelayWriteFailure
from models import CorrelationHandle


class FakeRelayStore:
    def __init__(self):
        self.messages: Dict[str, Dict[str, Any]] = {}
        self.progress: Dict[str, Dict[str, Any]] = {}
        self.responses: Dict[str, Any] = {}
        self.fail_reads: Set[str] = set()
        self.fail_writes: Set[str] = set()
        self.calls: List[str] = []
        self._lock = threading.Lock()

    # -- test helpers --------------------------------------------------------

    def add_response(self, key: str, *, tenant_id: str, response: Any, message: Any = None, timestamp: Any = None):
        record: Dict[str, Any] = {"messageId": tenant_id, "response": response}
        if message is not None:
            record["message"] = message
        if timestamp is not None:
            record["timestamp"] = timestamp
        self.responses[key] = record
        return record

    def set_progress(self, handle: CorrelationHandle, status: str, message: Optional[str] = None):
        record: Dict[str, Any] = {"status": status, "timestamp": "2026-01-01T00:00:00.000Z"}
        if message is not None:
            record["message"] = message
        self.progress.setdefault(handle.tenant_id, {})[handle.command_id] = record

    def has_command(self, handle: CorrelationHandle) -> bool:
        return handle.command_id in self.messages.get(handle.tenant_id, {})

    def _record(self, op: str, kind: str) -> None:
        with self._lock:
            self.calls.append(op)
        if kind == "read" and op in self.fail_reads:
            raise RelayReadFailure(f"injected read failure: {op}")
        if kind == "write" and op in self.fail_writes:
            raise RelayWriteFailure(f"injected write failure: {op}")

    # -- RelayStoreClient surface ---------------------------------------------

    def put_command(self, handle: CorrelationHandle, record: Dict[str, Any]) -> None:
        self._record("put_command", "write")
        self.messages.setdefault(handle.tenant_id, {})[handle.command_id] = copy.deepcopy(record)

    def get_command(self, handle: CorrelationHandle) -> Optional[Dict[str, Any]]:
        self._record("get_command", "read")
        return copy.deepcopy(self.messages.get(handle.tenant_id, {}).get(handle.command_id))

    def delete_command(self, handle: CorrelationHandle) -> None:
        self._record("delete_command", "write")
        self.messages.get(handle.tenant_id, {}).pop(handle.command_id, None)

    def get_progress(self, handle: CorrelationHandle) -> Optional[Dict[str, Any]]:
        self._record("get_progress", "read")
        return copy.deepcopy(self.progress.get(handle.tenant_id, {}).get(handle.command_id))

    def delete_progress(self, handle: CorrelationHandle) -> None:
        self._record("delete_progress", "write")
        self.progress.get(handle.tenant_id, {}).pop(handle.command_id, None)

    def list_responses(self) -> Dict[str, Any]:
        self._record("list_responses", "read")
        return copy.deepcopy(self.responses)

    def delete_response(self, key: str) -> None:
        self._record("delete_response", "write")
        self.responses.pop(key, None)
