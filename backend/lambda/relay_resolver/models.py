"""models.py — Relay record shapes and the correlation handle."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from config import RELAY_ORIGIN

__all__ = [
    "CommandRecord",
    "CorrelationHandle",
    "Progress",
]


@dataclass(frozen=True)
class CorrelationHandle:
    """``(tenantId, commandId)``: addresses command/progress records and filters responses.

    Held by the caller between polls; the resolver keeps no per-handle state.
    """

    tenant_id: str
    command_id: str

    def to_dict(self) -> Dict[str, str]:
        return {"userId": self.tenant_id, "commandId": self.command_id}

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "CorrelationHandle":
        tenant_id = str(payload.get("userId") or "").strip()
        command_id = str(payload.get("commandId") or "").strip()
        if not tenant_id or not command_id:
            raise ValueError("userId and commandId are required")
        return cls(tenant_id=tenant_id, command_id=command_id)


@dataclass
class CommandRecord:
    type: str
    payload: Dict[str, Any]
    timestamp: str
    origin: str = RELAY_ORIGIN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "payload": self.payload,
            "timestamp": self.timestamp,
            "from": self.origin,
        }


@dataclass
class Progress:
    status: str
    message: str
    timestamp: Optional[str] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Progress":
        status = str(record.get("status"))
        return cls(
            status=status,
            message=str(record.get("message") or status),
            timestamp=record.get("timestamp"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "message": self.message, "timestamp": self.timestamp}
