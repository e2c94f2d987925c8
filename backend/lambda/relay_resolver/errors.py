"""errors.py — Relay error taxonomy.

Every failure the resolver can report maps onto one of these classes. Handlers
convert them into tagged ``{"success": false, "error": ...}`` bodies; nothing
here is raised out of ``lambda_handler``.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

__all__ = [
    "CredentialFailure",
    "DownstreamApiFailure",
    "MatchParseFailure",
    "RelayError",
    "RelayReadFailure",
    "RelayWriteFailure",
]


class RelayError(Exception):
    """Base class for relay failures."""

    code = "RELAY_ERROR"
    retryable = False
    status_code = 502

    def to_details(self) -> Dict[str, Any]:
        return {}


class RelayWriteFailure(RelayError):
    """The shared store rejected or timed out a write.

    Nothing was published, so a retry with a fresh commandId is safe.
    """

    code = "RELAY_WRITE_FAILED"
    retryable = True


class RelayReadFailure(RelayError):
    """A poll read failed; treated as "no match this pass"."""

    code = "RELAY_READ_FAILED"
    retryable = True


class MatchParseFailure(RelayError):
    """A response matched the handle but its embedded payload does not parse."""

    code = "MATCH_PARSE_FAILED"
    retryable = False
    status_code = 422

    def __init__(self, message: str, raw_response: Optional[str] = None, response_key: Optional[str] = None):
        super().__init__(message)
        self.raw_response = raw_response
        self.response_key = response_key

    def to_details(self) -> Dict[str, Any]:
        return {"rawResponse": self.raw_response}


class DownstreamApiFailure(RelayError):
    """Ticket tracker / document host returned a non-success status."""

    code = "UPSTREAM_ERROR"

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: Optional[bool] = None):
        super().__init__(message)
        self.upstream_status = status_code
        if retryable is None:
            retryable = status_code is None or status_code >= 500
        self.retryable = retryable

    def to_details(self) -> Dict[str, Any]:
        return {"upstreamStatus": self.upstream_status}


class CredentialFailure(RelayError):
    """Could not obtain a bearer token for the shared store. Fatal, not retried."""

    code = "CREDENTIAL_FAILED"
    status_code = 503
