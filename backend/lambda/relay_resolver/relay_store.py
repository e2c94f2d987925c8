"""relay_store.py — Authenticated REST access to the shared relay store.

Layout (Firebase Realtime Database REST):

    PUT/GET/DELETE /messages/{tenantId}/{commandId}.json   command records
    GET/DELETE     /progress/{tenantId}/{commandId}.json   progress checkpoints
    GET            /responses.json                        flat, multi-tenant scan
    DELETE         /responses/{key}.json                  one response by store key

Commands and progress are addressed by handle; responses are not and must be
searched (see matcher.py). The store gives no ordering or transactional
guarantees.
"""
from __future__ import annotations

import json
import socket
import ssl
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Dict, Optional, Tuple

try:
    import certifi

    _CERT_BUNDLE = certifi.where()
except Exception:
    _CERT_BUNDLE = None

from config import RELAY_DATABASE_URL, RELAY_READ_TIMEOUT_SECONDS, RELAY_WRITE_TIMEOUT_SECONDS, logger
from credentials import CredentialCache
from errors import RelayReadFailure, RelayWriteFailure
from models import CorrelationHandle

__all__ = [
    "RelayStoreClient",
]


class RelayStoreClient:
    def __init__(
        self,
        credential_cache: CredentialCache,
        base_url: str = RELAY_DATABASE_URL,
        write_timeout: float = RELAY_WRITE_TIMEOUT_SECONDS,
        read_timeout: float = RELAY_READ_TIMEOUT_SECONDS,
    ):
        self.credential_cache = credential_cache
        self.base_url = base_url.rstrip("/")
        self.write_timeout = write_timeout
        self.read_timeout = read_timeout
        self._ssl_context = ssl.create_default_context(cafile=_CERT_BUNDLE) if _CERT_BUNDLE else None

    # -- paths ---------------------------------------------------------------

    def _url(self, *segments: str) -> str:
        path = "/".join(urllib.parse.quote(str(seg), safe="") for seg in segments)
        return f"{self.base_url}/{path}.json"

    def command_url(self, handle: CorrelationHandle) -> str:
        return self._url("messages", handle.tenant_id, handle.command_id)

    def progress_url(self, handle: CorrelationHandle) -> str:
        return self._url("progress", handle.tenant_id, handle.command_id)

    def responses_url(self) -> str:
        return self._url("responses")

    def response_url(self, key: str) -> str:
        return self._url("responses", key)

    # -- transport -----------------------------------------------------------

    def _request(
        self,
        method: str,
        url: str,
        *,
        timeout: float,
        body: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, Any]:
        """Issue one authenticated request. urllib errors propagate to the caller."""
        headers = {
            "Authorization": f"Bearer {self.credential_cache.get_token()}",
            "Content-Type": "application/json",
        }
        data = json.dumps(body).encode("utf-8") if body is not None else None
        req = urllib.request.Request(url=url, method=method, data=data, headers=headers)
        with urllib.request.urlopen(req, timeout=timeout, context=self._ssl_context) as resp:
            status = int(getattr(resp, "status", 0) or 0)
            raw = resp.read().decode("utf-8", errors="replace")
        if not raw.strip():
            return status, None
        try:
            return status, json.loads(raw)
        except json.JSONDecodeError:
            return status, raw

    def _write(self, method: str, url: str, body: Optional[Dict[str, Any]] = None) -> Any:
        started = time.perf_counter()
        try:
            status, payload = self._request(method, url, timeout=self.write_timeout, body=body)
        except urllib.error.HTTPError as exc:
            if method == "DELETE" and exc.code == 404:
                return None
            detail = exc.read().decode("utf-8", errors="replace")[:400]
            raise RelayWriteFailure(f"Relay write failed: {exc.code} {exc.reason} - {detail}") from exc
        except urllib.error.URLError as exc:
            if isinstance(exc.reason, (socket.timeout, TimeoutError)):
                raise RelayWriteFailure("Relay write timeout - check relay connection") from exc
            raise RelayWriteFailure(f"Relay write failed: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise RelayWriteFailure("Relay write timeout - check relay connection") from exc

        if status < 200 or status >= 300:
            raise RelayWriteFailure(f"Relay write returned http_{status}")
        logger.info(
            "[INFO] relay %s %s -> %s (%dms)",
            method,
            url.replace(self.base_url, ""),
            status,
            int((time.perf_counter() - started) * 1000),
        )
        return payload

    def _read(self, url: str) -> Any:
        try:
            status, payload = self._request("GET", url, timeout=self.read_timeout)
        except urllib.error.HTTPError as exc:
            if exc.code == 404:
                return None
            raise RelayReadFailure(f"Relay read failed: {exc.code} {exc.reason}") from exc
        except urllib.error.URLError as exc:
            raise RelayReadFailure(f"Relay read failed: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise RelayReadFailure("Relay read timed out") from exc

        if status < 200 or status >= 300:
            raise RelayReadFailure(f"Relay read returned http_{status}")
        return payload

    # -- commands ------------------------------------------------------------

    def put_command(self, handle: CorrelationHandle, record: Dict[str, Any]) -> None:
        self._write("PUT", self.command_url(handle), body=record)

    def get_command(self, handle: CorrelationHandle) -> Optional[Dict[str, Any]]:
        payload = self._read(self.command_url(handle))
        return payload if isinstance(payload, dict) else None

    def delete_command(self, handle: CorrelationHandle) -> None:
        self._write("DELETE", self.command_url(handle))

    # -- progress ------------------------------------------------------------

    def get_progress(self, handle: CorrelationHandle) -> Optional[Dict[str, Any]]:
        payload = self._read(self.progress_url(handle))
        return payload if isinstance(payload, dict) else None

    def delete_progress(self, handle: CorrelationHandle) -> None:
        self._write("DELETE", self.progress_url(handle))

    # -- responses -----------------------------------------------------------

    def list_responses(self) -> Dict[str, Any]:
        payload = self._read(self.responses_url())
        if payload is None:
            return {}
        if not isinstance(payload, dict):
            logger.warning("Unexpected /responses payload type: %s", type(payload).__name__)
            return {}
        return payload

    def delete_response(self, key: str) -> None:
        self._write("DELETE", self.response_url(key))
