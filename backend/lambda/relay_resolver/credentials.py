"""credentials.py — Bearer-token cache for the shared relay store.

``CredentialCache`` is a single-entry expiring cache keyed by credential
identity. It is passed explicitly to ``RelayStoreClient``; the only process-wide
instance is the lazy singleton returned by ``_get_credential_cache`` so warm
Lambda containers reuse a still-valid token. A cold start always re-fetches.

Concurrent refreshes are not locked: replacing the entry is idempotent and a
racing refresh simply overwrites with an equally valid token.
"""
from __future__ import annotations

import datetime as dt
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

import google.auth.exceptions
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account

from aws_clients import _fetch_secret_json
from config import (
    GOOGLE_APPLICATION_CREDENTIALS,
    RELAY_SERVICE_ACCOUNT_SECRET_ID,
    RELAY_TOKEN_REFRESH_BUFFER_SECONDS,
    _FIREBASE_SCOPES,
    logger,
)
from errors import CredentialFailure

__all__ = [
    "CredentialCache",
    "ServiceAccountTokenProvider",
    "TokenProvider",
    "_get_credential_cache",
]


class TokenProvider(Protocol):
    identity: str

    def fetch(self) -> Tuple[str, int]:
        """Return ``(access_token, expires_in_seconds)``."""


@dataclass
class _CachedToken:
    identity: str
    token: str
    expires_at_ms: int


class CredentialCache:
    def __init__(
        self,
        provider: TokenProvider,
        buffer_seconds: int = RELAY_TOKEN_REFRESH_BUFFER_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.provider = provider
        self.buffer_ms = int(buffer_seconds * 1000)
        self._clock = clock
        self._entry: Optional[_CachedToken] = None

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def get_token(self) -> str:
        now = self._now_ms()
        entry = self._entry
        identity = self.provider.identity
        if entry and entry.identity == identity and now < entry.expires_at_ms - self.buffer_ms:
            return entry.token

        try:
            token, expires_in = self.provider.fetch()
        except CredentialFailure:
            raise
        except Exception as exc:
            raise CredentialFailure(f"Failed to obtain relay access token: {exc}") from exc
        if not token:
            raise CredentialFailure("Credential provider returned an empty access token")

        self._entry = _CachedToken(
            identity=identity,
            token=token,
            expires_at_ms=now + int(expires_in) * 1000,
        )
        logger.info("[INFO] Refreshed relay access token for %s (expires_in=%ss)", identity, expires_in)
        return token

    def invalidate(self) -> None:
        self._entry = None


class ServiceAccountTokenProvider:
    """Mints OAuth2 access tokens for the relay database from a service-account key."""

    def __init__(self, info: Dict[str, Any], scopes: Tuple[str, ...] = _FIREBASE_SCOPES):
        try:
            self._credentials = service_account.Credentials.from_service_account_info(info, scopes=list(scopes))
        except (ValueError, KeyError) as exc:
            raise CredentialFailure(f"Invalid service account key: {exc}") from exc
        self.identity = str(info.get("client_email") or self._credentials.service_account_email)

    @classmethod
    def from_environment(cls) -> "ServiceAccountTokenProvider":
        if GOOGLE_APPLICATION_CREDENTIALS:
            try:
                with open(GOOGLE_APPLICATION_CREDENTIALS, "r", encoding="utf-8") as fh:
                    return cls(json.load(fh))
            except (OSError, json.JSONDecodeError) as exc:
                raise CredentialFailure(
                    f"Unable to read service account file {GOOGLE_APPLICATION_CREDENTIALS}: {exc}"
                ) from exc
        try:
            return cls(_fetch_secret_json(RELAY_SERVICE_ACCOUNT_SECRET_ID))
        except RuntimeError as exc:
            raise CredentialFailure(str(exc)) from exc

    def fetch(self) -> Tuple[str, int]:
        try:
            self._credentials.refresh(GoogleAuthRequest())
        except google.auth.exceptions.GoogleAuthError as exc:
            raise CredentialFailure(f"Service account token refresh failed: {exc}") from exc

        expiry = self._credentials.expiry
        if expiry is None:
            return self._credentials.token, 3600
        # google-auth reports expiry as a naive UTC datetime.
        now = dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)
        return self._credentials.token, max(0, int((expiry - now).total_seconds()))


_credential_cache: Optional[CredentialCache] = None


def _get_credential_cache() -> CredentialCache:
    global _credential_cache
    if _credential_cache is None:
        _credential_cache = CredentialCache(ServiceAccountTokenProvider.from_environment())
    return _credential_cache
