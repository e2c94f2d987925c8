"""auth.py — Cognito JWT authentication, internal-key auth, tenant resolution.

Reads ``skipper_id_token`` from the Cookie header / API Gateway cookies array
and validates the RS256 JWT against the Cognito User Pool JWKS. Trusted
callers (the poll CLI, smoke tests) may instead present
``X-Relay-Internal-Key`` and name the tenant with ``X-Relay-Account-Id``.
"""
from __future__ import annotations

import json
import time
import urllib.request
from typing import Any, Dict, List, Optional, Tuple

try:
    import jwt
    from jwt.algorithms import RSAAlgorithm

    _JWT_AVAILABLE = True
except Exception:
    _JWT_AVAILABLE = False

import config
from config import COGNITO_CLIENT_ID, COGNITO_USER_POOL_ID, _ANONYMOUS_TENANT
from http_utils import _error

__all__ = [
    "_JWKS_TTL",
    "_authenticate",
    "_extract_token",
    "_get_jwks",
    "_header",
    "_tenant_from_claims",
    "_verify_token",
]

_COOKIE_NAME = "skipper_id_token"

_jwks_cache: Dict[str, Any] = {}
_jwks_fetched_at: float = 0.0
_JWKS_TTL = 3600.0


def _header(event: Dict[str, Any], name: str) -> str:
    headers = event.get("headers") or {}
    lowered = name.lower()
    for key, value in headers.items():
        if str(key).lower() == lowered:
            return str(value or "")
    return ""


def _extract_token(event: Dict[str, Any]) -> Optional[str]:
    cookie_header = _header(event, "cookie")
    cookie_parts: List[str] = []
    if cookie_header:
        cookie_parts.extend(part.strip() for part in cookie_header.split(";") if part.strip())

    event_cookies = event.get("cookies") or []
    if isinstance(event_cookies, list):
        cookie_parts.extend(part.strip() for part in event_cookies if isinstance(part, str) and part.strip())
    elif isinstance(event_cookies, str) and event_cookies.strip():
        cookie_parts.append(event_cookies.strip())

    prefix = f"{_COOKIE_NAME}="
    for part in cookie_parts:
        if part.startswith(prefix):
            return part[len(prefix):]
    return None


def _get_jwks() -> Dict[str, Any]:
    global _jwks_cache, _jwks_fetched_at
    now = time.time()
    if _jwks_cache and (now - _jwks_fetched_at) < _JWKS_TTL:
        return _jwks_cache

    if not COGNITO_USER_POOL_ID:
        raise ValueError("COGNITO_USER_POOL_ID not set")

    region = COGNITO_USER_POOL_ID.split("_")[0]
    url = (
        f"https://cognito-idp.{region}.amazonaws.com/"
        f"{COGNITO_USER_POOL_ID}/.well-known/jwks.json"
    )

    with urllib.request.urlopen(url, timeout=5) as resp:
        data = json.loads(resp.read())

    new_cache: Dict[str, Any] = {}
    for key_data in data.get("keys", []):
        new_cache[key_data["kid"]] = RSAAlgorithm.from_jwk(json.dumps(key_data))

    _jwks_cache = new_cache
    _jwks_fetched_at = now
    return _jwks_cache


def _verify_token(token: str) -> Dict[str, Any]:
    if not _JWT_AVAILABLE:
        raise ValueError("JWT library not available in Lambda package")

    try:
        header = jwt.get_unverified_header(token)
    except Exception as exc:
        raise ValueError(f"Invalid token header: {exc}") from exc

    alg = header.get("alg", "RS256")
    if alg != "RS256":
        raise ValueError(f"Unexpected token algorithm: {alg}")

    key = _get_jwks().get(header.get("kid"))
    if key is None:
        raise ValueError("Token key ID not found in JWKS")

    try:
        return jwt.decode(
            token,
            key,
            algorithms=["RS256"],
            audience=COGNITO_CLIENT_ID,
            options={"verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise ValueError("Token has expired. Please sign in again.")
    except jwt.InvalidAudienceError:
        raise ValueError("Token audience mismatch.")
    except jwt.PyJWTError as exc:
        raise ValueError(f"Token validation failed: {exc}") from exc


def _authenticate(event: Dict[str, Any]) -> Tuple[Optional[Dict[str, Any]], Optional[Dict[str, Any]]]:
    internal_keys = config.RELAY_INTERNAL_API_KEYS
    if internal_keys:
        internal_key = _header(event, "x-relay-internal-key")
        if internal_key and internal_key in internal_keys:
            return {
                "auth_mode": "internal-key",
                "account_id": _header(event, "x-relay-account-id").strip(),
            }, None

    token = _extract_token(event)
    if not token:
        return None, _error(401, "Authentication required. Please sign in.")

    try:
        return _verify_token(token), None
    except ValueError as exc:
        return None, _error(401, str(exc))


def _tenant_from_claims(claims: Optional[Dict[str, Any]]) -> str:
    """Tenant scoping a command: the caller's account id, else ``anonymous``."""
    claims = claims or {}
    tenant = str(claims.get("account_id") or claims.get("sub") or "").strip()
    return tenant or _ANONYMOUS_TENANT
