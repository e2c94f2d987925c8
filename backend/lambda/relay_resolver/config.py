"""config.py — Central configuration — environment variables, protocol constants, logging.

Part of the relay_resolver Lambda (Skipper relay bridge).
"""
from __future__ import annotations

import logging
import os


def _normalize_api_keys(*raw_values: str) -> tuple[str, ...]:
    """Return deduplicated, non-empty key values from scalar/csv env sources."""
    keys: list[str] = []
    seen: set[str] = set()
    for raw in raw_values:
        if not raw:
            continue
        for part in str(raw).split(","):
            key = part.strip()
            if not key or key in seen:
                continue
            seen.add(key)
            keys.append(key)
    return tuple(keys)

__all__ = [
    "ATLASSIAN_API_TOKEN",
    "ATLASSIAN_BASE_URL",
    "ATLASSIAN_EMAIL",
    "ATLASSIAN_SECRET_ID",
    "ATLASSIAN_TIMEOUT_SECONDS",
    "CODE_REQUEST_DEADLINE_SECONDS",
    "CODE_REQUEST_MAX_ATTEMPTS",
    "CODE_REQUEST_POLL_INTERVAL_SECONDS",
    "CLIENT_POLL_INTERVAL_SECONDS",
    "COGNITO_CLIENT_ID",
    "COGNITO_USER_POOL_ID",
    "CORS_ORIGIN",
    "DEFAULT_PROJECT_TECHNOLOGY",
    "DYNAMODB_REGION",
    "GOOGLE_APPLICATION_CREDENTIALS",
    "RELAY_CLEANUP_WORKERS",
    "RELAY_DATABASE_URL",
    "RELAY_INTERNAL_API_KEY",
    "RELAY_INTERNAL_API_KEY_PREVIOUS",
    "RELAY_INTERNAL_API_KEYS",
    "RELAY_ORIGIN",
    "RELAY_READ_TIMEOUT_SECONDS",
    "RELAY_SERVICE_ACCOUNT_SECRET_ID",
    "RELAY_SETTINGS_TABLE",
    "RELAY_TOKEN_REFRESH_BUFFER_SECONDS",
    "RELAY_WRITE_TIMEOUT_SECONDS",
    "REVIEW_STATE_NAME",
    "SECRETS_REGION",
    "_ANONYMOUS_TENANT",
    "_COMMAND_FAMILIES",
    "_FIREBASE_SCOPES",
    "_WAITING_MESSAGE",
    "_WAITING_STATUS",
    "logger",
]

# ---------------------------------------------------------------------------
# Shared store (relay) configuration
# ---------------------------------------------------------------------------

RELAY_DATABASE_URL = os.environ.get(
    "RELAY_DATABASE_URL",
    "https://skipperrelay-default-rtdb.europe-west1.firebasedatabase.app",
).rstrip("/")
RELAY_ORIGIN = os.environ.get("RELAY_ORIGIN", "jira-forge-app")
RELAY_WRITE_TIMEOUT_SECONDS = float(os.environ.get("RELAY_WRITE_TIMEOUT_SECONDS", "5"))
RELAY_READ_TIMEOUT_SECONDS = float(os.environ.get("RELAY_READ_TIMEOUT_SECONDS", "5"))
RELAY_TOKEN_REFRESH_BUFFER_SECONDS = int(os.environ.get("RELAY_TOKEN_REFRESH_BUFFER_SECONDS", "300"))
RELAY_CLEANUP_WORKERS = int(os.environ.get("RELAY_CLEANUP_WORKERS", "3"))
RELAY_SERVICE_ACCOUNT_SECRET_ID = os.environ.get(
    "RELAY_SERVICE_ACCOUNT_SECRET_ID",
    "skipper/relay/firebase-service-account",
)
GOOGLE_APPLICATION_CREDENTIALS = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS", "")

# Free-text flow limit: attempts * interval must stay under the host's hard ceiling.
# The wall-clock deadline also bounds slow store reads; one read may still overrun it by
# RELAY_READ_TIMEOUT_SECONDS.
CODE_REQUEST_DEADLINE_SECONDS = float(os.environ.get("RELAY_CODE_REQUEST_DEADLINE_SECONDS", "20"))
CODE_REQUEST_MAX_ATTEMPTS = int(os.environ.get("RELAY_CODE_REQUEST_MAX_ATTEMPTS", "20"))
CODE_REQUEST_POLL_INTERVAL_SECONDS = float(os.environ.get("RELAY_CODE_REQUEST_POLL_INTERVAL_SECONDS", "1"))
CLIENT_POLL_INTERVAL_SECONDS = float(os.environ.get("RELAY_CLIENT_POLL_INTERVAL_SECONDS", "3"))
REVIEW_STATE_NAME = os.environ.get("RELAY_REVIEW_STATE", "In Review")

# ---------------------------------------------------------------------------
# Collaborators (ticket tracker / document host / settings)
# ---------------------------------------------------------------------------

ATLASSIAN_BASE_URL = os.environ.get("ATLASSIAN_BASE_URL", "").rstrip("/")
ATLASSIAN_SECRET_ID = os.environ.get("ATLASSIAN_SECRET_ID", "")
ATLASSIAN_EMAIL = os.environ.get("ATLASSIAN_EMAIL", "")
ATLASSIAN_API_TOKEN = os.environ.get("ATLASSIAN_API_TOKEN", "")
ATLASSIAN_TIMEOUT_SECONDS = float(os.environ.get("ATLASSIAN_TIMEOUT_SECONDS", "10"))

RELAY_SETTINGS_TABLE = os.environ.get("RELAY_SETTINGS_TABLE", "skipper-relay-settings")
DEFAULT_PROJECT_TECHNOLOGY = os.environ.get("DEFAULT_PROJECT_TECHNOLOGY", "Jira app / VSCode extension")
DYNAMODB_REGION = os.environ.get("DYNAMODB_REGION", "eu-west-1")
SECRETS_REGION = os.environ.get("SECRETS_REGION", DYNAMODB_REGION)

# ---------------------------------------------------------------------------
# Auth / HTTP
# ---------------------------------------------------------------------------

CORS_ORIGIN = os.environ.get("CORS_ORIGIN", "*")
COGNITO_USER_POOL_ID = os.environ.get("COGNITO_USER_POOL_ID", "")
COGNITO_CLIENT_ID = os.environ.get("COGNITO_CLIENT_ID", "")
RELAY_INTERNAL_API_KEY = os.environ.get("RELAY_INTERNAL_API_KEY", "")
RELAY_INTERNAL_API_KEY_PREVIOUS = os.environ.get("RELAY_INTERNAL_API_KEY_PREVIOUS", "")
RELAY_INTERNAL_API_KEYS = _normalize_api_keys(
    os.environ.get("RELAY_INTERNAL_API_KEYS", ""),
    RELAY_INTERNAL_API_KEY,
    RELAY_INTERNAL_API_KEY_PREVIOUS,
)

# ---------------------------------------------------------------------------
# Protocol constants
# ---------------------------------------------------------------------------

_FIREBASE_SCOPES = (
    "https://www.googleapis.com/auth/firebase.database",
    "https://www.googleapis.com/auth/userinfo.email",
)
_ANONYMOUS_TENANT = "anonymous"

# command type -> commandId prefix
_COMMAND_FAMILIES = {
    "epics-conversion": "epics",
    "code-request": "cmd",
}

_WAITING_STATUS = "waiting"
_WAITING_MESSAGE = "Waiting for Claude to start processing..."

logger = logging.getLogger()
logger.setLevel(logging.INFO)
