"""handlers.py — HTTP route handlers and capabilities endpoint.

Part of the relay_resolver Lambda (Skipper relay bridge).
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from auth import _tenant_from_claims
from cleanup import CleanupAgent
from config import (
    CLIENT_POLL_INTERVAL_SECONDS,
    CODE_REQUEST_DEADLINE_SECONDS,
    CODE_REQUEST_MAX_ATTEMPTS,
    CODE_REQUEST_POLL_INTERVAL_SECONDS,
    RELAY_ORIGIN,
    RELAY_TOKEN_REFRESH_BUFFER_SECONDS,
    REVIEW_STATE_NAME,
    _COMMAND_FAMILIES,
    logger,
)
from credentials import _get_credential_cache
from dispatcher import dispatch_code_request, dispatch_conversion
from document_ops import fetch_page
from errors import DownstreamApiFailure, RelayError
from http_utils import _error, _json_body, _query_params, _response
from models import CorrelationHandle
from poller import Failed, check_for_conversion_results, check_once, run_code_request
from relay_store import RelayStoreClient
from settings_store import _get_settings, _save_settings, _save_technical_design_doc
from tracker_ops import JiraTracker, _get_atlassian_client

__all__ = [
    "_get_cleanup_agent",
    "_get_store",
    "_get_tracker",
    "_handle_capabilities",
    "_handle_check_progress",
    "_handle_check_results",
    "_handle_create_work_items",
    "_handle_dispatch_code_request",
    "_handle_dispatch_conversion",
    "_handle_fetch_document",
    "_handle_get_issue_description",
    "_handle_get_project",
    "_handle_get_settings",
    "_handle_save_settings",
    "_handle_save_technical_design_doc",
    "_relay_error",
]

_FAILED_HTTP_STATUS = {
    "MATCH_PARSE_FAILED": 422,
    "CREDENTIAL_FAILED": 503,
}

# ---------------------------------------------------------------------------
# Lazy singletons (reused across warm invocations)
# ---------------------------------------------------------------------------

_store: Optional[RelayStoreClient] = None
_cleanup_agent: Optional[CleanupAgent] = None


def _get_store() -> RelayStoreClient:
    global _store
    if _store is None:
        _store = RelayStoreClient(_get_credential_cache())
    return _store


def _get_cleanup_agent() -> CleanupAgent:
    global _cleanup_agent
    if _cleanup_agent is None:
        _cleanup_agent = CleanupAgent(_get_store())
    return _cleanup_agent


def _get_tracker() -> JiraTracker:
    return JiraTracker(_get_atlassian_client())


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def _relay_error(exc: RelayError) -> Dict[str, Any]:
    return _error(exc.status_code, str(exc), code=exc.code, retryable=exc.retryable, **exc.to_details())


def _failed_response(failed: Failed) -> Dict[str, Any]:
    body = failed.to_dict()
    message = body.pop("error")
    body.pop("success")
    return _error(
        _FAILED_HTTP_STATUS.get(failed.code, 502),
        message,
        code=failed.code,
        retryable=body.pop("retryable"),
        **body,
    )


def _handle_for_caller(
    claims: Dict[str, Any], command_id: str, requested_user_id: Optional[str]
) -> CorrelationHandle:
    """Handle addressed by the caller. Only internal-key callers may name another tenant."""
    tenant = _tenant_from_claims(claims)
    requested = str(requested_user_id or "").strip()
    if requested and requested != tenant:
        if claims.get("auth_mode") != "internal-key":
            raise PermissionError("userId does not match the authenticated caller")
        tenant = requested
    return CorrelationHandle.from_payload({"userId": tenant, "commandId": command_id})


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------


def _handle_capabilities() -> Dict[str, Any]:
    return _response(
        200,
        {
            "success": True,
            "capabilities": {
                "contract_version": "1.0.0",
                "origin": RELAY_ORIGIN,
                "command_types": [
                    {"type": command_type, "command_id_prefix": prefix}
                    for command_type, prefix in sorted(_COMMAND_FAMILIES.items())
                ],
                "polling": {
                    "client_interval_seconds": CLIENT_POLL_INTERVAL_SECONDS,
                    "code_request_max_attempts": CODE_REQUEST_MAX_ATTEMPTS,
                    "code_request_interval_seconds": CODE_REQUEST_POLL_INTERVAL_SECONDS,
                    "code_request_deadline_seconds": CODE_REQUEST_DEADLINE_SECONDS,
                },
                "token_refresh_buffer_seconds": RELAY_TOKEN_REFRESH_BUFFER_SECONDS,
                "review_state": REVIEW_STATE_NAME,
                "poll_statuses": ["processing", "completed", "failed"],
            },
        },
    )


# ---------------------------------------------------------------------------
# Relay protocol
# ---------------------------------------------------------------------------


def _handle_dispatch_conversion(event: Dict[str, Any], claims: Dict[str, Any]) -> Dict[str, Any]:
    try:
        body = _json_body(event)
    except ValueError as exc:
        return _error(400, str(exc))

    project_key = str(body.get("projectKey") or "").strip() or None
    content = body.get("confluenceContent")
    confluence_url = str(body.get("confluenceUrl") or "").strip()
    if not content and not confluence_url:
        return _error(400, "Either 'confluenceContent' or 'confluenceUrl' is required")

    try:
        if not content:
            content = fetch_page(_get_atlassian_client(), confluence_url)["content"]
        handle = dispatch_conversion(_get_store(), _tenant_from_claims(claims), str(content), project_key)
    except ValueError as exc:
        return _error(400, str(exc))
    except RelayError as exc:
        logger.error("[ERROR] Conversion dispatch failed: %s", exc)
        return _relay_error(exc)

    return _response(
        200,
        {
            "success": True,
            "processing": True,
            **handle.to_dict(),
            "message": "Conversion request sent to Claude. Poll the conversion for updates.",
        },
    )


def _handle_check_progress(event: Dict[str, Any], claims: Dict[str, Any], command_id: str) -> Dict[str, Any]:
    try:
        handle = _handle_for_caller(claims, command_id, _query_params(event).get("userId"))
    except PermissionError as exc:
        return _error(403, str(exc), code="PERMISSION_DENIED")
    except ValueError as exc:
        return _error(400, str(exc))

    result = check_once(_get_store(), _get_cleanup_agent(), handle)
    if isinstance(result, Failed):
        return _failed_response(result)
    return _response(200, result.to_dict())


def _handle_check_results(event: Dict[str, Any], claims: Dict[str, Any], command_id: str) -> Dict[str, Any]:
    try:
        handle = _handle_for_caller(claims, command_id, _query_params(event).get("userId"))
    except PermissionError as exc:
        return _error(403, str(exc), code="PERMISSION_DENIED")
    except ValueError as exc:
        return _error(400, str(exc))

    result = check_for_conversion_results(_get_store(), handle)
    if result.get("errorCode"):
        message = result.pop("error")
        result.pop("success")
        code = result.pop("errorCode")
        return _error(_FAILED_HTTP_STATUS.get(code, 502), message, code=code, **result)
    return _response(200, result)


def _handle_dispatch_code_request(event: Dict[str, Any], claims: Dict[str, Any]) -> Dict[str, Any]:
    try:
        body = _json_body(event)
    except ValueError as exc:
        return _error(400, str(exc))

    issue_id = str(body.get("issueId") or "").strip() or None
    description = body.get("description")
    if not issue_id and not description:
        return _error(400, "Either 'issueId' or 'description' is required")

    tracker = None
    try:
        if issue_id:
            try:
                tracker = _get_tracker()
            except DownstreamApiFailure as exc:
                if not description:
                    raise
                logger.warning("Tracker unavailable, skipping updates to issue %s: %s", issue_id, exc)
        if not description:
            description = tracker.get_issue_description(issue_id)
        handle = dispatch_code_request(_get_store(), _tenant_from_claims(claims), str(description), issue_id)
        result = run_code_request(_get_store(), _get_cleanup_agent(), tracker, handle, issue_id)
    except RelayError as exc:
        logger.error("[ERROR] Code request failed: %s", exc)
        return _relay_error(exc)

    if result.get("timedOut"):
        message = result.pop("error")
        result.pop("success")
        return _error(504, message, code="TIMEOUT", **result)
    return _response(200, result)


# ---------------------------------------------------------------------------
# Tracker / document collaborators
# ---------------------------------------------------------------------------


def _handle_create_work_items(event: Dict[str, Any]) -> Dict[str, Any]:
    try:
        body = _json_body(event)
    except ValueError as exc:
        return _error(400, str(exc))

    project_key = str(body.get("projectKey") or "").strip()
    if not project_key:
        return _error(400, "Field 'projectKey' is required")

    try:
        created = _get_tracker().create_work_items(project_key, body.get("epicsData") or {})
    except ValueError as exc:
        return _error(400, str(exc))
    except DownstreamApiFailure as exc:
        logger.error("[ERROR] Work item creation failed for %s: %s", project_key, exc)
        return _relay_error(exc)

    summary = created["summary"]
    return _response(
        200,
        {
            "success": True,
            **created,
            "message": f"Successfully created {summary['epics']} epics and {summary['stories']} stories",
        },
    )


def _handle_fetch_document(event: Dict[str, Any]) -> Dict[str, Any]:
    url = _query_params(event).get("url", "").strip()
    if not url:
        return _error(400, "Query parameter 'url' is required")
    try:
        page = fetch_page(_get_atlassian_client(), url)
    except ValueError as exc:
        return _error(400, str(exc))
    except DownstreamApiFailure as exc:
        return _relay_error(exc)
    return _response(200, {"success": True, **page})


def _handle_get_issue_description(issue_id: str) -> Dict[str, Any]:
    try:
        description = _get_tracker().get_issue_description(issue_id)
    except DownstreamApiFailure as exc:
        return _relay_error(exc)
    return _response(200, {"success": True, "issueId": issue_id, "description": description})


def _handle_get_project(project_key: str) -> Dict[str, Any]:
    try:
        tracker = _get_tracker()
        name = tracker.get_project_name(project_key)
    except DownstreamApiFailure as exc:
        return _relay_error(exc)

    board_id = None
    try:
        board_id = tracker.get_board_id(project_key)
    except DownstreamApiFailure as exc:
        logger.warning("Board lookup failed for %s: %s", project_key, exc)

    return _response(200, {"success": True, "project": {"key": project_key, "name": name, "boardId": board_id}})


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def _handle_get_settings(project_key: str) -> Dict[str, Any]:
    try:
        settings = _get_settings(project_key)
    except Exception as exc:
        logger.error("[ERROR] Failed loading settings for %s: %s", project_key, exc)
        return _error(500, f"Failed loading configuration: {exc}")
    return _response(200, {"success": True, "projectKey": project_key, "config": settings})


def _handle_save_settings(event: Dict[str, Any], project_key: str) -> Dict[str, Any]:
    try:
        body = _json_body(event)
        _save_settings(project_key, body.get("config"))
    except ValueError as exc:
        return _error(400, str(exc))
    except RuntimeError as exc:
        return _error(500, str(exc))
    return _response(200, {"success": True, "projectKey": project_key})


def _handle_save_technical_design_doc(event: Dict[str, Any], project_key: str) -> Dict[str, Any]:
    try:
        body = _json_body(event)
    except ValueError as exc:
        return _error(400, str(exc))
    if "technicalDesignDoc" not in body:
        return _error(400, "Field 'technicalDesignDoc' is required")
    try:
        _save_technical_design_doc(project_key, body.get("technicalDesignDoc"))
    except RuntimeError as exc:
        return _error(500, str(exc))
    return _response(200, {"success": True, "projectKey": project_key})
