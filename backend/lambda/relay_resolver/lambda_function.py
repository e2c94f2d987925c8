"""relay_resolver/lambda_function.py

Skipper relay bridge: dispatches commands to an external coding agent through
a shared Firebase Realtime Database, correlates the agent's replies back to
the originating request, and applies Jira side effects.

Routes (via API Gateway proxy):
    GET  /api/v1/relay/capabilities
    POST /api/v1/relay/conversions
    GET  /api/v1/relay/conversions/{commandId}?userId=
    GET  /api/v1/relay/conversions/{commandId}/result
    POST /api/v1/relay/code-requests
    POST /api/v1/relay/work-items
    GET  /api/v1/relay/documents?url=
    GET  /api/v1/relay/issues/{issueId}/description
    GET  /api/v1/relay/projects/{projectKey}
    GET  /api/v1/relay/settings/{projectKey}
    PUT  /api/v1/relay/settings/{projectKey}
    PUT  /api/v1/relay/settings/{projectKey}/technical-design-doc
    OPTIONS /api/v1/relay/*

Auth:
    Reads the skipper_id_token cookie (Cognito JWT), or X-Relay-Internal-Key
    for trusted callers. The capabilities route is public.

Environment variables: see config.py.
"""
from __future__ import annotations

import re
from typing import Any, Dict

from auth import _authenticate
from config import logger
from errors import RelayError
from handlers import (
    _handle_capabilities,
    _handle_check_progress,
    _handle_check_results,
    _handle_create_work_items,
    _handle_dispatch_code_request,
    _handle_dispatch_conversion,
    _handle_fetch_document,
    _handle_get_issue_description,
    _handle_get_project,
    _handle_get_settings,
    _handle_save_settings,
    _handle_save_technical_design_doc,
    _relay_error,
)
from http_utils import _error, _path_method, _response

__all__ = [
    "lambda_handler",
]

_PREFIX = "/api/v1/relay"
_ID = r"([A-Za-z0-9_\-\.]+)"


def _route(event: Dict[str, Any]) -> Dict[str, Any]:
    method, path = _path_method(event)

    if method == "OPTIONS":
        return _response(200, {"success": True})

    logger.info("[INFO] route method=%s path=%s", method, path)

    # GET /api/v1/relay/capabilities is intentionally public.
    if method == "GET" and path == f"{_PREFIX}/capabilities":
        return _handle_capabilities()

    # Auth all other routes.
    claims, auth_err = _authenticate(event)
    if auth_err:
        return auth_err
    claims = claims or {}

    # POST /api/v1/relay/conversions
    if method == "POST" and path == f"{_PREFIX}/conversions":
        return _handle_dispatch_conversion(event, claims)

    # GET /api/v1/relay/conversions/{commandId}
    match_progress = re.fullmatch(rf"{_PREFIX}/conversions/{_ID}", path)
    if method == "GET" and match_progress:
        return _handle_check_progress(event, claims, match_progress.group(1))

    # GET /api/v1/relay/conversions/{commandId}/result
    match_result = re.fullmatch(rf"{_PREFIX}/conversions/{_ID}/result", path)
    if method == "GET" and match_result:
        return _handle_check_results(event, claims, match_result.group(1))

    # POST /api/v1/relay/code-requests
    if method == "POST" and path == f"{_PREFIX}/code-requests":
        return _handle_dispatch_code_request(event, claims)

    # POST /api/v1/relay/work-items
    if method == "POST" and path == f"{_PREFIX}/work-items":
        return _handle_create_work_items(event)

    # GET /api/v1/relay/documents?url=
    if method == "GET" and path == f"{_PREFIX}/documents":
        return _handle_fetch_document(event)

    # GET /api/v1/relay/issues/{issueId}/description
    match_issue = re.fullmatch(rf"{_PREFIX}/issues/{_ID}/description", path)
    if method == "GET" and match_issue:
        return _handle_get_issue_description(match_issue.group(1))

    # GET /api/v1/relay/projects/{projectKey}
    match_project = re.fullmatch(rf"{_PREFIX}/projects/{_ID}", path)
    if method == "GET" and match_project:
        return _handle_get_project(match_project.group(1))

    # GET|PUT /api/v1/relay/settings/{projectKey}
    match_settings = re.fullmatch(rf"{_PREFIX}/settings/{_ID}", path)
    if match_settings and method == "GET":
        return _handle_get_settings(match_settings.group(1))
    if match_settings and method == "PUT":
        return _handle_save_settings(event, match_settings.group(1))

    # PUT /api/v1/relay/settings/{projectKey}/technical-design-doc
    match_doc = re.fullmatch(rf"{_PREFIX}/settings/{_ID}/technical-design-doc", path)
    if method == "PUT" and match_doc:
        return _handle_save_technical_design_doc(event, match_doc.group(1))

    return _error(404, f"Unsupported route: {method} {path}")


def lambda_handler(event: Dict[str, Any], _context: Any) -> Dict[str, Any]:
    try:
        return _route(event)
    except RelayError as exc:
        logger.error("[ERROR] %s: %s", exc.code, exc)
        return _relay_error(exc)
    except Exception as exc:
        logger.exception("unhandled relay_resolver error")
        return _error(500, f"Internal error: {exc}", code="INTERNAL_ERROR")
