"""tracker_ops.py — Jira REST wrappers: issue text, projects, comments, transitions, backlog creation.

Part of the relay_resolver Lambda (Skipper relay bridge).
"""
from __future__ import annotations

import base64
import json
import ssl
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Dict, List, Optional, Tuple

try:
    import certifi

    _CERT_BUNDLE = certifi.where()
except Exception:
    _CERT_BUNDLE = None

from aws_clients import _fetch_secret_json
from config import (
    ATLASSIAN_API_TOKEN,
    ATLASSIAN_BASE_URL,
    ATLASSIAN_EMAIL,
    ATLASSIAN_SECRET_ID,
    ATLASSIAN_TIMEOUT_SECONDS,
    logger,
)
from errors import DownstreamApiFailure

__all__ = [
    "AtlassianClient",
    "JiraTracker",
    "_adf_paragraph",
    "_extract_text_from_adf",
    "_get_atlassian_client",
]

_DEFAULT_GENERATED_DESCRIPTION = "Generated from technical design document"


def _adf_paragraph(text: str) -> Dict[str, Any]:
    """Wrap plain text in a single-paragraph Atlassian Document Format body."""
    return {
        "type": "doc",
        "version": 1,
        "content": [
            {
                "type": "paragraph",
                "content": [{"type": "text", "text": text}],
            }
        ],
    }


def _extract_text_from_adf(adf: Any) -> str:
    if not isinstance(adf, dict) or not adf.get("content"):
        return "No description content"

    parts: List[str] = []

    def _walk(node: Dict[str, Any]) -> None:
        if node.get("type") == "text":
            parts.append(str(node.get("text") or ""))
        elif node.get("content"):
            for child in node["content"]:
                if isinstance(child, dict):
                    _walk(child)
        if node.get("type") in {"paragraph", "heading"}:
            parts.append("\n")

    for node in adf["content"]:
        if isinstance(node, dict):
            _walk(node)
    return "".join(parts).strip() or "No readable description content"


class AtlassianClient:
    """Basic-auth JSON client for a Jira / Confluence Cloud site."""

    def __init__(self, base_url: str, email: str, api_token: str, timeout: float = ATLASSIAN_TIMEOUT_SECONDS):
        if not base_url:
            raise ValueError("ATLASSIAN_BASE_URL not set")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        token = base64.b64encode(f"{email}:{api_token}".encode("utf-8")).decode("ascii")
        self._auth_header = f"Basic {token}"
        self._ssl_context = ssl.create_default_context(cafile=_CERT_BUNDLE) if _CERT_BUNDLE else None

    def request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        query: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, Any]:
        """Return ``(status, parsed_json)``. Non-2xx statuses raise DownstreamApiFailure."""
        url = f"{self.base_url}{path}"
        if query:
            url = f"{url}?{urllib.parse.urlencode(query)}"
        headers = {
            "Authorization": self._auth_header,
            "Accept": "application/json",
        }
        data = None
        if body is not None:
            headers["Content-Type"] = "application/json"
            data = json.dumps(body).encode("utf-8")
        req = urllib.request.Request(url=url, method=method, data=data, headers=headers)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout, context=self._ssl_context) as resp:
                status = int(getattr(resp, "status", 0) or 0)
                raw = resp.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")[:400]
            logger.error("[ERROR] %s %s failed: %s %s", method, path, exc.code, detail)
            raise DownstreamApiFailure(f"{method} {path} failed: {exc.code} {exc.reason}", exc.code) from exc
        except urllib.error.URLError as exc:
            raise DownstreamApiFailure(f"{method} {path} failed: {exc.reason}") from exc

        if status < 200 or status >= 300:
            raise DownstreamApiFailure(f"{method} {path} returned http_{status}", status)
        if not raw.strip():
            return status, None
        try:
            return status, json.loads(raw)
        except json.JSONDecodeError:
            return status, raw


class JiraTracker:
    def __init__(self, client: AtlassianClient):
        self.client = client

    def get_issue_description(self, issue_id: str) -> str:
        _status, issue = self.client.request("GET", f"/rest/api/3/issue/{urllib.parse.quote(str(issue_id))}")
        description = ((issue or {}).get("fields") or {}).get("description")
        if not description:
            return "No description available"
        if isinstance(description, dict):
            return _extract_text_from_adf(description)
        return str(description)

    def get_project(self, project_key: str) -> Dict[str, Any]:
        _status, project = self.client.request("GET", f"/rest/api/3/project/{urllib.parse.quote(project_key)}")
        return project or {}

    def get_project_name(self, project_key: str) -> str:
        return str(self.get_project(project_key).get("name") or project_key)

    def get_board_id(self, project_key: str) -> Optional[int]:
        _status, boards = self.client.request(
            "GET",
            "/rest/agile/1.0/board",
            query={"projectKeyOrId": project_key},
        )
        values = (boards or {}).get("values") or []
        if not values:
            logger.info("[INFO] No boards found for project %s", project_key)
            return None
        return values[0].get("id")

    def add_comment(self, issue_id: str, text: str) -> Dict[str, Any]:
        _status, created = self.client.request(
            "POST",
            f"/rest/api/3/issue/{urllib.parse.quote(str(issue_id))}/comment",
            body={"body": _adf_paragraph(text)},
        )
        return created or {}

    def transition_issue_by_name(self, issue_id: str, target_name: str) -> bool:
        """Apply the transition whose name (or destination status name) equals ``target_name``.

        Returns False when no such transition is available.
        """
        path = f"/rest/api/3/issue/{urllib.parse.quote(str(issue_id))}/transitions"
        _status, listing = self.client.request("GET", path)
        transitions = (listing or {}).get("transitions") or []
        chosen = next(
            (
                t
                for t in transitions
                if t.get("name") == target_name or (t.get("to") or {}).get("name") == target_name
            ),
            None,
        )
        if chosen is None:
            logger.warning(
                "Transition '%s' not found for issue %s. Available: %s",
                target_name,
                issue_id,
                [t.get("name") for t in transitions],
            )
            return False
        self.client.request("POST", path, body={"transition": {"id": chosen.get("id")}})
        logger.info("[INFO] Issue %s transitioned to %s", issue_id, target_name)
        return True

    def _create_issue(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        _status, created = self.client.request("POST", "/rest/api/3/issue", body={"fields": fields})
        return created or {}

    def create_work_items(self, project_key: str, epics_data: Dict[str, Any]) -> Dict[str, Any]:
        """Create each epic and its stories.

        An epic failure aborts the batch (DownstreamApiFailure propagates); a
        single story failure is logged and skipped. Partial success is reported
        through the counts.
        """
        epics = (epics_data or {}).get("epics")
        if not isinstance(epics, list):
            raise ValueError("epicsData.epics must be a list")

        project = self.get_project(project_key)
        project_id = project.get("id")
        logger.info("[INFO] Creating %d epics in %s (%s)", len(epics), project.get("name"), project_id)

        created_items: List[Dict[str, Any]] = []
        failed_stories = 0
        for epic in epics:
            title = str(epic.get("title") or "")
            created_epic = self._create_issue(
                {
                    "project": {"id": project_id},
                    "summary": title,
                    "description": _adf_paragraph(epic.get("description") or _DEFAULT_GENERATED_DESCRIPTION),
                    "issuetype": {"name": "Epic"},
                }
            )
            epic_item: Dict[str, Any] = {
                "type": "epic",
                "key": created_epic.get("key"),
                "id": created_epic.get("id"),
                "title": title,
                "stories": [],
            }

            for story in epic.get("stories") or []:
                story_title = str(story.get("title") or "")
                text = story.get("description") or _DEFAULT_GENERATED_DESCRIPTION
                criteria = [str(c) for c in story.get("acceptanceCriteria") or []]
                if criteria:
                    text += "\n\nAcceptance Criteria:\n" + "\n".join(f"• {c}" for c in criteria)
                try:
                    created_story = self._create_issue(
                        {
                            "project": {"id": project_id},
                            "summary": story_title,
                            "description": _adf_paragraph(text),
                            "issuetype": {"name": "Story"},
                            "parent": {"key": created_epic.get("key")},
                        }
                    )
                except DownstreamApiFailure as exc:
                    failed_stories += 1
                    logger.warning("Failed to create story '%s': %s", story_title, exc)
                    continue
                epic_item["stories"].append(
                    {"key": created_story.get("key"), "id": created_story.get("id"), "title": story_title}
                )

            created_items.append(epic_item)

        story_count = sum(len(item["stories"]) for item in created_items)
        return {
            "createdItems": created_items,
            "summary": {
                "epics": len(created_items),
                "stories": story_count,
                "failedStories": failed_stories,
            },
        }


_atlassian_client: Optional[AtlassianClient] = None


def _get_atlassian_client() -> AtlassianClient:
    global _atlassian_client
    if _atlassian_client is None:
        email, api_token = ATLASSIAN_EMAIL, ATLASSIAN_API_TOKEN
        try:
            if ATLASSIAN_SECRET_ID:
                secret = _fetch_secret_json(ATLASSIAN_SECRET_ID)
                email = str(secret.get("email") or email)
                api_token = str(secret.get("api_token") or secret.get("token") or api_token)
            _atlassian_client = AtlassianClient(ATLASSIAN_BASE_URL, email, api_token)
        except (RuntimeError, ValueError) as exc:
            logger.error("[ERROR] Atlassian client unavailable: %s", exc)
            raise DownstreamApiFailure(f"Atlassian client unavailable: {exc}", retryable=False) from exc
    return _atlassian_client
