"""document_ops.py — Confluence page fetch for design-document conversion."""
from __future__ import annotations

import re
from typing import Any, Dict

from config import logger
from tracker_ops import AtlassianClient

__all__ = [
    "fetch_page",
    "parse_page_id",
]

# https://<site>.atlassian.net/wiki/spaces/SPACE/pages/PAGE_ID/Page+Title
_PAGE_ID_RE = re.compile(r"/pages/(\d+)/")


def parse_page_id(url: str) -> str:
    match = _PAGE_ID_RE.search(str(url or ""))
    if not match:
        raise ValueError("Invalid Confluence URL format. Expected format: .../pages/PAGE_ID/...")
    return match.group(1)


def fetch_page(client: AtlassianClient, url: str) -> Dict[str, Any]:
    page_id = parse_page_id(url)
    logger.info("[INFO] Fetching Confluence page %s", page_id)
    _status, page = client.request(
        "GET",
        f"/wiki/api/v2/pages/{page_id}",
        query={"body-format": "atlas_doc_format"},
    )
    page = page or {}
    body = (page.get("body") or {}).get("atlas_doc_format") or {}
    return {
        "title": page.get("title"),
        "content": body.get("value") or "No content available",
    }
