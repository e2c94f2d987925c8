"""matcher.py — Find the one response record meant for a correlation handle.

The response collection is flat and shared by every tenant, so matching is a
scan-and-rank:

1. A record is a *candidate* when it has a non-empty ``response`` and its
   ``messageId`` equals the tenant id.
2. A candidate is *exact* when its ``message`` contains the commandId.
3. Exact beats non-exact; within a tier the greatest ``timestamp`` wins
   (ISO-8601 compares lexically; a missing timestamp ranks as ``"0"``).

The non-exact tier is a fallback for agent replies that do not echo the
commandId. It can pick a reply meant for another command of the same tenant;
recency keeps that window small.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from config import logger
from errors import MatchParseFailure
from relay_store import RelayStoreClient

__all__ = [
    "MatchedResponse",
    "ResponseMatch",
    "extract_json_payload",
    "find_response",
    "rank_candidates",
    "select_best_match",
]

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


@dataclass(frozen=True)
class ResponseMatch:
    key: str
    record: Dict[str, Any]
    exact: bool
    timestamp: str

    @property
    def response(self) -> str:
        return str(self.record.get("response") or "")


@dataclass(frozen=True)
class MatchedResponse:
    match: ResponseMatch
    data: Any


def rank_candidates(
    responses: Mapping[str, Any],
    tenant_id: str,
    command_id: str,
) -> List[ResponseMatch]:
    candidates: List[ResponseMatch] = []
    for key, record in responses.items():
        if not isinstance(record, dict) or not record.get("response"):
            continue
        if record.get("messageId") != tenant_id:
            continue
        message = record.get("message")
        exact = isinstance(message, str) and command_id in message
        candidates.append(
            ResponseMatch(
                key=str(key),
                record=record,
                exact=exact,
                timestamp=str(record.get("timestamp") or "0"),
            )
        )
    # Stable sort: ties keep store order.
    candidates.sort(key=lambda c: (c.exact, c.timestamp), reverse=True)
    return candidates


def select_best_match(
    responses: Mapping[str, Any],
    tenant_id: str,
    command_id: str,
    *,
    exact_only: bool = False,
) -> Optional[ResponseMatch]:
    ranked = rank_candidates(responses, tenant_id, command_id)
    if exact_only:
        ranked = [c for c in ranked if c.exact]
    if not ranked:
        return None
    best = ranked[0]
    logger.info(
        "[INFO] Selected response %s for %s/%s (exact=%s, timestamp=%s, candidates=%d)",
        best.key,
        tenant_id,
        command_id,
        best.exact,
        best.timestamp,
        len(ranked),
    )
    return best


def extract_json_payload(text: str) -> Any:
    """Parse the greedy first-``{`` to last-``}`` span of free text.

    Raises MatchParseFailure when no span exists or it is not valid JSON.
    """
    found = _JSON_OBJECT_RE.search(text or "")
    if not found:
        raise MatchParseFailure("Response does not contain a JSON object", raw_response=text)
    try:
        return json.loads(found.group(0))
    except json.JSONDecodeError as exc:
        raise MatchParseFailure(f"Failed to parse Claude response as JSON: {exc}", raw_response=text) from exc


def find_response(
    store: RelayStoreClient,
    tenant_id: str,
    command_id: str,
    *,
    exact_only: bool = False,
) -> Optional[MatchedResponse]:
    """Scan the response collection and parse the best match.

    ``None`` means nothing matched yet. A match whose payload does not parse
    raises MatchParseFailure (carrying the store key) rather than looking
    absent, so callers do not retry forever against it. RelayReadFailure
    propagates.
    """
    match = select_best_match(store.list_responses(), tenant_id, command_id, exact_only=exact_only)
    if match is None:
        return None
    try:
        data = extract_json_payload(match.response)
    except MatchParseFailure as exc:
        exc.response_key = match.key
        raise
    return MatchedResponse(match=match, data=data)
