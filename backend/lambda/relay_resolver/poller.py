"""poller.py — Bounded polling of the relay within one invocation.

Two flavors:

* ``check_once`` — a single non-looping pass for structured (JSON) results.
  The caller owns the loop (see tools/relay_poll_client.py), so a workload can
  outlive any single invocation's time ceiling.
* ``run_code_request`` — the free-text flavor. It loops internally with a
  fixed attempt limit that must stay below the host's hard ceiling, then
  applies tracker side effects before returning.
"""
from __future__ import annotations

import enum
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

from cleanup import CleanupAgent
from config import (
    CODE_REQUEST_DEADLINE_SECONDS,
    CODE_REQUEST_MAX_ATTEMPTS,
    CODE_REQUEST_POLL_INTERVAL_SECONDS,
    REVIEW_STATE_NAME,
    _WAITING_MESSAGE,
    _WAITING_STATUS,
    logger,
)
from errors import CredentialFailure, MatchParseFailure, RelayReadFailure
from matcher import find_response, select_best_match
from models import CorrelationHandle, Progress
from relay_store import RelayStoreClient
from serialization import _emit_structured_observability, _now_iso

__all__ = [
    "Completed",
    "Failed",
    "PollResult",
    "PollStatus",
    "Processing",
    "check_for_conversion_results",
    "check_once",
    "run_code_request",
    "truncate_at_colon",
]


class PollStatus(str, enum.Enum):
    COMPLETED = "completed"
    PROCESSING = "processing"
    FAILED = "failed"


@dataclass(frozen=True)
class Completed:
    data: Any
    response_key: str
    raw_response: str = ""

    status = PollStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {"success": True, "completed": True, "status": self.status.value, "data": self.data}


@dataclass(frozen=True)
class Processing:
    progress: Progress

    status = PollStatus.PROCESSING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "processing": True,
            "status": self.status.value,
            "progress": self.progress.to_dict(),
        }


@dataclass(frozen=True)
class Failed:
    error: str
    code: str = "RELAY_ERROR"
    raw_response: Optional[str] = None
    retryable: bool = False

    status = PollStatus.FAILED

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "success": False,
            "status": self.status.value,
            "error": self.error,
            "errorCode": self.code,
            "retryable": self.retryable,
        }
        if self.raw_response is not None:
            out["rawResponse"] = self.raw_response
        return out


PollResult = Union[Completed, Processing, Failed]


def truncate_at_colon(text: str) -> str:
    """Cut at the first ``:`` when it is not the first character; otherwise unchanged.

    Strips the machine-readable prefix the agent sometimes emits. Lossy: any
    natural-language colon truncates too.
    """
    index = text.find(":")
    return text[:index] if index > 0 else text


def check_once(store: RelayStoreClient, cleanup_agent: CleanupAgent, handle: CorrelationHandle) -> PollResult:
    """One pass: matched response, else progress checkpoint, else ``waiting``.

    A failed response scan does not skip the progress check; only a failure of
    both is reported as an error. Absence of everything is the normal state
    right after dispatch.
    """
    response_error: Optional[Exception] = None
    found = None
    try:
        found = find_response(store, handle.tenant_id, handle.command_id)
    except MatchParseFailure as exc:
        logger.error("[ERROR] Response %s for %s did not parse: %s", exc.response_key, handle.command_id, exc)
        return Failed(error=str(exc), code=exc.code, raw_response=exc.raw_response)
    except CredentialFailure as exc:
        return Failed(error=str(exc), code=exc.code)
    except RelayReadFailure as exc:
        logger.info("[INFO] Error checking responses for %s: %s", handle.command_id, exc)
        response_error = exc

    if found is not None:
        cleanup_agent.schedule(handle, found.match.key)
        _emit_structured_observability(
            component="relay_resolver",
            event="match",
            tenant_id=handle.tenant_id,
            command_id=handle.command_id,
            operation="check_once",
            extra={"response_key": found.match.key, "exact": found.match.exact},
        )
        return Completed(data=found.data, response_key=found.match.key, raw_response=found.match.response)

    try:
        record = store.get_progress(handle)
    except CredentialFailure as exc:
        return Failed(error=str(exc), code=exc.code)
    except RelayReadFailure as exc:
        logger.info("[INFO] Error checking progress for %s: %s", handle.command_id, exc)
        if response_error is not None:
            return Failed(
                error=f"Relay unavailable: {response_error}; {exc}",
                code=exc.code,
                retryable=True,
            )
        record = None

    if record and record.get("status"):
        return Processing(progress=Progress.from_record(record))

    return Processing(progress=Progress(status=_WAITING_STATUS, message=_WAITING_MESSAGE, timestamp=_now_iso()))


def check_for_conversion_results(store: RelayStoreClient, handle: CorrelationHandle) -> Dict[str, Any]:
    """Late-arrival lookup: claim an exact match left behind after a poll window closed.

    Only the response record is deleted; the command was already removed when
    the original window timed out.
    """
    try:
        found = find_response(store, handle.tenant_id, handle.command_id, exact_only=True)
    except MatchParseFailure as exc:
        return Failed(error=str(exc), code=exc.code, raw_response=exc.raw_response).to_dict()
    except (RelayReadFailure, CredentialFailure) as exc:
        return Failed(error=str(exc), code=exc.code, retryable=exc.retryable).to_dict()

    if found is None:
        return {"success": False, "message": "No results available yet"}

    try:
        store.delete_response(found.match.key)
    except Exception as exc:
        logger.warning("Failed deleting delayed response %s: %s", found.match.key, exc)
    return {"success": True, "data": found.data}


def _apply_tracker_side_effects(tracker: Any, issue_id: str, text: str, review_state: str) -> Dict[str, Any]:
    """Comment + status transition. Failures are logged and reported, never raised."""
    outcome: Dict[str, Any] = {"commented": False, "transitioned": False}
    try:
        tracker.add_comment(issue_id, f"Claude's Analysis: {text}")
        outcome["commented"] = True
    except Exception as exc:
        logger.error("[ERROR] Failed to add comment to issue %s: %s", issue_id, exc)
    try:
        outcome["transitioned"] = bool(tracker.transition_issue_by_name(issue_id, review_state))
    except Exception as exc:
        logger.error("[ERROR] Failed to transition issue %s to %s: %s", issue_id, review_state, exc)
    return outcome


def run_code_request(
    store: RelayStoreClient,
    cleanup_agent: CleanupAgent,
    tracker: Any,
    handle: CorrelationHandle,
    issue_id: Optional[str],
    *,
    max_attempts: int = CODE_REQUEST_MAX_ATTEMPTS,
    interval_seconds: float = CODE_REQUEST_POLL_INTERVAL_SECONDS,
    deadline_seconds: float = CODE_REQUEST_DEADLINE_SECONDS,
    review_state: str = REVIEW_STATE_NAME,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Dict[str, Any]:
    """Poll for a free-text reply, then comment/transition the issue and clean up.

    On timeout only the command is deleted: the response may still arrive and
    be claimed later by ``check_for_conversion_results``. The loop also stops
    once ``deadline_seconds`` of wall-clock time have passed, so slow store
    reads cannot push it past the host ceiling. CredentialFailure propagates.
    """
    started = clock()
    deadline = started + deadline_seconds
    attempts = 0
    for attempt in range(1, max_attempts + 1):
        if clock() + interval_seconds > deadline:
            break
        sleep(interval_seconds)
        if clock() > deadline:
            break
        attempts = attempt
        try:
            match = select_best_match(store.list_responses(), handle.tenant_id, handle.command_id)
        except RelayReadFailure as exc:
            logger.warning("Poll attempt %d/%d failed: %s", attempt, max_attempts, exc)
            continue
        if match is None:
            continue

        full_response = match.response
        truncated = truncate_at_colon(full_response)
        side_effects: Dict[str, Any] = {}
        if tracker is not None and issue_id:
            side_effects = _apply_tracker_side_effects(tracker, issue_id, truncated, review_state)
        cleanup_agent.cleanup(handle, match.key)
        _emit_structured_observability(
            component="relay_resolver",
            event="match",
            tenant_id=handle.tenant_id,
            command_id=handle.command_id,
            operation="run_code_request",
            extra={"response_key": match.key, "exact": match.exact, "attempt": attempt},
        )
        return {
            "success": True,
            "completed": True,
            "response": truncated,
            "fullResponse": full_response,
            "exactMatch": match.exact,
            "sideEffects": side_effects,
            **handle.to_dict(),
        }

    cleanup_agent.cleanup_command(handle)
    waited = int(round(clock() - started))
    _emit_structured_observability(
        component="relay_resolver",
        event="timeout",
        tenant_id=handle.tenant_id,
        command_id=handle.command_id,
        operation="run_code_request",
        error_code="TIMEOUT",
        extra={"attempts": attempts, "max_attempts": max_attempts},
    )
    return {
        "success": False,
        "timedOut": True,
        "error": (
            f"TIMEOUT: Message sent successfully but no response received after {waited} seconds. "
            f"CommandId: {handle.command_id}, UserId: {handle.tenant_id}"
        ),
        **handle.to_dict(),
    }
