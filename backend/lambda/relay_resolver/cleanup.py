"""cleanup.py — Best-effort removal of consumed relay records.

Deletes are issued concurrently, logged on failure and never retried. A missing
key deletes cleanly, so running cleanup twice is harmless. Cleanup never turns
a delivered result into an error.
"""
from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, Optional

from config import RELAY_CLEANUP_WORKERS, logger
from models import CorrelationHandle
from relay_store import RelayStoreClient
from serialization import _emit_structured_observability

__all__ = [
    "CleanupAgent",
]

_OK = "deleted"


class CleanupAgent:
    def __init__(self, store: RelayStoreClient, executor: Optional[ThreadPoolExecutor] = None):
        self.store = store
        self._executor = executor or ThreadPoolExecutor(
            max_workers=RELAY_CLEANUP_WORKERS,
            thread_name_prefix="relay-cleanup",
        )
        # Separate pool so a scheduled cleanup never waits on its own workers.
        self._scheduler = ThreadPoolExecutor(max_workers=1, thread_name_prefix="relay-cleanup-scheduler")

    def _attempt(self, target: str, fn: Callable[[], None]) -> str:
        try:
            fn()
            return _OK
        except Exception as exc:
            logger.warning("Relay cleanup of %s failed: %s", target, exc)
            return f"failed: {exc}"

    def cleanup(self, handle: CorrelationHandle, response_key: Optional[str]) -> Dict[str, str]:
        """Delete command, matched response and progress; returns an outcome per target."""
        targets: Dict[str, Callable[[], None]] = {
            "command": lambda: self.store.delete_command(handle),
            "progress": lambda: self.store.delete_progress(handle),
        }
        if response_key:
            targets["response"] = lambda: self.store.delete_response(response_key)

        futures = {
            name: self._executor.submit(self._attempt, name, fn)
            for name, fn in targets.items()
        }
        outcomes = {name: fut.result() for name, fut in futures.items()}

        failed = sorted(name for name, outcome in outcomes.items() if outcome != _OK)
        _emit_structured_observability(
            component="relay_resolver",
            event="cleanup",
            tenant_id=handle.tenant_id,
            command_id=handle.command_id,
            error_code="partial_cleanup" if failed else "",
            extra={"response_key": response_key or "", "failed_targets": failed},
        )
        return outcomes

    def schedule(self, handle: CorrelationHandle, response_key: Optional[str]) -> Future:
        """Fire-and-forget form of ``cleanup``; the returned future never raises."""
        return self._scheduler.submit(self.cleanup, handle, response_key)

    def cleanup_command(self, handle: CorrelationHandle) -> str:
        """Delete only the command record (free-text timeout path)."""
        return self._attempt("command", lambda: self.store.delete_command(handle))
