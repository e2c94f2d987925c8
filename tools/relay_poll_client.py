#!/usr/bin/env python3
"""Dispatch Skipper relay conversions and poll them to completion from the caller side.

The relay_resolver Lambda never loops for structured results: each
``GET /api/v1/relay/conversions/{commandId}`` is a single pass. This tool owns
the loop. It holds the correlation handle (userId + commandId) between polls,
so a poll session can be abandoned and resumed later with ``poll``.

Invokes the deployed function directly through the AWS Lambda API with an
API-Gateway-shaped event authenticated by the relay internal key.

Exit codes: 0 completed, 1 error, 2 timed out, 130 interrupted.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

DEFAULT_REGION = "eu-west-1"
DEFAULT_FUNCTION_NAME = "skipper-relay-resolver"
DEFAULT_INTERVAL_SECONDS = 3.0
DEFAULT_TIMEOUT_SECONDS = 900
RELAY_API_PREFIX = "/api/v1/relay"

EXIT_COMPLETED = 0
EXIT_ERROR = 1
EXIT_TIMEOUT = 2
EXIT_INTERRUPTED = 130


def _log(tag: str, message: str) -> None:
    print(f"[{tag}] {message}", file=sys.stderr)


def _is_retryable(body: Dict[str, Any]) -> bool:
    """Lambda error bodies carry the flag inside ``error_envelope``; local failures carry it top-level."""
    if "retryable" in body:
        return bool(body["retryable"])
    return bool((body.get("error_envelope") or {}).get("retryable"))


# ---------------------------------------------------------------------------
# Resumable poller
# ---------------------------------------------------------------------------


class ResumablePoller:
    """Cancellable fixed-interval poll loop on a daemon thread.

    ``check(handle)`` performs one poll and returns the tagged body
    (``success`` / ``status`` / ``data`` / ``progress`` / ``error``). The loop
    stops on ``completed``, on a non-retryable failure, on an exception raised
    by ``check``, or when ``cancel()`` is called from any thread. Retryable
    failures are reported as progress and polling continues.
    """

    def __init__(
        self,
        check: Callable[[Dict[str, str]], Dict[str, Any]],
        handle: Dict[str, str],
        *,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        on_progress: Optional[Callable[[Dict[str, Any]], None]] = None,
        on_complete: Optional[Callable[[Any], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
    ):
        self.check = check
        self.handle = dict(handle)
        self.interval_seconds = float(interval_seconds)
        self.on_progress = on_progress
        self.on_complete = on_complete
        self.on_error = on_error
        self.outcome: Optional[str] = None
        self.result: Optional[Dict[str, Any]] = None
        self.polls = 0
        self._cancel = threading.Event()
        self._finished = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def done(self) -> bool:
        return self._finished.is_set()

    @property
    def cancelled(self) -> bool:
        return self.outcome == "cancelled"

    def start(self) -> "ResumablePoller":
        if self._thread is not None:
            raise RuntimeError("poller already started")
        self._thread = threading.Thread(
            target=self._run,
            name=f"relay-poll-{self.handle.get('commandId', '')}",
            daemon=True,
        )
        self._thread.start()
        return self

    def cancel(self) -> None:
        self._cancel.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the loop stops; returns False if ``timeout`` elapsed first."""
        return self._finished.wait(timeout)

    def _finish(self, outcome: str, result: Optional[Dict[str, Any]] = None) -> None:
        self.outcome = outcome
        self.result = result
        self._finished.set()

    def _run(self) -> None:
        while not self._cancel.wait(self.interval_seconds):
            self.polls += 1
            try:
                body = self.check(self.handle)
            except Exception as exc:
                if self.on_error:
                    self.on_error(str(exc))
                self._finish("error", {"success": False, "error": str(exc)})
                return

            if body.get("completed") or body.get("status") == "completed":
                if self.on_complete:
                    self.on_complete(body.get("data"))
                self._finish("completed", body)
                return

            if body.get("success") is False:
                message = str(body.get("error") or body.get("message") or "unknown relay error")
                if _is_retryable(body):
                    if self.on_progress:
                        self.on_progress({"status": "retrying", "message": message})
                    continue
                if self.on_error:
                    self.on_error(message)
                self._finish("error", body)
                return

            if self.on_progress:
                self.on_progress(body.get("progress") or {})

        self._finish("cancelled")


# ---------------------------------------------------------------------------
# Lambda transport
# ---------------------------------------------------------------------------


class LambdaRelayInvoker:
    def __init__(
        self,
        function_name: str,
        *,
        region: str = DEFAULT_REGION,
        internal_key: str = "",
        account_id: str = "",
        client: Any = None,
    ):
        self.function_name = function_name
        self.internal_key = internal_key
        self.account_id = account_id
        self._client = client or boto3.client(
            "lambda",
            region_name=region,
            config=Config(retries={"max_attempts": 3, "mode": "standard"}, read_timeout=60),
        )

    def _event(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        query: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        headers = {"content-type": "application/json", "x-relay-internal-key": self.internal_key}
        if self.account_id:
            headers["x-relay-account-id"] = self.account_id
        event: Dict[str, Any] = {
            "version": "2.0",
            "rawPath": path,
            "requestContext": {"http": {"method": method, "path": path}},
            "headers": headers,
            "queryStringParameters": query or {},
            "isBase64Encoded": False,
        }
        if body is not None:
            event["body"] = json.dumps(body)
        return event

    def invoke(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        query: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        try:
            resp = self._client.invoke(
                FunctionName=self.function_name,
                InvocationType="RequestResponse",
                Payload=json.dumps(self._event(method, path, body, query)).encode("utf-8"),
            )
        except (BotoCoreError, ClientError) as exc:
            return {"success": False, "error": f"Lambda invoke failed: {exc}", "retryable": True}

        raw = resp["Payload"].read()
        payload = json.loads(raw or b"{}")
        if resp.get("FunctionError"):
            return {
                "success": False,
                "error": f"{resp['FunctionError']}: {payload.get('errorMessage', payload)}",
                "retryable": False,
            }
        try:
            return json.loads(payload.get("body") or "{}")
        except json.JSONDecodeError:
            return {"success": False, "error": f"Unreadable response body (http {payload.get('statusCode')})"}

    def dispatch_conversion(
        self,
        *,
        content: Optional[str] = None,
        url: Optional[str] = None,
        project_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"projectKey": project_key}
        if content:
            body["confluenceContent"] = content
        if url:
            body["confluenceUrl"] = url
        return self.invoke("POST", f"{RELAY_API_PREFIX}/conversions", body=body)

    def check_progress(self, handle: Dict[str, str]) -> Dict[str, Any]:
        return self.invoke(
            "GET",
            f"{RELAY_API_PREFIX}/conversions/{handle['commandId']}",
            query={"userId": handle["userId"]},
        )

    def check_result(self, handle: Dict[str, str]) -> Dict[str, Any]:
        return self.invoke(
            "GET",
            f"{RELAY_API_PREFIX}/conversions/{handle['commandId']}/result",
            query={"userId": handle["userId"]},
        )


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def _print_progress(progress: Dict[str, Any]) -> None:
    _log("PROGRESS", f"{progress.get('status', '?')}: {progress.get('message', '')}")


def poll_until_done(
    invoker: LambdaRelayInvoker,
    handle: Dict[str, str],
    *,
    interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
) -> int:
    poller = ResumablePoller(
        invoker.check_progress,
        handle,
        interval_seconds=interval_seconds,
        on_progress=_print_progress,
        on_error=lambda message: _log("ERROR", message),
    ).start()

    resume_hint = f"poll --command-id {handle['commandId']} --user-id {handle['userId']}"
    try:
        finished = poller.wait(timeout_seconds)
    except KeyboardInterrupt:
        poller.cancel()
        _log("WARNING", f"Interrupted. Resume with: {resume_hint}")
        return EXIT_INTERRUPTED

    if not finished:
        poller.cancel()
        late = invoker.check_result(handle)
        if late.get("success"):
            print(json.dumps(late.get("data"), indent=2))
            _log("OK", "Result claimed after poll window closed")
            return EXIT_COMPLETED
        _log("ERROR", f"No result after {int(timeout_seconds)}s. Resume with: {resume_hint}")
        return EXIT_TIMEOUT

    if poller.outcome == "completed":
        print(json.dumps((poller.result or {}).get("data"), indent=2))
        _log("OK", f"Completed after {poller.polls} poll(s)")
        return EXIT_COMPLETED
    return EXIT_ERROR


def _read_content(args: argparse.Namespace) -> Optional[str]:
    if args.content_file:
        return Path(args.content_file).expanduser().read_text(encoding="utf-8")
    return args.content


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Dispatch relay conversions and poll them from the caller side.",
    )
    parser.add_argument("--function-name", default=os.environ.get("RELAY_FUNCTION_NAME", DEFAULT_FUNCTION_NAME))
    parser.add_argument("--region", default=os.environ.get("AWS_REGION", DEFAULT_REGION))
    parser.add_argument("--internal-key", default=os.environ.get("RELAY_INTERNAL_API_KEY", ""))
    parser.add_argument("--account-id", default=os.environ.get("RELAY_ACCOUNT_ID", ""))
    subparsers = parser.add_subparsers(dest="command", required=True)

    def _add_dispatch_args(sub: argparse.ArgumentParser) -> None:
        source = sub.add_mutually_exclusive_group(required=True)
        source.add_argument("--content", help="Design document text")
        source.add_argument("--content-file", help="Read design document text from a file")
        source.add_argument("--url", help="Confluence page URL (.../pages/PAGE_ID/...)")
        sub.add_argument("--project-key", default=None)

    def _add_poll_args(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("--interval", type=float, default=DEFAULT_INTERVAL_SECONDS)
        sub.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT_SECONDS)

    dispatch = subparsers.add_parser("dispatch", help="Send a conversion command and print its handle")
    _add_dispatch_args(dispatch)

    poll = subparsers.add_parser("poll", help="Resume polling a previously dispatched command")
    poll.add_argument("--command-id", required=True)
    poll.add_argument("--user-id", required=True)
    _add_poll_args(poll)

    run = subparsers.add_parser("run", help="Dispatch, then poll until done")
    _add_dispatch_args(run)
    _add_poll_args(run)
    return parser


def main(argv: Optional[list] = None, invoker: Optional[LambdaRelayInvoker] = None) -> int:
    args = build_parser().parse_args(argv)
    if not args.internal_key:
        _log("ERROR", "Internal key required (--internal-key or RELAY_INTERNAL_API_KEY)")
        return EXIT_ERROR

    invoker = invoker or LambdaRelayInvoker(
        args.function_name,
        region=args.region,
        internal_key=args.internal_key,
        account_id=args.account_id,
    )

    if args.command == "poll":
        handle = {"userId": args.user_id, "commandId": args.command_id}
        return poll_until_done(invoker, handle, interval_seconds=args.interval, timeout_seconds=args.timeout)

    started = time.monotonic()
    result = invoker.dispatch_conversion(
        content=_read_content(args),
        url=args.url,
        project_key=args.project_key,
    )
    if not result.get("success"):
        _log("ERROR", f"Dispatch failed: {result.get('error')}")
        return EXIT_ERROR

    handle = {"userId": result["userId"], "commandId": result["commandId"]}
    _log("INFO", f"Dispatched {handle['commandId']} for {handle['userId']} in {time.monotonic() - started:.2f}s")
    if args.command == "dispatch":
        print(json.dumps(handle))
        return EXIT_COMPLETED
    return poll_until_done(invoker, handle, interval_seconds=args.interval, timeout_seconds=args.timeout)


if __name__ == "__main__":
    sys.exit(main())
