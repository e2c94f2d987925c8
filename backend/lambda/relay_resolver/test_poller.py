"""test_poller.py — Single-pass structured polling, late lookup, and the free-text loop.

Backed by the in-memory FakeRelayStore; the free-text loop gets a no-op sleep.

Run: python3 -m pytest test_poller.py -v
"""

from __future__ import annotations

import os
import sys
import unittest
from unittest.mock import MagicMock

sys.path.insert(0, os.path.dirname(__file__))

import poller  # noqa: E402
from cleanup import CleanupAgent  # noqa: E402
from dispatcher import dispatch_conversion  # noqa: E402
from errors import CredentialFailure, DownstreamApiFailure  # noqa: E402
from models import CorrelationHandle  # noqa: E402
from relay_fakes import FakeRelayStore  # noqa: E402


class _RecordingCleanup(CleanupAgent):
    """Keeps the futures of scheduled cleanups so a test can wait on them."""

    def __init__(self, store):
        super().__init__(store)
        self.scheduled = []

    def schedule(self, handle, response_key):
        future = super().schedule(handle, response_key)
        self.scheduled.append(future)
        return future


class TruncateAtColonTests(unittest.TestCase):
    def test_cuts_at_first_colon(self):
        self.assertEqual(poller.truncate_at_colon("Done: extra detail"), "Done")

    def test_no_colon_unchanged(self):
        self.assertEqual(poller.truncate_at_colon("All tests pass"), "All tests pass")

    def test_leading_colon_unchanged(self):
        self.assertEqual(poller.truncate_at_colon(":prefixed"), ":prefixed")

    def test_only_first_colon_counts(self):
        self.assertEqual(poller.truncate_at_colon("a: b: c"), "a")


class CheckOnceTests(unittest.TestCase):
    def setUp(self):
        self.store = FakeRelayStore()
        self.cleanup = _RecordingCleanup(self.store)
        self.handle = CorrelationHandle(tenant_id="u1", command_id="epics-1-abc")

    def test_nothing_yet_is_waiting_not_error(self):
        result = poller.check_once(self.store, self.cleanup, self.handle)

        self.assertIsInstance(result, poller.Processing)
        self.assertEqual(result.progress.status, "waiting")
        body = result.to_dict()
        self.assertTrue(body["success"])
        self.assertEqual(body["status"], "processing")
        self.assertEqual(body["progress"]["message"], "Waiting for Claude to start processing...")

    def test_progress_record_is_reported(self):
        self.store.set_progress(self.handle, "working", "50%")
        result = poller.check_once(self.store, self.cleanup, self.handle)
        self.assertEqual(result.progress.status, "working")
        self.assertEqual(result.progress.message, "50%")

    def test_progress_without_message_falls_back_to_status(self):
        self.store.set_progress(self.handle, "analyzing")
        result = poller.check_once(self.store, self.cleanup, self.handle)
        self.assertEqual(result.progress.message, "analyzing")

    def test_response_read_failure_still_checks_progress(self):
        self.store.fail_reads.add("list_responses")
        self.store.set_progress(self.handle, "working", "20%")
        result = poller.check_once(self.store, self.cleanup, self.handle)
        self.assertIsInstance(result, poller.Processing)
        self.assertEqual(result.progress.message, "20%")

    def test_both_reads_failing_is_retryable_failure(self):
        self.store.fail_reads.update({"list_responses", "get_progress"})
        result = poller.check_once(self.store, self.cleanup, self.handle)
        self.assertIsInstance(result, poller.Failed)
        self.assertTrue(result.retryable)
        self.assertFalse(result.to_dict()["success"])

    def test_progress_read_failure_alone_is_waiting(self):
        self.store.fail_reads.add("get_progress")
        result = poller.check_once(self.store, self.cleanup, self.handle)
        self.assertEqual(result.progress.status, "waiting")

    def test_unparseable_match_is_distinct_failure(self):
        self.store.add_response("-Nk", tenant_id="u1", message="epics-1-abc", response="Sorry, no JSON today")
        result = poller.check_once(self.store, self.cleanup, self.handle)

        self.assertIsInstance(result, poller.Failed)
        self.assertEqual(result.code, "MATCH_PARSE_FAILED")
        self.assertEqual(result.to_dict()["rawResponse"], "Sorry, no JSON today")
        self.assertEqual(self.cleanup.scheduled, [])

    def test_credential_failure_is_reported_not_raised(self):
        self.store.list_responses = MagicMock(side_effect=CredentialFailure("key revoked"))
        result = poller.check_once(self.store, self.cleanup, self.handle)
        self.assertIsInstance(result, poller.Failed)
        self.assertEqual(result.code, "CREDENTIAL_FAILED")

    def test_end_to_end_conversion(self):
        handle = dispatch_conversion(self.store, "u1", "Design doc body", "SKP")
        self.assertTrue(self.store.has_command(handle))

        first = poller.check_once(self.store, self.cleanup, handle)
        self.assertEqual(first.status, poller.PollStatus.PROCESSING)
        self.assertEqual(first.progress.status, "waiting")

        self.store.set_progress(handle, "working", "50%")
        second = poller.check_once(self.store, self.cleanup, handle)
        self.assertEqual(second.status, poller.PollStatus.PROCESSING)
        self.assertEqual(second.progress.message, "50%")

        self.store.add_response(
            "-Nresp",
            tenant_id="u1",
            message=f"Result for {handle.command_id}",
            response='Here you go: {"epics":[{"title":"Auth","stories":[]}]}',
            timestamp="2026-01-01T00:00:05.000Z",
        )
        third = poller.check_once(self.store, self.cleanup, handle)
        self.assertIsInstance(third, poller.Completed)
        self.assertEqual(third.data["epics"][0]["title"], "Auth")
        self.assertEqual(third.response_key, "-Nresp")
        self.assertEqual(third.to_dict()["status"], "completed")

        self.assertEqual(len(self.cleanup.scheduled), 1)
        self.cleanup.scheduled[0].result(timeout=5)
        self.assertFalse(self.store.has_command(handle))
        self.assertEqual(self.store.responses, {})

        fourth = poller.check_once(self.store, self.cleanup, handle)
        self.assertIsInstance(fourth, poller.Processing)
        self.assertEqual(fourth.progress.status, "waiting")


class CheckForConversionResultsTests(unittest.TestCase):
    def setUp(self):
        self.store = FakeRelayStore()
        self.handle = CorrelationHandle(tenant_id="u1", command_id="epics-1-abc")

    def test_nothing_available(self):
        self.assertEqual(
            poller.check_for_conversion_results(self.store, self.handle),
            {"success": False, "message": "No results available yet"},
        )

    def test_non_exact_reply_is_not_claimed(self):
        self.store.add_response("-Nk", tenant_id="u1", message="other", response='{"epics": []}')
        result = poller.check_for_conversion_results(self.store, self.handle)
        self.assertFalse(result["success"])
        self.assertIn("-Nk", self.store.responses)

    def test_exact_late_reply_is_claimed_and_deleted(self):
        self.store.put_command(self.handle, {"type": "epics-conversion"})
        self.store.add_response("-Nk", tenant_id="u1", message="epics-1-abc", response='{"epics": [{"title": "A"}]}')
        result = poller.check_for_conversion_results(self.store, self.handle)

        self.assertTrue(result["success"])
        self.assertEqual(result["data"]["epics"][0]["title"], "A")
        self.assertEqual(self.store.responses, {})
        self.assertTrue(self.store.has_command(self.handle))

    def test_delete_failure_still_returns_data(self):
        self.store.fail_writes.add("delete_response")
        self.store.add_response("-Nk", tenant_id="u1", message="epics-1-abc", response='{"epics": []}')
        self.assertTrue(poller.check_for_conversion_results(self.store, self.handle)["success"])

    def test_read_failure_is_tagged(self):
        self.store.fail_reads.add("list_responses")
        result = poller.check_for_conversion_results(self.store, self.handle)
        self.assertFalse(result["success"])
        self.assertEqual(result["errorCode"], "RELAY_READ_FAILED")


class RunCodeRequestTests(unittest.TestCase):
    def setUp(self):
        self.store = FakeRelayStore()
        self.cleanup = CleanupAgent(self.store)
        self.tracker = MagicMock()
        self.tracker.transition_issue_by_name.return_value = True
        self.handle = CorrelationHandle(tenant_id="u1", command_id="cmd-1-abc")
        self.store.put_command(self.handle, {"type": "code-request"})
        self.sleeps = []

    def _run(self, **kwargs):
        kwargs.setdefault("max_attempts", 3)
        return poller.run_code_request(
            self.store,
            self.cleanup,
            self.tracker,
            self.handle,
            "10042",
            interval_seconds=1,
            sleep=self.sleeps.append,
            **kwargs,
        )

    def test_match_applies_side_effects_with_truncated_text(self):
        self.store.add_response(
            "-Nk", tenant_id="u1", message="cmd-1-abc", response="Implemented retries: see PR #12"
        )
        result = self._run()

        self.assertTrue(result["success"])
        self.assertEqual(result["response"], "Implemented retries")
        self.assertEqual(result["fullResponse"], "Implemented retries: see PR #12")
        self.assertTrue(result["exactMatch"])
        self.tracker.add_comment.assert_called_once_with("10042", "Claude's Analysis: Implemented retries")
        self.tracker.transition_issue_by_name.assert_called_once_with("10042", "In Review")
        self.assertEqual(result["sideEffects"], {"commented": True, "transitioned": True})
        self.assertFalse(self.store.has_command(self.handle))
        self.assertEqual(self.store.responses, {})
        self.assertEqual(self.sleeps, [1])

    def test_polls_until_reply_arrives(self):
        original = self.store.list_responses
        calls = {"n": 0}

        def _late_list():
            calls["n"] += 1
            if calls["n"] == 2:
                self.store.add_response("-Nk", tenant_id="u1", response="Done")
            return original()

        self.store.list_responses = _late_list
        result = self._run()
        self.assertTrue(result["success"])
        self.assertFalse(result["exactMatch"])
        self.assertEqual(len(self.sleeps), 2)

    def test_side_effect_failures_do_not_fail_the_request(self):
        self.tracker.add_comment.side_effect = DownstreamApiFailure("POST comment failed: 403", 403)
        self.tracker.transition_issue_by_name.side_effect = DownstreamApiFailure("boom", 500)
        self.store.add_response("-Nk", tenant_id="u1", message="cmd-1-abc", response="Done")

        result = self._run()
        self.assertTrue(result["success"])
        self.assertEqual(result["sideEffects"], {"commented": False, "transitioned": False})

    def test_read_failures_count_as_no_match(self):
        self.store.fail_reads.add("list_responses")
        result = self._run()
        self.assertFalse(result["success"])
        self.assertTrue(result["timedOut"])

    def test_timeout_deletes_only_the_command(self):
        self.store.set_progress(self.handle, "working")
        result = self._run()

        self.assertFalse(result["success"])
        self.assertTrue(result["error"].startswith("TIMEOUT: Message sent successfully"))
        self.assertIn("CommandId: cmd-1-abc, UserId: u1", result["error"])
        self.assertEqual(result["commandId"], "cmd-1-abc")
        self.assertFalse(self.store.has_command(self.handle))
        self.assertIn("cmd-1-abc", self.store.progress["u1"])
        self.tracker.add_comment.assert_not_called()
        self.assertEqual(len(self.sleeps), 3)

    def test_slow_reads_stop_at_the_wall_clock_deadline(self):
        now = [0.0]
        reads = []

        def _sleep(seconds):
            now[0] += seconds

        def _slow_list():
            reads.append(now[0])
            now[0] += 4.9
            return {}

        self.store.list_responses = _slow_list
        result = poller.run_code_request(
            self.store,
            self.cleanup,
            self.tracker,
            self.handle,
            "10042",
            max_attempts=20,
            interval_seconds=1,
            deadline_seconds=20,
            sleep=_sleep,
            clock=lambda: now[0],
        )

        self.assertTrue(result["timedOut"])
        self.assertIn("after 24 seconds", result["error"])
        self.assertEqual(len(reads), 4)
        self.assertLessEqual(now[0], 20 + 5)
        self.assertFalse(self.store.has_command(self.handle))
        self.tracker.add_comment.assert_not_called()

    def test_deadline_shorter_than_interval_never_reads(self):
        self.store.add_response("-Nk", tenant_id="u1", message="cmd-1-abc", response="Done")
        result = self._run(deadline_seconds=0.5)
        self.assertTrue(result["timedOut"])
        self.assertEqual(self.sleeps, [])
        self.assertFalse(self.store.has_command(self.handle))
        self.assertIn("-Nk", self.store.responses)

    def test_without_issue_no_side_effects(self):
        self.store.add_response("-Nk", tenant_id="u1", message="cmd-1-abc", response="Done")
        result = poller.run_code_request(
            self.store, self.cleanup, None, self.handle, None, max_attempts=1, sleep=lambda _s: None
        )
        self.assertTrue(result["success"])
        self.assertEqual(result["sideEffects"], {})


if __name__ == "__main__":
    unittest.main()
