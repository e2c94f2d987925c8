"""test_dispatcher.py — Command id format, record shape and write-failure handling.

Run: python3 -m pytest test_dispatcher.py -v
"""

from __future__ import annotations

import os
import re
import sys
import unittest

sys.path.insert(0, os.path.dirname(__file__))

import dispatcher  # noqa: E402
from errors import RelayWriteFailure  # noqa: E402
from relay_fakes import FakeRelayStore  # noqa: E402


class CommandIdTests(unittest.TestCase):
    def test_format_is_prefix_millis_suffix(self):
        command_id = dispatcher.new_command_id("epics")
        self.assertRegex(command_id, r"^epics-\d{13}-[0-9a-z]{9}$")

    def test_ids_are_unique(self):
        ids = {dispatcher.new_command_id("cmd") for _ in range(500)}
        self.assertEqual(len(ids), 500)


class DispatchTests(unittest.TestCase):
    def setUp(self):
        self.store = FakeRelayStore()

    def test_dispatch_writes_command_record(self):
        handle = dispatcher.dispatch(self.store, "u1", "code-request", {"description": "Fix login"})

        self.assertEqual(handle.tenant_id, "u1")
        self.assertTrue(handle.command_id.startswith("cmd-"))
        record = self.store.messages["u1"][handle.command_id]
        self.assertEqual(record["type"], "code-request")
        self.assertEqual(record["payload"], {"description": "Fix login"})
        self.assertEqual(record["from"], "jira-forge-app")
        self.assertTrue(re.match(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z$", record["timestamp"]))

    def test_dispatch_does_not_read_anything(self):
        dispatcher.dispatch(self.store, "u1", "epics-conversion", {})
        self.assertEqual(self.store.calls, ["put_command"])

    def test_unknown_command_type_is_rejected(self):
        with self.assertRaises(ValueError):
            dispatcher.dispatch(self.store, "u1", "summarize", {})
        self.assertEqual(self.store.messages, {})

    def test_explicit_prefix_overrides_family(self):
        handle = dispatcher.dispatch(self.store, "u1", "summarize", {}, prefix="sum")
        self.assertTrue(handle.command_id.startswith("sum-"))

    def test_write_failure_propagates(self):
        self.store.fail_writes.add("put_command")
        with self.assertRaises(RelayWriteFailure):
            dispatcher.dispatch(self.store, "u1", "code-request", {})
        self.assertEqual(self.store.messages, {})

    def test_dispatch_conversion_embeds_document(self):
        handle = dispatcher.dispatch_conversion(self.store, "u1", "Service A talks to B", "SKP")

        self.assertTrue(handle.command_id.startswith("epics-"))
        record = self.store.messages["u1"][handle.command_id]
        self.assertEqual(record["type"], "epics-conversion")
        self.assertEqual(record["payload"]["projectKey"], "SKP")
        self.assertIn('"epics"', record["payload"]["prompt"])
        self.assertTrue(record["payload"]["prompt"].endswith("Service A talks to B"))

    def test_dispatch_code_request_payload(self):
        handle = dispatcher.dispatch_code_request(self.store, "u1", "Add retries", "10042")

        record = self.store.messages["u1"][handle.command_id]
        self.assertEqual(record["payload"]["issueId"], "10042")
        self.assertEqual(record["payload"]["description"], "Add retries")


if __name__ == "__main__":
    unittest.main()
