import importlib.util
import io
import json
import pathlib
import sys
import threading

MODULE_PATH = pathlib.Path(__file__).with_name("relay_poll_client.py")
SPEC = importlib.util.spec_from_file_location("relay_poll_client", MODULE_PATH)
mod = importlib.util.module_from_spec(SPEC)
assert SPEC and SPEC.loader
sys.modules[SPEC.name] = mod
SPEC.loader.exec_module(mod)

RESOLVER_DIR = pathlib.Path(__file__).resolve().parents[1] / "backend" / "lambda" / "relay_resolver"

HANDLE = {"userId": "u1", "commandId": "epics-1718000000000-k3j9x0a1b"}


def _scripted(*bodies):
    calls = []

    def _check(handle):
        calls.append(dict(handle))
        body = bodies[min(len(calls), len(bodies)) - 1]
        if isinstance(body, Exception):
            raise body
        return body

    return _check, calls


def test_poller_stops_on_completed():
    check, calls = _scripted(
        {"success": True, "status": "processing", "progress": {"status": "waiting", "message": "w"}},
        {"success": True, "status": "processing", "progress": {"status": "working", "message": "50%"}},
        {"success": True, "completed": True, "status": "completed", "data": {"epics": []}},
    )
    progress, completed = [], []
    poller = mod.ResumablePoller(
        check,
        HANDLE,
        interval_seconds=0.01,
        on_progress=progress.append,
        on_complete=completed.append,
    ).start()

    assert poller.wait(5)
    assert poller.outcome == "completed"
    assert completed == [{"epics": []}]
    assert [p["status"] for p in progress] == ["waiting", "working"]
    assert len(calls) == 3
    assert calls[0] == HANDLE


def test_poller_keeps_going_on_retryable_failure():
    check, calls = _scripted(
        {"success": False, "error": "Relay unavailable", "retryable": True},
        {"success": True, "completed": True, "data": {"epics": [1]}},
    )
    progress = []
    poller = mod.ResumablePoller(check, HANDLE, interval_seconds=0.01, on_progress=progress.append).start()

    assert poller.wait(5)
    assert poller.outcome == "completed"
    assert progress == [{"status": "retrying", "message": "Relay unavailable"}]


def _lambda_failure_body(**failed_kwargs):
    if str(RESOLVER_DIR) not in sys.path:
        sys.path.insert(0, str(RESOLVER_DIR))
    import handlers
    from poller import Failed

    return json.loads(handlers._failed_response(Failed(**failed_kwargs))["body"])


def test_poller_retries_on_read_failure_from_lambda():
    wire = _lambda_failure_body(error="Relay unavailable", code="RELAY_READ_FAILED", retryable=True)
    assert "retryable" not in wire
    assert wire["error_envelope"]["retryable"] is True

    check, calls = _scripted(wire, {"success": True, "completed": True, "data": {"epics": []}})
    progress = []
    poller = mod.ResumablePoller(check, HANDLE, interval_seconds=0.01, on_progress=progress.append).start()

    assert poller.wait(5)
    assert poller.outcome == "completed"
    assert poller.polls == 2
    assert progress == [{"status": "retrying", "message": "Relay unavailable"}]


def test_poller_stops_on_parse_failure_from_lambda():
    wire = _lambda_failure_body(error="Invalid JSON in response", code="MATCH_PARSE_FAILED", raw_response="oops")
    check, calls = _scripted(wire, {"success": True, "completed": True, "data": {}})
    errors = []
    poller = mod.ResumablePoller(check, HANDLE, interval_seconds=0.01, on_error=errors.append).start()

    assert poller.wait(5)
    assert poller.outcome == "error"
    assert errors == ["Invalid JSON in response"]
    assert len(calls) == 1


def test_poller_stops_on_terminal_failure():
    check, calls = _scripted({"success": False, "status": "failed", "error": "bad json", "retryable": False})
    errors = []
    poller = mod.ResumablePoller(check, HANDLE, interval_seconds=0.01, on_error=errors.append).start()

    assert poller.wait(5)
    assert poller.outcome == "error"
    assert errors == ["bad json"]
    assert len(calls) == 1


def test_poller_reports_check_exception():
    check, _ = _scripted(RuntimeError("socket closed"))
    errors = []
    poller = mod.ResumablePoller(check, HANDLE, interval_seconds=0.01, on_error=errors.append).start()

    assert poller.wait(5)
    assert poller.outcome == "error"
    assert errors == ["socket closed"]


def test_cancel_from_another_thread():
    check, _ = _scripted({"success": True, "status": "processing", "progress": {"status": "waiting"}})
    poller = mod.ResumablePoller(check, HANDLE, interval_seconds=0.01).start()

    threading.Timer(0.05, poller.cancel).start()
    assert poller.wait(5)
    assert poller.cancelled
    assert poller.done


def test_cancel_before_first_poll_never_checks():
    check, calls = _scripted({"success": True})
    poller = mod.ResumablePoller(check, HANDLE, interval_seconds=60)
    poller.cancel()
    poller.start()
    assert poller.wait(5)
    assert calls == []


class _FakeLambda:
    LATE_RESULT = (200, {"success": False, "message": "No results available yet"})

    def __init__(self, *responses):
        self.responses = list(responses)
        self.events = []

    def invoke(self, **kwargs):
        event = json.loads(kwargs["Payload"].decode("utf-8"))
        self.events.append(event)
        if event["rawPath"].endswith("/result"):
            status, body = self.LATE_RESULT
        else:
            status, body = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        payload = {"statusCode": status, "body": json.dumps(body)}
        return {"StatusCode": 200, "Payload": io.BytesIO(json.dumps(payload).encode("utf-8"))}


def test_invoker_builds_api_gateway_event():
    fake = _FakeLambda((200, {"success": True, "status": "processing"}))
    invoker = mod.LambdaRelayInvoker("relay-fn", internal_key="k", account_id="u1", client=fake)

    body = invoker.check_progress(HANDLE)

    assert body["status"] == "processing"
    event = fake.events[0]
    assert event["rawPath"] == f"/api/v1/relay/conversions/{HANDLE['commandId']}"
    assert event["requestContext"]["http"]["method"] == "GET"
    assert event["queryStringParameters"] == {"userId": "u1"}
    assert event["headers"]["x-relay-internal-key"] == "k"
    assert event["headers"]["x-relay-account-id"] == "u1"


def test_invoker_maps_function_error():
    class _Crashing:
        def invoke(self, **_kwargs):
            payload = {"errorMessage": "Task timed out after 30.00 seconds"}
            return {"FunctionError": "Unhandled", "Payload": io.BytesIO(json.dumps(payload).encode("utf-8"))}

    invoker = mod.LambdaRelayInvoker("relay-fn", internal_key="k", client=_Crashing())
    body = invoker.check_progress(HANDLE)
    assert body["success"] is False
    assert "Task timed out" in body["error"]


def test_main_dispatch_prints_handle(capsys):
    fake = _FakeLambda((200, {"success": True, "processing": True, **HANDLE}))
    invoker = mod.LambdaRelayInvoker("relay-fn", internal_key="k", client=fake)

    code = mod.main(["--internal-key", "k", "dispatch", "--content", "Relay design"], invoker=invoker)

    assert code == mod.EXIT_COMPLETED
    assert json.loads(capsys.readouterr().out) == HANDLE
    assert json.loads(fake.events[0]["body"])["confluenceContent"] == "Relay design"


def test_main_run_polls_to_completion(capsys):
    fake = _FakeLambda(
        (200, {"success": True, "processing": True, **HANDLE}),
        (200, {"success": True, "status": "processing", "progress": {"status": "waiting", "message": "w"}}),
        (200, {"success": True, "completed": True, "status": "completed", "data": {"epics": [{"title": "A"}]}}),
    )
    invoker = mod.LambdaRelayInvoker("relay-fn", internal_key="k", client=fake)

    code = mod.main(
        ["--internal-key", "k", "run", "--content", "doc", "--interval", "0.01", "--timeout", "5"],
        invoker=invoker,
    )

    assert code == mod.EXIT_COMPLETED
    assert json.loads(capsys.readouterr().out) == {"epics": [{"title": "A"}]}


def test_main_poll_times_out_with_exit_2():
    fake = _FakeLambda((200, {"success": True, "status": "processing", "progress": {"status": "waiting"}}))
    invoker = mod.LambdaRelayInvoker("relay-fn", internal_key="k", client=fake)

    code = mod.main(
        [
            "--internal-key", "k", "poll",
            "--command-id", HANDLE["commandId"], "--user-id", "u1",
            "--interval", "0.01", "--timeout", "0.1",
        ],
        invoker=invoker,
    )

    assert code == mod.EXIT_TIMEOUT


def test_main_dispatch_failure_exit_1():
    fake = _FakeLambda((502, {"success": False, "error": "Relay write timeout - check relay connection"}))
    invoker = mod.LambdaRelayInvoker("relay-fn", internal_key="k", client=fake)
    assert mod.main(["--internal-key", "k", "dispatch", "--content", "doc"], invoker=invoker) == mod.EXIT_ERROR


def test_main_requires_internal_key(monkeypatch):
    monkeypatch.delenv("RELAY_INTERNAL_API_KEY", raising=False)
    assert mod.main(["dispatch", "--content", "doc"], invoker=object()) == mod.EXIT_ERROR
