import json
import os
import subprocess

import pytest
from websocket import WebSocketPayloadException, WebSocketProtocolException, WebSocketTimeoutException

from page_interceptor.cdp import CDPClient
from page_interceptor.config import EngineConfig, InterceptionConfig
from page_interceptor.engine import CDPEngine, create_cdp_engine, stop_browser
from page_interceptor.exceptions import EngineError
from page_interceptor.session import CaptureSession, SessionState


class FakeCDPClient:
    def __init__(self, events=None, navigate_result=None):
        self.commands: list[tuple[str, dict]] = []
        self.events = list(events or [])
        self.navigate_result = navigate_result or {"frameId": "F1", "loaderId": "L1"}
        self.connected = True
        self.discarded = 0
        self.fail_reads = False

    def send_command(self, method, params=None):
        self.commands.append((method, params or {}))
        return {}

    def enable_network(self):
        return self.send_command("Network.enable", {})

    def enable_page_events(self):
        return self.send_command("Page.enable", {})

    def set_lifecycle_events(self, enabled=True):
        return self.send_command("Page.setLifecycleEventsEnabled", {"enabled": enabled})

    def set_blocked_urls(self, patterns):
        return self.send_command("Network.setBlockedURLs", {"urls": list(patterns)})

    def navigate(self, url):
        self.send_command("Page.navigate", {"url": url})
        return dict(self.navigate_result)

    def stop_loading(self):
        return self.send_command("Page.stopLoading", {})

    def add_script_on_new_document(self, source):
        self.send_command("Page.addScriptToEvaluateOnNewDocument", {"source": source})
        return "script-1"

    def remove_script_on_new_document(self, identifier):
        return self.send_command("Page.removeScriptToEvaluateOnNewDocument", {"identifier": identifier})

    def discard_pending_events(self):
        self.discarded += 1
        return 0

    def read_event(self, timeout_seconds=1.0):
        if self.fail_reads:
            self.connected = False
            raise EngineError("DevTools websocket closed")
        if self.events:
            return self.events.pop(0)
        return None

    def close(self):
        self.connected = False


class QueueDispatcher:
    def __init__(self):
        self.queue = []
        self.closed = False

    def post(self, fn, *args):
        self.queue.append((fn, args))

    def drain(self, limit=50):
        steps = 0
        while self.queue and steps < limit:
            fn, args = self.queue.pop(0)
            fn(*args)
            steps += 1
        return steps


class RecordingObserver:
    def __init__(self):
        self.requests = []
        self.completed = 0
        self.errors = []
        self.loading = []
        self.history = []

    def on_request(self, request):
        self.requests.append(request)

    def on_complete(self):
        self.completed += 1

    def on_error(self, error):
        self.errors.append(error)

    def on_loading_state_changed(self, is_loading):
        self.loading.append(is_loading)

    def on_history_changed(self, url):
        self.history.append(url)


def _request_event(url, request_id="1"):
    return {
        "method": "Network.requestWillBeSent",
        "params": {"requestId": request_id, "type": "XHR", "request": {"method": "GET", "url": url, "headers": {}}},
    }


def _engine(client, **config):
    dispatcher = QueueDispatcher()
    engine = CDPEngine(client, dispatcher, EngineConfig(**config), target_id="T1")
    observer = RecordingObserver()
    engine.attach(observer)
    return engine, dispatcher, observer


def test_load_enables_domains_and_navigates():
    client = FakeCDPClient()
    engine, dispatcher, _ = _engine(client, blocked_urls=["*ads*"])
    engine.load("https://site.example/")

    methods = [m for m, _ in client.commands]
    assert methods == ["Network.enable", "Page.enable", "Network.setBlockedURLs", "Page.navigate"]
    assert client.commands[2][1] == {"urls": ["*ads*"]}
    assert engine.capturing is True
    assert len(dispatcher.queue) == 1


def test_domains_are_enabled_only_once():
    client = FakeCDPClient()
    engine, dispatcher, _ = _engine(client)
    engine.load("https://a/")
    engine.stop_capturing()
    engine.load("https://b/")
    assert [m for m, _ in client.commands].count("Network.enable") == 1


def test_pump_reports_requests_in_order_and_page_events():
    client = FakeCDPClient(
        events=[
            {"method": "Page.frameStartedLoading", "params": {"frameId": "F1"}},
            _request_event("https://site.example/", "1"),
            {"method": "Page.frameNavigated", "params": {"frame": {"id": "F1", "url": "https://site.example/"}}},
            {"method": "Page.frameNavigated", "params": {"frame": {"id": "C1", "parentId": "F1", "url": "https://ads/"}}},
            _request_event("https://site.example/ajax/read/5?vrf=ZZZ", "2"),
            {"method": "Page.frameStoppedLoading", "params": {"frameId": "F1"}},
        ]
    )
    engine, dispatcher, observer = _engine(client)
    engine.load("https://site.example/")
    dispatcher.drain(limit=10)

    assert [r.url for r in observer.requests] == [
        "https://site.example/",
        "https://site.example/ajax/read/5?vrf=ZZZ",
    ]
    assert observer.loading == [True, False]
    assert observer.history == ["https://site.example/"]
    assert engine.capturing is True


def test_stop_capturing_halts_pump_and_page():
    client = FakeCDPClient(events=[_request_event("https://late/")])
    engine, dispatcher, observer = _engine(client)
    engine.load("https://site.example/", page_script="window.x=1")
    engine.stop_capturing()
    dispatcher.drain()

    assert observer.requests == []
    methods = [m for m, _ in client.commands]
    assert "Page.stopLoading" in methods
    assert "Page.removeScriptToEvaluateOnNewDocument" in methods
    # A second stop is a no-op.
    engine.stop_capturing()
    assert [m for m, _ in client.commands].count("Page.stopLoading") == 1


def test_page_script_is_injected_before_navigation():
    client = FakeCDPClient()
    engine, _, _ = _engine(client)
    engine.load("https://site.example/", page_script="window.hook = 1;")
    methods = [m for m, _ in client.commands]
    assert methods.index("Page.addScriptToEvaluateOnNewDocument") < methods.index("Page.navigate")


def test_navigation_error_raises_engine_error():
    client = FakeCDPClient(navigate_result={"frameId": "F1", "errorText": "net::ERR_NAME_NOT_RESOLVED"})
    engine, dispatcher, _ = _engine(client)
    with pytest.raises(EngineError, match="ERR_NAME_NOT_RESOLVED"):
        engine.load("https://nowhere.invalid/")
    assert engine.capturing is False
    assert dispatcher.queue == []
    # The tab itself is still usable.
    assert engine.is_alive() is True


def test_lost_websocket_reports_error_and_marks_engine_dead():
    client = FakeCDPClient()
    engine, dispatcher, observer = _engine(client)
    engine.load("https://site.example/")
    client.fail_reads = True
    dispatcher.drain()

    assert len(observer.errors) == 1
    assert isinstance(observer.errors[0], EngineError)
    assert engine.is_alive() is False


def test_crash_event_reports_error():
    client = FakeCDPClient(events=[{"method": "Inspector.targetCrashed", "params": {}}])
    engine, dispatcher, observer = _engine(client)
    engine.load("https://site.example/")
    dispatcher.drain()
    assert "crashed" in str(observer.errors[0]).lower()
    assert engine.is_alive() is False


def test_network_idle_completes_only_when_enabled():
    idle = {"method": "Page.lifecycleEvent", "params": {"frameId": "F1", "loaderId": "L1", "name": "networkIdle"}}

    client = FakeCDPClient(events=[dict(idle)])
    engine, dispatcher, observer = _engine(client)
    engine.load("https://site.example/")
    dispatcher.drain(limit=5)
    assert observer.completed == 0

    client = FakeCDPClient(events=[dict(idle)])
    engine, dispatcher, observer = _engine(client, complete_on_network_idle=True)
    engine.load("https://site.example/")
    dispatcher.drain(limit=5)
    assert observer.completed == 1
    assert ("Page.setLifecycleEventsEnabled", {"enabled": True}) in client.commands


def test_attach_rejects_second_observer():
    engine, _, _ = _engine(FakeCDPClient())
    with pytest.raises(EngineError):
        engine.attach(RecordingObserver())


def test_close_closes_tab(monkeypatch):
    closed = {}
    monkeypatch.setattr(
        "page_interceptor.engine.close_page_target",
        lambda host, port, target_id: closed.setdefault("target", target_id),
    )
    client = FakeCDPClient()
    engine, _, _ = _engine(client)
    engine.close()
    assert closed["target"] == "T1"
    assert client.connected is False
    assert engine.observer is None


def test_create_cdp_engine_opens_tab_and_connects(monkeypatch):
    created = {}

    class ConnectingClient(FakeCDPClient):
        def __init__(self, ws_url, timeout_seconds=10):
            super().__init__()
            created["ws_url"] = ws_url
            created["timeout"] = timeout_seconds

        def connect(self):
            created["connected"] = True

    monkeypatch.setattr("page_interceptor.engine.open_page_target", lambda host, port: ("T9", "ws://fake/T9"))
    monkeypatch.setattr("page_interceptor.engine.CDPClient", ConnectingClient)
    monkeypatch.setattr("page_interceptor.engine.browser_is_reachable", lambda host, port: True)

    engine = create_cdp_engine(EngineConfig(launch_browser=True, command_timeout_seconds=3), QueueDispatcher())
    assert engine.target_id == "T9"
    assert created == {"ws_url": "ws://fake/T9", "timeout": 3, "connected": True}


def test_create_cdp_engine_launches_browser_when_unreachable(monkeypatch):
    launched = {}
    process = FakeProcess()

    def fake_launch(**kwargs):
        launched["kwargs"] = kwargs
        return process

    def fail_open(host, port):
        raise EngineError("no tab")

    monkeypatch.setattr("page_interceptor.engine.browser_is_reachable", lambda host, port: False)
    monkeypatch.setattr("page_interceptor.engine.launch_browser", fake_launch)
    monkeypatch.setattr("page_interceptor.engine.wait_for_debug_endpoint", lambda host, port: None)
    monkeypatch.setattr("page_interceptor.engine.open_page_target", fail_open)

    with pytest.raises(EngineError):
        create_cdp_engine(EngineConfig(launch_browser=True, headless=True), QueueDispatcher())
    assert launched["kwargs"]["headless"] is True
    assert process.calls == ["terminate", "wait"]
    # The throwaway profile made for the launch is cleaned up with the browser.
    assert not os.path.exists(launched["kwargs"]["user_data_dir"])


class ScriptedWebSocket:
    """Answers every command, then hands out *frames* once the commands are done."""

    def __init__(self, frames):
        self.replies = []
        self.frames = list(frames)
        self.closed = False

    def settimeout(self, value):
        pass

    def send(self, payload):
        message = json.loads(payload)
        result = {"frameId": "F1", "loaderId": "L1"} if message["method"] == "Page.navigate" else {}
        self.replies.append(json.dumps({"id": message["id"], "result": result}))

    def recv(self):
        if self.replies:
            return self.replies.pop(0)
        if self.frames:
            item = self.frames.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        raise WebSocketTimeoutException("timed out")

    def close(self):
        self.closed = True


def _session_on_real_client(monkeypatch, manual_dispatcher, frames):
    ws = ScriptedWebSocket(frames)
    monkeypatch.setattr("page_interceptor.cdp.create_connection", lambda url, timeout: ws)
    client = CDPClient("ws://fake")
    client.connect()
    dispatcher = QueueDispatcher()
    engine = CDPEngine(client, dispatcher, EngineConfig(), target_id="T1")
    session = CaptureSession("https://site.example/", InterceptionConfig(timeout_ms=1000), manual_dispatcher)
    session.start(engine)
    dispatcher.drain()
    return session, engine, ws


@pytest.mark.parametrize(
    "bad_frame",
    [
        "not json",
        "[1, 2, 3]",
        WebSocketProtocolException("Invalid close opcode"),
        WebSocketPayloadException("Invalid frame payload"),
        ConnectionResetError("reset by peer"),
    ],
)
def test_transport_failures_fail_the_session(monkeypatch, manual_dispatcher, bad_frame):
    event = json.dumps(_request_event("https://site.example/api"))
    session, engine, ws = _session_on_real_client(monkeypatch, manual_dispatcher, [event, bad_frame])

    assert session.state is SessionState.FAILED
    assert isinstance(session.outcome.error, EngineError)
    assert [r.url for r in session.captured] == ["https://site.example/api"]
    assert engine.is_alive() is False
    assert engine.observer is None
    assert ws.closed is True
    assert manual_dispatcher.pending_timers() == []


def test_unexpected_read_error_is_reported_as_engine_error():
    class ExplodingClient(FakeCDPClient):
        def read_event(self, timeout_seconds=1.0):
            raise RuntimeError("decoder blew up")

    engine, dispatcher, observer = _engine(ExplodingClient())
    engine.load("https://site.example/")
    dispatcher.drain()

    assert len(observer.errors) == 1
    assert isinstance(observer.errors[0], EngineError)
    assert isinstance(observer.errors[0].__cause__, RuntimeError)
    assert engine.capturing is False
    assert engine.is_alive() is False
    assert dispatcher.queue == []


def test_bad_event_payload_is_skipped():
    client = FakeCDPClient(
        events=[
            {"method": "Network.requestWillBeSent", "params": {"request": "garbage"}},
            _request_event("https://site.example/ok"),
        ]
    )
    engine, dispatcher, observer = _engine(client)
    engine.load("https://site.example/")
    dispatcher.drain(limit=5)

    assert [r.url for r in observer.requests] == ["https://site.example/ok"]
    assert engine.is_alive() is True


class FakeProcess:
    def __init__(self, exits=True):
        self.exits = exits
        self.calls = []

    def terminate(self):
        self.calls.append("terminate")

    def kill(self):
        self.calls.append("kill")

    def wait(self, timeout=None):
        self.calls.append("wait")
        if timeout is not None and not self.exits:
            raise subprocess.TimeoutExpired("chrome", timeout)
        return 0


def test_close_reaps_launched_browser_and_removes_profile(monkeypatch, tmp_path):
    monkeypatch.setattr("page_interceptor.engine.close_page_target", lambda host, port, target_id: None)
    profile = tmp_path / "profile"
    profile.mkdir()
    process = FakeProcess()
    engine = CDPEngine(FakeCDPClient(), QueueDispatcher(), EngineConfig(), process=process, profile_dir=str(profile))

    engine.close()

    assert process.calls == ["terminate", "wait"]
    assert not profile.exists()


def test_stop_browser_kills_when_terminate_is_ignored():
    process = FakeProcess(exits=False)
    stop_browser(process, timeout_seconds=0.01)
    assert process.calls == ["terminate", "wait", "kill", "wait"]
