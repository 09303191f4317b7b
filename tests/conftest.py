from concurrent.futures import Future

import pytest

from page_interceptor.engine import RenderingEngine
from page_interceptor.models import InterceptedRequest


class ManualCall:
    def __init__(self, delay_seconds, fn, args):
        self.delay_seconds = delay_seconds
        self.fn = fn
        self.args = args
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualDispatcher:
    """Runs posted work inline and holds delayed work until fire_timers()."""

    def __init__(self):
        self.closed = False
        self.delayed: list[ManualCall] = []
        self.posted = 0

    def is_engine_thread(self):
        return True

    def submit(self, fn, *args):
        future = Future()
        future.set_result(fn(*args))
        return future

    def post(self, fn, *args):
        self.posted += 1
        fn(*args)

    def post_delayed(self, delay_seconds, fn, *args):
        call = ManualCall(delay_seconds, fn, args)
        self.delayed.append(call)
        return call

    def pending_timers(self):
        return [c for c in self.delayed if not c.cancelled]

    def fire_timers(self):
        for call in self.pending_timers():
            call.fn(*call.args)

    def shutdown(self, wait=True):
        self.closed = True


class FakeEngine(RenderingEngine):
    """Scripted engine: on load it dispatches *urls* in order, then optionally completes."""

    def __init__(self, urls=(), complete=False, load_error=None, error_after_load=None):
        super().__init__()
        self.urls = list(urls)
        self.complete = complete
        self.load_error = load_error
        self.error_after_load = error_after_load
        self.loaded: list[tuple[str, str | None]] = []
        self.stop_calls = 0
        self.alive = True
        self.closed = False

    def emit(self, url, method="GET", headers=None):
        self._notify("on_request", InterceptedRequest(url=url, method=method, headers=headers or {}))

    def finish(self):
        self._notify("on_complete")

    def fail(self, error):
        self._notify("on_error", error)

    def load(self, url, page_script=None):
        self.loaded.append((url, page_script))
        if self.load_error is not None:
            raise self.load_error
        for item in self.urls:
            self.emit(item)
        if self.error_after_load is not None:
            self.fail(self.error_after_load)
        elif self.complete:
            self.finish()

    def stop_capturing(self):
        self.stop_calls += 1

    def is_alive(self):
        return self.alive and not self.closed

    def close(self):
        self.closed = True


@pytest.fixture
def manual_dispatcher():
    return ManualDispatcher()


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def make_engine():
    return FakeEngine
