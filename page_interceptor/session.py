"""One bounded capture run against one page load.

A :class:`CaptureSession` moves ``IDLE -> RUNNING`` when started and then
to exactly one of ``COMPLETED``, ``FAILED`` or ``CANCELLED``. Several
sources race to end a run (the engine finishing or failing, the
``max_requests`` cap, the session timer, the caller cancelling); each goes
through :meth:`CaptureSession._finish`, which only lets the first one win.
Anything that arrives afterwards is ignored.

A session timeout is a normal ending: the run completes with whatever
was captured so far, possibly nothing.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from enum import Enum

from .classifier import should_capture
from .config import InterceptionConfig
from .dispatcher import EngineDispatcher, ScheduledCall
from .engine import RenderingEngine
from .models import CaptureOutcome, InterceptedRequest

logger = logging.getLogger(__name__)

OutcomeCallback = Callable[[CaptureOutcome], None]


class SessionState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.FAILED, SessionState.CANCELLED)


class CaptureSession:
    def __init__(self, url: str, config: InterceptionConfig, dispatcher: EngineDispatcher) -> None:
        self.url = url
        self.config = config
        self.dispatcher = dispatcher
        self._lock = threading.Lock()
        self._state = SessionState.IDLE
        self._captured: list[InterceptedRequest] = []
        self._outcome: CaptureOutcome | None = None
        self._callbacks: list[OutcomeCallback] = []
        self._engine: RenderingEngine | None = None
        self._timeout_call: ScheduledCall | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def outcome(self) -> CaptureOutcome | None:
        return self._outcome

    @property
    def captured(self) -> tuple[InterceptedRequest, ...]:
        with self._lock:
            return tuple(self._captured)

    # ---- lifecycle ----

    def start(self, engine: RenderingEngine) -> None:
        """Attach to *engine*, arm the session timer and begin loading the page."""
        with self._lock:
            if self._state is not SessionState.IDLE:
                logger.debug("Session for %s not started, state=%s", self.url, self._state.value)
                return
            self._state = SessionState.RUNNING
        logger.debug(
            "Session start url=%s page_script=%s filter_script=%s",
            self.url,
            bool(self.config.page_script and self.config.page_script.strip()),
            bool(self.config.filter_script and self.config.filter_script.strip()),
        )
        try:
            engine.attach(self)
            self._engine = engine
            self._timeout_call = self.dispatcher.post_delayed(self.config.timeout_seconds, self._on_timeout)
            engine.load(self.url, self.config.page_script)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not start capture of %s: %s", self.url, exc)
            self._finish(SessionState.FAILED, exc)

    def fail(self, error: BaseException) -> bool:
        return self._finish(SessionState.FAILED, error)

    def cancel(self) -> bool:
        cancelled = self._finish(SessionState.CANCELLED)
        if cancelled:
            logger.debug("Session for %s cancelled", self.url)
        return cancelled

    def add_done_callback(self, fn: OutcomeCallback) -> None:
        """Call *fn* with the outcome once the session completes or fails.

        Cancelled sessions never call back.
        """
        with self._lock:
            outcome = self._outcome
            if outcome is None and not self._state.terminal:
                self._callbacks.append(fn)
                return
        if outcome is not None:
            fn(outcome)

    # ---- engine observer ----

    def on_request(self, request: InterceptedRequest) -> None:
        if self._state is not SessionState.RUNNING:
            return
        if not should_capture(request, self.config):
            return
        with self._lock:
            if self._state is not SessionState.RUNNING:
                return
            self._captured.append(request)
            count = len(self._captured)
        limit = self.config.max_requests
        if limit is not None and count >= limit:
            logger.debug("Reached max_requests=%d for %s", limit, self.url)
            self._finish(SessionState.COMPLETED)

    def on_complete(self) -> None:
        logger.debug("Interception complete captured=%d", len(self._captured))
        self._finish(SessionState.COMPLETED)

    def on_error(self, error: BaseException) -> None:
        logger.warning("Interception error for %s: %s", self.url, error)
        self._finish(SessionState.FAILED, error)

    def on_loading_state_changed(self, is_loading: bool) -> None:
        logger.debug("Loading state changed is_loading=%s", is_loading)

    def on_history_changed(self, url: str) -> None:
        logger.debug("History changed url=%s", url)

    def _on_timeout(self) -> None:
        if self._state is not SessionState.RUNNING:
            return
        logger.warning(
            "Timeout after %dms, stopping capture of %s (captured=%d)",
            self.config.timeout_ms,
            self.url,
            len(self._captured),
        )
        self._finish(SessionState.COMPLETED)

    # ---- resolution ----

    def _finish(self, state: SessionState, error: BaseException | None = None) -> bool:
        with self._lock:
            if self._state.terminal:
                return False
            self._state = state
            if state is SessionState.COMPLETED:
                self._outcome = CaptureOutcome.completed(self._captured)
            elif state is SessionState.FAILED:
                self._outcome = CaptureOutcome.failed(error or RuntimeError("capture failed"))
            callbacks, self._callbacks = self._callbacks, []
            outcome = self._outcome

        self._release()
        if outcome is not None:
            for fn in callbacks:
                try:
                    fn(outcome)
                except Exception:  # noqa: BLE001
                    logger.exception("Capture outcome callback failed")
        return True

    def _release(self) -> None:
        if self._timeout_call is not None:
            self._timeout_call.cancel()
            self._timeout_call = None
        engine, self._engine = self._engine, None
        if engine is None:
            return
        engine.detach(self)
        try:
            engine.stop_capturing()
        except Exception as exc:  # noqa: BLE001
            logger.debug("stop_capturing failed for %s: %s", self.url, exc)
