"""Rendering-engine interface and its Chrome DevTools implementation.

Every method here runs on the engine thread owned by
:class:`~page_interceptor.dispatcher.EngineDispatcher`.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile
from abc import ABC, abstractmethod
from subprocess import Popen
from typing import Any, Protocol

from .cdp import CDPClient
from .chrome_discovery import close_page_target, open_page_target
from .chrome_launcher import browser_is_reachable, launch_browser, wait_for_debug_endpoint
from .config import EngineConfig
from .dispatcher import EngineDispatcher
from .exceptions import EngineError
from .models import InterceptedRequest

logger = logging.getLogger(__name__)


class EngineObserver(Protocol):
    def on_request(self, request: InterceptedRequest) -> None: ...

    def on_complete(self) -> None: ...

    def on_error(self, error: BaseException) -> None: ...

    def on_loading_state_changed(self, is_loading: bool) -> None: ...

    def on_history_changed(self, url: str) -> None: ...


class RenderingEngine(ABC):
    """A page renderer that reports every outbound request to one observer.

    Observing a request never blocks or alters it.
    """

    def __init__(self) -> None:
        self._observer: EngineObserver | None = None

    @property
    def observer(self) -> EngineObserver | None:
        return self._observer

    def attach(self, observer: EngineObserver) -> None:
        if self._observer is not None and self._observer is not observer:
            raise EngineError("Engine already has an active capture session")
        self._observer = observer

    def detach(self, observer: EngineObserver) -> None:
        if self._observer is observer:
            self._observer = None

    def _notify(self, name: str, *args: Any) -> None:
        observer = self._observer
        if observer is None:
            return
        try:
            getattr(observer, name)(*args)
        except Exception:  # noqa: BLE001
            logger.exception("Engine observer %s raised", name)

    @abstractmethod
    def load(self, url: str, page_script: str | None = None) -> None:
        """Begin navigating to *url*; requests are reported as they are dispatched."""

    @abstractmethod
    def stop_capturing(self) -> None:
        """Best-effort: stop reporting requests and halt the navigation."""

    @abstractmethod
    def is_alive(self) -> bool: ...

    @abstractmethod
    def close(self) -> None: ...


class CDPEngine(RenderingEngine):
    """A dedicated Chrome tab driven through the DevTools protocol."""

    def __init__(
        self,
        client: CDPClient,
        dispatcher: EngineDispatcher,
        config: EngineConfig | None = None,
        target_id: str | None = None,
        process: Popen[bytes] | None = None,
        profile_dir: str | None = None,
    ) -> None:
        super().__init__()
        self.client = client
        self.dispatcher = dispatcher
        self.config = config or EngineConfig()
        self.target_id = target_id
        self._process = process
        self._profile_dir = profile_dir
        self._prepared = False
        self._alive = True
        self._capturing = False
        self._generation = 0
        self._frame_id: str | None = None
        self._loader_id: str | None = None
        self._script_id: str | None = None

    @property
    def capturing(self) -> bool:
        return self._capturing

    def _prepare(self) -> None:
        if self._prepared:
            return
        self.client.enable_network()
        self.client.enable_page_events()
        if self.config.complete_on_network_idle:
            self.client.set_lifecycle_events(True)
        if self.config.blocked_urls:
            self.client.set_blocked_urls(self.config.blocked_urls)
        self._prepared = True

    def _remove_page_script(self) -> None:
        if not self._script_id:
            return
        script_id, self._script_id = self._script_id, None
        try:
            self.client.remove_script_on_new_document(script_id)
        except EngineError as exc:
            logger.debug("Could not remove page script %s: %s", script_id, exc)

    def load(self, url: str, page_script: str | None = None) -> None:
        self._prepare()
        self.client.discard_pending_events()
        self._remove_page_script()
        if page_script and page_script.strip():
            self._script_id = self.client.add_script_on_new_document(page_script)

        self._generation += 1
        generation = self._generation
        self._capturing = True
        try:
            result = self.client.navigate(url)
        except EngineError:
            self._capturing = False
            self._alive = self.client.connected
            raise
        error_text = result.get("errorText")
        if error_text:
            self._capturing = False
            raise EngineError(f"Navigation to {url} failed: {error_text}")
        self._frame_id = result.get("frameId")
        self._loader_id = result.get("loaderId")
        logger.debug("Navigating to %s frame=%s loader=%s", url, self._frame_id, self._loader_id)
        self.dispatcher.post(self._pump, generation)

    def _pump(self, generation: int) -> None:
        if not self._capturing or generation != self._generation:
            return
        try:
            event = self.client.read_event(timeout_seconds=self.config.poll_interval_seconds)
        except EngineError as exc:
            self._lose_connection(exc)
            return
        except Exception as exc:  # noqa: BLE001
            logger.exception("Reading DevTools events failed")
            error = EngineError(f"Reading DevTools events failed: {exc}")
            error.__cause__ = exc
            self._lose_connection(error)
            return
        if event is not None:
            try:
                self._dispatch(event)
            except Exception:  # noqa: BLE001
                logger.exception("Could not handle DevTools event %s", event.get("method"))
        if self._capturing and generation == self._generation:
            self.dispatcher.post(self._pump, generation)

    def _lose_connection(self, error: EngineError) -> None:
        self._capturing = False
        self._alive = False
        self._notify("on_error", error)

    def _is_main_frame(self, frame_id: Any) -> bool:
        return self._frame_id is None or frame_id == self._frame_id

    def _dispatch(self, event: dict[str, Any]) -> None:
        method = str(event.get("method", ""))
        params = dict(event.get("params", {}))

        if method == "Network.requestWillBeSent":
            self._notify("on_request", InterceptedRequest.from_cdp_event(params))
        elif method == "Page.frameStartedLoading" and self._is_main_frame(params.get("frameId")):
            self._notify("on_loading_state_changed", True)
        elif method == "Page.frameStoppedLoading" and self._is_main_frame(params.get("frameId")):
            self._notify("on_loading_state_changed", False)
        elif method == "Page.frameNavigated":
            frame = dict(params.get("frame", {}))
            if not frame.get("parentId"):
                self._notify("on_history_changed", str(frame.get("url", "")))
        elif method == "Page.navigatedWithinDocument" and self._is_main_frame(params.get("frameId")):
            self._notify("on_history_changed", str(params.get("url", "")))
        elif method == "Page.lifecycleEvent":
            if (
                self.config.complete_on_network_idle
                and params.get("name") == "networkIdle"
                and self._is_main_frame(params.get("frameId"))
                and (self._loader_id is None or params.get("loaderId") == self._loader_id)
            ):
                self._notify("on_complete")
        elif method == "Inspector.targetCrashed":
            self._capturing = False
            self._alive = False
            self._notify("on_error", EngineError("Renderer crashed"))
        elif method == "Inspector.detached":
            self._capturing = False
            self._alive = False
            reason = params.get("reason", "unknown")
            self._notify("on_error", EngineError(f"DevTools detached: {reason}"))

    def stop_capturing(self) -> None:
        if not self._capturing:
            return
        self._capturing = False
        try:
            self.client.stop_loading()
        except EngineError as exc:
            logger.debug("Page.stopLoading failed: %s", exc)
            self._alive = self.client.connected
        self._remove_page_script()

    def is_alive(self) -> bool:
        return self._alive and self.client.connected

    def close(self) -> None:
        self._capturing = False
        self._alive = False
        self._observer = None
        self.client.close()
        if self.target_id:
            close_page_target(self.config.chrome_host, self.config.chrome_port, self.target_id)
        process, self._process = self._process, None
        profile_dir, self._profile_dir = self._profile_dir, None
        stop_browser(process, profile_dir)


def stop_browser(
    process: Popen[bytes] | None,
    profile_dir: str | None = None,
    timeout_seconds: float = 5.0,
) -> None:
    """Terminate a launched browser, reap it and remove its throwaway profile."""
    if process is not None:
        process.terminate()
        try:
            process.wait(timeout=timeout_seconds)
        except subprocess.TimeoutExpired:
            logger.warning("Browser did not exit within %.1fs, killing it", timeout_seconds)
            process.kill()
            process.wait()
    if profile_dir:
        shutil.rmtree(profile_dir, ignore_errors=True)


def create_cdp_engine(config: EngineConfig, dispatcher: EngineDispatcher) -> CDPEngine:
    """Open a fresh tab (launching Chrome first if asked) and wrap it in a :class:`CDPEngine`."""
    process: Popen[bytes] | None = None
    profile_dir: str | None = None
    if config.launch_browser and not browser_is_reachable(config.chrome_host, config.chrome_port):
        if config.user_data_dir is None:
            profile_dir = tempfile.mkdtemp(prefix="page-interceptor-profile-")
        try:
            process = launch_browser(
                browser=config.browser,
                browser_path=config.browser_path,
                port=config.chrome_port,
                user_data_dir=config.user_data_dir or profile_dir,
                headless=config.headless,
            )
        except Exception:
            stop_browser(None, profile_dir)
            raise
    try:
        if process is not None:
            wait_for_debug_endpoint(config.chrome_host, config.chrome_port)
        target_id, ws_url = open_page_target(config.chrome_host, config.chrome_port)
        client = CDPClient(ws_url, timeout_seconds=config.command_timeout_seconds)
        client.connect()
    except Exception:
        stop_browser(process, profile_dir)
        raise
    logger.info("Created new engine tab %s", target_id)
    return CDPEngine(client, dispatcher, config, target_id=target_id, process=process, profile_dir=profile_dir)
