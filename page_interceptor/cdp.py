from __future__ import annotations

import json
import logging
from collections import deque
from itertools import count
from typing import Any

from websocket import (
    WebSocket,
    WebSocketBadStatusException,
    WebSocketException,
    WebSocketTimeoutException,
    create_connection,
)

from .exceptions import EngineError

logger = logging.getLogger(__name__)


class CDPClient:
    def __init__(self, websocket_url: str, timeout_seconds: float = 10) -> None:
        self.websocket_url = websocket_url
        self.timeout_seconds = timeout_seconds
        self._next_id = count(1)
        self._ws: WebSocket | None = None
        self._pending_events: deque[dict[str, Any]] = deque()

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def connect(self) -> None:
        try:
            self._ws = create_connection(self.websocket_url, timeout=self.timeout_seconds)
        except WebSocketBadStatusException as exc:
            raise EngineError(
                "Failed to connect to Chrome DevTools websocket. "
                "Start Chrome with --remote-allow-origins=* and --remote-debugging-port."
            ) from exc
        except OSError as exc:
            raise EngineError(f"Could not open DevTools websocket {self.websocket_url}: {exc}") from exc

    def close(self) -> None:
        if self._ws is not None:
            self._ws.close()
            self._ws = None
        self._pending_events.clear()

    def _abandon(self) -> None:
        ws, self._ws = self._ws, None
        self._pending_events.clear()
        if ws is None:
            return
        try:
            ws.close()
        except (WebSocketException, OSError) as exc:
            logger.debug("Closing broken DevTools websocket failed: %s", exc)

    def _recv(self) -> dict[str, Any]:
        if self._ws is None:
            raise EngineError("CDP client is not connected")
        try:
            raw = self._ws.recv()
        except WebSocketTimeoutException:
            raise
        except (WebSocketException, OSError) as exc:
            self._abandon()
            raise EngineError(f"DevTools websocket closed: {exc}") from exc
        try:
            message = json.loads(raw)
        except ValueError as exc:
            self._abandon()
            raise EngineError(f"Malformed DevTools message: {exc}") from exc
        if not isinstance(message, dict):
            self._abandon()
            raise EngineError(f"Unexpected DevTools message: {raw!r:.80}")
        return message

    def send_command(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        if self._ws is None:
            raise EngineError("CDP client is not connected")

        msg_id = next(self._next_id)
        payload = {"id": msg_id, "method": method, "params": params or {}}
        try:
            self._ws.settimeout(self.timeout_seconds)
            self._ws.send(json.dumps(payload))
        except (WebSocketException, OSError) as exc:
            self._abandon()
            raise EngineError("DevTools websocket closed") from exc

        while True:
            try:
                message = self._recv()
            except WebSocketTimeoutException as exc:
                raise EngineError(f"CDP command {method} timed out") from exc
            if message.get("id") == msg_id:
                if "error" in message:
                    raise EngineError(f"CDP command failed: {message['error']}")
                return dict(message.get("result", {}))
            # Events that arrive while we wait for our reply are kept for read_event().
            if "method" in message:
                self._pending_events.append(message)

    def discard_pending_events(self) -> int:
        dropped = len(self._pending_events)
        self._pending_events.clear()
        return dropped

    def read_event(self, timeout_seconds: float = 1.0) -> dict[str, Any] | None:
        if self._pending_events:
            return self._pending_events.popleft()
        if self._ws is None:
            raise EngineError("CDP client is not connected")
        self._ws.settimeout(timeout_seconds)
        try:
            message = self._recv()
        except WebSocketTimeoutException:
            return None
        if "method" not in message:
            return None
        return message

    # ---- Domain helpers ----

    def enable_network(self) -> dict[str, Any]:
        return self.send_command("Network.enable", {})

    def enable_page_events(self) -> dict[str, Any]:
        """Enable the Page domain so load/navigation events are emitted."""
        return self.send_command("Page.enable", {})

    def set_lifecycle_events(self, enabled: bool = True) -> dict[str, Any]:
        return self.send_command("Page.setLifecycleEventsEnabled", {"enabled": enabled})

    def set_blocked_urls(self, patterns: list[str]) -> dict[str, Any]:
        """Block requests whose URL matches any wildcard *patterns* (``*`` allowed)."""
        return self.send_command("Network.setBlockedURLs", {"urls": list(patterns)})

    def navigate(self, url: str) -> dict[str, Any]:
        """Navigate the attached page to *url* (``Page.navigate``)."""
        return self.send_command("Page.navigate", {"url": url})

    def stop_loading(self) -> dict[str, Any]:
        return self.send_command("Page.stopLoading", {})

    def add_script_on_new_document(self, source: str) -> str:
        """Inject *source* into every new document and return its identifier."""
        result = self.send_command("Page.addScriptToEvaluateOnNewDocument", {"source": source})
        return str(result.get("identifier", ""))

    def remove_script_on_new_document(self, identifier: str) -> dict[str, Any]:
        return self.send_command(
            "Page.removeScriptToEvaluateOnNewDocument", {"identifier": identifier}
        )
