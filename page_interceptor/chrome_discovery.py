from __future__ import annotations

import json
import time
import urllib.parse
import urllib.request

from .exceptions import EngineError


def _read_json(url: str, method: str = "GET") -> list[dict] | dict:
    request = urllib.request.Request(url, method=method)
    with urllib.request.urlopen(request, timeout=5) as response:
        return json.loads(response.read().decode("utf-8"))


def list_targets(host: str, port: int, retries: int = 1, retry_delay_seconds: float = 0.5) -> list[dict]:
    endpoint = f"http://{host}:{port}/json"
    last_error: Exception | None = None
    for attempt in range(max(1, retries)):
        try:
            data = _read_json(endpoint)
            if not isinstance(data, list):
                raise EngineError("Unexpected /json response from Chrome DevTools endpoint")
            return data
        except Exception as exc:  # noqa: BLE001
            last_error = exc
            if attempt < retries - 1:
                time.sleep(retry_delay_seconds)

    raise EngineError(
        f"Could not reach Chrome DevTools at {endpoint}. "
        "Start Chrome with --remote-debugging-port and try again."
    ) from last_error


def list_page_targets(host: str, port: int) -> list[dict]:
    return [t for t in list_targets(host, port) if t.get("type") == "page"]


def _ws_url_for(target: dict, host: str, port: int) -> str:
    ws_url = target.get("webSocketDebuggerUrl")
    if not ws_url:
        target_id = urllib.parse.quote(str(target.get("id", "")))
        if not target_id:
            raise EngineError("Target missing webSocketDebuggerUrl and id")
        ws_url = f"ws://{host}:{port}/devtools/page/{target_id}"
    return str(ws_url)


def open_page_target(host: str, port: int, url: str = "about:blank") -> tuple[str, str]:
    """Open a fresh tab through ``/json/new`` and return ``(target_id, ws_url)``.

    Recent Chrome builds only accept ``PUT`` on this endpoint; older ones
    only ``GET``, so both are tried.
    """
    endpoint = f"http://{host}:{port}/json/new?{urllib.parse.quote(url, safe=':/?&=')}"
    last_error: Exception | None = None
    for method in ("PUT", "GET"):
        try:
            data = _read_json(endpoint, method=method)
        except Exception as exc:  # noqa: BLE001
            last_error = exc
            continue
        if isinstance(data, dict):
            return str(data.get("id", "")), _ws_url_for(data, host, port)
    raise EngineError(f"Could not open a new tab at {endpoint}") from last_error


def close_page_target(host: str, port: int, target_id: str) -> bool:
    endpoint = f"http://{host}:{port}/json/close/{urllib.parse.quote(target_id)}"
    try:
        with urllib.request.urlopen(endpoint, timeout=5):
            return True
    except Exception:  # noqa: BLE001
        return False
