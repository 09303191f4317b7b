from __future__ import annotations

import logging
import os
import platform
import shutil
import subprocess
import tempfile
import time
import urllib.request

from .exceptions import EngineError

logger = logging.getLogger(__name__)

_POSIX_NAMES = {
    "chrome": ["google-chrome", "google-chrome-stable", "chromium", "chromium-browser"],
    "edge": ["microsoft-edge", "microsoft-edge-stable"],
}


def detect_browser_path(browser: str = "chrome") -> str | None:
    browser = browser.lower()
    if browser not in _POSIX_NAMES:
        raise ValueError(f"Unsupported browser: {browser}")

    system = platform.system().lower()
    if "darwin" in system:
        app_paths = {
            "chrome": "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
            "edge": "/Applications/Microsoft Edge.app/Contents/MacOS/Microsoft Edge",
        }
        path = app_paths[browser]
        return path if os.path.exists(path) else None
    if "windows" in system:
        folder = {"chrome": r"Google\Chrome\Application\chrome.exe", "edge": r"Microsoft\Edge\Application\msedge.exe"}
        for root in ("%ProgramFiles%", "%ProgramFiles(x86)%", "%LocalAppData%"):
            candidate = os.path.join(os.path.expandvars(root), folder[browser])
            if os.path.exists(candidate):
                return candidate
        return None
    for name in _POSIX_NAMES[browser]:
        found = shutil.which(name)
        if found:
            return found
    return None


def browser_is_reachable(host: str, port: int) -> bool:
    """Return ``True`` if a DevTools endpoint is already listening."""
    url = f"http://{host}:{port}/json/version"
    try:
        with urllib.request.urlopen(url, timeout=2):
            return True
    except Exception:  # noqa: BLE001
        return False


def wait_for_debug_endpoint(host: str, port: int, timeout_seconds: float = 15) -> None:
    deadline = time.time() + timeout_seconds
    while time.time() < deadline:
        if browser_is_reachable(host, port):
            return
        time.sleep(0.5)
    raise EngineError(f"Chrome DevTools endpoint did not come up at http://{host}:{port}")


def launch_browser(
    browser: str,
    browser_path: str | None,
    port: int,
    user_data_dir: str | None = None,
    headless: bool = True,
) -> subprocess.Popen[bytes]:
    resolved = browser_path or detect_browser_path(browser)
    if not resolved:
        raise EngineError(f"Could not determine {browser.title()} path. Pass --browser-path.")

    profile_root = user_data_dir or tempfile.mkdtemp(prefix="page-interceptor-profile-")
    args: list[str] = [
        resolved,
        f"--remote-debugging-port={port}",
        "--remote-allow-origins=*",
        f"--user-data-dir={profile_root}",
        "--no-first-run",
        "--no-default-browser-check",
    ]
    if headless:
        args.append("--headless=new")

    logger.info("Launching %s on DevTools port %s (headless=%s)", resolved, port, headless)
    return subprocess.Popen(args, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
