from __future__ import annotations

import os

from .chrome_discovery import list_targets
from .chrome_launcher import browser_is_reachable, detect_browser_path
from .config import EngineConfig


def run_doctor(config: EngineConfig) -> dict:
    report = {
        "browser": config.browser,
        "browser_path": config.browser_path,
        "browser_path_exists": bool(config.browser_path) and os.path.exists(config.browser_path),
        "devtools_endpoint": f"http://{config.chrome_host}:{config.chrome_port}",
        "devtools_reachable": False,
        "target_count": 0,
        "blocked_urls": list(config.blocked_urls),
        "errors": [],
    }

    if config.browser_path and not report["browser_path_exists"]:
        report["errors"].append(f"Browser executable not found at {config.browser_path}")
    elif not config.browser_path:
        try:
            bpath = detect_browser_path(config.browser)
            report["browser_path"] = bpath
            report["browser_path_exists"] = bool(bpath) and os.path.exists(bpath)
            if not bpath:
                report["errors"].append("Browser executable not found")
        except Exception as exc:  # noqa: BLE001
            report["errors"].append(f"Browser path detection failed: {exc}")

    if browser_is_reachable(config.chrome_host, config.chrome_port):
        report["devtools_reachable"] = True
        try:
            report["target_count"] = len(list_targets(config.chrome_host, config.chrome_port, retries=1))
        except Exception as exc:  # noqa: BLE001
            report["errors"].append(f"Could not list targets: {exc}")
    else:
        report["errors"].append("DevTools not reachable")

    return report
