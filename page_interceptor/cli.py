from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from importlib.metadata import PackageNotFoundError, version

from .chrome_discovery import list_page_targets
from .config import EngineConfig, InterceptionConfig
from .doctor import run_doctor
from .exceptions import PageInterceptorError
from .interceptor import RequestInterceptor


def _tool_version() -> str:
    try:
        return version("page-interceptor")
    except PackageNotFoundError:
        return "0.0.0"


def _emit(payload: dict, output_format: str) -> None:
    if output_format == "ndjson":
        print(json.dumps(payload, separators=(",", ":")))
        return
    print(json.dumps(payload, indent=2))


def _add_engine_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--chrome-host", default=None)
    parser.add_argument("--chrome-port", type=int, default=None)
    parser.add_argument("--browser", default="chrome", choices=["chrome", "edge"])
    parser.add_argument("--launch-browser", action="store_true", help="Start a browser if none is listening")
    parser.add_argument("--browser-path", default=None)
    parser.add_argument("--user-data-dir", default=None)
    parser.add_argument("--headful", action="store_true", help="Show the launched browser window")
    parser.add_argument(
        "--block-url",
        action="append",
        default=None,
        help="Repeatable URL wildcard to block while loading (e.g. '*doubleclick.net*')",
    )
    parser.add_argument("--complete-on-idle", action="store_true", help="Finish early once the network is idle")


def _engine_config(args: argparse.Namespace) -> EngineConfig:
    config = EngineConfig.from_env()
    if args.chrome_host:
        config.chrome_host = args.chrome_host
    if args.chrome_port:
        config.chrome_port = args.chrome_port
    if args.browser_path:
        config.browser_path = args.browser_path
    if args.user_data_dir:
        config.user_data_dir = args.user_data_dir
    if args.block_url:
        config.blocked_urls = list(args.block_url)
    config.browser = args.browser
    config.launch_browser = args.launch_browser
    config.complete_on_network_idle = args.complete_on_idle
    if args.headful:
        config.headless = False
    return config


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="page-interceptor",
        description=(
            "Load a page in Chrome and capture the requests its scripts dispatch, "
            "filtered by URL pattern and a small predicate expression."
        ),
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {_tool_version()}")
    parser.add_argument("--format", choices=["json", "ndjson"], default="json")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    intercept_parser = subparsers.add_parser("intercept", help="Capture requests matching a pattern and filter")
    intercept_parser.add_argument("url")
    intercept_parser.add_argument("--pattern", default=None, help="Regex searched in each request URL")
    intercept_parser.add_argument(
        "--filter-script",
        default=None,
        help="Predicate such as \"return url.includes('/api/') && url.includes('token=')\"",
    )
    intercept_parser.add_argument("--page-script", default=None, help="Script injected before page scripts run")
    intercept_parser.add_argument("--page-script-file", default=None)
    intercept_parser.add_argument("--timeout-ms", type=int, default=15000)
    intercept_parser.add_argument("--max-requests", type=int, default=None)
    _add_engine_arguments(intercept_parser)

    urls_parser = subparsers.add_parser("capture-urls", help="List URLs of requests matching a pattern")
    urls_parser.add_argument("url")
    urls_parser.add_argument("--pattern", required=True)
    urls_parser.add_argument("--timeout-ms", type=int, default=30000)
    _add_engine_arguments(urls_parser)

    token_parser = subparsers.add_parser("extract-token", help="Extract the vrf token a page requests")
    token_parser.add_argument("url")
    token_parser.add_argument("--timeout-ms", type=int, default=15000)
    _add_engine_arguments(token_parser)

    targets_parser = subparsers.add_parser("list-targets", help="List browser page targets from DevTools")
    targets_parser.add_argument("--chrome-host", default="127.0.0.1")
    targets_parser.add_argument("--chrome-port", type=int, default=9222)

    doctor_parser = subparsers.add_parser("doctor", help="Run connectivity and environment checks")
    _add_engine_arguments(doctor_parser)

    return parser


async def _run_capture(args: argparse.Namespace) -> dict:
    async with RequestInterceptor(_engine_config(args)) as interceptor:
        if args.command == "intercept":
            page_script = args.page_script
            if args.page_script_file:
                with open(args.page_script_file, encoding="utf-8") as f:
                    page_script = f.read()
            config = InterceptionConfig(
                timeout_ms=args.timeout_ms,
                url_pattern=args.pattern,
                filter_script=args.filter_script,
                max_requests=args.max_requests,
                page_script=page_script,
            )
            requests = await interceptor.intercept_requests(args.url, config)
            return {
                "url": args.url,
                "captured": len(requests),
                "requests": [r.to_dict() for r in requests],
            }
        if args.command == "capture-urls":
            urls = await interceptor.capture_urls(args.url, args.pattern, timeout_ms=args.timeout_ms)
            return {"url": args.url, "captured": len(urls), "urls": urls}
        token = await interceptor.extract_vrf_token(args.url, timeout_ms=args.timeout_ms)
        return {"url": args.url, "vrf": token}


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.command in {"intercept", "capture-urls", "extract-token"}:
        try:
            payload = asyncio.run(_run_capture(args))
        except PageInterceptorError as exc:
            _emit({"error": type(exc).__name__, "message": str(exc)}, args.format)
            raise SystemExit(1) from exc
        _emit(payload, args.format)
        return

    if args.command == "list-targets":
        targets = list_page_targets(args.chrome_host, args.chrome_port)
        mapped = [
            {
                "id": t.get("id"),
                "title": t.get("title"),
                "url": t.get("url"),
                "type": t.get("type"),
            }
            for t in targets
        ]
        _emit({"targets": mapped, "count": len(mapped)}, args.format)
        return

    if args.command == "doctor":
        _emit(run_doctor(_engine_config(args)), args.format)
        return

    parser.error("Unknown command")


if __name__ == "__main__":
    main()
