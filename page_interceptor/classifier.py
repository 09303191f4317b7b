from __future__ import annotations

import logging

from .config import InterceptionConfig
from .models import InterceptedRequest
from .predicate import evaluate_filter_predicate

logger = logging.getLogger(__name__)


def _url_pattern_ok(request: InterceptedRequest, config: InterceptionConfig) -> bool:
    if config.url_pattern is None:
        return True
    return config.url_pattern.search(request.url) is not None


def _filter_script_ok(request: InterceptedRequest, config: InterceptionConfig) -> bool:
    if not config.filter_script or not config.filter_script.strip():
        return True
    try:
        return evaluate_filter_predicate(config.filter_script, request.url)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Filter error for %s: %s", request.url, exc)
        return False


def should_capture(request: InterceptedRequest, config: InterceptionConfig) -> bool:
    """Decide whether *request* belongs in the capture for *config*."""
    url_ok = _url_pattern_ok(request, config)
    script_ok = _filter_script_ok(request, config)
    match = url_ok and script_ok
    logger.debug(
        "REQ url=%s method=%s url_ok=%s script_ok=%s match=%s",
        request.url,
        request.method,
        url_ok,
        script_ok,
        match,
    )
    return match
