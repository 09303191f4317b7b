from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable
from typing import Any

from .config import EngineConfig, InterceptionConfig
from .dispatcher import EngineDispatcher
from .engine import RenderingEngine, create_cdp_engine
from .engine_manager import EngineManager
from .exceptions import EngineError, InterceptionTimeoutError, PageInterceptorError
from .models import CaptureOutcome, InterceptedRequest
from .session import CaptureSession, SessionState

logger = logging.getLogger(__name__)

OUTER_TIMEOUT_HEADROOM_MS = 5000
VRF_PATTERN = re.compile(r"/ajax/read/.*[?&]vrf=([^&]+)")


def _settle(future: asyncio.Future[CaptureOutcome], outcome: CaptureOutcome) -> None:
    if not future.done():
        future.set_result(outcome)


class RequestInterceptor:
    """Load pages in a rendering engine and return the requests they dispatch.

    One engine is created lazily and reused across calls. Calls must not
    overlap on the same instance; serialize them yourself if needed.

    Usage::

        async with RequestInterceptor(EngineConfig(launch_browser=True)) as interceptor:
            token = await interceptor.extract_vrf_token("https://example.com/read/1")
    """

    def __init__(
        self,
        engine_config: EngineConfig | None = None,
        *,
        dispatcher: EngineDispatcher | None = None,
        engine_factory: Callable[[], RenderingEngine] | None = None,
    ) -> None:
        self.engine_config = engine_config or EngineConfig()
        self._owns_dispatcher = dispatcher is None
        self.dispatcher = dispatcher or EngineDispatcher()
        self._engines = EngineManager(engine_factory or self._create_engine)

    def _create_engine(self) -> RenderingEngine:
        return create_cdp_engine(self.engine_config, self.dispatcher)

    def _begin(self, session: CaptureSession) -> None:
        if session.state is not SessionState.IDLE:
            return
        try:
            engine = self._engines.acquire()
        except PageInterceptorError as exc:
            session.fail(exc)
            return
        except Exception as exc:  # noqa: BLE001
            error = EngineError(f"Could not create rendering engine: {exc}")
            error.__cause__ = exc
            session.fail(error)
            return
        session.start(engine)

    async def intercept_requests(self, url: str, config: InterceptionConfig) -> list[InterceptedRequest]:
        """Load *url* and return the requests matching *config*, in dispatch order.

        An empty list means nothing matched before the session ended.
        Engine failures raise :class:`EngineError`; if the session fails to
        end within ``timeout_ms`` plus headroom,
        :class:`InterceptionTimeoutError` is raised.
        """
        config.validate()
        loop = asyncio.get_running_loop()
        result: asyncio.Future[CaptureOutcome] = loop.create_future()
        session = CaptureSession(url, config, self.dispatcher)

        def deliver(outcome: CaptureOutcome) -> None:
            try:
                loop.call_soon_threadsafe(_settle, result, outcome)
            except RuntimeError:
                logger.debug("Event loop closed before the outcome for %s arrived", url)

        session.add_done_callback(deliver)
        outer_timeout = (config.timeout_ms + OUTER_TIMEOUT_HEADROOM_MS) / 1000.0
        logger.debug(
            "intercept_requests start url=%s timeout_ms=%d has_filter_script=%s",
            url,
            config.timeout_ms,
            bool(config.filter_script and config.filter_script.strip()),
        )
        try:
            async with asyncio.timeout(outer_timeout):
                self.dispatcher.post(self._begin, session)
                outcome = await result
        except TimeoutError:
            self.dispatcher.post(session.cancel)
            raise InterceptionTimeoutError(
                f"Capture of {url} did not finish within {outer_timeout:.1f}s"
            ) from None
        except asyncio.CancelledError:
            self.dispatcher.post(session.cancel)
            raise

        if not outcome.ok:
            raise outcome.error or EngineError(f"Capture of {url} failed")
        return list(outcome.requests)

    async def capture_urls(
        self,
        page_url: str,
        url_pattern: re.Pattern[str] | str,
        timeout_ms: int = 30000,
    ) -> list[str]:
        config = InterceptionConfig(timeout_ms=timeout_ms, url_pattern=url_pattern, max_requests=50)
        requests = await self.intercept_requests(page_url, config)
        logger.debug("capture_urls matched=%d", len(requests))
        return [r.url for r in requests]

    async def extract_query_param(
        self,
        page_url: str,
        url_pattern: re.Pattern[str] | str,
        name: str,
        timeout_ms: int = 15000,
        max_requests: int = 10,
    ) -> str | None:
        config = InterceptionConfig(timeout_ms=timeout_ms, url_pattern=url_pattern, max_requests=max_requests)
        requests = await self.intercept_requests(page_url, config)
        if not requests:
            return None
        return requests[0].query_param(name)

    async def extract_vrf_token(self, page_url: str, timeout_ms: int = 15000) -> str | None:
        vrf = await self.extract_query_param(page_url, VRF_PATTERN, "vrf", timeout_ms=timeout_ms)
        logger.debug("extract_vrf_token result=%s", vrf)
        return vrf

    # ---- lifecycle ----

    def invalidate_engine(self) -> None:
        """Drop the cached engine; the next call creates a new one."""
        self.dispatcher.submit(self._engines.invalidate).result()

    def close(self) -> None:
        if self.dispatcher.closed:
            return
        self.invalidate_engine()
        if self._owns_dispatcher:
            self.dispatcher.shutdown()

    async def aclose(self) -> None:
        await asyncio.to_thread(self.close)

    async def __aenter__(self) -> RequestInterceptor:
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> bool:
        await self.aclose()
        return False
