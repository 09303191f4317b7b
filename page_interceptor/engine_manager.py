from __future__ import annotations

import logging
from collections.abc import Callable

from .engine import RenderingEngine

logger = logging.getLogger(__name__)


class EngineManager:
    """Own zero or one rendering engine and hand it out on demand.

    The engine is created on the first :meth:`acquire` and reused until it
    reports itself dead or :meth:`invalidate` is called, after which the
    next :meth:`acquire` builds a new one. Only call from the engine thread.
    """

    def __init__(self, factory: Callable[[], RenderingEngine]) -> None:
        self._factory = factory
        self._engine: RenderingEngine | None = None

    @property
    def cached(self) -> RenderingEngine | None:
        return self._engine

    def acquire(self) -> RenderingEngine:
        engine = self._engine
        if engine is not None and engine.is_alive():
            return engine
        if engine is not None:
            logger.info("Cached engine is no longer alive, recreating")
            self.invalidate()
        engine = self._factory()
        logger.debug("Created new engine instance %r", engine)
        self._engine = engine
        return engine

    def invalidate(self) -> None:
        engine, self._engine = self._engine, None
        if engine is None:
            return
        try:
            engine.close()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Ignoring error while closing engine: %s", exc)

    def close(self) -> None:
        self.invalidate()
