from __future__ import annotations


class PageInterceptorError(Exception):
    """Base exception type for library consumers."""


class ConfigurationError(PageInterceptorError, ValueError):
    pass


class EngineError(PageInterceptorError):
    """The rendering engine reported an unrecoverable failure."""


class InterceptionTimeoutError(PageInterceptorError, TimeoutError):
    """The outer guard fired before the capture session resolved."""
