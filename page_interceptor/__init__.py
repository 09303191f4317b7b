"""page-interceptor package."""

from .classifier import should_capture
from .config import EngineConfig, InterceptionConfig
from .dispatcher import EngineDispatcher
from .engine import CDPEngine, EngineObserver, RenderingEngine
from .engine_manager import EngineManager
from .exceptions import ConfigurationError, EngineError, InterceptionTimeoutError, PageInterceptorError
from .interceptor import RequestInterceptor
from .models import CaptureOutcome, InterceptedRequest, OutcomeKind
from .predicate import evaluate_filter_predicate, parse_predicate
from .session import CaptureSession, SessionState

__all__ = [
    "CDPEngine",
    "CaptureOutcome",
    "CaptureSession",
    "ConfigurationError",
    "EngineConfig",
    "EngineDispatcher",
    "EngineError",
    "EngineManager",
    "EngineObserver",
    "InterceptedRequest",
    "InterceptionConfig",
    "InterceptionTimeoutError",
    "OutcomeKind",
    "PageInterceptorError",
    "RenderingEngine",
    "RequestInterceptor",
    "SessionState",
    "evaluate_filter_predicate",
    "parse_predicate",
    "should_capture",
]
