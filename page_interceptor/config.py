from __future__ import annotations

import os
import re
from dataclasses import dataclass, field

from .exceptions import ConfigurationError

ENV_PREFIX = "PAGE_INTERCEPTOR_"


@dataclass(frozen=True)
class InterceptionConfig:
    timeout_ms: int
    url_pattern: re.Pattern[str] | str | None = None
    filter_script: str | None = None
    max_requests: int | None = None
    page_script: str | None = None

    def __post_init__(self) -> None:
        if isinstance(self.url_pattern, str):
            try:
                compiled = re.compile(self.url_pattern)
            except re.error as exc:
                raise ConfigurationError(f"Invalid url_pattern {self.url_pattern!r}: {exc}") from exc
            object.__setattr__(self, "url_pattern", compiled)

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0

    def validate(self) -> None:
        if isinstance(self.timeout_ms, bool) or not isinstance(self.timeout_ms, int):
            raise ConfigurationError(f"timeout_ms must be an integer, got {self.timeout_ms!r}")
        if self.timeout_ms <= 0:
            raise ConfigurationError(f"timeout_ms must be positive, got {self.timeout_ms}")
        if self.max_requests is not None and self.max_requests <= 0:
            raise ConfigurationError(f"max_requests must be positive, got {self.max_requests}")
        if self.url_pattern is not None and not isinstance(self.url_pattern, re.Pattern):
            raise ConfigurationError("url_pattern must be a compiled regex or a pattern string")


def _env_bool(value: str | None) -> bool | None:
    if value is None:
        return None
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class EngineConfig:
    """Settings for the Chrome instance that renders pages."""

    chrome_host: str = "127.0.0.1"
    chrome_port: int = 9222
    poll_interval_seconds: float = 0.05
    command_timeout_seconds: float = 10.0
    blocked_urls: list[str] = field(default_factory=list)
    complete_on_network_idle: bool = False
    launch_browser: bool = False
    browser: str = "chrome"
    browser_path: str | None = None
    headless: bool = True
    user_data_dir: str | None = None

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX) -> EngineConfig:
        config = cls()
        host = os.getenv(f"{prefix}CHROME_HOST")
        if host:
            config.chrome_host = host.strip()
        port = os.getenv(f"{prefix}CHROME_PORT")
        if port:
            try:
                config.chrome_port = int(port)
            except ValueError as exc:
                raise ConfigurationError(f"{prefix}CHROME_PORT must be an integer, got {port!r}") from exc
        blocked = os.getenv(f"{prefix}BLOCKED_URLS")
        if blocked:
            config.blocked_urls = [item.strip() for item in blocked.split(",") if item.strip()]
        headless = _env_bool(os.getenv(f"{prefix}HEADLESS"))
        if headless is not None:
            config.headless = headless
        browser_path = os.getenv(f"{prefix}BROWSER_PATH")
        if browser_path:
            config.browser_path = browser_path.strip()
        return config
