from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any
from urllib.parse import parse_qsl, urlparse

from requests.structures import CaseInsensitiveDict


def _freeze_headers(headers: Mapping[str, Any] | None) -> Mapping[str, str]:
    normalized = CaseInsensitiveDict({str(k): str(v) for k, v in dict(headers or {}).items()})
    return MappingProxyType(normalized)


@dataclass(frozen=True)
class InterceptedRequest:
    url: str
    method: str = "GET"
    headers: Mapping[str, str] = field(default_factory=dict)
    post_data: str | None = None
    request_id: str = ""
    resource_type: str | None = None
    seen_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def __post_init__(self) -> None:
        object.__setattr__(self, "headers", _freeze_headers(self.headers))

    def header(self, name: str) -> str | None:
        return self.headers.get(name)

    def query_param(self, name: str) -> str | None:
        """Return the first value of query parameter *name*, or ``None``."""
        query = urlparse(self.url).query
        for key, value in parse_qsl(query, keep_blank_values=True):
            if key == name:
                return value
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "method": self.method,
            "url": self.url,
            "headers": dict(self.headers.items()),
            "seen_at": self.seen_at,
            "resource_type": self.resource_type,
            "post_data": self.post_data,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InterceptedRequest:
        return cls(
            request_id=str(data.get("request_id", "")),
            method=str(data.get("method", "GET")),
            url=str(data.get("url", "")),
            headers={str(k): str(v) for k, v in dict(data.get("headers", {})).items()},
            seen_at=str(data.get("seen_at", datetime.now(timezone.utc).isoformat())),
            resource_type=data.get("resource_type"),
            post_data=(None if data.get("post_data") is None else str(data.get("post_data"))),
        )

    @classmethod
    def from_cdp_event(cls, params: dict[str, Any]) -> InterceptedRequest:
        """Build a request from a ``Network.requestWillBeSent`` payload."""
        request = dict(params.get("request", {}))
        return cls(
            request_id=str(params.get("requestId", "")),
            method=str(request.get("method", "GET")),
            url=str(request.get("url", "")),
            headers=dict(request.get("headers", {})),
            resource_type=str(params["type"]) if params.get("type") is not None else None,
            post_data=(None if request.get("postData") is None else str(request.get("postData"))),
        )


class OutcomeKind(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class CaptureOutcome:
    kind: OutcomeKind
    requests: tuple[InterceptedRequest, ...] = ()
    error: BaseException | None = None

    @classmethod
    def completed(cls, requests: list[InterceptedRequest] | tuple[InterceptedRequest, ...]) -> CaptureOutcome:
        return cls(OutcomeKind.COMPLETED, requests=tuple(requests))

    @classmethod
    def failed(cls, error: BaseException) -> CaptureOutcome:
        return cls(OutcomeKind.FAILED, error=error)

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.COMPLETED
