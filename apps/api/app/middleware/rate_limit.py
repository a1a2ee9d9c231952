from __future__ import annotations

import math
import threading
import time
import uuid
from dataclasses import dataclass, field

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import get_correlation_id
from app.core.auth import bearer_token, decode_token
from app.core.config import Settings, get_settings


WINDOW_SECONDS = 60
CAPTURE_GROUP = "capture"


@dataclass
class TokenBucket:
    """Refills ``capacity`` tokens evenly across ``window_seconds``."""

    capacity: int
    window_seconds: int
    tokens: float = field(init=False)
    updated_at: float = field(default_factory=time.monotonic)

    def __post_init__(self) -> None:
        self.tokens = float(self.capacity)

    @property
    def refill_per_second(self) -> float:
        return self.capacity / float(self.window_seconds)

    def consume(self, now: float) -> int:
        """Take one token; returns 0 when allowed, else the Retry-After seconds."""
        self.tokens = min(float(self.capacity), self.tokens + max(0.0, now - self.updated_at) * self.refill_per_second)
        self.updated_at = now
        if self.tokens >= 1.0:
            self.tokens -= 1.0
            return 0
        return max(1, math.ceil((1.0 - self.tokens) / self.refill_per_second))


class MutationRateLimiter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], TokenBucket] = {}

    def check(self, actor_key: str, route_group: str, capacity: int) -> int:
        if capacity <= 0:
            return WINDOW_SECONDS
        key = (actor_key, route_group)
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None or bucket.capacity != capacity:
                bucket = self._buckets[key] = TokenBucket(capacity=capacity, window_seconds=WINDOW_SECONDS)
            return bucket.consume(time.monotonic())

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = MutationRateLimiter()


def route_group_for(path: str) -> str:
    """``/api/crm/<group>/...``; lead capture is limited on its own."""
    parts = [part for part in path.split("/") if part]
    if len(parts) < 3:
        return "crm"
    if parts[2:4] == ["contacts", CAPTURE_GROUP]:
        return CAPTURE_GROUP
    return parts[2]


def capacity_for(route_group: str, settings: Settings) -> int:
    if route_group == CAPTURE_GROUP:
        return settings.rate_limit_capture_per_minute
    return settings.rate_limit_crm_mutations_per_minute


def actor_key_for(request: Request) -> str:
    """Bucket key ``<tenant>:<sub>`` from the bearer token, or ``anonymous``."""
    token = bearer_token(request)
    payload = decode_token(token) if token else None
    if not payload or payload.get("sub") is None:
        return "anonymous"
    subject = str(payload["sub"])
    tenant = payload.get("company_id")
    return subject if tenant is None else f"{tenant}:{subject}"


def _rate_limited_response(request: Request, retry_after: int) -> JSONResponse:
    correlation_id = (
        get_correlation_id()
        or getattr(request.state, "correlation_id", None)
        or request.headers.get("x-correlation-id")
        or str(uuid.uuid4())
    )
    return JSONResponse(
        status_code=429,
        content={
            "code": "RATE_LIMITED",
            "message_key": "common.rate_limited",
            "details": None,
            "correlation_id": correlation_id,
        },
        headers={"Retry-After": str(retry_after), "X-Correlation-Id": correlation_id},
    )


class CrmMutationRateLimitMiddleware(BaseHTTPMiddleware):
    mutating_methods = frozenset({"POST", "PUT", "PATCH", "DELETE"})

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        path = request.url.path
        if (
            settings.rate_limit_disabled
            or request.method.upper() not in self.mutating_methods
            or not path.startswith("/api/crm")
        ):
            return await call_next(request)

        route_group = route_group_for(path)
        retry_after = _limiter.check(actor_key_for(request), route_group, capacity_for(route_group, settings))
        if retry_after:
            return _rate_limited_response(request, retry_after)
        return await call_next(request)


def reset_rate_limiter() -> None:
    _limiter.clear()
