from __future__ import annotations

import logging
import time
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")


def _tenant_of(request: Request) -> str | None:
    context = getattr(request.state, "context", None)
    return getattr(context, "tenant_id", None)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Emit one ``http.request`` record per request and feed the HTTP metrics."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        fields: dict[str, Any] = {"method": request.method, "path": resolve_http_path_label(request)}

        def finish(status_code: int) -> dict[str, Any]:
            elapsed = time.perf_counter() - started
            observe_http_request(fields["method"], fields["path"], status_code, elapsed)
            return {
                **fields,
                "status_code": status_code,
                "duration_ms": round(elapsed * 1000, 2),
                "tenant_id": _tenant_of(request),
            }

        try:
            response = await call_next(request)
        except Exception:
            logger.error("http.error", exc_info=True, extra=finish(500))
            raise

        logger.info("http.request", extra=finish(response.status_code))
        return response
