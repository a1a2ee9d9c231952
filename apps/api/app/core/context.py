from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import reset_tenant_id, set_tenant_id
from app.core.auth import bearer_token, decode_token


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str
    user_id: str | None
    tenant_id: str | None
    locale: str


def _resolve_locale(accept_language: str | None) -> str:
    if not accept_language:
        return "en"
    primary = accept_language.split(",")[0].split(";")[0].strip()
    return primary or "en"


def _claimed_tenant(request: Request) -> str | None:
    token = bearer_token(request)
    if not token:
        return None
    payload = decode_token(token)
    if payload is None or payload.get("company_id") is None:
        return None
    return str(payload["company_id"])


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attach locale and the claimed tenant to the request.

    The tenant here only labels logs; authorization still goes through
    ``get_current_user`` and the CRM auth context dependency.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = getattr(request.state, "correlation_id", None) or ""
        tenant_id = _claimed_tenant(request)
        request.state.context = RequestContext(
            request_id=correlation_id,
            correlation_id=correlation_id,
            user_id=None,
            tenant_id=tenant_id,
            locale=_resolve_locale(request.headers.get("accept-language")),
        )
        token = set_tenant_id(tenant_id)
        try:
            response = await call_next(request)
        finally:
            reset_tenant_id(token)
        response.headers["x-request-id"] = request.state.context.request_id
        return response
