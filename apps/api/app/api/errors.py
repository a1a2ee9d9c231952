from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.context import get_correlation_id
from app.crm.errors import CRMError
from app.platform.security.errors import AuthorizationError


@dataclass
class ErrorEnvelope:
    code: str
    message_key: str
    details: Any
    correlation_id: str | None
    locale: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message_key: str,
    details: Any = None,
) -> JSONResponse:
    context = getattr(request.state, "context", None)
    correlation_id = get_correlation_id() or getattr(context, "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message_key=message_key,
        details=details,
        correlation_id=correlation_id,
        locale=getattr(context, "locale", None),
    )
    return JSONResponse(status_code=status_code, content=jsonable_encoder(asdict(payload)))


async def handle_crm_error(request: Request, exc: CRMError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message_key=exc.message_key,
        details=exc.details or None,
    )


async def handle_authorization_error(request: Request, exc: AuthorizationError) -> JSONResponse:
    return error_response(
        request,
        status_code=status.HTTP_401_UNAUTHORIZED,
        code="UNAUTHORIZED",
        message_key="auth.tenant_required",
    )


async def handle_request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields: dict[str, str] = {}
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        fields[".".join(location) or "body"] = str(error.get("type", "invalid"))
    return error_response(
        request,
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        code="VALIDATION_ERROR",
        message_key="common.invalid_request",
        details={"fields": fields},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CRMError, handle_crm_error)  # type: ignore[arg-type]
    app.add_exception_handler(AuthorizationError, handle_authorization_error)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)  # type: ignore[arg-type]
