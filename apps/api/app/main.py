from contextlib import asynccontextmanager
import logging
from typing import Any

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app import audit
from app.api.errors import register_exception_handlers
from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.core.events import InternalEvent, event_bus
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.rate_limit import CrmMutationRateLimitMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")
audit_logger = logging.getLogger("app.audit")

CRM_EVENT_TYPES = (
    "crm.contact.created",
    "crm.contact.restored",
    "crm.contact.updated",
    "crm.contact.deleted",
    "crm.contact.converted",
    "crm.contact.moved",
    "crm.deal.created",
    "crm.deal.updated",
    "crm.deal.stage_changed",
    "crm.deal.won",
    "crm.deal.lost",
    "crm.deal.reopened",
    "crm.deal.deleted",
)

_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_crm_event(event: InternalEvent) -> None:
    payload = event.payload.get("payload") or {}
    logger.info(
        "crm.event",
        extra={
            "event_type": event.name,
            "tenant_id": event.payload.get("tenant_id"),
            "contact_id": payload.get("contact_id"),
            "deal_id": payload.get("deal_id"),
        },
    )


def _log_audit_entry(entry: dict[str, Any]) -> None:
    audit_logger.info(
        "audit.recorded",
        extra={
            "action": entry["action"],
            "resource": entry["resource_type"],
            "tenant_id": entry["tenant_id"],
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_type in CRM_EVENT_TYPES:
            event_bus.subscribe(event_type, _on_crm_event)
        audit.register_sink(_log_audit_entry)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": settings.otel_service_name, "version": settings.app_version})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
# added last runs first: correlation id, logging, request context, rate limiting
app.add_middleware(CrmMutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
register_exception_handlers(app)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel()

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
