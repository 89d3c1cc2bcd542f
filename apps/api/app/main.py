from contextlib import asynccontextmanager, contextmanager
import logging
from typing import Any

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app import models as _models  # noqa: F401
from app.api.middleware import RequestContextMiddleware
from app.api.routes import router as api_router
from app.automation.service import automation_service
from app.core.config import get_settings
from app.core.database import SessionLocal, get_db
from app.events import InternalEvent, event_bus
from app.logging import configure_logging
from app.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False

_activity_trigger_types = {
    ("deal", "created"): "deal_created",
    ("contact", "created"): "contact_created",
}


@contextmanager
def _automation_session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


def _on_activity_recorded(event: InternalEvent) -> None:
    if not get_settings().automation_activity_triggers:
        return
    envelope: dict[str, Any] = event.payload
    activity = envelope.get("payload") or {}
    trigger_type = _activity_trigger_types.get((activity.get("entity_type"), activity.get("action")))
    if trigger_type is None:
        return

    entity_type = activity["entity_type"]
    payload = {
        entity_type: {"id": activity.get("entity_id"), **(activity.get("metadata") or {})},
        "activity": activity,
        "timestamp": envelope.get("occurred_at"),
    }
    try:
        with _automation_session_scope() as session:
            automation_service.dispatch_event(session, trigger_type, payload)
    except Exception as exc:
        logger.exception("automation_activity_dispatch_failed", extra={"event_name": event.name, "error": str(exc)[:500]})


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("activity.recorded", _on_activity_recorded)
        _subscriptions_registered = True
    logger.info("system_event", extra={"event_name": "system.started"})
    yield


app = FastAPI(title="Sales Workflow Engine", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
