from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from sqlalchemy.orm import Session, sessionmaker

from dealflow.api.routes import router as api_router
from dealflow.core.config import get_settings
from dealflow.core.database import Base, SessionLocal, engine
from dealflow.core.events import InProcessEventBus, InternalEvent, event_bus
from dealflow.crm.repositories import SqlRemoteStore
from dealflow.crm.service import DealsClient
from dealflow.logging import configure_logging
from dealflow.middleware.correlation_id import CorrelationIdMiddleware
from dealflow.middleware.request_logging import RequestLoggingMiddleware
from dealflow.otel import get_fastapi_server_request_hook, setup_otel
from dealflow.realtime.channel import InProcessPushChannel


configure_logging()
logger = logging.getLogger("dealflow.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system.started", extra={"dataset": event.payload.get("dataset")})


def build_deals_client(
    session_factory: sessionmaker[Session] = SessionLocal,
    bus: InProcessEventBus = event_bus,
) -> DealsClient:
    channel = InProcessPushChannel(bus)
    return DealsClient(SqlRemoteStore(session_factory, channel), channel)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        _subscriptions_registered = True

    client: DealsClient | None = getattr(app.state, "deals_client", None)
    if client is None:
        Base.metadata.create_all(bind=engine)
        client = build_deals_client()
        app.state.deals_client = client

    await client.load()
    client.start()
    event_bus.publish("system.started", {"service": "dealflow", "dataset": client.dataset})
    try:
        yield
    finally:
        await client.stop()


app = FastAPI(title="Dealflow", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("dealflow", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
